"""Shared fixtures: real git origins and replicas under tmp_path."""

import logging
import os
import stat
from pathlib import Path

import pytest

from wiggum.hooks import HookDispatcher
from wiggum.store import ClonedReplica, OriginReplica, clone_replica, init_origin
from wiggum.tickets.merge import merge_ticket_documents
from wiggum.tickets.service import TicketService
from wiggum.workflow import PolicyEngine


@pytest.fixture(autouse=True)
def isolated_git(tmp_path, monkeypatch):
    """Keep the user's git config and wiggum settings out of tests."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")
    for key in list(os.environ):
        if key.startswith("WIGGUM_"):
            monkeypatch.delenv(key)


@pytest.fixture
def origin(tmp_path) -> Path:
    path = tmp_path / "tickets.git"
    init_origin(path)
    return path


@pytest.fixture
def make_replica(origin, tmp_path):
    """Factory for independent clones of the shared origin."""
    def _make(name: str) -> ClonedReplica:
        dest = clone_replica(origin, tmp_path / "replicas" / name)
        return ClonedReplica(dest, reconcile=merge_ticket_documents)
    return _make


@pytest.fixture
def replica(make_replica) -> ClonedReplica:
    return make_replica("main")


@pytest.fixture
def origin_replica(origin) -> OriginReplica:
    return OriginReplica(origin)


@pytest.fixture
def hooks_dir(tmp_path) -> Path:
    path = tmp_path / "hooks"
    path.mkdir()
    return path


@pytest.fixture
def dispatcher(hooks_dir, tmp_path) -> HookDispatcher:
    return HookDispatcher(hooks_dir, default_dir=None, timeout=10, log_path=tmp_path / "hook.log")


@pytest.fixture
def make_service(dispatcher):
    def _make(replica, policy: PolicyEngine | None = None, hooks=dispatcher, **kwargs) -> TicketService:
        return TicketService(replica, policy or PolicyEngine(), hooks=hooks, **kwargs)
    return _make


@pytest.fixture
def service(make_service, replica) -> TicketService:
    return make_service(replica, agent_id="agent-1", session="test-session")


def write_hook(directory: Path, name: str, body: str, executable: bool = True) -> Path:
    """Write a shell hook script."""
    path = directory / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    if executable:
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture(autouse=True)
def reset_wiggum_logger():
    """The CLI installs its own handler; undo that between tests."""
    yield
    logger = logging.getLogger("wiggum")
    logger.handlers[:] = []
    logger.setLevel(logging.NOTSET)
    logger.propagate = True
