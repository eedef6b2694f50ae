"""Creating the tickets origin and the replicas that track it."""

import logging
import shutil
import stat
import sys
import tempfile
from pathlib import Path

from wiggum.git import (
    init_bare,
    is_bare_repo,
    clone,
    configure_identity,
    stage_all,
    commit,
    push,
    get_commit_sha,
)
from wiggum.lib.constants import DEFAULT_BRANCH, COMMITTER_NAME, COMMITTER_EMAIL
from wiggum.lib.errors import SyncError
from wiggum.store.replica import ClonedReplica, OriginReplica, Reconciler, Replica

logger = logging.getLogger(__name__)

RECEIVE_HOOK_TEMPLATE = """#!{python}
# Installed by wiggum: rejects pushes that break the ticket workflow.
import sys

from wiggum.tickets.receive import main

sys.exit(main({policy_path!r}, {branch!r}))
"""


def init_origin(origin_dir: Path, branch: str = DEFAULT_BRANCH,
                policy_path: Path | None = None, validate_pushes: bool = False) -> bool:
    """Create the bare tickets origin with an initial commit.

    Returns:
        True if created, False if an origin already exists at origin_dir

    Raises:
        SyncError: if git fails while creating the origin
    """
    if origin_dir.exists() and is_bare_repo(origin_dir):
        logger.info(f"Origin already exists at {origin_dir}")
        return False

    result = init_bare(origin_dir, branch)
    if not result.success:
        raise SyncError(f"Failed to create origin at {origin_dir}: {result.output}")

    scratch = Path(tempfile.mkdtemp(prefix="wiggum-init-"))
    try:
        worktree = scratch / "work"
        result = clone(origin_dir, worktree)
        if not result.success:
            raise SyncError(f"Failed to clone new origin: {result.output}")
        configure_identity(worktree, COMMITTER_NAME, COMMITTER_EMAIL)
        (worktree / ".gitkeep").write_text("")
        stage_all(worktree)
        result = commit(worktree, "Initial commit")
        if not result.success:
            raise SyncError(f"Failed to create initial commit: {result.output}")
        result = push(worktree, "origin", branch)
        if not result.success:
            raise SyncError(f"Failed to publish initial commit: {result.output}")
    finally:
        shutil.rmtree(scratch, ignore_errors=True)

    if validate_pushes:
        install_receive_hook(origin_dir, branch, policy_path)

    logger.info(f"Created tickets origin at {origin_dir}")
    return True


def install_receive_hook(origin_dir: Path, branch: str = DEFAULT_BRANCH,
                         policy_path: Path | None = None) -> Path:
    """Install the pre-receive hook that validates pushed tickets."""
    hook_path = origin_dir / "hooks" / "pre-receive"
    hook_path.parent.mkdir(parents=True, exist_ok=True)
    hook_path.write_text(RECEIVE_HOOK_TEMPLATE.format(
        python=sys.executable,
        policy_path=str(policy_path) if policy_path else None,
        branch=branch,
    ))
    hook_path.chmod(hook_path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return hook_path


def clone_replica(origin_dir: Path, dest: Path, branch: str = DEFAULT_BRANCH) -> Path:
    """Clone the origin into dest and set the replica's committer identity.

    Raises:
        SyncError: if dest is occupied or the clone fails
    """
    if dest.exists() and any(dest.iterdir()):
        raise SyncError(f"Cannot clone into {dest}: directory is not empty")
    dest.parent.mkdir(parents=True, exist_ok=True)
    result = clone(origin_dir, dest, branch)
    if not result.success:
        raise SyncError(f"Failed to clone {origin_dir}: {result.output}")
    configure_identity(dest, COMMITTER_NAME, COMMITTER_EMAIL)
    logger.info(f"Cloned tickets replica into {dest}")
    return dest


def open_replica(path: Path, branch: str = DEFAULT_BRANCH,
                 reconcile: Reconciler | None = None) -> Replica:
    """Construct the replica type matching the repository at path.

    Raises:
        SyncError: if path is not a git repository with a tickets branch
    """
    if not path.exists():
        raise SyncError(f"No tickets repository at {path}")
    if is_bare_repo(path):
        if get_commit_sha(path, branch) is None:
            raise SyncError(f"Origin {path} has no '{branch}' branch")
        return OriginReplica(path, branch)
    if (path / ".git").exists():
        return ClonedReplica(path, branch, reconcile=reconcile)
    raise SyncError(f"{path} is not a tickets repository")
