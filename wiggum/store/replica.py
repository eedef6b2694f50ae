"""
Ticket replicas: where ticket documents are stored and how they sync.

A replica is one copy of the ticket store. ClonedReplica is a working clone
of the shared origin (the normal case for worktrees); OriginReplica operates
on the bare origin itself, publishing each write through a scratch clone.

Both expose the same content-store surface (list_ids/read/write/delete/history)
and the same sync surface (pull/push/checkpoint/rollback). Which kind is used
is decided once, when the replica is constructed.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from wiggum.git import (
    has_uncommitted_changes,
    has_staged_changes,
    get_conflicted_files,
    is_rebase_in_progress,
    stage_all,
    commit,
    reset_hard,
    configure_identity,
    get_commit_sha,
    get_divergence_count,
    get_file_log,
    fetch,
    push,
    is_push_rejected,
    rebase,
    rebase_continue,
    rebase_abort,
    rebase_skip,
    clone,
    show_file,
    show_stage,
    list_tree,
)
from wiggum.lib.constants import DEFAULT_BRANCH, TICKET_SUFFIX, COMMITTER_NAME, COMMITTER_EMAIL
from wiggum.lib.errors import NotFound, SyncConflict, SyncError, TicketError

logger = logging.getLogger(__name__)

# reconcile(path, base, upstream, local) -> merged document text
Reconciler = Callable[[str, str | None, str, str], str]

# Upper bound on conflicted commits replayed in one pull
MAX_REBASE_STEPS = 50


@dataclass
class Revision:
    """One committed change to a ticket document."""
    sha: str
    timestamp: str
    message: str


def _filename(ticket_id: str) -> str:
    return f"{ticket_id}{TICKET_SUFFIX}"


def _ids_from_names(names) -> list[str]:
    return sorted(n[: -len(TICKET_SUFFIX)] for n in names if n.endswith(TICKET_SUFFIX))


class Replica:
    """Common interface for ticket storage backends."""

    is_origin = False

    def __init__(self, path: Path, branch: str = DEFAULT_BRANCH):
        self.path = Path(path)
        self.branch = branch

    def __repr__(self):
        return f"{type(self).__name__}({str(self.path)!r})"

    # Content store

    def list_ids(self) -> list[str]:
        raise NotImplementedError

    def exists(self, ticket_id: str) -> bool:
        return ticket_id in self.list_ids()

    def read(self, ticket_id: str) -> str:
        raise NotImplementedError

    def write(self, ticket_id: str, content: str, message: str) -> None:
        raise NotImplementedError

    def delete(self, ticket_id: str, message: str) -> None:
        raise NotImplementedError

    def history(self, ticket_id: str) -> list[Revision]:
        raise NotImplementedError

    def ticket_path(self, ticket_id: str) -> Path:
        return self.path / _filename(ticket_id)

    # Sync

    def pull(self) -> None:
        raise NotImplementedError

    def push(self, message: str = "Sync tickets") -> None:
        raise NotImplementedError

    def checkpoint(self) -> str | None:
        """Opaque marker that rollback() can return to."""
        return None

    def rollback(self, checkpoint: str | None) -> None:
        """Discard everything done since checkpoint."""


class ClonedReplica(Replica):
    """A non-bare clone of the tickets origin."""

    def __init__(self, path: Path, branch: str = DEFAULT_BRANCH, remote: str = "origin",
                 reconcile: Reconciler | None = None):
        super().__init__(path, branch)
        self.remote = remote
        self.reconcile = reconcile

    @property
    def upstream(self) -> str:
        return f"{self.remote}/{self.branch}"

    def list_ids(self) -> list[str]:
        if not self.path.is_dir():
            return []
        return _ids_from_names(p.name for p in self.path.iterdir() if p.is_file())

    def exists(self, ticket_id: str) -> bool:
        return self.ticket_path(ticket_id).is_file()

    def read(self, ticket_id: str) -> str:
        path = self.ticket_path(ticket_id)
        if not path.is_file():
            raise NotFound(ticket_id)
        return path.read_text()

    def write(self, ticket_id: str, content: str, message: str) -> None:
        self.ticket_path(ticket_id).write_text(content)
        self._commit(message)

    def delete(self, ticket_id: str, message: str) -> None:
        path = self.ticket_path(ticket_id)
        if not path.is_file():
            raise NotFound(ticket_id)
        path.unlink()
        self._commit(message)

    def history(self, ticket_id: str) -> list[Revision]:
        if not self.exists(ticket_id):
            raise NotFound(ticket_id)
        return [Revision(*entry) for entry in get_file_log(self.path, _filename(ticket_id))]

    def _commit(self, message: str) -> None:
        result = stage_all(self.path)
        if not result.success:
            raise SyncError(f"Failed to stage changes in {self.path}: {result.output}")
        if not has_staged_changes(self.path):
            return
        result = commit(self.path, message)
        if not result.success:
            raise SyncError(f"Failed to commit in {self.path}: {result.output}")

    def checkpoint(self) -> str | None:
        return get_commit_sha(self.path)

    def rollback(self, checkpoint: str | None) -> None:
        if checkpoint is None:
            return
        logger.info(f"[SYNC] Rolling back {self.path.name} to {checkpoint[:8]}")
        result = reset_hard(self.path, checkpoint)
        if not result.success:
            raise SyncError(f"Failed to roll back replica to {checkpoint[:8]}: {result.output}")

    def pull(self) -> None:
        """Fetch origin and rebase local commits onto it.

        Raises:
            SyncConflict: uncommitted work, or concurrent edits that cannot
                be reconciled (the replica is left as it was)
            SyncError: origin unreachable
        """
        if has_uncommitted_changes(self.path):
            raise SyncConflict(
                f"Uncommitted changes in {self.path}. Commit or discard them before syncing."
            )

        result = fetch(self.path, self.remote)
        if not result.success:
            raise SyncError(f"Failed to fetch from {self.remote}: {result.output}")

        if get_commit_sha(self.path, self.upstream) is None:
            logger.debug(f"[SYNC] {self.upstream} has no commits yet")
            return

        counts = get_divergence_count(self.path, "HEAD", self.upstream)
        if counts is not None and counts[1] == 0:
            return

        logger.debug(f"[SYNC] Rebasing {self.path.name} onto {self.upstream}")
        result = rebase(self.path, self.upstream)
        if result.success:
            return
        if not is_rebase_in_progress(self.path):
            raise SyncError(f"Rebase onto {self.upstream} failed: {result.output}")
        self._resolve_rebase()

    def _resolve_rebase(self) -> None:
        for _ in range(MAX_REBASE_STEPS):
            conflicted = get_conflicted_files(self.path)
            if not conflicted:
                if has_staged_changes(self.path):
                    self._abort(SyncError, "Rebase stopped without conflicts")
                # Reconciliation made the replayed commit empty
                result = rebase_skip(self.path)
            else:
                for name in conflicted:
                    self._reconcile_file(name)
                stage_all(self.path)
                result = rebase_continue(self.path)

            if not is_rebase_in_progress(self.path):
                if result.success:
                    return
                raise SyncError(f"Rebase failed: {result.output}")

        self._abort(SyncConflict, f"Gave up reconciling after {MAX_REBASE_STEPS} commits")

    def _reconcile_file(self, name: str) -> None:
        base = show_stage(self.path, 1, name)
        upstream = show_stage(self.path, 2, name)
        local = show_stage(self.path, 3, name)
        if upstream is None or local is None:
            self._abort(SyncConflict, f"{name} was deleted on one side and edited on the other")
        if self.reconcile is None:
            self._abort(SyncConflict, f"Concurrent edits to {name}")
        try:
            merged = self.reconcile(name, base, upstream, local)
        except TicketError as e:
            self._abort(SyncConflict, str(e))
        (self.path / name).write_text(merged)

    def _abort(self, error_cls, message: str):
        result = rebase_abort(self.path)
        if not result.success:
            logger.error(f"[SYNC] rebase --abort failed in {self.path}: {result.output}")
        raise error_cls(message)

    def push(self, message: str = "Sync tickets") -> None:
        """Commit outstanding changes and publish them to origin.

        Raises:
            SyncConflict: origin advanced since the last pull
            SyncError: any other push failure
        """
        self._commit(message)

        counts = get_divergence_count(self.path, "HEAD", self.upstream)
        if counts is not None and counts[0] == 0:
            return

        result = push(self.path, self.remote, self.branch)
        if result.success:
            logger.debug(f"[SYNC] Pushed {self.path.name} to {self.remote}/{self.branch}")
            return
        if is_push_rejected(result):
            raise SyncConflict(f"Origin advanced since the last pull: {result.output}")
        raise SyncError(f"Failed to push to {self.remote}: {result.output}")


class OriginReplica(Replica):
    """Operates directly on the bare origin repository.

    Reads use git object access. Each write is committed in a scratch clone
    and pushed back, so it is published atomically or not at all.
    """

    is_origin = True

    def __init__(self, path: Path, branch: str = DEFAULT_BRANCH):
        super().__init__(path, branch)
        self._base_sha: str | None = None

    def list_ids(self) -> list[str]:
        return _ids_from_names(list_tree(self.path, self.branch))

    def read(self, ticket_id: str) -> str:
        content = show_file(self.path, _filename(ticket_id), self.branch)
        if content is None:
            raise NotFound(ticket_id)
        return content

    def write(self, ticket_id: str, content: str, message: str) -> None:
        def apply(worktree: Path):
            (worktree / _filename(ticket_id)).write_text(content)
        self._publish(apply, message)

    def delete(self, ticket_id: str, message: str) -> None:
        if not self.exists(ticket_id):
            raise NotFound(ticket_id)

        def apply(worktree: Path):
            (worktree / _filename(ticket_id)).unlink()
        self._publish(apply, message)

    def history(self, ticket_id: str) -> list[Revision]:
        if not self.exists(ticket_id):
            raise NotFound(ticket_id)
        return [Revision(*entry) for entry in get_file_log(self.path, _filename(ticket_id), self.branch)]

    def pull(self) -> None:
        """Record the origin head that subsequent writes must build on."""
        self._base_sha = get_commit_sha(self.path, self.branch)

    def push(self, message: str = "Sync tickets") -> None:
        """Writes are already published."""

    def _publish(self, apply: Callable[[Path], None], message: str) -> None:
        scratch = Path(tempfile.mkdtemp(prefix="wiggum-origin-"))
        try:
            worktree = scratch / "work"
            result = clone(self.path, worktree, self.branch)
            if not result.success:
                raise SyncError(f"Failed to clone origin {self.path}: {result.output}")
            configure_identity(worktree, COMMITTER_NAME, COMMITTER_EMAIL)

            head = get_commit_sha(worktree)
            if self._base_sha is not None and head != self._base_sha:
                raise SyncConflict("Origin advanced since the last read. Pull and retry.")

            apply(worktree)
            stage_all(worktree)
            if not has_staged_changes(worktree):
                return
            result = commit(worktree, message)
            if not result.success:
                raise SyncError(f"Failed to commit to origin: {result.output}")

            result = push(worktree, "origin", self.branch)
            if not result.success:
                if is_push_rejected(result):
                    raise SyncConflict(f"Origin advanced during write: {result.output}")
                raise SyncError(f"Failed to publish to origin: {result.output}")

            if self._base_sha is not None:
                self._base_sha = get_commit_sha(worktree)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)
