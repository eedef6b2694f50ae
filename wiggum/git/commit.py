"""Git commit operations."""

from pathlib import Path

from wiggum.git.runner import run_git, GitResult


def stage_all(worktree: Path) -> GitResult:
    """Stage all changes (new, modified, deleted)."""
    return run_git(["add", "-A"], worktree)


def commit(worktree: Path, message: str) -> GitResult:
    """Create a commit with the given message."""
    return run_git(["commit", "-m", message, "--quiet"], worktree)


def reset_hard(worktree: Path, ref: str) -> GitResult:
    """Move HEAD, index and working tree to ref, dropping local changes."""
    return run_git(["reset", "--hard", "--quiet", ref], worktree)


def configure_identity(worktree: Path, name: str, email: str) -> None:
    """Set the committer identity for a single clone."""
    run_git(["config", "user.name", name], worktree)
    run_git(["config", "user.email", email], worktree)
