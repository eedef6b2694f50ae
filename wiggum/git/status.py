"""Git status operations."""

from pathlib import Path

from wiggum.git.runner import run_git


def has_uncommitted_changes(worktree: Path) -> bool:
    """Check if worktree has any uncommitted changes (staged, unstaged, or untracked)."""
    result = run_git(["status", "--porcelain"], worktree)
    return bool(result.stdout.strip())


def has_staged_changes(worktree: Path) -> bool:
    """Check if the index differs from HEAD."""
    result = run_git(["diff", "--cached", "--quiet"], worktree)
    # exit 0 = nothing staged, exit 1 = staged changes
    return result.returncode == 1


def get_conflicted_files(worktree: Path) -> list[str]:
    """Get list of files with unresolved conflicts."""
    result = run_git(["diff", "--name-only", "--diff-filter=U"], worktree)
    return [f.strip() for f in result.stdout.splitlines() if f.strip()]


def is_rebase_in_progress(worktree: Path) -> bool:
    """Check whether a rebase has stopped in this worktree."""
    result = run_git(["rev-parse", "--git-path", "rebase-merge"], worktree)
    if not result.success:
        return False
    path = Path(result.stdout.strip())
    if not path.is_absolute():
        path = worktree / path
    return path.exists()
