"""Read-only object access, usable against bare repositories."""

from pathlib import Path

from wiggum.git.runner import run_git, GitResult


def init_bare(path: Path, branch: str) -> GitResult:
    """Create a bare repository whose HEAD points at branch."""
    path.mkdir(parents=True, exist_ok=True)
    result = run_git(["init", "--bare", "--quiet"], path)
    if result.success:
        run_git(["symbolic-ref", "HEAD", f"refs/heads/{branch}"], path)
    return result


def is_bare_repo(path: Path) -> bool:
    """Check if path is a bare repository."""
    result = run_git(["rev-parse", "--is-bare-repository"], path)
    return result.success and result.stdout.strip() == "true"


def show_file(repo: Path, path: str, ref: str = "HEAD") -> str | None:
    """Get a file's content at ref, or None if it doesn't exist there."""
    result = run_git(["show", f"{ref}:{path}"], repo)
    if result.success:
        return result.stdout
    return None


def show_stage(worktree: Path, stage: int, path: str) -> str | None:
    """Get a conflicted file's content from an index stage (1=base, 2=ours, 3=theirs)."""
    result = run_git(["show", f":{stage}:{path}"], worktree)
    if result.success:
        return result.stdout
    return None


def list_tree(repo: Path, ref: str = "HEAD") -> list[str]:
    """List top-level file names at ref, in git's (sorted) order."""
    result = run_git(["ls-tree", "--name-only", ref], repo)
    if not result.success:
        return []
    return [f for f in result.stdout.splitlines() if f]
