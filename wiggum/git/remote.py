"""Git remote operations."""

from pathlib import Path

from wiggum.git.runner import run_git, GitResult, NETWORK_TIMEOUT

# Substrings git prints when a push loses an optimistic race.
_REJECTION_MARKERS = ("[rejected]", "non-fast-forward", "fetch first", "stale info")


def fetch(repo: Path, remote: str = "origin", branch: str | None = None) -> GitResult:
    """Fetch from remote."""
    args = ["fetch", "--quiet", remote]
    if branch:
        args.append(branch)
    return run_git(args, repo, timeout=NETWORK_TIMEOUT)


def push(worktree: Path, remote: str, branch: str) -> GitResult:
    """Push the current HEAD to remote branch."""
    return run_git(["push", "--porcelain", remote, f"HEAD:refs/heads/{branch}"], worktree, timeout=NETWORK_TIMEOUT)


def is_push_rejected(result: GitResult) -> bool:
    """True if a failed push was refused because the remote advanced."""
    if result.success:
        return False
    text = f"{result.stdout}\n{result.stderr}"
    return any(marker in text for marker in _REJECTION_MARKERS)


def rebase(worktree: Path, upstream: str) -> GitResult:
    """Replay local commits on top of upstream."""
    return run_git(["rebase", "--quiet", upstream], worktree)


def rebase_continue(worktree: Path) -> GitResult:
    """Continue a stopped rebase after conflicts were staged."""
    return run_git(["rebase", "--continue"], worktree, env={"GIT_EDITOR": "true"})


def rebase_abort(worktree: Path) -> GitResult:
    """Abort a stopped rebase, restoring the pre-rebase HEAD."""
    return run_git(["rebase", "--abort"], worktree)


def clone(source: Path, dest: Path, branch: str | None = None) -> GitResult:
    """Clone source into dest (dest must not exist yet)."""
    args = ["clone", "--quiet"]
    if branch:
        args += ["--branch", branch]
    args += [str(source), str(dest)]
    return run_git(args, dest.parent, timeout=NETWORK_TIMEOUT)


def rebase_skip(worktree: Path) -> GitResult:
    """Drop the commit a rebase stopped on (used when it became empty)."""
    return run_git(["rebase", "--skip"], worktree)
