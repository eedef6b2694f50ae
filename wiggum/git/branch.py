"""Git branch and history operations."""

from pathlib import Path

from wiggum.git.runner import run_git

# Field separator for --format output; cannot appear in commit subjects.
_SEP = "\x1f"


def get_commit_sha(worktree: Path, ref: str = "HEAD") -> str | None:
    """Get the SHA of a ref."""
    result = run_git(["rev-parse", "--verify", "--quiet", ref], worktree)
    if result.success:
        return result.stdout.strip()
    return None


def get_divergence_count(worktree: Path, ref1: str, ref2: str) -> tuple[int, int] | None:
    """
    Get how many commits ref1 and ref2 have diverged.

    Returns:
        Tuple of (commits_in_ref1_not_in_ref2, commits_in_ref2_not_in_ref1),
        or None on error.

    Example:
        get_divergence_count(repo, "origin/main", "HEAD")
        -> (3, 5) means origin/main is 3 commits ahead, HEAD is 5 commits ahead
    """
    result = run_git(["rev-list", "--left-right", "--count", f"{ref1}...{ref2}"], worktree)
    if not result.success:
        return None
    parts = result.stdout.strip().split()
    if len(parts) != 2:
        return None
    try:
        return (int(parts[0]), int(parts[1]))
    except ValueError:
        return None


def get_file_log(repo: Path, path: str, ref: str = "HEAD") -> list[tuple[str, str, str]]:
    """
    Get the revisions touching one file, newest first.

    Works against bare and working repositories alike.

    Returns:
        List of (sha, iso_timestamp, subject); empty on error.
    """
    result = run_git(
        ["log", f"--format=%H{_SEP}%cI{_SEP}%s", ref, "--", path],
        repo,
    )
    if not result.success:
        return []
    entries = []
    for line in result.stdout.splitlines():
        parts = line.split(_SEP)
        if len(parts) == 3:
            entries.append((parts[0], parts[1], parts[2]))
    return entries
