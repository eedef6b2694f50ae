"""Git operations for the ticket store.

This module provides clean interfaces for git operations.
Store code should use these functions instead of direct subprocess calls.

Return type conventions:
- Functions returning GitResult: Caller must check .success before using output.
  Examples: commit(), fetch(), push(), rebase()
- Functions returning bool: True on success/condition met, False otherwise.
  Examples: has_uncommitted_changes(), is_bare_repo(), is_push_rejected()
- Functions returning parsed values (str, list): Return None/empty on failure.
  Examples: show_file() -> None, list_tree() -> []
"""

from wiggum.git.runner import GitResult, run_git
from wiggum.git.status import (
    has_uncommitted_changes,
    has_staged_changes,
    get_conflicted_files,
    is_rebase_in_progress,
)
from wiggum.git.branch import (
    get_commit_sha,
    get_divergence_count,
    get_file_log,
)
from wiggum.git.commit import (
    stage_all,
    commit,
    reset_hard,
    configure_identity,
)
from wiggum.git.remote import (
    fetch,
    push,
    is_push_rejected,
    rebase,
    rebase_continue,
    rebase_abort,
    rebase_skip,
    clone,
)
from wiggum.git.objects import (
    init_bare,
    is_bare_repo,
    show_file,
    show_stage,
    list_tree,
)

__all__ = [
    "GitResult",
    "run_git",
    # status
    "has_uncommitted_changes",
    "has_staged_changes",
    "get_conflicted_files",
    "is_rebase_in_progress",
    # branch
    "get_commit_sha",
    "get_divergence_count",
    "get_file_log",
    # commit
    "stage_all",
    "commit",
    "reset_hard",
    "configure_identity",
    # remote
    "fetch",
    "push",
    "is_push_rejected",
    "rebase",
    "rebase_continue",
    "rebase_abort",
    "rebase_skip",
    "clone",
    # objects
    "init_bare",
    "is_bare_repo",
    "show_file",
    "show_stage",
    "list_tree",
]
