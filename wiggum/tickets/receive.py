"""
Origin-side validation of pushed tickets.

Installed as the tickets origin's pre-receive hook by init_origin(). Git runs
it with the pushed ref updates on stdin ("<old> <new> <ref>" per line); a
non-zero exit rejects the whole push.
"""

import logging
import os
import sys
from pathlib import Path

from wiggum.git import run_git, show_file
from wiggum.lib.constants import TICKET_SUFFIX
from wiggum.lib.errors import MalformedTicket
from wiggum.tickets.document import parse_ticket
from wiggum.workflow.policy import PolicyEngine

logger = logging.getLogger(__name__)

ZERO_SHA = "0" * 40


def check_ticket_update(ticket_id: str, old: str | None, new: str, policy: PolicyEngine) -> list[str]:
    """Problems with replacing old (None for a new ticket) by new."""
    try:
        ticket = parse_ticket(new, ticket_id)
    except MalformedTicket as e:
        return [str(e)]

    errors = []
    if not policy.is_valid_state(ticket.state):
        errors.append(f"{ticket_id}: unknown state '{ticket.state}'")
    elif old is None:
        if ticket.state != policy.initial_state:
            errors.append(
                f"{ticket_id}: new tickets must start in '{policy.initial_state}', not '{ticket.state}'"
            )
    else:
        try:
            previous = parse_ticket(old, ticket_id)
        except MalformedTicket:
            # Repairing a broken ticket is always allowed
            return errors
        if previous.state != ticket.state and not policy.is_valid_transition(previous.state, ticket.state):
            errors.append(
                f"{ticket_id}: illegal transition '{previous.state}' -> '{ticket.state}'. "
                f"Allowed: {policy.describe_targets(previous.state)}"
            )
        if previous.created_at != ticket.created_at or previous.created_by != ticket.created_by:
            errors.append(f"{ticket_id}: created_at/created_by are immutable")
    return errors


def _changed_tickets(repo: Path, old_sha: str, new_sha: str) -> list[str]:
    if old_sha == ZERO_SHA:
        result = run_git(["ls-tree", "--name-only", new_sha], repo)
    else:
        result = run_git(["diff", "--name-only", "--diff-filter=AM", old_sha, new_sha], repo)
    return [f for f in result.stdout.splitlines() if f.endswith(TICKET_SUFFIX) and "/" not in f]


def _pushed_commits(repo: Path, old_sha: str, new_sha: str) -> list[str]:
    """Commits a ref update adds along its first-parent chain, oldest first."""
    rev_range = new_sha if old_sha == ZERO_SHA else f"{old_sha}..{new_sha}"
    result = run_git(["rev-list", "--reverse", "--first-parent", rev_range], repo)
    return result.stdout.split()


def check_ref_update(repo: Path, old_sha: str, new_sha: str, policy: PolicyEngine) -> list[str]:
    """Validate every ticket each pushed commit adds or modifies.

    Commits are checked one at a time, so a batch of legal steps pushed
    together is accepted.
    """
    if new_sha == ZERO_SHA:
        return ["deleting the tickets branch is not allowed"]
    errors = []
    parent = old_sha
    for commit in _pushed_commits(repo, old_sha, new_sha):
        for name in _changed_tickets(repo, parent, commit):
            ticket_id = name[: -len(TICKET_SUFFIX)]
            old = None if parent == ZERO_SHA else show_file(repo, name, parent)
            new = show_file(repo, name, commit)
            if new is None:
                continue
            errors.extend(f"{commit[:8]}: {e}" for e in check_ticket_update(ticket_id, old, new, policy))
        parent = commit
    return errors


def main(policy_path: str | None = None, branch: str = "main", stdin=None) -> int:
    """Entry point for the pre-receive hook. Returns the exit status."""
    stdin = stdin or sys.stdin
    repo = Path(os.environ.get("GIT_DIR", ".")).resolve()
    policy = PolicyEngine(Path(policy_path) if policy_path else None)

    errors = []
    for line in stdin:
        parts = line.split()
        if len(parts) != 3:
            continue
        old_sha, new_sha, ref = parts
        if ref != f"refs/heads/{branch}":
            continue
        errors.extend(check_ref_update(repo, old_sha, new_sha, policy))

    for error in errors:
        print(f"wiggum: {error}", file=sys.stderr)
    return 1 if errors else 0
