"""
Field-level reconciliation of concurrently edited ticket documents.

Used by the replica sync engine when a rebase replays a local revision onto
an upstream revision of the same ticket. Header fields and body sections are
merged three-way and never auto-resolved when both sides changed them; the
comment log is append-only, so concurrent additions are unioned.
"""

import logging
from dataclasses import fields, replace

from wiggum.lib.errors import SyncConflict
from wiggum.tickets.document import parse_ticket, render_ticket
from wiggum.tickets.models import Comment, Ticket

logger = logging.getLogger(__name__)

# Every Ticket attribute except the comment log is merged by _pick()
_PICKED_FIELDS = tuple(f.name for f in fields(Ticket) if f.name != "comments")


def _pick(name: str, base, upstream, local, ticket_id: str):
    """Three-way choice for one field."""
    if upstream == local:
        return upstream
    if base is not None and base == upstream:
        return local
    if base is not None and base == local:
        return upstream
    raise SyncConflict(
        f"Concurrent edits to '{name}' on {ticket_id}: "
        f"upstream={upstream!r} local={local!r}. Pull and re-apply the change."
    )


def _shared_prefix(base: list[Comment], side: list[Comment]) -> int:
    count = 0
    for ours, theirs in zip(base, side):
        if ours != theirs:
            break
        count += 1
    return count


def union_comments(base: list[Comment], upstream: list[Comment], local: list[Comment]) -> list[Comment]:
    """Base entries first, then upstream additions, then local additions.

    A side's additions are whatever follows its common prefix with base.
    Equal comments added on both sides are both kept.
    """
    upstream_added = upstream[_shared_prefix(base, upstream):]
    local_added = local[_shared_prefix(base, local):]
    return [*base, *upstream_added, *local_added]


def merge_tickets(base: Ticket | None, upstream: Ticket, local: Ticket) -> Ticket:
    """Merge two descendants of base.

    Raises:
        SyncConflict: if any header field or body section changed on both sides
    """
    values = {}
    for name in _PICKED_FIELDS:
        base_value = getattr(base, name) if base is not None else None
        values[name] = _pick(name, base_value, getattr(upstream, name), getattr(local, name), upstream.id)

    if base is not None:
        base_comments = base.comments
    else:
        # Both sides added the file; what they agree on counts as shared
        base_comments = upstream.comments[:_shared_prefix(upstream.comments, local.comments)]
    values["comments"] = union_comments(base_comments, upstream.comments, local.comments)
    return replace(upstream, **values)


def merge_ticket_documents(path: str, base: str | None, upstream: str, local: str) -> str:
    """Reconcile three versions of a stored ticket document.

    Signature matches the replica's reconcile callback.

    Raises:
        SyncConflict: on structural conflicts
        MalformedTicket: if any version does not parse
    """
    ticket_id = path.rsplit("/", 1)[-1].removesuffix(".md")
    base_ticket = parse_ticket(base, ticket_id) if base is not None else None
    merged = merge_tickets(base_ticket, parse_ticket(upstream, ticket_id), parse_ticket(local, ticket_id))
    logger.info(f"[SYNC] Reconciled concurrent edits to {ticket_id} ({len(merged.comments)} comments)")
    return render_ticket(merged)
