"""
Ticket CRUD and transition service.

TicketService is the only code that touches a replica's documents. Every
operation follows the same discipline:

    read:  pull (best effort) -> parse
    write: pull (must succeed) -> mutate -> commit -> push

A write either lands on origin or leaves no trace: on any failure the
replica is reset to the revision it had before the attempt.
"""

import logging
import secrets
from concurrent.futures import Future
from dataclasses import dataclass, field

from wiggum.hooks.dispatcher import HookContext, HookDispatcher, HookResult
from wiggum.lib.constants import TICKET_ID_PREFIX, TICKET_ID_PATTERN
from wiggum.lib.errors import (
    AmbiguousId,
    InvalidField,
    MalformedTicket,
    NotFound,
    SyncConflict,
    SyncError,
    TicketError,
)
from wiggum.store.replica import Replica, Revision
from wiggum.tickets.document import parse_ticket, render_ticket
from wiggum.tickets.models import DEFAULT_PRIORITY, Comment, Criterion, Ticket, human_timestamp, timestamp
from wiggum.workflow.fsm import TicketFSM
from wiggum.workflow.policy import PolicyEngine, POST, PRE

logger = logging.getLogger(__name__)

# Attempts for writes that cannot conflict (comments, new tickets)
MAX_PUSH_ATTEMPTS = 3

# Fields set_field() may change; state, assignment and provenance have their own operations
SETTABLE_FIELDS = ("type", "priority", "depends_on", "blocks", "title", "description")

SYNC_MODES = ("pull", "push", "both")


@dataclass
class TransitionResult:
    """Outcome of a successful transition."""
    ticket_id: str
    from_state: str
    to_state: str
    pre_hooks: list[HookResult] = field(default_factory=list)
    post_hooks: list[str] = field(default_factory=list)
    post_task: Future | None = None


@dataclass
class TreeNode:
    """A ticket and the tickets it depends on."""
    id: str
    title: str = ""
    state: str = ""
    missing: bool = False
    cycle: bool = False
    children: list["TreeNode"] = field(default_factory=list)


def _as_id_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.replace(",", " ").split()
    elif isinstance(value, (list, tuple)):
        items = [str(v).strip() for v in value]
    else:
        raise InvalidField(f"Expected a list of ticket ids, got {value!r}")
    ids = []
    for item in items:
        if not item:
            continue
        if not TICKET_ID_PATTERN.match(item):
            raise InvalidField(f"Not a ticket id: {item!r}")
        if item not in ids:
            ids.append(item)
    return ids


def _as_priority(value) -> int:
    if isinstance(value, bool):
        raise InvalidField(f"Priority must be an integer, got {value!r}")
    try:
        priority = int(value)
    except (TypeError, ValueError):
        raise InvalidField(f"Priority must be an integer, got {value!r}") from None
    if priority < 0:
        raise InvalidField(f"Priority must not be negative, got {priority}")
    return priority


class TicketService:
    """Create, read, update and transition tickets on one replica."""

    def __init__(self, replica: Replica, policy: PolicyEngine,
                 hooks: HookDispatcher | None = None, agent_id: str | None = None,
                 session: str = "", auto_sync: bool = True, project_root=None):
        """
        Args:
            replica: Where ticket documents live
            policy: States, transitions and hook names
            hooks: Dispatcher for transition hooks; None disables hooks
            agent_id: Acting agent, recorded as author and passed to hooks
            session: Session identifier passed to hooks
            auto_sync: When False, operations never pull or push
            project_root: Passed to hooks as WIGGUM_PROJECT_ROOT
        """
        self.replica = replica
        self.policy = policy
        self.hooks = hooks
        self.agent_id = agent_id
        self.session = session
        self.auto_sync = auto_sync
        self.project_root = project_root

    # Sync discipline

    def _pull_for_read(self) -> None:
        if not self.auto_sync:
            return
        try:
            self.replica.pull()
        except SyncError as e:
            logger.warning(f"[SYNC] Pull failed, serving local replica: {e}")

    def _pull_for_write(self, sync: bool = True) -> None:
        if sync and self.auto_sync:
            self.replica.pull()

    def _push(self, message: str, sync: bool = True) -> None:
        if sync and self.auto_sync:
            self.replica.push(message)

    def _push_with_retry(self, message: str) -> None:
        """Push, re-pulling on rejection; for writes that always reconcile."""
        if not self.auto_sync:
            return
        for attempt in range(1, MAX_PUSH_ATTEMPTS + 1):
            try:
                self.replica.push(message)
                return
            except SyncConflict as e:
                if attempt == MAX_PUSH_ATTEMPTS:
                    raise
                logger.info(f"[SYNC] Push rejected (attempt {attempt}/{MAX_PUSH_ATTEMPTS}), re-pulling: {e}")
                self.replica.pull()

    def _mutate(self, ticket_id: str, change, describe, retry: bool = False) -> Ticket:
        """Pull, apply change(ticket), commit and push; roll back on failure."""
        checkpoint = self.replica.checkpoint()
        wrote = False
        try:
            self._pull_for_write()
            ticket_id = self.resolve_id(ticket_id)
            ticket = self._load(ticket_id)
            change(ticket)
            message = describe(ticket_id)
            self.replica.write(ticket_id, render_ticket(ticket), message)
            wrote = True
            if retry:
                self._push_with_retry(message)
            else:
                self._push(message)
            return ticket
        except TicketError:
            if wrote:
                self.replica.rollback(checkpoint)
            raise

    def _load(self, ticket_id: str) -> Ticket:
        return parse_ticket(self.replica.read(ticket_id), ticket_id)

    def _load_all(self) -> dict[str, Ticket]:
        tickets = {}
        for ticket_id in self.replica.list_ids():
            try:
                tickets[ticket_id] = self._load(ticket_id)
            except MalformedTicket as e:
                logger.warning(f"[TICKET] Skipping {e}")
        return tickets

    # Queries

    def resolve_id(self, partial: str) -> str:
        """Expand a partial id: exact match first, then unique substring.

        Raises:
            NotFound: nothing matches
            AmbiguousId: more than one ticket matches
        """
        partial = (partial or "").strip()
        if not partial:
            raise NotFound(partial)
        ids = self.replica.list_ids()
        if partial in ids:
            return partial
        matches = [i for i in ids if partial in i]
        if len(matches) == 1:
            return matches[0]
        if matches:
            raise AmbiguousId(partial, matches)
        raise NotFound(partial)

    def read(self, ticket_id: str) -> Ticket:
        self._pull_for_read()
        return self._load(self.resolve_id(ticket_id))

    def read_raw(self, ticket_id: str) -> str:
        self._pull_for_read()
        return self.replica.read(self.resolve_id(ticket_id))

    def list_tickets(self, state: str | None = None, type: str | None = None) -> list[Ticket]:
        """All parseable tickets in listing order, optionally filtered."""
        self._pull_for_read()
        tickets = list(self._load_all().values())
        if state:
            tickets = [t for t in tickets if t.state == state]
        if type:
            tickets = [t for t in tickets if t.type == type]
        return tickets

    def _unmet_dependencies(self, ticket: Ticket, tickets: dict[str, Ticket]) -> list[str]:
        done = self.policy.done_state
        return [dep for dep in ticket.depends_on
                if dep not in tickets or tickets[dep].state != done]

    def ready(self, limit: int | None = None) -> list[str]:
        """Ids in the initial state whose dependencies are all done."""
        self._pull_for_read()
        tickets = self._load_all()
        initial = self.policy.initial_state
        ready = [t.id for t in tickets.values()
                 if t.state == initial and not self._unmet_dependencies(t, tickets)]
        if limit is not None:
            ready = ready[:max(limit, 0)]
        return ready

    def blocked(self) -> list[tuple[str, list[str]]]:
        """Initial-state tickets with unmet dependencies, and which ones."""
        self._pull_for_read()
        tickets = self._load_all()
        initial = self.policy.initial_state
        result = []
        for ticket in tickets.values():
            if ticket.state != initial:
                continue
            unmet = self._unmet_dependencies(ticket, tickets)
            if unmet:
                result.append((ticket.id, unmet))
        return result

    def tree(self, ticket_id: str) -> TreeNode:
        """Dependency tree rooted at ticket_id."""
        self._pull_for_read()
        root_id = self.resolve_id(ticket_id)
        tickets = self._load_all()
        if root_id not in tickets:
            # Present but unparseable
            self._load(root_id)

        def build(node_id: str, path: tuple[str, ...]) -> TreeNode:
            ticket = tickets.get(node_id)
            if ticket is None:
                return TreeNode(node_id, missing=True)
            node = TreeNode(node_id, ticket.title, ticket.state)
            if node_id in path:
                node.cycle = True
                return node
            node.children = [build(dep, path + (node_id,)) for dep in ticket.depends_on]
            return node

        return build(root_id, ())

    def history(self, ticket_id: str) -> list[Revision]:
        self._pull_for_read()
        return self.replica.history(self.resolve_id(ticket_id))

    # Mutations

    def _allocate_id(self) -> str:
        existing = set(self.replica.list_ids())
        while True:
            candidate = f"{TICKET_ID_PREFIX}-{secrets.token_hex(2)}"
            if candidate not in existing:
                return candidate

    def create(self, title: str, type: str | None = None, priority: int = DEFAULT_PRIORITY,
               depends_on=None, description: str = "", acceptance_criteria: list[str] | None = None,
               created_by: str | None = None) -> str:
        """Create a ticket in the initial state.

        Returns:
            The new ticket's id

        Raises:
            InvalidField: bad title, type, priority, criteria or dependency ids
            SyncConflict, SyncError: the ticket could not be published
        """
        title = (title or "").strip()
        if not title:
            raise InvalidField("Title is required")
        if "\n" in title:
            raise InvalidField("Title must be a single line")
        ticket_type = type or self.policy.default_type()
        if ticket_type not in self.policy.valid_types():
            raise InvalidField(
                f"Invalid ticket type '{ticket_type}'. Valid types: {', '.join(self.policy.valid_types())}"
            )
        priority = _as_priority(priority)
        deps = _as_id_list(depends_on)
        criteria = [c.strip() for c in acceptance_criteria or [] if c.strip()]
        if any("\n" in c for c in criteria):
            raise InvalidField("Acceptance criteria must be single lines")

        checkpoint = self.replica.checkpoint()
        wrote = False
        try:
            self._pull_for_write()
            ticket_id = self._allocate_id()
            ticket = Ticket(
                id=ticket_id,
                type=ticket_type,
                priority=priority,
                state=self.policy.initial_state,
                title=title,
                created_at=timestamp(),
                created_by=created_by or self.agent_id,
                depends_on=deps,
                description=description.strip(),
                acceptance_criteria=[Criterion(c) for c in criteria],
            )
            message = f"Create {ticket_id}: {title}"
            self.replica.write(ticket_id, render_ticket(ticket), message)
            wrote = True
            self._push_with_retry(message)
        except TicketError:
            if wrote:
                self.replica.rollback(checkpoint)
            raise

        logger.info(f"[TICKET] Created {ticket_id} ({ticket_type}): {title}")
        return ticket_id

    def set_field(self, ticket_id: str, key: str, value) -> Ticket:
        """Update one editable field.

        Raises:
            InvalidField: if key is not editable or value is invalid
        """
        if key not in SETTABLE_FIELDS:
            hint = ""
            if key == "state":
                hint = " Use transition to change state."
            elif key in ("assigned_agent_id", "assigned_at"):
                hint = " Use assign/unassign."
            raise InvalidField(
                f"Field '{key}' cannot be set. Settable fields: {', '.join(SETTABLE_FIELDS)}.{hint}"
            )

        if key == "type":
            value = str(value)
            if value not in self.policy.valid_types():
                raise InvalidField(
                    f"Invalid ticket type '{value}'. Valid types: {', '.join(self.policy.valid_types())}"
                )
        elif key == "priority":
            value = _as_priority(value)
        elif key in ("depends_on", "blocks"):
            value = _as_id_list(value)
        elif key == "title":
            value = str(value).strip()
            if not value or "\n" in value:
                raise InvalidField("Title must be a non-empty single line")
        else:
            value = str(value).strip()

        def change(ticket: Ticket):
            setattr(ticket, key, value)

        ticket = self._mutate(ticket_id, change, lambda tid: f"Set {key} on {tid}")
        logger.info(f"[TICKET] {ticket.id}: {key} updated")
        return ticket

    def append_comment(self, ticket_id: str, text: str, author: str | None = None) -> Ticket:
        """Append to the ticket's comment log; concurrent appends are merged."""
        text = (text or "").strip()
        if not text:
            raise InvalidField("Comment text is required")
        comment = Comment(author or self.agent_id or "human", human_timestamp(), text, secrets.token_hex(3))

        def change(ticket: Ticket):
            ticket.comments.append(comment)

        ticket = self._mutate(ticket_id, change, lambda tid: f"Comment on {tid} by {comment.author}", retry=True)
        logger.info(f"[TICKET] {ticket.id}: comment added by {comment.author}")
        return ticket

    def assign(self, ticket_id: str, agent_id: str) -> Ticket:
        agent_id = (agent_id or "").strip()
        if not agent_id:
            raise InvalidField("Agent id is required")

        def change(ticket: Ticket):
            ticket.assigned_agent_id = agent_id
            ticket.assigned_at = timestamp()

        ticket = self._mutate(ticket_id, change, lambda tid: f"Assign {tid} to {agent_id}")
        logger.info(f"[TICKET] {ticket.id}: assigned to {agent_id}")
        return ticket

    def unassign(self, ticket_id: str) -> Ticket:
        def change(ticket: Ticket):
            ticket.assigned_agent_id = None
            ticket.assigned_at = None

        ticket = self._mutate(ticket_id, change, lambda tid: f"Unassign {tid}")
        logger.info(f"[TICKET] {ticket.id}: unassigned")
        return ticket

    def _hook_context(self, ticket: Ticket, content: str, prev_state: str, new_state: str) -> HookContext:
        return HookContext(
            ticket_id=ticket.id,
            ticket_path=self.replica.ticket_path(ticket.id),
            ticket_content=content,
            prev_state=prev_state,
            new_state=new_state,
            agent_id=ticket.assigned_agent_id or self.agent_id,
            session=self.session,
            project_root=self.project_root,
        )

    def transition(self, ticket_id: str, new_state: str, run_hooks: bool = True,
                   sync: bool = True) -> TransitionResult:
        """Move a ticket to new_state.

        Pre-hooks run before anything is written and may veto. Post-hooks are
        scheduled after the push and not awaited.

        Raises:
            InvalidTransition: new_state unknown or not allowed from the current state
            HookVetoed: a pre-hook failed (nothing written)
            SyncConflict: origin advanced; nothing is left behind locally
        """
        checkpoint = self.replica.checkpoint()
        wrote = False
        dispatch = self.hooks is not None and run_hooks
        pre_results: list[HookResult] = []
        try:
            self._pull_for_write(sync)
            ticket_id = self.resolve_id(ticket_id)
            raw = self.replica.read(ticket_id)
            ticket = parse_ticket(raw, ticket_id)
            from_state = ticket.state

            def run_pre_hooks(source: str, dest: str):
                names = self.policy.hooks_for(source, dest, PRE)
                if names:
                    ctx = self._hook_context(ticket, raw, source, dest)
                    pre_results.extend(self.hooks.run_pre(names, ctx))

            fsm = TicketFSM(self.policy, ticket_id, from_state, before=run_pre_hooks if dispatch else None)
            fsm.move_to(new_state)

            ticket.state = fsm.state
            content = render_ticket(ticket)
            message = f"Transition {ticket_id}: {from_state} -> {new_state}"
            self.replica.write(ticket_id, content, message)
            wrote = True
            self._push(message, sync)
        except TicketError:
            if wrote:
                self.replica.rollback(checkpoint)
            raise

        result = TransitionResult(ticket_id, from_state, new_state, pre_hooks=pre_results)
        if dispatch:
            result.post_hooks = self.policy.hooks_for(from_state, new_state, POST)
            ctx = self._hook_context(ticket, content, from_state, new_state)
            result.post_task = self.hooks.schedule_post(result.post_hooks, ctx)
        return result

    def sync(self, mode: str = "both") -> None:
        """Explicit pull and/or push, regardless of auto_sync."""
        if mode not in SYNC_MODES:
            raise ValueError(f"Unknown sync mode: {mode}")
        if mode in ("pull", "both"):
            self.replica.pull()
        if mode in ("push", "both"):
            self.replica.push("Sync tickets")
        logger.info(f"[SYNC] {mode} complete")

    def wait_for_hooks(self, timeout: float | None = None) -> bool:
        if self.hooks is None:
            return True
        return self.hooks.wait(timeout)
