"""
Error taxonomy for the ticket layer.

Every failure a caller can act on is a TicketError subclass. Git and
subprocess failures never escape raw; the store and dispatcher translate them.
"""


class TicketError(Exception):
    """Base class for ticket layer failures."""


class NotFound(TicketError):
    """Ticket id is unknown to the replica."""

    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__(f"Ticket not found: {ticket_id}")


class AmbiguousId(TicketError):
    """A partial ticket id matched more than one ticket."""

    def __init__(self, partial: str, matches: list[str]):
        self.partial = partial
        self.matches = matches
        super().__init__(f"Ambiguous ticket ID '{partial}'. Matches: {' '.join(matches)}")


class MalformedTicket(TicketError):
    """Ticket document could not be parsed or failed header validation."""

    def __init__(self, ticket_id: str, reason: str):
        self.ticket_id = ticket_id
        self.reason = reason
        super().__init__(f"Malformed ticket {ticket_id}: {reason}")


class InvalidTransition(TicketError):
    """Requested state is unknown or not reachable from the current state."""

    def __init__(self, from_state: str, to_state: str, allowed: list[str], ticket_id: str = "",
                 unknown_state: bool = False):
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed
        self.ticket_id = ticket_id
        self.unknown_state = unknown_state
        allowed_str = ", ".join(allowed) if allowed else "(none, terminal state)"
        if unknown_state:
            msg = f"Invalid state: {to_state}"
        else:
            msg = f"Cannot transition from '{from_state}' to '{to_state}'"
        if ticket_id:
            msg += f" (ticket: {ticket_id})"
        msg += f". Allowed from '{from_state}': {allowed_str}"
        super().__init__(msg)


class InvalidField(TicketError):
    """A field update or creation argument was rejected."""


class SyncError(TicketError):
    """Replica could not be synchronized with origin."""


class SyncConflict(SyncError):
    """Origin advanced or local state blocks reconciliation; pull and retry."""


class HookVetoed(TicketError):
    """A pre-transition hook failed, aborting the transition."""

    def __init__(self, hook_name: str, result=None):
        self.hook_name = hook_name
        self.result = result
        detail = ""
        if result is not None:
            if result.timed_out:
                detail = " (timed out)"
            else:
                detail = f" (exit {result.returncode})"
        super().__init__(f"Pre-transition hook vetoed: {hook_name}{detail}")


class ConfigurationInvalid(TicketError):
    """Policy configuration exists but cannot be used."""

    def __init__(self, path, message: str):
        self.path = path
        super().__init__(f"Invalid ticket types configuration {path}: {message}")
