"""Per-ticket state machine built from the transition policy.

Usage:
    from wiggum.workflow.fsm import TicketFSM

    fsm = TicketFSM(policy, "tk-3f9a", "ready", before=run_pre_hooks)
    fsm.move_to("in-progress")

Each allowed (source, dest) pair in the policy becomes a trigger named
``to_<dest>``. A callback passed as ``before`` runs before the state changes
and may raise to abort the move.
"""

import logging
from typing import Callable

from transitions import Machine, MachineError

from wiggum.lib.errors import InvalidTransition
from wiggum.workflow.policy import PolicyEngine

logger = logging.getLogger(__name__)


def trigger_name(dest: str) -> str:
    return f"to_{dest}"


def build_transitions(policy: PolicyEngine) -> list[dict]:
    """Translate the policy's transition table into transitions' format."""
    table = []
    for source in policy.valid_states():
        for dest in policy.valid_targets(source):
            table.append({"trigger": trigger_name(dest), "source": source, "dest": dest})
    return table


class TicketFSM:
    """State machine for one ticket's lifecycle.

    Only moves allowed by the policy are registered. The machine holds state
    in memory; persisting the new state is the caller's job.
    """

    def __init__(self, policy: PolicyEngine, ticket_id: str, state: str,
                 before: Callable[[str, str], None] | None = None,
                 after: Callable[[str, str], None] | None = None):
        """
        Args:
            policy: Source of states and legal transitions
            ticket_id: Used in log and error messages
            state: The ticket's current state
            before: Optional callback(from_state, to_state) run before the change
            after: Optional callback(from_state, to_state) run after the change
        """
        self.policy = policy
        self.ticket_id = ticket_id
        self.before = before
        self.after = after

        states = policy.valid_states()
        if state not in states:
            # Keep the ticket addressable; it simply has no legal moves
            logger.warning(f"[FSM] {ticket_id}: Unknown state '{state}' for current policy")
            states = [*states, state]

        self.machine = Machine(
            model=self,
            states=states,
            transitions=build_transitions(policy),
            initial=state,
            auto_transitions=False,
            send_event=True,
            before_state_change="on_before_change",
            after_state_change="on_state_change",
        )

    def on_before_change(self, event) -> None:
        if self.before:
            self.before(event.transition.source, event.transition.dest)

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        logger.info(f"[FSM] {self.ticket_id}: {from_state} -> {to_state}")
        if self.after:
            self.after(from_state, to_state)

    def can_move_to(self, dest: str) -> bool:
        return trigger_name(dest) in self.machine.get_triggers(self.state)

    def allowed_targets(self) -> list[str]:
        return self.policy.valid_targets(self.state)

    def move_to(self, dest: str) -> str:
        """Move to dest, returning the previous state.

        Raises:
            InvalidTransition: if dest is unknown or not reachable from the current state
            Any exception raised by the ``before`` callback (state unchanged)
        """
        from_state = self.state
        if not self.policy.is_valid_state(dest):
            raise InvalidTransition(from_state, dest, self.allowed_targets(),
                                    ticket_id=self.ticket_id, unknown_state=True)
        if not self.can_move_to(dest):
            raise InvalidTransition(from_state, dest, self.allowed_targets(), ticket_id=self.ticket_id)
        try:
            self.trigger(trigger_name(dest))
        except MachineError as e:
            raise InvalidTransition(from_state, dest, self.allowed_targets(),
                                    ticket_id=self.ticket_id) from e
        return from_state
