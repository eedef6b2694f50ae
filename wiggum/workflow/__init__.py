"""Transition policy and the per-ticket state machine."""

from wiggum.workflow.policy import (
    PolicyEngine,
    FALLBACK_POLICY,
    PRE,
    POST,
    check_policy,
    load_policy_file,
    write_default_policy,
)
from wiggum.workflow.fsm import TicketFSM

__all__ = [
    "PolicyEngine",
    "FALLBACK_POLICY",
    "PRE",
    "POST",
    "check_policy",
    "load_policy_file",
    "write_default_policy",
    "TicketFSM",
]
