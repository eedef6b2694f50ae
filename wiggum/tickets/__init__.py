"""Ticket records, their document codec, reconciliation and the CRUD service."""

from wiggum.tickets.models import Ticket, Comment, Criterion
from wiggum.tickets.document import parse_ticket, render_ticket
from wiggum.tickets.merge import merge_ticket_documents
from wiggum.tickets.service import TicketService, TransitionResult, TreeNode

__all__ = [
    "Ticket",
    "Comment",
    "Criterion",
    "parse_ticket",
    "render_ticket",
    "merge_ticket_documents",
    "TicketService",
    "TransitionResult",
    "TreeNode",
]
