"""
Data models for tickets.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

# Header keys in the order they are written
HEADER_FIELDS = (
    "id",
    "type",
    "priority",
    "state",
    "assigned_agent_id",
    "assigned_at",
    "depends_on",
    "blocks",
    "created_at",
    "created_by",
)

DEFAULT_PRIORITY = 2


def timestamp() -> str:
    """Current time as an ISO-8601 string with offset, second precision."""
    return datetime.now(timezone.utc).astimezone().isoformat(timespec="seconds")


def human_timestamp() -> str:
    """Current local time for comment headings."""
    return datetime.now().strftime("%Y-%m-%d %H:%M")


@dataclass(frozen=True)
class Comment:
    """One entry of a ticket's append-only comment log."""
    author: str
    timestamp: str                             # YYYY-MM-DD HH:MM
    text: str
    # Random tag in the heading; keeps equal comments from different writers distinct
    ref: str = ""


@dataclass
class Criterion:
    """Acceptance-criteria checklist item."""
    text: str
    done: bool = False


@dataclass
class Ticket:
    """A unit of work in the shared queue.

    Header fields live in the document's front matter; title, description,
    criteria and comments live in the markdown body.
    """
    id: str                                    # tk-3f9a
    type: str
    priority: int                              # lower = more urgent
    state: str
    title: str
    created_at: str                            # ISO timestamp
    created_by: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    assigned_at: Optional[str] = None
    depends_on: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    description: str = ""
    acceptance_criteria: list[Criterion] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    # Sections and header keys written by other tools, preserved verbatim
    extra_sections: list[tuple[str, str]] = field(default_factory=list)
    extra_header: dict = field(default_factory=dict)

    def header(self) -> dict:
        """Front matter mapping in canonical order."""
        data = {name: getattr(self, name) for name in HEADER_FIELDS}
        data["depends_on"] = list(self.depends_on)
        data["blocks"] = list(self.blocks)
        data.update(self.extra_header)
        return data

    @property
    def is_assigned(self) -> bool:
        return bool(self.assigned_agent_id)
