"""
Ticket document codec.

A ticket is stored as markdown with YAML front matter:

    ---
    id: tk-3f9a
    type: task
    ...
    ---

    # Title

    ## Description

    ## Acceptance Criteria

    - [ ] criterion

    ## Comments

    ### From alice (2026-01-02 10:00)

    text

Free text is stored with a backslash added in front of any line that starts
with "#" (after zero or more backslashes), so only the headings written here
act as structure. Parsing removes one backslash from such lines.

render_ticket() and parse_ticket() are inverses for every Ticket they produce.
"""

import re
from datetime import date, datetime

import yaml

from wiggum.lib.errors import MalformedTicket
from wiggum.lib.validate import validate, ValidationError
from wiggum.tickets.models import HEADER_FIELDS, Comment, Criterion, Ticket

FRONT_MATTER_DELIM = "---"

DESCRIPTION_HEADING = "Description"
CRITERIA_HEADING = "Acceptance Criteria"
COMMENTS_HEADING = "Comments"

COMMENT_HEADING_RE = re.compile(r'^### From (?P<author>.+?) \((?P<ts>[^()]*)\)(?: \[(?P<ref>[0-9a-f]+)\])?\s*$')
CRITERION_RE = re.compile(r'^[-*] \[(?P<mark>[ xX])\] (?P<text>.*)$')
ESCAPED_LINE_RE = re.compile(r'^\\*#')


class _HeaderDumper(yaml.SafeDumper):
    """Writes None as an empty value (``assigned_at:``) rather than ``null``."""


def _represent_none(dumper, _value):
    return dumper.represent_scalar("tag:yaml.org,2002:null", "")


_HeaderDumper.add_representer(type(None), _represent_none)


def split_front_matter(text: str) -> tuple[str | None, str]:
    """Split a document into (front matter yaml, body).

    Returns (None, text) if the document has no closed front matter block.
    """
    lines = text.splitlines()
    if not lines or lines[0].strip() != FRONT_MATTER_DELIM:
        return None, text
    for i in range(1, len(lines)):
        if lines[i].strip() == FRONT_MATTER_DELIM:
            return "\n".join(lines[1:i]), "\n".join(lines[i + 1:])
    return None, text


def escape_text(text: str) -> str:
    return "\n".join("\\" + line if ESCAPED_LINE_RE.match(line) else line for line in text.split("\n"))


def unescape_text(text: str) -> str:
    return "\n".join(
        line[1:] if line.startswith("\\") and ESCAPED_LINE_RE.match(line) else line
        for line in text.split("\n")
    )


def _normalize_scalar(value):
    # Unquoted timestamps from hand edits load as datetime objects
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _parse_header(fm_yaml: str, ticket_id: str) -> dict:
    try:
        data = yaml.safe_load(fm_yaml)
    except yaml.YAMLError as e:
        raise MalformedTicket(ticket_id, f"invalid front matter YAML ({e})") from None
    if not isinstance(data, dict):
        raise MalformedTicket(ticket_id, "front matter must be a key/value mapping")

    data = {str(k): _normalize_scalar(v) for k, v in data.items()}
    for key in ("depends_on", "blocks"):
        if data.get(key) is None:
            data[key] = []
        elif isinstance(data[key], list):
            data[key] = [str(_normalize_scalar(v)) for v in data[key]]
    for key in ("assigned_agent_id", "assigned_at", "created_by"):
        if key in data and data[key] is not None:
            data[key] = str(data[key]) or None

    try:
        validate(data, "ticket_header")
    except ValidationError as e:
        raise MalformedTicket(ticket_id, f"{e.message} at {e.path}") from None
    return data


def _split_sections(body: str, ticket_id: str) -> tuple[str, list[tuple[str, str]]]:
    """Return (title, [(heading, text), ...]) from the markdown body."""
    title = None
    sections: list[tuple[str, list[str]]] = []
    for line in body.splitlines():
        if title is None and line.startswith("# "):
            title = line[2:].strip()
            continue
        if line.startswith("## "):
            sections.append((line[3:].strip(), []))
            continue
        if sections:
            sections[-1][1].append(line)
    if not title:
        raise MalformedTicket(ticket_id, "missing '# <title>' line")
    return title, [(heading, "\n".join(lines).strip()) for heading, lines in sections]


def _parse_criteria(text: str) -> list[Criterion]:
    criteria = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        match = CRITERION_RE.match(line)
        if match:
            criteria.append(Criterion(match.group("text").strip(), match.group("mark") != " "))
        elif line.startswith(("- ", "* ")):
            criteria.append(Criterion(line[2:].strip()))
    return criteria


def _comment(heading: tuple[str, str, str], lines: list[str]) -> Comment:
    author, ts, ref = heading
    return Comment(author, ts, unescape_text("\n".join(lines).strip()), ref)


def _parse_comments(text: str) -> list[Comment]:
    comments = []
    current: tuple[str, str, str] | None = None
    lines: list[str] = []
    for line in text.splitlines():
        match = COMMENT_HEADING_RE.match(line)
        if match:
            if current:
                comments.append(_comment(current, lines))
            current = (match.group("author"), match.group("ts"), match.group("ref") or "")
            lines = []
        elif current:
            lines.append(line)
    if current:
        comments.append(_comment(current, lines))
    return comments


def parse_ticket(text: str, ticket_id: str | None = None) -> Ticket:
    """Parse a ticket document.

    Args:
        text: Raw document content
        ticket_id: Expected id (from the file name); used in errors and checked
            against the header when given

    Raises:
        MalformedTicket: if the document is structurally invalid
    """
    label = ticket_id or "<unknown>"
    fm_yaml, body = split_front_matter(text)
    if fm_yaml is None:
        raise MalformedTicket(label, "missing front matter delimiters ('---')")

    header = _parse_header(fm_yaml, label)
    if ticket_id and header["id"] != ticket_id:
        raise MalformedTicket(label, f"header id '{header['id']}' does not match")

    title, sections = _split_sections(body, header["id"])

    description = ""
    criteria: list[Criterion] = []
    comments: list[Comment] = []
    extra: list[tuple[str, str]] = []
    for heading, section_text in sections:
        if heading == DESCRIPTION_HEADING:
            description = unescape_text(section_text)
        elif heading == CRITERIA_HEADING:
            criteria = _parse_criteria(section_text)
        elif heading == COMMENTS_HEADING:
            comments = _parse_comments(section_text)
        else:
            extra.append((heading, unescape_text(section_text)))

    return Ticket(
        id=header["id"],
        type=header["type"],
        priority=header["priority"],
        state=header["state"],
        title=title,
        created_at=header["created_at"],
        created_by=header.get("created_by"),
        assigned_agent_id=header.get("assigned_agent_id"),
        assigned_at=header.get("assigned_at"),
        depends_on=header["depends_on"],
        blocks=header.get("blocks", []),
        description=description,
        acceptance_criteria=criteria,
        comments=comments,
        extra_sections=extra,
        extra_header={k: v for k, v in header.items() if k not in HEADER_FIELDS},
    )


def render_comment(comment: Comment) -> str:
    """Render one comment entry (heading, blank line, text)."""
    ref = f" [{comment.ref}]" if comment.ref else ""
    return f"### From {comment.author} ({comment.timestamp}){ref}\n\n{escape_text(comment.text.strip())}\n"


def render_ticket(ticket: Ticket) -> str:
    """Serialize a ticket into its document form.

    Raises:
        MalformedTicket: if the header would not pass validation on read, or
            a criterion spans several lines
    """
    header = ticket.header()
    try:
        validate(header, "ticket_header")
    except ValidationError as e:
        raise MalformedTicket(ticket.id, f"refusing to write invalid header: {e.message} at {e.path}") from None
    if any("\n" in c.text.strip() for c in ticket.acceptance_criteria):
        raise MalformedTicket(ticket.id, "refusing to write a multi-line acceptance criterion")

    fm_yaml = yaml.dump(header, Dumper=_HeaderDumper, sort_keys=False, default_flow_style=False,
                        allow_unicode=True).rstrip()

    parts = [
        f"{FRONT_MATTER_DELIM}\n{fm_yaml}\n{FRONT_MATTER_DELIM}\n",
        f"# {ticket.title.strip()}\n",
        f"## {DESCRIPTION_HEADING}\n",
    ]
    if ticket.description.strip():
        parts.append(f"{escape_text(ticket.description.strip())}\n")

    parts.append(f"## {CRITERIA_HEADING}\n")
    if ticket.acceptance_criteria:
        parts.append("\n".join(
            f"- [{'x' if c.done else ' '}] {c.text.strip()}" for c in ticket.acceptance_criteria
        ) + "\n")

    for heading, text in ticket.extra_sections:
        parts.append(f"## {heading}\n")
        if text:
            parts.append(f"{escape_text(text)}\n")

    parts.append(f"## {COMMENTS_HEADING}\n")
    parts.extend(render_comment(c) for c in ticket.comments)

    return "\n".join(parts)
