"""Data models for work items.

The store owns every record; these models are transient snapshots fetched
on demand and never cached across calls.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BeadStatus(str, Enum):
    """Statuses the control plane reads or writes.

    ``hooked`` is the only status written by dispatch; ``pinned`` is set
    externally and guarded against.
    """

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    HOOKED = "hooked"
    PINNED = "pinned"
    BLOCKED = "blocked"
    DONE = "done"
    CLOSED = "closed"


class Bead(BaseModel):
    """Snapshot of a work item.

    Attributes:
        id: Identifier, prefixed with the owning rig's (or town's) prefix
        title: One-line title
        status: Raw status string (see BeadStatus for known values)
        assignee: Worker identity holding the item, if any
        description: Free-text body, also carrying ``key: value`` attachment lines
        issue_type: Record type (task, convoy, message, molecule, ...)
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    title: str = ""
    status: str = BeadStatus.OPEN.value
    assignee: str | None = None
    description: str = ""
    issue_type: str | None = None
    dependencies: list[dict] = Field(default_factory=list)

    @property
    def is_pinned(self) -> bool:
        return self.status == BeadStatus.PINNED.value

    def attachment(self, key: str) -> str | None:
        """Value of an attachment line in the description."""
        return get_description_field(self.description, key)


def get_description_field(description: str, key: str) -> str | None:
    """Return the value of a ``key: value`` line, or None."""
    marker = f"{key}:"
    for line in description.splitlines():
        if line.startswith(marker):
            return line[len(marker):].strip()
    return None


def set_description_field(description: str, key: str, value: str) -> str:
    """Set or replace a ``key: value`` line, keeping the rest of the body.

    Multi-line values are folded onto one line so the field stays parseable.
    """
    folded = " ".join(value.split())
    marker = f"{key}:"
    new_line = f"{key}: {folded}"
    lines = description.splitlines()
    for i, line in enumerate(lines):
        if line.startswith(marker):
            lines[i] = new_line
            return "\n".join(lines)
    if lines and lines[-1].strip():
        lines.append("")
    lines.append(new_line)
    return "\n".join(lines)
