"""Status vocabularies shared by the project sync and markdown rendering.

Three vocabularies are in play and must not be mixed up:

* file-status: free-form strings written by people in frontmatter
  (``active``, ``completed``, ``planning``, ``maintenance``, ...)
* database-status: the closed :class:`DbStatus` set stored on records
* display-status: an emoji + title-case label used when rendering markdown

Translation is lossy but deterministic. ``complete``/``completed`` round-trip
through ``complete`` back to ``completed``; unknown file statuses fall back to
``pending`` and unknown database statuses fall back to ``active``.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class DbStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    ACTIVE = "active"
    BLOCKED = "blocked"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    DEFERRED = "deferred"


DEFAULT_DB_STATUS = DbStatus.PENDING.value
DEFAULT_FILE_STATUS = "active"

# Status to emoji mappings for markdown display
STATUS_TO_EMOJI: dict[str, str] = {
    DbStatus.PENDING.value: "🟡",
    DbStatus.IN_PROGRESS.value: "🟢",
    DbStatus.ACTIVE.value: "🟢",
    DbStatus.BLOCKED.value: "🔴",
    DbStatus.COMPLETE.value: "✅",
    DbStatus.CANCELLED.value: "❌",
    DbStatus.PAUSED.value: "⏸️",
    DbStatus.DEFERRED.value: "⏳",
}

# Status to action table labels (meeting notes, project READMEs)
STATUS_TO_LABEL: dict[str, str] = {
    DbStatus.PENDING.value: "Pending",
    DbStatus.IN_PROGRESS.value: "In Progress",
    DbStatus.ACTIVE.value: "In Progress",
    DbStatus.BLOCKED.value: "Blocked",
    DbStatus.COMPLETE.value: "Complete",
    DbStatus.CANCELLED.value: "Cancelled",
    DbStatus.PAUSED.value: "Paused",
    DbStatus.DEFERRED.value: "Deferred",
}

_FILE_TO_DB: dict[str, str] = {
    "active": DbStatus.ACTIVE.value,
    "paused": DbStatus.PAUSED.value,
    "completed": DbStatus.COMPLETE.value,
    "complete": DbStatus.COMPLETE.value,
    "planning": DbStatus.PENDING.value,
    # maintenance is a form of active
    "maintenance": DbStatus.ACTIVE.value,
}

_DB_TO_FILE: dict[str, str] = {
    DbStatus.ACTIVE.value: "active",
    DbStatus.IN_PROGRESS.value: "active",
    DbStatus.PAUSED.value: "paused",
    DbStatus.COMPLETE.value: "completed",
    "completed": "completed",
    DbStatus.PENDING.value: "planning",
}


class StatusDisplay(BaseModel):
    model_config = ConfigDict(frozen=True)

    emoji: str
    label: str


def _normalize(status: Optional[str]) -> str:
    if status is None:
        return ""
    return str(status).strip().lower()


def file_to_db(file_status: Optional[str]) -> str:
    """Map a frontmatter status to a database status (default ``pending``)."""
    return _FILE_TO_DB.get(_normalize(file_status), DEFAULT_DB_STATUS)


def db_to_file(db_status: Optional[str]) -> str:
    """Map a database status to a frontmatter status (default ``active``)."""
    return _DB_TO_FILE.get(_normalize(db_status), DEFAULT_FILE_STATUS)


def db_to_display(db_status: Optional[str]) -> StatusDisplay | None:
    """Return the badge for a database status, or None when there is none.

    None means "omit the badge"; it is not an error.
    """
    token = _normalize(db_status)
    emoji = STATUS_TO_EMOJI.get(token)
    label = STATUS_TO_LABEL.get(token)
    if emoji is None or label is None:
        return None
    return StatusDisplay(emoji=emoji, label=label)


def is_db_status(value: Optional[str]) -> bool:
    return _normalize(value) in STATUS_TO_EMOJI
