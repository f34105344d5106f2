"""Pydantic models shared by the time pipeline, the store and the SMS/LLM layer.

These classes stay framework-agnostic so workers, API handlers and tests can
reuse them without importing FastAPI or the database layer.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import List, Literal, Optional, Union
from typing_extensions import Annotated

from pydantic import BaseModel, Field, field_validator

TimeType = Literal["none", "scheduled", "deadline"]

Intent = Literal[
    "add_task",
    "remove_task",
    "update_task",
    "list_tasks",
    "set_time_zone",
    "update_reminder",
    "get_help",
    "unknown",
]

# "no time" sentinel used by the dashboard and the LLM
NO_TIME = "none"

# Strict absolute timestamp: 4-digit year plus ISO date/time separators.
ISO_TIMESTAMP_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(?::\d{2}(?:\.\d{1,6})?)?"
    r"(?P<zone>Z|[+-]\d{2}:?\d{2})?$"
)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ──────────────────────────────
# Task time value (tagged)
# ──────────────────────────────


class PendingTime(BaseModel):
    """Free-text phrase that has not been turned into an instant yet.

    ``noted_at`` is the moment the phrase was written; relative phrases
    ("tomorrow", "in 2 hours") are resolved against it, never against the time
    of a later retry.
    """

    kind: Literal["pending"] = "pending"
    text: str
    noted_at: datetime

    @field_validator("text")
    def _non_empty(cls, v: str):  # noqa: N805
        if not v or not v.strip():
            raise ValueError("pending time text must be non-empty")
        return v.strip()

    @field_validator("noted_at")
    def _utc_noted(cls, v: datetime):  # noqa: N805
        return _as_utc(v)


class ResolvedTime(BaseModel):
    """An absolute instant, always held in UTC."""

    kind: Literal["resolved"] = "resolved"
    at: datetime

    @field_validator("at")
    def _utc_at(cls, v: datetime):  # noqa: N805
        return _as_utc(v)


TimeValue = Annotated[Union[PendingTime, ResolvedTime], Field(discriminator="kind")]


def is_strict_utc_timestamp(raw: str) -> bool:
    """True for ISO timestamps that carry an explicit ``Z`` marker."""
    match = ISO_TIMESTAMP_RE.match(raw.strip())
    return bool(match) and match.group("zone") == "Z"


def classify_time_input(
    raw: Union[str, datetime, PendingTime, ResolvedTime, None],
    noted_at: datetime,
) -> Union[PendingTime, ResolvedTime, None]:
    """Turn caller input into a tagged value without running any NL parsing.

    Aware datetimes and ``...Z`` strings are already absolute. Anything else
    that is not the "none" sentinel is kept as pending text for the resolver.
    """
    if raw is None or isinstance(raw, (PendingTime, ResolvedTime)):
        return raw
    if isinstance(raw, datetime):
        if raw.tzinfo is None:
            raise ValueError("datetime time values must be timezone-aware")
        return ResolvedTime(at=raw)
    text = raw.strip()
    if not text or text.lower() == NO_TIME:
        return None
    if is_strict_utc_timestamp(text):
        return ResolvedTime(at=datetime.fromisoformat(text.replace("Z", "+00:00")))
    return PendingTime(text=text, noted_at=noted_at)


def to_utc_iso(value: datetime) -> str:
    """Serialize an instant as ``YYYY-MM-DDTHH:MM:SSZ``."""
    return _as_utc(value).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


# ──────────────────────────────
# NLU oracle output
# ──────────────────────────────


class TaskIntent(BaseModel):
    """Structured intent extracted from one SMS by the LLM."""

    intent: Intent = "unknown"
    task_content: Optional[str] = None
    task_identifier: Optional[str] = None
    time_type: Optional[TimeType] = None
    time_value: Optional[str] = None
    reminder_offset: Optional[int] = Field(default=None, ge=0)
    time_zone: Optional[str] = None
    tense_used: Optional[str] = None

    @field_validator("time_value")
    def _phrase_only(cls, v):  # noqa: N805
        """The oracle must hand over the user's phrase, never its own date math."""
        if v is None:
            return v
        v = v.strip()
        if ISO_TIMESTAMP_RE.match(v):
            raise ValueError("time_value must be a natural-language phrase, not an ISO timestamp")
        return v or None


# ──────────────────────────────
# Parse-time request / response
# ──────────────────────────────


class ParseTimeRequest(BaseModel):
    phrase: str = Field(min_length=1)
    zone: Optional[str] = None


class ParseTimeResponse(BaseModel):
    success: bool
    input: Optional[str] = None
    resolved_instant: Optional[str] = None
    display: Optional[str] = None
    error: Optional[str] = None


# ──────────────────────────────
# Task API payloads
# ──────────────────────────────


class TaskWrite(BaseModel):
    user_id: str
    content: str
    time_type: TimeType = "none"
    time_value: Optional[str] = None
    reminder_offset: Optional[int] = Field(default=None, ge=0)


class TaskUpdate(BaseModel):
    content: Optional[str] = None
    time_type: Optional[TimeType] = None
    time_value: Optional[str] = None
    reminder_offset: Optional[int] = Field(default=None, ge=0)


class ReminderOffsetUpdate(BaseModel):
    reminder_offset: int = Field(ge=0)


class TaskOut(BaseModel):
    task_id: str
    user_id: str
    content: str
    time_type: TimeType
    time_value: Optional[TimeValue] = None
    reminder_offset: Optional[int] = None
    reminder_sent: bool = False


class TaskList(BaseModel):
    success: bool = True
    tasks: List[TaskOut] = Field(default_factory=list)
