"""
Session schema models for logbridge.

Pydantic models for the registry's bookkeeping: the session record itself,
the active-sessions table entries, and parsed master index lines.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class SessionKind(str, Enum):
    """Which producer a session belongs to."""

    PROCESS_OUTPUT = "process-output"
    PAGE_CONNECTION = "page-connection"


class SessionState(str, Enum):
    """Lifecycle bucket of a session."""

    ACTIVE = "active"
    ARCHIVED = "archived"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """ISO-8601 with millisecond precision and a Z suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO timestamp written by isoformat(), or None if unparsable."""
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


class ActiveEntry(BaseModel):
    """One value of the active-sessions table (keyed by session id)."""

    model_config = ConfigDict(populate_by_name=True)

    project_dir: str = Field(alias="projectDir")
    start_time: str = Field(alias="startTime")
    descriptor: str | None = None

    @property
    def started_at(self) -> datetime | None:
        return parse_timestamp(self.start_time)

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class MasterIndexEntry(BaseModel):
    """A parsed line of the append-only master index."""

    model_config = ConfigDict(frozen=True)

    timestamp: str
    session_id: str
    project_dir: str
    descriptor: str | None = None

    def to_line(self) -> str:
        line = f"[{self.timestamp}] [{self.session_id}] [{_single_line(self.project_dir)}]"
        if self.descriptor:
            line += f" {_single_line(self.descriptor)}"
        return line + "\n"


class Session(BaseModel):
    """
    One producer lifetime with exactly one log file.

    The file lives in the active directory while state is ACTIVE and in the
    archive directory once ARCHIVED.
    """

    id: str
    kind: SessionKind
    project_dir: str
    start_time: datetime = Field(default_factory=utc_now)
    state: SessionState = SessionState.ACTIVE
    descriptor: str | None = None
    log_path: Path


def _single_line(text: str) -> str:
    return " ".join(text.splitlines())


__all__ = [
    "ActiveEntry",
    "MasterIndexEntry",
    "Session",
    "SessionKind",
    "SessionState",
    "isoformat",
    "parse_timestamp",
    "utc_now",
]
