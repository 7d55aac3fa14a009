"""
Record schema for page-connection producers.

Decoded JSON payloads are validated once, at the stream boundary, into a
closed union discriminated on "type". Everything downstream works with these
models only. Every string, list and mapping is size-bounded.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .errors import SchemaViolationError

logger = logging.getLogger(__name__)

MAX_TEXT = 64 * 1024
MAX_BODY = 128 * 1024
MAX_URL = 8 * 1024
MAX_SHORT = 256
MAX_PATH = 4096
MAX_HEADERS = 100
MAX_STACK_JSON = 32 * 1024

# Type names used by earlier versions of the page producer.
_LEGACY_TYPES = {
    "session-start": "start",
    "session-end": "end",
    "error": "script-error",
    "performance": "metric",
}

Text = Annotated[str, Field(max_length=MAX_TEXT)]
HeaderValue = Annotated[str, Field(max_length=MAX_URL)]


class _RecordBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    # Producer-side epoch milliseconds
    timestamp: float | None = Field(default=None, ge=0)


class _TracedRecord(_RecordBase):
    stack_trace: Any = Field(default=None, alias="stackTrace")

    @field_validator("stack_trace")
    @classmethod
    def _bound_stack_trace(cls, value: Any) -> Any:
        if value is None:
            return value
        try:
            encoded = value if isinstance(value, str) else json.dumps(value, default=str)
        except RecursionError as e:
            raise ValueError("stackTrace is nested too deeply") from e
        if len(encoded) > MAX_STACK_JSON:
            raise ValueError(f"stackTrace exceeds {MAX_STACK_JSON} characters")
        return value


class StartRecord(_RecordBase):
    type: Literal["start"]
    project_dir: str | None = Field(default=None, alias="projectDir", max_length=MAX_PATH)
    descriptor: str | None = Field(
        default=None,
        validation_alias=AliasChoices("descriptor", "url"),
        max_length=MAX_URL,
    )

    @field_validator("project_dir")
    @classmethod
    def _single_line_project(cls, value: str | None) -> str | None:
        if value is not None and any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in value):
            raise ValueError("projectDir must not contain control characters")
        return value


class EndRecord(_RecordBase):
    type: Literal["end"]


class HeartbeatRecord(_RecordBase):
    type: Literal["heartbeat"]


class ConsoleRecord(_TracedRecord):
    type: Literal["console"]
    level: str = Field(default="log", max_length=16)
    text: Text = ""
    url: str | None = Field(default=None, max_length=MAX_URL)


class NetworkRecord(_RecordBase):
    type: Literal["network"]
    method: str = Field(default="GET", max_length=16)
    url: str = Field(default="", max_length=MAX_URL)
    status: int = Field(default=0, ge=0, le=999)
    duration_ms: float | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("durationMs", "duration"),
    )
    headers: dict[Annotated[str, Field(max_length=MAX_SHORT)], HeaderValue] | None = Field(
        default=None, max_length=MAX_HEADERS
    )
    request_body: str | None = Field(default=None, alias="requestBody", max_length=MAX_BODY)
    response_body: str | None = Field(default=None, alias="responseBody", max_length=MAX_BODY)


class ScriptErrorRecord(_TracedRecord):
    type: Literal["script-error"]
    text: Text = "Unknown error"
    url: str | None = Field(default=None, max_length=MAX_URL)


class MetricRecord(_RecordBase):
    type: Literal["metric"]
    name: str = Field(
        default="unknown",
        max_length=MAX_SHORT,
        validation_alias=AliasChoices("name", "metric"),
    )
    value: float = 0.0


Record = Annotated[
    Union[
        StartRecord,
        EndRecord,
        HeartbeatRecord,
        ConsoleRecord,
        NetworkRecord,
        ScriptErrorRecord,
        MetricRecord,
    ],
    Field(discriminator="type"),
]

RECORD_TYPES = ("start", "end", "console", "network", "script-error", "metric", "heartbeat")

_record_adapter: TypeAdapter[Record] = TypeAdapter(Record)


def _normalize(payload: dict[str, Any]) -> dict[str, Any]:
    kind = payload.get("type")
    if isinstance(kind, str) and kind in _LEGACY_TYPES:
        payload = {**payload, "type": _LEGACY_TYPES[kind]}
    return payload


def validate_record(payload: Any) -> Record:
    """
    Validate one decoded payload.

    Raises:
        SchemaViolationError: If the payload is not an object of a known record type
    """
    if not isinstance(payload, dict):
        raise SchemaViolationError(f"Record must be a JSON object, got {type(payload).__name__}", payload)
    try:
        return _record_adapter.validate_python(_normalize(payload))
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise SchemaViolationError(
            f"Invalid {payload.get('type')!r} record at {location or '<root>'}: {first.get('msg', e)}",
            payload,
        ) from e


def parse_record(payload: Any) -> Record | None:
    """Validate one payload, logging and returning None when it does not fit."""
    try:
        return validate_record(payload)
    except SchemaViolationError as e:
        logger.warning(f"Dropping record: {e}")
        return None


__all__ = [
    "ConsoleRecord",
    "EndRecord",
    "HeartbeatRecord",
    "MetricRecord",
    "NetworkRecord",
    "RECORD_TYPES",
    "Record",
    "ScriptErrorRecord",
    "StartRecord",
    "parse_record",
    "validate_record",
]
