"""
Session log writer.

One writer per session. The file is opened lazily in append mode on the first
write, which also emits the header block. Every free-text field goes through
redact() before it is written; numbers pass through as they are.

Line format:

    [2026-01-01T12:00:00.000Z] [Channel] text
        continuation line
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Callable, TextIO

from .records import (
    ConsoleRecord,
    EndRecord,
    HeartbeatRecord,
    MetricRecord,
    NetworkRecord,
    Record,
    ScriptErrorRecord,
    StartRecord,
)
from .redaction import REDACTED, redact
from .session_schema import Session, SessionKind, isoformat, utc_now

logger = logging.getLogger(__name__)

RULE = "=" * 80
CONTINUATION_INDENT = "    "

# Channel tags as they appear in the log file
CHANNEL_TAGS = {
    "stdout": "stdout",
    "stderr": "stderr",
    "console": "Console",
    "network": "Network",
    "script-error": "Script Error",
    "metric": "Metric",
    "system": "System",
}


def _tag(channel: str) -> str:
    return CHANNEL_TAGS.get(channel, channel)


def record_time(record: Record) -> datetime | None:
    """Producer timestamp of a record, or None when absent or out of range."""
    if record.timestamp is None:
        return None
    try:
        return datetime.fromtimestamp(record.timestamp / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


class SessionLogWriter:
    """
    Appends event lines to one session's log file.

    A failed write marks the writer failed, calls on_error once and makes
    every later write a no-op. Nothing is raised into the caller.
    """

    def __init__(
        self,
        session: Session,
        on_error: Callable[["SessionLogWriter", OSError], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.on_error = on_error
        self._clock = clock
        self._stream: TextIO | None = None
        self.failed = False
        self.closed = False
        self.lines_written = 0

    @property
    def path(self):
        return self.session.log_path

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    # =========================================================================
    # Low-level output
    # =========================================================================

    def _header(self) -> str:
        stamp = isoformat(self._clock())
        label = "Command" if self.session.kind == SessionKind.PROCESS_OUTPUT else "URL"
        lines = [
            RULE,
            f"[{stamp}] Session: {self.session.id}",
            f"[{stamp}] Project: {self.session.project_dir}",
        ]
        if self.session.descriptor:
            lines.append(f"[{stamp}] {label}: {redact(self.session.descriptor)}")
        lines.append(RULE)
        return "\n".join(lines) + "\n"

    def _open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._stream = open(self.path, "a", encoding="utf-8")
        self._stream.write(self._header())

    def open(self) -> bool:
        """Open the file and write the header now instead of on the first event."""
        return self._emit("")

    def _emit(self, text: str) -> bool:
        if self.failed or self.closed:
            return False
        try:
            if self._stream is None:
                self._open()
            self._stream.write(text)
            self._stream.flush()
        except OSError as e:
            self._fail(e)
            return False
        return True

    def _fail(self, error: OSError) -> None:
        self.failed = True
        logger.warning(f"Log stream for session {self.session.id} failed: {error}")
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.close()
            except OSError:
                pass
        if self.on_error is not None:
            callback, self.on_error = self.on_error, None
            callback(self, error)

    # =========================================================================
    # Event lines
    # =========================================================================

    def write_line(
        self,
        channel: str,
        text: str,
        extra: str | None = None,
        timestamp: datetime | None = None,
    ) -> bool:
        """
        Write one event.

        Args:
            channel: Channel name (see CHANNEL_TAGS)
            text: Free text; redacted. Embedded newlines become continuation lines
            extra: Optional multi-line detail written as continuation lines; redacted
            timestamp: Event time (default: now)

        Returns:
            True if the line reached the file
        """
        stamp = isoformat(timestamp or self._clock())
        first, *rest = redact(text).split("\n")
        lines = [f"[{stamp}] [{_tag(channel)}] {first}".rstrip()]
        lines.extend(CONTINUATION_INDENT + line for line in rest)
        if extra:
            lines.extend(CONTINUATION_INDENT + line for line in redact(extra).split("\n"))
        written = self._emit("\n".join(lines) + "\n")
        if written:
            self.lines_written += 1
        return written

    def write_record(self, record: Record) -> bool:
        """Format and write one page-connection record. Lifecycle records write nothing."""
        when = record_time(record)

        if isinstance(record, ConsoleRecord):
            return self._write_console(record, when)

        if isinstance(record, NetworkRecord):
            summary = f"{record.method} {record.url}"
            if record.status:
                summary += f" -> {record.status}"
            if record.duration_ms is not None:
                summary += f" ({record.duration_ms:g}ms)"
            return self.write_line("network", summary, extra=_format_network_extra(record), timestamp=when)

        if isinstance(record, ScriptErrorRecord):
            text = record.text
            if record.url:
                text += f" ({record.url})"
            return self.write_line(
                "script-error",
                text,
                extra=_format_stack(record.stack_trace),
                timestamp=when,
            )

        if isinstance(record, MetricRecord):
            return self.write_line("metric", f"{record.name}: {record.value:g}", timestamp=when)

        if isinstance(record, (StartRecord, EndRecord, HeartbeatRecord)):
            return False

        logger.debug(f"No formatter for record {type(record).__name__}")
        return False

    def _write_console(self, record: ConsoleRecord, when: datetime | None) -> bool:
        text = record.text
        if record.url:
            text += f" ({record.url})"
        return self.write_line(
            f"Console {record.level}",
            text,
            extra=_format_stack(record.stack_trace),
            timestamp=when,
        )

    def touch(self) -> None:
        """Bump the log file's mtime so the session reads as alive."""
        if self.failed or self.closed or self._stream is None:
            return
        try:
            os.utime(self.path)
        except OSError as e:
            logger.debug(f"Could not touch {self.path}: {e}")

    def close(self, footer: str | None = None) -> None:
        """Write the footer (if any) and close the stream."""
        if self.closed:
            return
        if footer and not self.failed:
            self._emit(f"\n[{isoformat(self._clock())}] {redact(footer)}\n")
        self.closed = True
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.close()
            except OSError as e:
                logger.warning(f"Error closing log for session {self.session.id}: {e}")


def _format_stack(stack: Any) -> str | None:
    if stack is None or stack == "":
        return None
    body = stack if isinstance(stack, str) else json.dumps(stack, indent=2, default=str)
    return f"Stack Trace: {body}"


def _format_network_extra(record: NetworkRecord) -> str | None:
    parts: list[str] = []
    if record.headers:
        parts.append("Headers:")
        parts.extend(f"  {name}: {value}" for name, value in record.headers.items())
    if record.request_body:
        parts.append(f"Request Body: {record.request_body}")
    if record.response_body:
        parts.append(f"Response Body: {record.response_body}")
    return "\n".join(parts) or None


# =============================================================================
# Line buffering for process output
# =============================================================================

PEM_BEGIN = re.compile(r"-----BEGIN (?:[A-Z0-9]+ )*PRIVATE KEY-----")
PEM_END = re.compile(r"-----END (?:[A-Z0-9]+ )*PRIVATE KEY-----")

DEFAULT_MAX_PARTIAL = 64 * 1024
DEFAULT_MAX_HELD_LINES = 200


class StreamLineBuffer:
    """
    Splits a byte-stream's decoded text into complete lines.

    Partial lines wait for their newline. Lines between a private-key BEGIN
    marker and its END marker are held back and emitted as one block so the
    redaction rule sees the whole key. A block that never terminates is
    emitted with its body replaced.
    """

    def __init__(
        self,
        emit: Callable[[str], Any],
        max_partial: int = DEFAULT_MAX_PARTIAL,
        max_held_lines: int = DEFAULT_MAX_HELD_LINES,
    ):
        self._emit = emit
        self.max_partial = max_partial
        self.max_held_lines = max_held_lines
        self._partial = ""
        self._held: list[str] = []

    @property
    def pending(self) -> str:
        return self._partial

    @property
    def holding_block(self) -> bool:
        return bool(self._held)

    def feed(self, text: str) -> None:
        if not text:
            return
        *lines, self._partial = (self._partial + text).split("\n")
        for line in lines:
            self._line(line.rstrip("\r"))
        if len(self._partial) > self.max_partial:
            partial, self._partial = self._partial, ""
            self._line(partial)

    def _line(self, line: str) -> None:
        if self._held:
            self._held.append(line)
            if PEM_END.search(line):
                self._release()
            elif len(self._held) >= self.max_held_lines:
                self._release_unterminated()
            return
        if PEM_BEGIN.search(line) and not PEM_END.search(line):
            self._held = [line]
            return
        self._emit(line)

    def _release(self) -> None:
        block, self._held = "\n".join(self._held), []
        self._emit(block)

    def _release_unterminated(self) -> None:
        begin, self._held = self._held[0], []
        self._emit(f"{begin}\n{REDACTED}")

    def close(self) -> None:
        """Emit whatever is left at end of stream."""
        if self._partial:
            partial, self._partial = self._partial, ""
            self._line(partial.rstrip("\r"))
        if self._held:
            self._release_unterminated()


__all__ = [
    "CHANNEL_TAGS",
    "RULE",
    "SessionLogWriter",
    "StreamLineBuffer",
    "record_time",
]
