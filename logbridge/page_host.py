"""
Page-connection host.

Reads a framed byte stream from a page producer, validates each payload into
a record and writes it to the connection's session log. One host serves one
connection, and at most one session is open at a time.

Session lifecycle:
- a start record opens a session
- an event arriving before any start record opens one implicitly
- an end record, end of input, a signal or a log stream error all go
  through finalize()

Registry calls block on file locks, so they run in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import time
from collections import deque
from typing import BinaryIO, Callable

from .config import BridgeConfig
from .decoder import DEFAULT_MAX_FRAME_BYTES, LENGTH_PREFIXED, encode_frame, make_decoder
from .log_writer import SessionLogWriter
from .records import EndRecord, HeartbeatRecord, NetworkRecord, Record, StartRecord, parse_record
from .session_registry import SessionRegistry
from .session_schema import Session, SessionKind

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024
RATE_WINDOW = 1.0

FOOTER_END = "Page session ended"
FOOTER_EOF = "Page session ended (input closed)"
FOOTER_SIGNAL = "Page session ended (signal)"


class RateLimiter:
    """Sliding one-second admission window."""

    def __init__(self, limit: int, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self._clock = clock
        self._admitted: deque[float] = deque()
        self.dropped = 0
        self._dropped_since_log = 0
        self._last_log: float | None = None

    def admit(self) -> bool:
        now = self._clock()
        while self._admitted and now - self._admitted[0] >= RATE_WINDOW:
            self._admitted.popleft()
        if len(self._admitted) < self.limit:
            self._admitted.append(now)
            return True

        self.dropped += 1
        self._dropped_since_log += 1
        if self._last_log is None or now - self._last_log >= RATE_WINDOW:
            logger.warning(
                f"Rate limit of {self.limit}/s exceeded; dropped {self._dropped_since_log} record(s)"
            )
            self._last_log = now
            self._dropped_since_log = 0
        return False


class PageConnectionHost:
    """
    Drives decoding, session lifecycle and rate limiting for one page connection.

    Example:
        host = PageConnectionHost(registry, project_dir="/work/app")
        await host.feed(encode_frame({"type": "start", "projectDir": "/work/app"}))
        await host.feed(encode_frame({"type": "console", "text": "hi"}))
        await host.finalize()
    """

    def __init__(
        self,
        registry: SessionRegistry,
        project_dir: str | None = None,
        archive: bool = True,
        rate_limit_per_second: int = 200,
        framing: str = LENGTH_PREFIXED,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
        output: BinaryIO | None = None,
        project_hint: Callable[[], str | None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the host.

        Args:
            registry: Registry for page-connection sessions
            project_dir: Project used when a start record names none
            archive: Archive (True) or delete (False) the log at finalize
            rate_limit_per_second: Event records admitted per sliding second
            framing: "length-prefixed" or "newline"
            max_frame_bytes: Largest accepted frame body
            output: Stream for acknowledgement frames (the producer's stdin)
            project_hint: Opt-in guess for the project when nothing else names one
        """
        self.registry = registry
        self.project_dir = project_dir
        self.archive = archive
        self.output = output
        self.project_hint = project_hint
        self.decoder = make_decoder(framing, max_frame_bytes)
        self.rate_limiter = RateLimiter(rate_limit_per_second, clock=clock)

        self.session: Session | None = None
        self.writer: SessionLogWriter | None = None
        self.closed_sessions: list[Session] = []
        self.invalid_records = 0

        self._starting = False
        self._pending: deque[Record] = deque()
        self._finalizing = False

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        project_dir: str | None = None,
        framing: str = LENGTH_PREFIXED,
        output: BinaryIO | None = None,
        guess_project: bool = False,
    ) -> "PageConnectionHost":
        hint = None
        if guess_project:
            hint = SessionRegistry.from_config(config, SessionKind.PROCESS_OUTPUT).most_recent_active_project_dir
        return cls(
            registry=SessionRegistry.from_config(config, SessionKind.PAGE_CONNECTION),
            project_dir=project_dir,
            archive=config.archive_on_finalize,
            rate_limit_per_second=config.rate_limit_per_second,
            framing=framing,
            max_frame_bytes=config.max_frame_bytes,
            output=output,
            project_hint=hint,
        )

    @property
    def rate_limited(self) -> int:
        return self.rate_limiter.dropped

    # =========================================================================
    # Input
    # =========================================================================

    async def feed(self, chunk: bytes) -> None:
        """Decode a chunk and handle every payload it completes."""
        for payload in self.decoder.feed(chunk):
            await self.handle_payload(payload)

    async def handle_payload(self, payload) -> None:
        record = parse_record(payload)
        if record is None:
            self.invalid_records += 1
            return
        await self.handle_record(record)

    async def handle_record(self, record: Record) -> None:
        """Admit one record through the rate limiter and dispatch it."""
        if not isinstance(record, (StartRecord, EndRecord, HeartbeatRecord)):
            if not self.rate_limiter.admit():
                return
        if self._starting:
            self._pending.append(record)
            return
        await self._dispatch(record)

    async def _dispatch(self, record: Record) -> None:
        if isinstance(record, StartRecord):
            if self.session is not None:
                logger.warning(f"Ignoring start record; session {self.session.id} already open")
                return
            await self._start(record.project_dir, record.descriptor)
            return

        if isinstance(record, EndRecord):
            await self.finalize(FOOTER_END)
            return

        if isinstance(record, HeartbeatRecord):
            if self.writer is not None:
                self.writer.touch()
            return

        if self.session is None:
            self._pending.appendleft(record)
            # A request URL does not name the page
            descriptor = None if isinstance(record, NetworkRecord) else getattr(record, "url", None)
            await self._start(None, descriptor)
            return

        self.writer.write_record(record)
        if self.writer.failed:
            await self.finalize()

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def resolve_project(self, requested: str | None) -> str:
        """Project attribution: start record, then host setting, then opt-in guess, then cwd."""
        if requested:
            return requested
        if self.project_dir:
            return self.project_dir
        if self.project_hint is not None:
            guess = self.project_hint()
            if guess:
                logger.info(f"No project given; guessing {guess} from the most recent process session")
                return guess
        cwd = os.getcwd()
        logger.warning(f"No project given; attributing session to the working directory {cwd}")
        return cwd

    async def _start(self, project_dir: str | None, descriptor: str | None) -> None:
        self._starting = True
        try:
            project = self.resolve_project(project_dir)
            session = await asyncio.to_thread(self.registry.open_session, project, descriptor)
            self.session = session
            self.writer = SessionLogWriter(session, on_error=self._on_writer_error)
            self.writer.open()
            self._send({"success": True, "sessionId": session.id})
        finally:
            self._starting = False

        while self._pending:
            await self._dispatch(self._pending.popleft())

    def _on_writer_error(self, writer: SessionLogWriter, error: OSError) -> None:
        logger.error(f"Session {writer.session.id} can no longer be written; finalizing it")

    def _send(self, payload: dict) -> None:
        if self.output is None:
            return
        try:
            self.output.write(encode_frame(payload))
            self.output.flush()
        except (OSError, ValueError) as e:
            logger.warning(f"Could not send acknowledgement: {e}")

    async def finalize(self, footer: str | None = None) -> Session | None:
        """
        Close the open session, if any.

        Safe to call from every shutdown path; only the first call for a
        session does anything.

        Returns:
            The finalized session, or None if nothing was open
        """
        if self.session is None or self._finalizing:
            return None
        self._finalizing = True
        try:
            session, writer = self.session, self.writer
            self.session, self.writer = None, None
            if writer is not None:
                writer.close(footer)
            closed = await asyncio.to_thread(self.registry.finalize, session, self.archive)
            self.closed_sessions.append(closed)
            return closed
        finally:
            self._finalizing = False

    # =========================================================================
    # Stream loop
    # =========================================================================

    async def _pump(self, reader: asyncio.StreamReader) -> None:
        while True:
            chunk = await reader.read(READ_CHUNK)
            if not chunk:
                break
            await self.feed(chunk)
        for payload in self.decoder.flush():
            await self.handle_payload(payload)

    async def run(self, reader: asyncio.StreamReader) -> None:
        """
        Serve the connection until end of input or SIGINT/SIGTERM.

        Both paths finalize the open session.
        """
        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        installed = _install_signal_handlers(loop, stop.set)

        pump = asyncio.create_task(self._pump(reader))
        stopper = asyncio.create_task(stop.wait())
        footer = FOOTER_EOF
        try:
            await asyncio.wait({pump, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if stop.is_set():
                footer = FOOTER_SIGNAL
                logger.info("Signal received; closing page session")
        finally:
            for task in (pump, stopper):
                if not task.done():
                    task.cancel()
            results = await asyncio.gather(pump, stopper, return_exceptions=True)
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.finalize(footer)

        error = results[0]
        if isinstance(error, Exception):
            raise error
        logger.info(
            f"Page connection closed: {self.decoder.frames_decoded} frames, "
            f"{self.decoder.frames_dropped} malformed, {self.invalid_records} invalid, "
            f"{self.rate_limited} rate-limited"
        )


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> list[int]:
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except (NotImplementedError, RuntimeError, ValueError):
            continue
        installed.append(sig)
    return installed


async def open_stdin_reader() -> asyncio.StreamReader:
    """Wrap this process's stdin in a StreamReader."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=READ_CHUNK * 16)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin.buffer)
    return reader


__all__ = [
    "FOOTER_END",
    "FOOTER_EOF",
    "FOOTER_SIGNAL",
    "PageConnectionHost",
    "RateLimiter",
    "open_stdin_reader",
]
