"""
Incremental framing for page-connection byte streams.

Two framings are supported:

- "length-prefixed": 4-byte little-endian unsigned length, then that many
  bytes of UTF-8 JSON (the browser native-messaging format)
- "newline": one JSON document per line

Decoders are fed arbitrary chunks and return every payload completed by the
chunk. A bad frame is dropped on its own; the stream is never abandoned.
"""

from __future__ import annotations

import json
import logging
import struct
from typing import Any

from .errors import MalformedFrameError

logger = logging.getLogger(__name__)

HEADER = struct.Struct("<I")
DEFAULT_MAX_FRAME_BYTES = 512 * 1024

LENGTH_PREFIXED = "length-prefixed"
NEWLINE = "newline"


def encode_frame(payload: Any) -> bytes:
    """Encode a payload as a length-prefixed JSON frame."""
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return HEADER.pack(len(raw)) + raw


def decode_payload(raw: bytes) -> Any:
    """
    Decode one frame body.

    Raises:
        MalformedFrameError: If the body is not UTF-8 JSON or cannot be decoded
    """
    try:
        return json.loads(raw.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise MalformedFrameError(f"Frame is not valid UTF-8: {e}") from e
    except json.JSONDecodeError as e:
        raise MalformedFrameError(f"Frame is not valid JSON: {e.msg} at position {e.pos}") from e
    except (RecursionError, ValueError) as e:
        # Nesting deeper than the interpreter recursion limit
        raise MalformedFrameError(f"Frame could not be decoded: {type(e).__name__}") from e


class FrameDecoder:
    """Shared buffering and accounting for both framings."""

    framing = ""

    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES):
        self.max_frame_bytes = max_frame_bytes
        self._buffer = bytearray()
        self.frames_decoded = 0
        self.frames_dropped = 0

    @property
    def buffered(self) -> int:
        """Bytes held while waiting for the rest of a frame."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[Any]:
        raise NotImplementedError

    def flush(self) -> list[Any]:
        """Called at end of stream; discards an incomplete trailing frame."""
        if self._buffer:
            logger.debug(f"Discarding {len(self._buffer)} bytes of incomplete {self.framing} frame at end of stream")
            self._buffer.clear()
        return []

    def _accept(self, raw: bytes, out: list[Any]) -> None:
        try:
            payload = decode_payload(raw)
        except MalformedFrameError as e:
            self.frames_dropped += 1
            logger.warning(f"Dropping malformed frame: {e}")
            return
        self.frames_decoded += 1
        out.append(payload)


class LengthPrefixedDecoder(FrameDecoder):
    """
    Decoder for 4-byte little-endian length-prefixed JSON frames.

    A frame declaring more than max_frame_bytes is dropped; its body is
    skipped as it arrives instead of being buffered.
    """

    framing = LENGTH_PREFIXED

    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES):
        super().__init__(max_frame_bytes)
        self._skip = 0

    def feed(self, chunk: bytes) -> list[Any]:
        payloads: list[Any] = []
        if not chunk:
            return payloads

        if self._skip:
            consumed = min(self._skip, len(chunk))
            chunk = chunk[consumed:]
            self._skip -= consumed
        self._buffer.extend(chunk)

        while len(self._buffer) >= HEADER.size:
            (length,) = HEADER.unpack_from(self._buffer, 0)

            if length > self.max_frame_bytes:
                self.frames_dropped += 1
                logger.warning(f"Dropping oversized frame: declared {length} bytes, limit {self.max_frame_bytes}")
                del self._buffer[: HEADER.size]
                consumed = min(length, len(self._buffer))
                del self._buffer[:consumed]
                self._skip = length - consumed
                if self._skip:
                    break
                continue

            end = HEADER.size + length
            if len(self._buffer) < end:
                break
            raw = bytes(self._buffer[HEADER.size : end])
            del self._buffer[:end]
            self._accept(raw, payloads)

        return payloads


class NewlineJSONDecoder(FrameDecoder):
    """Decoder for newline-delimited JSON."""

    framing = NEWLINE

    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES):
        super().__init__(max_frame_bytes)
        self._discarding = False

    def feed(self, chunk: bytes) -> list[Any]:
        payloads: list[Any] = []
        self._buffer.extend(chunk)

        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                if self._discarding:
                    self._buffer.clear()
                elif len(self._buffer) > self.max_frame_bytes:
                    self.frames_dropped += 1
                    logger.warning(f"Dropping line longer than {self.max_frame_bytes} bytes")
                    self._buffer.clear()
                    self._discarding = True
                break

            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            if self._discarding:
                self._discarding = False
                continue
            if len(line) > self.max_frame_bytes:
                self.frames_dropped += 1
                logger.warning(f"Dropping line longer than {self.max_frame_bytes} bytes")
                continue
            if not line.strip():
                continue
            self._accept(line, payloads)

        return payloads

    def flush(self) -> list[Any]:
        """Parse an unterminated last line, if any."""
        payloads: list[Any] = []
        tail = bytes(self._buffer)
        self._buffer.clear()
        if tail.strip() and not self._discarding:
            self._accept(tail, payloads)
        self._discarding = False
        return payloads


def make_decoder(framing: str = LENGTH_PREFIXED, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> FrameDecoder:
    """Create a decoder for the named framing."""
    if framing == LENGTH_PREFIXED:
        return LengthPrefixedDecoder(max_frame_bytes)
    if framing == NEWLINE:
        return NewlineJSONDecoder(max_frame_bytes)
    raise ValueError(f"Unknown framing: {framing!r} (expected {LENGTH_PREFIXED!r} or {NEWLINE!r})")


__all__ = [
    "DEFAULT_MAX_FRAME_BYTES",
    "FrameDecoder",
    "HEADER",
    "LENGTH_PREFIXED",
    "LengthPrefixedDecoder",
    "NEWLINE",
    "NewlineJSONDecoder",
    "decode_payload",
    "encode_frame",
    "make_decoder",
]
