"""
Unit tests for decoder module.
"""

import json
import struct
import sys
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from logbridge.decoder import (
    LengthPrefixedDecoder,
    NewlineJSONDecoder,
    encode_frame,
    make_decoder,
)

CONSOLE = {"type": "console", "text": "hi"}


def frame(raw: bytes) -> bytes:
    return struct.pack("<I", len(raw)) + raw


class TestLengthPrefixedDecoder:
    """Tests for 4-byte little-endian framing."""

    def test_split_frame_waits_for_rest(self):
        """A frame split mid-body is parsed once its last byte arrives."""
        decoder = LengthPrefixedDecoder()
        body = b'{"a":1}'
        header = struct.pack("<I", len(body))

        assert decoder.feed(header + body[:-1]) == []
        assert decoder.buffered == len(header) + len(body) - 1
        assert decoder.feed(body[-1:]) == [{"a": 1}]
        assert decoder.buffered == 0

    def test_single_chunk(self):
        assert LengthPrefixedDecoder().feed(encode_frame(CONSOLE)) == [CONSOLE]

    @pytest.mark.parametrize("split", range(1, len(encode_frame(CONSOLE))))
    def test_any_split_point(self, split):
        data = encode_frame(CONSOLE)
        decoder = LengthPrefixedDecoder()
        out = decoder.feed(data[:split]) + decoder.feed(data[split:])
        assert out == [CONSOLE]

    def test_byte_at_a_time(self):
        records = [CONSOLE, {"type": "end"}, {"type": "metric", "name": "fcp", "value": 1.5}]
        data = b"".join(encode_frame(r) for r in records)
        decoder = LengthPrefixedDecoder()
        out = []
        for i in range(len(data)):
            out.extend(decoder.feed(data[i : i + 1]))
        assert out == records
        assert decoder.frames_decoded == 3

    def test_many_frames_in_one_chunk(self):
        data = b"".join(encode_frame({"n": n}) for n in range(50))
        assert LengthPrefixedDecoder().feed(data) == [{"n": n} for n in range(50)]

    def test_malformed_json_dropped_stream_continues(self):
        decoder = LengthPrefixedDecoder()
        data = frame(b"{not json") + encode_frame(CONSOLE)
        assert decoder.feed(data) == [CONSOLE]
        assert decoder.frames_dropped == 1
        assert decoder.frames_decoded == 1

    def test_deeply_nested_frame_dropped_stream_continues(self):
        """Nesting past the recursion limit drops that frame only."""
        decoder = LengthPrefixedDecoder()
        nested = b"[" * 200_000 + b"]" * 200_000
        assert decoder.feed(frame(nested) + encode_frame(CONSOLE)) == [CONSOLE]
        assert decoder.frames_dropped == 1
        assert decoder.frames_decoded == 1

    def test_invalid_utf8_dropped(self):
        decoder = LengthPrefixedDecoder()
        assert decoder.feed(frame(b"\xff\xfe\xfd") + encode_frame(CONSOLE)) == [CONSOLE]
        assert decoder.frames_dropped == 1

    def test_oversized_frame_skipped_in_pieces(self):
        decoder = LengthPrefixedDecoder(max_frame_bytes=16)
        big = json.dumps({"text": "x" * 100}).encode()
        data = frame(big) + encode_frame({"ok": True})

        out = []
        for i in range(0, len(data), 7):
            out.extend(decoder.feed(data[i : i + 7]))
        assert out == [{"ok": True}]
        assert decoder.frames_dropped == 1
        assert decoder.buffered == 0

    def test_oversized_frame_in_one_chunk(self):
        decoder = LengthPrefixedDecoder(max_frame_bytes=16)
        big = json.dumps({"text": "x" * 100}).encode()
        assert decoder.feed(frame(big) + encode_frame({"ok": 1})) == [{"ok": 1}]

    def test_empty_chunk(self):
        assert LengthPrefixedDecoder().feed(b"") == []

    def test_flush_discards_partial(self):
        decoder = LengthPrefixedDecoder()
        decoder.feed(encode_frame(CONSOLE)[:5])
        assert decoder.flush() == []
        assert decoder.buffered == 0


class TestNewlineJSONDecoder:
    """Tests for newline-delimited JSON."""

    def test_lines(self):
        decoder = NewlineJSONDecoder()
        assert decoder.feed(b'{"a":1}\n{"b":') == [{"a": 1}]
        assert decoder.feed(b"2}\n") == [{"b": 2}]

    def test_blank_lines_skipped(self):
        assert NewlineJSONDecoder().feed(b'\n\n{"a":1}\r\n\n') == [{"a": 1}]

    def test_bad_line_dropped(self):
        decoder = NewlineJSONDecoder()
        assert decoder.feed(b'nope\n{"a":1}\n') == [{"a": 1}]
        assert decoder.frames_dropped == 1

    def test_deeply_nested_line_dropped(self):
        decoder = NewlineJSONDecoder()
        nested = b"[" * 200_000 + b"]" * 200_000
        assert decoder.feed(nested + b"\n" + json.dumps(CONSOLE).encode() + b"\n") == [CONSOLE]
        assert decoder.frames_dropped == 1

    def test_overlong_line_dropped(self):
        decoder = NewlineJSONDecoder(max_frame_bytes=10)
        out = decoder.feed(b'{"text":"' + b"x" * 30)
        out += decoder.feed(b'"}\n{"a":1}\n')
        assert out == [{"a": 1}]
        assert decoder.frames_dropped == 1

    def test_flush_parses_last_line(self):
        decoder = NewlineJSONDecoder()
        assert decoder.feed(b'{"a":1}') == []
        assert decoder.flush() == [{"a": 1}]


class TestHelpers:
    """Tests for encode_frame and make_decoder."""

    def test_encode_frame_header(self):
        data = encode_frame({"success": True, "sessionId": "x"})
        (length,) = struct.unpack("<I", data[:4])
        assert length == len(data) - 4
        assert json.loads(data[4:]) == {"success": True, "sessionId": "x"}

    def test_make_decoder(self):
        assert isinstance(make_decoder("length-prefixed"), LengthPrefixedDecoder)
        assert isinstance(make_decoder("newline"), NewlineJSONDecoder)
        assert make_decoder("newline", max_frame_bytes=99).max_frame_bytes == 99
        with pytest.raises(ValueError):
            make_decoder("carrier-pigeon")
