"""Tests for FrameDecoder (newline-delimited JSON on the QMP stream)."""

from __future__ import annotations

import json

import pytest

from qspider.exceptions import DecodeError
from qspider.framing import FrameDecoder

STREAM = (
    b'{"QMP": {"version": {}, "capabilities": []}}\r\n'
    b'{"return": {}}\r\n'
    b'{"event": "RESUME", "timestamp": {"seconds": 1, "microseconds": 2}}\r\n'
    b'{"return": [{"device": "ide0-hd0"}], "id": "abc"}\r\n'
)
EXPECTED = [json.loads(line) for line in STREAM.splitlines()]


# ============================================================================
# Boundaries
# ============================================================================


class TestFrameBoundaries:
    def test_single_complete_frame(self) -> None:
        decoder = FrameDecoder()
        assert decoder.feed(b'{"return": {}, "id": "x"}\n') == [{"return": {}, "id": "x"}]
        assert decoder.buffered == 0

    def test_partial_frame_is_buffered(self) -> None:
        decoder = FrameDecoder()
        assert decoder.feed(b'{"return": ') == []
        assert decoder.buffered == len(b'{"return": ')
        assert decoder.feed(b'{}, "id": "x"}\r\n') == [{"return": {}, "id": "x"}]

    def test_several_frames_in_one_chunk(self) -> None:
        assert FrameDecoder().feed(STREAM) == EXPECTED

    @pytest.mark.parametrize("size", [1, 2, 3, 7, 16, 64])
    def test_output_independent_of_chunking(self, size: int) -> None:
        decoder = FrameDecoder()
        out = []
        for i in range(0, len(STREAM), size):
            out.extend(decoder.feed(STREAM[i : i + size]))
        assert out == EXPECTED
        assert decoder.buffered == 0

    def test_crlf_and_lf_both_accepted(self) -> None:
        assert FrameDecoder().feed(b'{"a": 1}\r\n{"b": 2}\n') == [{"a": 1}, {"b": 2}]

    def test_blank_lines_skipped(self) -> None:
        assert FrameDecoder().feed(b'\n\r\n  \n{"a": 1}\n\n') == [{"a": 1}]

    def test_json_null_is_a_frame(self) -> None:
        assert FrameDecoder().feed(b"null\n") == [None]

    def test_empty_chunk(self) -> None:
        assert FrameDecoder().feed(b"") == []


# ============================================================================
# Malformed input
# ============================================================================


class TestMalformedFrames:
    def test_malformed_line_reported_and_stream_continues(self) -> None:
        out = FrameDecoder().feed(b'{"return": {}, "id": "a"}\n{not json\n{"return": 1, "id": "b"}\n')
        assert out[0] == {"return": {}, "id": "a"}
        assert isinstance(out[1], DecodeError)
        assert out[1].context["raw"] == b"{not json"
        assert out[2] == {"return": 1, "id": "b"}

    def test_invalid_utf8_is_decode_error(self) -> None:
        out = FrameDecoder().feed(b'"\xff\xfe"\n{"a": 1}\n')
        assert isinstance(out[0], DecodeError)
        assert out[1] == {"a": 1}

    def test_oversized_frame_discarded_until_newline(self) -> None:
        decoder = FrameDecoder(max_frame_bytes=16)
        out = decoder.feed(b'{"return": "' + b"x" * 32)
        assert len(out) == 1
        assert isinstance(out[0], DecodeError)
        assert out[0].context["size"] > 16
        assert decoder.buffered == 0

        # Tail of the oversized frame is dropped, the next frame decodes
        assert decoder.feed(b'xxxx"}\n{"a": 1}\n') == [{"a": 1}]

    def test_raw_preview_is_bounded(self) -> None:
        out = FrameDecoder().feed(b"!" * 1000 + b"\n")
        assert isinstance(out[0], DecodeError)
        assert len(out[0].context["raw"]) == 200
        assert out[0].context["size"] == 1000


# ============================================================================
# End of stream
# ============================================================================


class TestFeedEof:
    def test_clean_eof(self) -> None:
        decoder = FrameDecoder()
        decoder.feed(b'{"a": 1}\n')
        assert decoder.feed_eof() == []

    def test_truncated_frame_at_eof(self) -> None:
        decoder = FrameDecoder()
        decoder.feed(b'{"return": {}, "id": "a"}')
        out = decoder.feed_eof()
        assert len(out) == 1
        assert isinstance(out[0], DecodeError)
        assert decoder.buffered == 0

    def test_whitespace_tail_is_not_an_error(self) -> None:
        decoder = FrameDecoder()
        decoder.feed(b'{"a": 1}\n  ')
        assert decoder.feed_eof() == []

    def test_eof_while_discarding_oversize(self) -> None:
        decoder = FrameDecoder(max_frame_bytes=4)
        decoder.feed(b"0123456789")
        assert decoder.feed_eof() == []
        # Reset: a new stream decodes from scratch
        assert decoder.feed(b'{"a": 1}\n') == [{"a": 1}]
