"""Newline-delimited JSON frame decoder for the QMP stream.

QEMU writes one JSON value per line (terminated by ``\\r\\n``). Socket reads
deliver arbitrary slices of that stream: half a frame, several frames, or
nothing at all. FrameDecoder buffers the bytes and emits each value once its
terminating newline has arrived.

Malformed lines do not poison the stream: each one is reported as a
DecodeError in the output (like ``asyncio.gather(return_exceptions=True)``)
and decoding carries on from the next newline.
"""

from __future__ import annotations

import json
from typing import Any

from qspider import constants
from qspider.exceptions import DecodeError

# Raw bytes kept in DecodeError context for diagnostics
_RAW_PREVIEW_BYTES = 200


class FrameDecoder:
    """Incremental decoder turning byte chunks into JSON values.

    Usage:
        decoder = FrameDecoder()
        for item in decoder.feed(chunk):
            if isinstance(item, DecodeError):
                log(item)
            else:
                handle(item)
    """

    __slots__ = ("_buffer", "_discarding", "_max_frame_bytes")

    def __init__(self, max_frame_bytes: int = constants.MAX_FRAME_BYTES) -> None:
        self._buffer = bytearray()
        self._max_frame_bytes = max_frame_bytes
        # True while skipping the tail of an oversized frame up to its newline
        self._discarding = False

    @property
    def buffered(self) -> int:
        """Bytes held waiting for a frame boundary."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[Any | DecodeError]:
        """Consume one chunk and return the frames it completed, in order."""
        results: list[Any | DecodeError] = []
        if not data:
            return results

        self._buffer.extend(data)

        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]

            if self._discarding:
                # Tail of an oversized frame, already reported
                self._discarding = False
                continue

            item = self._decode_line(line)
            if item is not _BLANK:
                results.append(item)

        if len(self._buffer) > self._max_frame_bytes:
            results.append(
                DecodeError(
                    f"Frame exceeds {self._max_frame_bytes} bytes without a newline",
                    {"raw": bytes(self._buffer[:_RAW_PREVIEW_BYTES]), "size": len(self._buffer)},
                )
            )
            self._buffer.clear()
            self._discarding = True

        return results

    def feed_eof(self) -> list[Any | DecodeError]:
        """Flush at end of stream.

        A trailing fragment without newline is incomplete by definition and
        is reported as a DecodeError rather than parsed.
        """
        results: list[Any | DecodeError] = []
        if self._buffer.strip() and not self._discarding:
            results.append(
                DecodeError(
                    "Stream ended inside a frame",
                    {"raw": bytes(self._buffer[:_RAW_PREVIEW_BYTES]), "size": len(self._buffer)},
                )
            )
        self._buffer.clear()
        self._discarding = False
        return results

    @staticmethod
    def _decode_line(line: bytes) -> Any:
        if not line.strip():
            return _BLANK
        try:
            return json.loads(line)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return DecodeError(
                f"Malformed frame: {e}",
                {"raw": line[:_RAW_PREVIEW_BYTES], "size": len(line)},
            )


# Sentinel for whitespace-only lines (JSON ``null`` is a valid frame value)
_BLANK = object()
