"""Decoder for the container runtime's multiplexed exec stream.

When an exec session runs without a TTY, the runtime interleaves stdout and
stderr on one socket. Each chunk is prefixed with an 8 byte header::

    [stream, 0, 0, 0, size_b1, size_b2, size_b3, size_b4]

where ``stream`` is 0 (stdin), 1 (stdout) or 2 (stderr) and ``size`` is the
big-endian payload length.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

HEADER_SIZE = 8
_HEADER = struct.Struct(">BxxxL")

STDIN = 0
STDOUT = 1
STDERR = 2


@dataclass(frozen=True, slots=True)
class Frame:
    stream: int
    payload: bytes


class FrameDecoder:
    """Incremental frame decoder.

    Bytes can be fed in arbitrarily sized pieces; frames split across reads are
    reassembled. Whatever remains buffered when the stream ends is an
    incomplete frame and is reported by ``pending`` but never emitted.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[Frame]:
        self._buffer.extend(data)
        frames: list[Frame] = []
        offset = 0
        while len(self._buffer) - offset >= HEADER_SIZE:
            stream, size = _HEADER.unpack_from(self._buffer, offset)
            end = offset + HEADER_SIZE + size
            if end > len(self._buffer):
                break
            frames.append(Frame(stream, bytes(self._buffer[offset + HEADER_SIZE : end])))
            offset = end
        del self._buffer[:offset]
        return frames

    @property
    def pending(self) -> int:
        """Number of buffered bytes belonging to an incomplete frame."""
        return len(self._buffer)


def encode_frame(stream: int, payload: bytes) -> bytes:
    """Build one framed chunk (used by fakes and diagnostics)."""
    return _HEADER.pack(stream, len(payload)) + payload


def decode_stream(data: bytes) -> bytes:
    """Decode a complete multiplexed buffer into the concatenated payloads.

    Stdout and stderr payloads are joined in arrival order. A truncated
    trailing frame is dropped.
    """
    decoder = FrameDecoder()
    return b"".join(frame.payload for frame in decoder.feed(data) if frame.stream != STDIN)
