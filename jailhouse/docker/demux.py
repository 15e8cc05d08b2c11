"""Demultiplexer for Docker's attach stream.

With ``Tty`` disabled, Docker interleaves the container's stdout and stderr
on one connection as frames::

    [tag:1][reserved:3][length:4 big-endian][payload:length]

Frames arrive split arbitrarily across socket reads, so the demultiplexer
keeps whatever trailing partial header or payload it has seen and resumes
on the next ``feed``.
"""

from __future__ import annotations

import struct

from jailhouse.core.exceptions import DriverError
from jailhouse.core.types import AttachResult, StreamTag


HEADER = struct.Struct(">BxxxI")


class AttachStreamDemuxer:
    """Splits attach-stream bytes into stdout and stderr.

    Tag 1 frames go to ``stdout`` (the protocol-bearing channel); tags 0 and 2
    go to ``stderr`` (raw passthrough). Any other tag means the framing is
    corrupt.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._stdout = bytearray()
        self._stderr = bytearray()

    def feed(self, data: bytes) -> list[tuple[StreamTag, bytes]]:
        """Consume bytes and return every frame completed by them.

        Args:
            data: Bytes read from the attach stream, in any split.

        Returns:
            ``(tag, payload)`` pairs in stream order. ``tag`` is STDOUT or
            STDERR (stdin frames are reported as STDERR).

        Raises:
            DriverError: If a frame header carries an unknown stream tag.
        """
        self._buffer.extend(data)
        frames: list[tuple[StreamTag, bytes]] = []
        offset = 0
        while len(self._buffer) - offset >= HEADER.size:
            raw_tag, length = HEADER.unpack_from(self._buffer, offset)
            end = offset + HEADER.size + length
            if len(self._buffer) < end:
                break
            try:
                tag = StreamTag(raw_tag)
            except ValueError as exc:
                raise DriverError(f"Unknown attach stream tag {raw_tag}") from exc
            payload = bytes(self._buffer[offset + HEADER.size:end])
            offset = end
            if tag is StreamTag.STDOUT:
                self._stdout.extend(payload)
            else:
                tag = StreamTag.STDERR
                self._stderr.extend(payload)
            frames.append((tag, payload))
        del self._buffer[:offset]
        return frames

    @property
    def pending(self) -> int:
        """Number of buffered bytes belonging to an incomplete frame."""
        return len(self._buffer)

    def result(self) -> AttachResult:
        """Everything demultiplexed so far."""
        return AttachResult(stdout=bytes(self._stdout), stderr=bytes(self._stderr))


def encode_frame(tag: StreamTag, payload: bytes) -> bytes:
    """Frame ``payload`` the way Docker does on an attach stream."""
    return HEADER.pack(int(tag), len(payload)) + payload
