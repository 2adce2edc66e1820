"""Demultiplexer for the Docker combined stdout/stderr log stream.

Non-TTY containers stream logs as a sequence of frames::

    [stream:1][reserved:3][length:4 big-endian][payload:length]

A single transport read can end anywhere inside a header or a payload, so frames are
assembled from however many chunks it takes. The chunk source is only iterated; closing
it stays with the caller.
"""

from __future__ import annotations

import struct
from collections.abc import AsyncIterable, AsyncIterator
from typing import Final

from shotbox.domain.logs import LogFrame, StreamKind
from shotbox.errors import MalformedFrameError, TruncationError

HEADER: Final[struct.Struct] = struct.Struct(">B3xI")
HEADER_SIZE: Final[int] = HEADER.size

# stdin (0) is echoed on stdout by the daemon; 3 is the daemon's own error channel.
_STREAMS: Final[dict[int, StreamKind]] = {
    0: StreamKind.STDOUT,
    1: StreamKind.STDOUT,
    2: StreamKind.STDERR,
}


class _ChunkReader:
    """Accumulates transport chunks until an exact byte count is available."""

    def __init__(self, chunks: AsyncIterable[bytes]) -> None:
        self._chunks = aiter(chunks)
        self._buffer = bytearray()
        self._eof = False

    async def at_end(self) -> bool:
        """True once the source is exhausted with nothing left buffered."""

        await self._fill(1)
        return not self._buffer

    async def read_exactly(self, size: int, *, what: str) -> bytes:
        await self._fill(size)
        if len(self._buffer) < size:
            received = len(self._buffer)
            raise TruncationError(
                f"log stream ended inside {what}: expected {size} bytes, got {received}",
                expected=size,
                received=received,
            )

        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    async def _fill(self, size: int) -> None:
        while len(self._buffer) < size and not self._eof:
            try:
                chunk = await anext(self._chunks)
            except StopAsyncIteration:
                self._eof = True
                break
            if chunk:
                self._buffer.extend(chunk)


def parse_header(header: bytes) -> tuple[StreamKind, int]:
    discriminant, length = HEADER.unpack(header)
    stream = _STREAMS.get(discriminant)
    if stream is None:
        raise MalformedFrameError(f"unsupported log stream discriminant: {discriminant}")
    return stream, length


def encode_frame(stream: StreamKind | int, payload: bytes) -> bytes:
    """Build one frame in the daemon's wire format."""

    if isinstance(stream, StreamKind):
        discriminant = 2 if stream is StreamKind.STDERR else 1
    else:
        discriminant = stream
    return HEADER.pack(discriminant, len(payload)) + payload


async def demux(chunks: AsyncIterable[bytes]) -> AsyncIterator[LogFrame]:
    """Yield frames in stream order until the source ends.

    Raises ``TruncationError`` if the source ends mid-frame and ``MalformedFrameError``
    for unknown discriminants; errors raised by the source propagate unchanged.
    """

    reader = _ChunkReader(chunks)
    while True:
        if await reader.at_end():
            return
        header = await reader.read_exactly(HEADER_SIZE, what="frame header")
        stream, length = parse_header(header)
        payload = await reader.read_exactly(length, what="frame payload")
        yield LogFrame(stream=stream, payload=payload)


__all__ = ["HEADER_SIZE", "demux", "encode_frame", "parse_header"]
