"""Bounded output buffers for job streams.

Each job keeps one LogBuffer per output stream. The buffer holds at most
``max_bytes`` of the most recent output; older bytes fall off the front as new
output arrives. Readers poll with an offset into the current contents.
"""

from dataclasses import dataclass
from threading import Lock
from typing import Union

DEFAULT_READ_BYTES = 65536


def _is_continuation(byte: int) -> bool:
    return 0x80 <= byte <= 0xBF


@dataclass
class LogChunk:
    """One incremental read from a LogBuffer.

    Attributes:
        data: Decoded text of the slice (invalid UTF-8 is replaced)
        next_offset: Offset to pass on the next read
        is_end: True when the read reached the end of the buffered data
    """
    data: str
    next_offset: int
    is_end: bool

    def to_dict(self) -> dict:
        return {"data": self.data, "nextOffset": self.next_offset, "isEnd": self.is_end}


class LogBuffer:
    """Thread-safe sliding window over a byte stream."""

    def __init__(self, max_bytes: int):
        if max_bytes <= 0:
            raise ValueError("max_bytes must be > 0")
        self.max_bytes = max_bytes
        self._buffer = bytearray()
        self._lock = Lock()

    def append(self, chunk: Union[bytes, str]) -> None:
        """Append a chunk, discarding the oldest bytes beyond capacity."""
        if not chunk:
            return
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        with self._lock:
            self._buffer.extend(chunk)
            overflow = len(self._buffer) - self.max_bytes
            if overflow > 0:
                del self._buffer[:overflow]

    def read(self, offset: int = 0, max_bytes: int = DEFAULT_READ_BYTES) -> LogChunk:
        """Read up to ``max_bytes`` starting at ``offset``.

        Offsets past the end are clamped, so a stale offset returns an empty
        chunk flagged as the end instead of failing.
        Chunks end on a UTF-8 character boundary, so concatenating successive
        reads rebuilds the text exactly.
        """
        offset = max(0, int(offset))
        max_bytes = max(0, int(max_bytes))
        with self._lock:
            size = len(self._buffer)
            start = min(offset, size)
            end = min(start + max_bytes, size)
            if end < size:
                end = self._char_boundary(start, end, size)
            data = bytes(self._buffer[start:end])
        return LogChunk(
            data=data.decode("utf-8", errors="replace"),
            next_offset=end,
            is_end=end >= size,
        )

    def _char_boundary(self, start: int, end: int, size: int) -> int:
        """Move ``end`` off a UTF-8 continuation byte so no character is split.

        Steps back to the start of the character; if that leaves nothing to
        read, steps forward past it instead.
        """
        boundary = end
        while boundary > start and _is_continuation(self._buffer[boundary]):
            boundary -= 1
        if boundary > start:
            return boundary
        boundary = end
        while boundary < size and _is_continuation(self._buffer[boundary]):
            boundary += 1
        return boundary

    def full(self) -> str:
        with self._lock:
            return self._buffer.decode("utf-8", errors="replace")

    def raw(self) -> bytes:
        with self._lock:
            return bytes(self._buffer)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)
