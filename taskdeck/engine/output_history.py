"""Bounded output history for a task.

Keeps raw byte chunks in production order and drops the oldest chunks
once the total exceeds ``max_bytes``. The newest chunk is always kept,
even when it alone is larger than the limit.
"""
from __future__ import annotations

from collections import deque

DEFAULT_MAX_BYTES = 10 * 1024 * 1024


class OutputHistory:
    """Append-only ring buffer of output chunks."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES, initial: bytes = b"") -> None:
        self._max_bytes = max(1, int(max_bytes))
        self._chunks: deque[bytes] = deque()
        self._size = 0
        if initial:
            self.append(initial)

    def append(self, chunk: bytes) -> None:
        if not chunk:
            return
        self._chunks.append(chunk)
        self._size += len(chunk)
        while self._size > self._max_bytes and len(self._chunks) > 1:
            removed = self._chunks.popleft()
            self._size -= len(removed)

    @property
    def size(self) -> int:
        return self._size

    def __len__(self) -> int:
        return len(self._chunks)

    def tail(self, max_bytes: int) -> bytes:
        """Return at most the last ``max_bytes`` bytes."""
        if max_bytes <= 0:
            return b""
        parts: list[bytes] = []
        collected = 0
        for chunk in reversed(self._chunks):
            parts.append(chunk)
            collected += len(chunk)
            if collected >= max_bytes:
                break
        return b"".join(reversed(parts))[-max_bytes:]

    def to_bytes(self) -> bytes:
        return b"".join(self._chunks)

    def text(self) -> str:
        return self.to_bytes().decode("utf-8", errors="replace")

    def clear(self) -> None:
        self._chunks.clear()
        self._size = 0
