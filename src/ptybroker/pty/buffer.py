"""Ring buffer for PTY output: the scrollback replayed on reattach."""

from __future__ import annotations

import threading
from collections import deque


class RingBuffer:
    """Thread-safe, fixed-capacity character buffer.

    Holds at most ``capacity`` characters of terminal output. Appending
    past the limit evicts the oldest characters, so the buffer always
    holds the most recent ``capacity`` characters emitted, in order.

    Output is kept as a deque of chunks rather than one growing string so
    that an append only touches the chunks it evicts.
    """

    def __init__(self, capacity: int = 50_000) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._chunks: deque[str] = deque()
        self._length: int = 0
        self._total_written: int = 0  # Total characters ever appended
        self._lock = threading.Lock()

    def append(self, chunk: str) -> None:
        """Append a chunk, evicting the fewest leading characters needed."""
        if not chunk:
            return
        with self._lock:
            self._total_written += len(chunk)
            if len(chunk) >= self._capacity:
                # The chunk alone fills the buffer.
                self._chunks.clear()
                self._chunks.append(chunk[-self._capacity :])
                self._length = self._capacity
                return

            self._chunks.append(chunk)
            self._length += len(chunk)
            excess = self._length - self._capacity
            while excess > 0:
                head = self._chunks[0]
                if len(head) <= excess:
                    self._chunks.popleft()
                    self._length -= len(head)
                    excess -= len(head)
                else:
                    self._chunks[0] = head[excess:]
                    self._length -= excess
                    excess = 0

    def contents(self) -> str:
        """Return the whole buffer as one string. Does not modify the buffer."""
        with self._lock:
            return "".join(self._chunks)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def total_written(self) -> int:
        """Total number of characters ever appended, including evicted ones."""
        with self._lock:
            return self._total_written

    def clear(self) -> None:
        with self._lock:
            self._chunks.clear()
            self._length = 0
            self._total_written = 0

    def __len__(self) -> int:
        with self._lock:
            return self._length
