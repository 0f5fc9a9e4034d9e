from __future__ import annotations

import io
import threading


class RotatingLogBuffer:
    """Double-buffered byte sink with bounded memory.

    Appends go to ``current``. When an append would push ``current`` past
    ``max_segment_bytes``, ``current`` first becomes ``backup`` (the previous
    ``backup`` is dropped) and the chunk starts a fresh ``current``. A
    snapshot is ``backup + current``.

    Only the most recent ``max_segment_bytes`` window is guaranteed to be
    retained; a single chunk larger than the cap is kept whole in ``current``
    until the next rotation.
    """

    def __init__(self, max_segment_bytes: int) -> None:
        if int(max_segment_bytes) <= 0:
            raise ValueError("max_segment_bytes must be positive")
        self._max = int(max_segment_bytes)
        self._current = bytearray()
        self._backup = bytearray()
        self._lock = threading.Lock()

    @property
    def max_segment_bytes(self) -> int:
        return self._max

    def append(self, data: bytes) -> None:
        if not data:
            return
        with self._lock:
            if len(self._current) + len(data) > self._max:
                self._backup = self._current
                self._current = bytearray()
            self._current.extend(data)

    def snapshot(self) -> bytes:
        with self._lock:
            return bytes(self._backup) + bytes(self._current)

    def open_stream(self) -> io.BytesIO:
        return io.BytesIO(self.snapshot())

    def clear(self) -> None:
        with self._lock:
            self._current = bytearray()
            self._backup = bytearray()

    def __len__(self) -> int:
        with self._lock:
            return len(self._backup) + len(self._current)
