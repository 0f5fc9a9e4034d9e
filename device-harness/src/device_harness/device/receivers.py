"""Byte-chunk sinks for streamed shell output."""

from __future__ import annotations

import threading
from typing import Protocol


class ShellOutputReceiver(Protocol):
    def add_output(self, data: bytes) -> None: ...

    def flush(self) -> None: ...

    def is_cancelled(self) -> bool: ...


class CollectingOutputReceiver:
    """Accumulates every chunk; used for the buffered `shell()` variant."""

    def __init__(self) -> None:
        self._chunks = bytearray()
        self._lock = threading.Lock()

    def add_output(self, data: bytes) -> None:
        with self._lock:
            self._chunks.extend(data)

    def flush(self) -> None:
        return None

    def is_cancelled(self) -> bool:
        return False

    def get_bytes(self) -> bytes:
        with self._lock:
            return bytes(self._chunks)

    def get_output(self) -> str:
        return self.get_bytes().decode("utf-8", errors="replace")


class NullOutputReceiver:
    def add_output(self, data: bytes) -> None:  # noqa: ARG002
        return None

    def flush(self) -> None:
        return None

    def is_cancelled(self) -> bool:
        return False
