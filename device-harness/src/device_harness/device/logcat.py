"""Background logcat capture into a rotating buffer."""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from device_harness.device.log_buffer import RotatingLogBuffer
from device_harness.device.state_monitor import DeviceStateMonitor
from device_harness.device.transport import TRANSIENT_ERRORS, DeviceTransport

logger = logging.getLogger(__name__)

DEFAULT_LOGCAT_COMMAND = "logcat -v threadtime"

_JOIN_TIMEOUT_S = 5.0
_ONLINE_WAIT_S = 30.0
_ONLINE_SLICE_S = 0.5


class _BufferSink:
    """Shell receiver that writes into the buffer until the session is cancelled."""

    def __init__(self, buffer: RotatingLogBuffer, cancelled: threading.Event) -> None:
        self._buffer = buffer
        self._cancelled = cancelled

    def add_output(self, data: bytes) -> None:
        if not self._cancelled.is_set():
            self._buffer.append(data)

    def flush(self) -> None:
        return None

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()


class LogcatReceiver:
    """A logcat capture session.

    `start()` launches one worker thread that keeps the device log stream
    flowing into a :class:`RotatingLogBuffer`. If the stream ends (reboot,
    USB drop) the worker waits `restart_delay_s`, optionally waits for the
    device to come back online, and restarts the stream. `cancel()` stops the
    worker and releases both segments.
    """

    def __init__(
        self,
        transport: DeviceTransport,
        *,
        max_segment_bytes: int,
        monitor: Optional[DeviceStateMonitor] = None,
        command: str = DEFAULT_LOGCAT_COMMAND,
        restart_delay_s: float = 1.0,
    ) -> None:
        self._transport = transport
        self._monitor = monitor
        self._command = command
        self._restart_delay_s = float(restart_delay_s)
        self._buffer = RotatingLogBuffer(max_segment_bytes)
        self._cancelled = threading.Event()
        self._sink = _BufferSink(self._buffer, self._cancelled)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.error: Optional[BaseException] = None

    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._cancelled.is_set():
                raise RuntimeError("logcat session already cancelled")
            if self._thread is not None:
                return
            self._thread = threading.Thread(
                target=self._run,
                name=f"logcat-{self._transport.serial}",
                daemon=True,
            )
            self._thread.start()
        logger.info(f"{self._transport.serial}: logcat capture started")

    def _run(self) -> None:
        while not self._cancelled.is_set():
            try:
                self._transport.execute_shell(self._command, self._sink, None)
            except TRANSIENT_ERRORS as e:
                logger.debug(f"{self._transport.serial}: logcat stream interrupted: {e}")
            except Exception as e:
                self.error = e
                logger.exception(f"{self._transport.serial}: logcat capture stopped")
                return

            if self._cancelled.wait(self._restart_delay_s):
                return
            if self._monitor is not None and not self._wait_for_online():
                logger.debug(f"{self._transport.serial}: device still offline; retrying logcat")

    def _wait_for_online(self) -> bool:
        # Short slices keep the worker responsive to cancel().
        deadline = time.monotonic() + _ONLINE_WAIT_S
        while not self._cancelled.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if self._monitor.wait_for_online(min(remaining, _ONLINE_SLICE_S)) is not None:
                return True
        return False

    def get_logcat_data(self) -> bytes:
        return self._buffer.snapshot()

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(_JOIN_TIMEOUT_S)
            if thread.is_alive():
                logger.warning(f"{self._transport.serial}: logcat worker did not stop in time")
        self._buffer.clear()
