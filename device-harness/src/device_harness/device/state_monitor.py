"""Device phase tracking and bounded waits.

All waits return ``None``/``False`` on timeout instead of raising; the engine
treats absence as "recovery needed".
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional, Protocol

from device_harness.device.receivers import CollectingOutputReceiver
from device_harness.device.transport import TRANSIENT_ERRORS, DeviceTransport
from device_harness.device.types import DevicePhase

logger = logging.getLogger(__name__)

MNT_EXTERNAL_STORAGE = "EXTERNAL_STORAGE"

_PROBE_TIMEOUT_S = 5.0


class DeviceStateMonitor(Protocol):
    def get_phase(self) -> DevicePhase: ...

    def set_phase(self, phase: DevicePhase) -> None: ...

    def wait_for_online(self, timeout_s: Optional[float] = None) -> Optional[DeviceTransport]: ...

    def wait_for_available(
        self, timeout_s: Optional[float] = None
    ) -> Optional[DeviceTransport]: ...

    def wait_for_not_available(self, timeout_s: float) -> bool: ...

    def wait_for_bootloader(self, timeout_s: Optional[float] = None) -> bool: ...

    def get_mount_point(self, name: str) -> Optional[str]: ...


class PollingStateMonitor:
    """State monitor that polls the transport and wakes early on `set_phase`.

    Phase events pushed through `set_phase` (e.g. from an adb device-list
    watcher) wake any waiter immediately; otherwise waiters re-query
    `transport.get_state()` every `poll_interval_s`.
    """

    def __init__(
        self,
        transport: DeviceTransport,
        *,
        poll_interval_s: float = 0.5,
        online_timeout_s: float = 60.0,
        available_timeout_s: float = 240.0,
        bootloader_timeout_s: float = 60.0,
    ) -> None:
        self._transport = transport
        self._poll_interval_s = float(poll_interval_s)
        self._online_timeout_s = float(online_timeout_s)
        self._available_timeout_s = float(available_timeout_s)
        self._bootloader_timeout_s = float(bootloader_timeout_s)
        self._cond = threading.Condition()
        self._phase = DevicePhase.NOT_AVAILABLE
        self._mount_points: Dict[str, str] = {}

    def get_phase(self) -> DevicePhase:
        with self._cond:
            return self._phase

    def set_phase(self, phase: DevicePhase) -> None:
        with self._cond:
            if phase is not self._phase:
                logger.debug(
                    f"{self._transport.serial}: phase {self._phase.value} -> {phase.value}"
                )
                self._phase = phase
                if phase is not DevicePhase.ONLINE:
                    self._mount_points.clear()
            self._cond.notify_all()

    def refresh_phase(self) -> DevicePhase:
        try:
            observed = self._transport.get_state()
        except TRANSIENT_ERRORS as e:
            logger.debug(f"{self._transport.serial}: state query failed: {e}")
            observed = DevicePhase.NOT_AVAILABLE
        self.set_phase(observed)
        return observed

    def _wait_until(self, predicate: Callable[[], bool], timeout_s: float) -> bool:
        deadline = time.monotonic() + max(0.0, float(timeout_s))
        while True:
            if predicate():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            with self._cond:
                self._cond.wait(min(self._poll_interval_s, remaining))

    def wait_for_online(self, timeout_s: Optional[float] = None) -> Optional[DeviceTransport]:
        timeout = self._online_timeout_s if timeout_s is None else timeout_s
        ok = self._wait_until(lambda: self.refresh_phase() is DevicePhase.ONLINE, timeout)
        return self._transport if ok else None

    def wait_for_bootloader(self, timeout_s: Optional[float] = None) -> bool:
        timeout = self._bootloader_timeout_s if timeout_s is None else timeout_s
        return self._wait_until(lambda: self.refresh_phase() is DevicePhase.BOOTLOADER, timeout)

    def wait_for_not_available(self, timeout_s: float) -> bool:
        return self._wait_until(lambda: self.refresh_phase() is not DevicePhase.ONLINE, timeout_s)

    def wait_for_available(
        self, timeout_s: Optional[float] = None
    ) -> Optional[DeviceTransport]:
        timeout = self._available_timeout_s if timeout_s is None else float(timeout_s)
        start = time.monotonic()
        if self.wait_for_online(timeout) is None:
            return None
        remaining = timeout - (time.monotonic() - start)
        ok = self._wait_until(self._is_boot_complete, remaining)
        return self._transport if ok else None

    def _probe_shell(self, command: str) -> str:
        receiver = CollectingOutputReceiver()
        try:
            self._transport.execute_shell(command, receiver, _PROBE_TIMEOUT_S)
        except TRANSIENT_ERRORS as e:
            logger.debug(f"{self._transport.serial}: probe '{command}' failed: {e}")
            return ""
        return receiver.get_output()

    def _is_boot_complete(self) -> bool:
        if self.refresh_phase() is not DevicePhase.ONLINE:
            return False
        if self._probe_shell("getprop sys.boot_completed").strip() != "1":
            return False
        # The package manager comes up after boot_completed on some builds.
        return "package:" in self._probe_shell("pm path android")

    def get_mount_point(self, name: str) -> Optional[str]:
        with self._cond:
            cached = self._mount_points.get(name)
        if cached:
            return cached
        value = self._probe_shell(f"echo ${name}").strip()
        if not value:
            return None
        with self._cond:
            self._mount_points[name] = value
        return value
