"""Device recovery strategies.

A recovery strategy either leaves the device in the requested phase before
returning or raises :class:`DeviceNotAvailableError`. It never returns having
silently failed.
"""

from __future__ import annotations

import logging
from typing import Protocol

from device_harness.device.errors import DeviceNotAvailableError
from device_harness.device.state_monitor import DeviceStateMonitor
from device_harness.device.types import DevicePhase

logger = logging.getLogger(__name__)


class DeviceRecovery(Protocol):
    def recover_device(self, monitor: DeviceStateMonitor, until_online_only: bool) -> None: ...

    def recover_bootloader(self, monitor: DeviceStateMonitor) -> None: ...


class WaitDeviceRecovery:
    """Recovery that waits for the device to come back, rebooting at most once."""

    def __init__(
        self,
        *,
        online_wait_s: float = 60.0,
        available_wait_s: float = 240.0,
        bootloader_wait_s: float = 30.0,
        command_timeout_s: float = 30.0,
    ) -> None:
        self._online_wait_s = float(online_wait_s)
        self._available_wait_s = float(available_wait_s)
        self._bootloader_wait_s = float(bootloader_wait_s)
        self._command_timeout_s = float(command_timeout_s)

    def recover_device(self, monitor: DeviceStateMonitor, until_online_only: bool) -> None:
        # The caller marks the phase RECOVERING, so probe instead of reading it.
        if monitor.get_phase() is DevicePhase.BOOTLOADER or monitor.wait_for_bootloader(0):
            raise DeviceNotAvailableError("device is in bootloader; cannot recover to online")

        handle = monitor.wait_for_online(self._online_wait_s)
        if handle is None:
            raise DeviceNotAvailableError(
                f"device not online after {self._online_wait_s}s of recovery"
            )
        if until_online_only:
            return

        if monitor.wait_for_available(self._available_wait_s) is not None:
            return

        logger.warning(f"{handle.serial}: online but not available; rebooting once")
        result = handle.execute_adb(["reboot"], self._command_timeout_s)
        if not result.ok():
            logger.warning(f"{handle.serial}: reboot during recovery failed: {result.stderr}")
        if monitor.wait_for_available(self._available_wait_s) is None:
            raise DeviceNotAvailableError(
                f"device {handle.serial} not available after reboot recovery",
                serial=handle.serial,
            )

    def recover_bootloader(self, monitor: DeviceStateMonitor) -> None:
        if monitor.wait_for_bootloader(self._bootloader_wait_s):
            return

        handle = monitor.wait_for_online(self._online_wait_s)
        if handle is not None:
            logger.warning(f"{handle.serial}: found online while bootloader expected; rebooting")
            handle.execute_adb(["reboot", "bootloader"], self._command_timeout_s)
            if monitor.wait_for_bootloader(self._bootloader_wait_s):
                return

        raise DeviceNotAvailableError("device did not return to bootloader")
