"""Error taxonomy surfaced by the device execution engine.

Callers that need to tell "device is gone" apart from "device is slow but
present" must catch :class:`DeviceUnresponsiveError` before
:class:`DeviceNotAvailableError` (the former is a subclass of the latter).
"""

from __future__ import annotations

from typing import Optional

from device_harness.device.types import CommandResult


class DeviceError(RuntimeError):
    """Base class for engine-level device failures."""

    def __init__(self, message: str, *, serial: Optional[str] = None) -> None:
        super().__init__(message)
        self.serial = serial


class DeviceNotAvailableError(DeviceError):
    """Raised when the device is presumed lost (recovery failed or disabled)."""


class DeviceUnresponsiveError(DeviceNotAvailableError):
    """Raised when the retry budget is exhausted.

    The device answered the recovery protocol every time but kept failing the
    command itself.
    """


class UnsupportedOperationError(DeviceError):
    """Raised when a capability is not present on this device/config."""


class FastbootCommandError(DeviceError):
    """Raised when a fastboot command still fails after bootloader recovery."""

    def __init__(
        self, message: str, *, result: CommandResult, serial: Optional[str] = None
    ) -> None:
        super().__init__(message, serial=serial)
        self.result = result
