from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class DevicePhase(Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    BOOTLOADER = "bootloader"
    NOT_AVAILABLE = "not_available"
    RECOVERING = "recovering"

    @classmethod
    def from_adb_state(cls, state: str) -> "DevicePhase":
        """Map an `adb get-state` / `adb devices` state token to a phase."""

        token = str(state).strip().lower()
        if token == "device":
            return cls.ONLINE
        if token in {"offline", "unauthorized", "authorizing", "connecting"}:
            return cls.OFFLINE
        if token in {"bootloader", "fastboot"}:
            return cls.BOOTLOADER
        return cls.NOT_AVAILABLE


class RecoveryMode(Enum):
    DISABLED = "disabled"
    UNTIL_ONLINE = "until_online"
    FULL = "full"


class CommandStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    EXCEPTION = "exception"


@dataclass(frozen=True)
class CommandResult:
    status: CommandStatus
    stdout: str = ""
    stderr: str = ""
    args: list[str] = field(default_factory=list)

    def ok(self) -> bool:
        return self.status is CommandStatus.SUCCESS
