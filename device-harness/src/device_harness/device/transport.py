"""Transport capability interface consumed by the execution engine.

The engine only needs a handful of operations from whatever actually speaks
the device protocol. Shell execution reports trouble by raising one of the
transient errors below (or an ``OSError``); fastboot and host adb commands
report trouble through :class:`CommandResult.status`.
"""

from __future__ import annotations

from typing import Optional, Protocol, Sequence, runtime_checkable

from device_harness.device.receivers import ShellOutputReceiver
from device_harness.device.types import CommandResult, DevicePhase


class TransportError(Exception):
    """Transient transport failure (eligible for recovery + retry)."""


class TransportTimeoutError(TransportError):
    pass


class ShellUnresponsiveError(TransportError):
    """The shell stopped producing output within the allowed window."""


class CommandRejectedError(TransportError):
    """The adb server/daemon refused the command (e.g. device offline)."""


TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (TransportError, OSError)


@runtime_checkable
class DeviceTransport(Protocol):
    @property
    def serial(self) -> str: ...

    def execute_shell(
        self,
        command: str,
        receiver: ShellOutputReceiver,
        timeout_s: Optional[float],
    ) -> None:
        """Stream `command` output into `receiver`.

        ``timeout_s=None`` disables the timeout; ``0`` selects the transport
        default.
        """
        ...

    def execute_fastboot(self, args: Sequence[str], timeout_s: float) -> CommandResult: ...

    def execute_adb(self, args: Sequence[str], timeout_s: float) -> CommandResult: ...

    def get_property(self, name: str) -> Optional[str]: ...

    def get_state(self) -> DevicePhase: ...
