from __future__ import annotations

import logging
from typing import Optional, Protocol

from device_harness.device.parsing import parse_inet_address
from device_harness.device.receivers import CollectingOutputReceiver
from device_harness.device.transport import TRANSIENT_ERRORS, DeviceTransport

logger = logging.getLogger(__name__)


class WifiHelper(Protocol):
    def get_ip_address(self) -> Optional[str]: ...


class ShellWifiHelper:
    """Reads the Wi-Fi IPv4 address from `ip addr` on the device."""

    def __init__(
        self,
        transport: DeviceTransport,
        *,
        interface: str = "wlan0",
        timeout_s: float = 10.0,
    ) -> None:
        self._transport = transport
        self._interface = interface
        self._timeout_s = float(timeout_s)

    def get_ip_address(self) -> Optional[str]:
        receiver = CollectingOutputReceiver()
        try:
            self._transport.execute_shell(
                f"ip -f inet addr show {self._interface}", receiver, self._timeout_s
            )
        except TRANSIENT_ERRORS as e:
            logger.debug(f"{self._transport.serial}: wifi address query failed: {e}")
            return None
        return parse_inet_address(receiver.get_output())
