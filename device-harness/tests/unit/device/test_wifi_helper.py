from __future__ import annotations

from device_fakes import FakeTransport

from device_harness.device.transport import TransportTimeoutError
from device_harness.device.wifi import ShellWifiHelper


def test_shell_wifi_helper_reads_wlan_address() -> None:
    transport = FakeTransport(
        shell={
            "ip -f inet addr show wlan0": [
                "30: wlan0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500\n"
                "    inet 10.0.0.7/24 brd 10.0.0.255 scope global wlan0\n"
            ]
        }
    )

    assert ShellWifiHelper(transport).get_ip_address() == "10.0.0.7"


def test_shell_wifi_helper_without_address_or_on_error() -> None:
    transport = FakeTransport(
        shell={"ip -f inet addr show wlan0": ["", TransportTimeoutError("slow")]}
    )
    helper = ShellWifiHelper(transport)

    assert helper.get_ip_address() is None
    assert helper.get_ip_address() is None
