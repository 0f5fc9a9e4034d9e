from __future__ import annotations

import pytest
from device_fakes import FakeRecovery, FakeTransport, make_device, result

from device_harness.device.errors import (
    DeviceNotAvailableError,
    FastbootCommandError,
    UnsupportedOperationError,
)
from device_harness.device.transport import TransportError
from device_harness.device.types import CommandStatus, RecoveryMode


def test_fastboot_success_does_not_recover() -> None:
    transport = FakeTransport(fastboot=[result(stdout="ok")])
    device, _, _, recovery = make_device(transport=transport)

    res = device.execute_fastboot_command("foo")

    assert res.stdout == "ok"
    assert transport.fastboot_calls == [["foo"]]
    assert recovery.bootloader_calls == 0


def test_fastboot_failure_recovers_bootloader_and_retries_once() -> None:
    transport = FakeTransport(
        fastboot=[result(CommandStatus.EXCEPTION), result(stdout="retried")]
    )
    device, _, _, recovery = make_device(transport=transport)

    res = device.execute_fastboot_command("foo")

    assert res.ok()
    assert res.stdout == "retried"
    assert transport.fastboot_calls == [["foo"], ["foo"]]
    assert recovery.bootloader_calls == 1


def test_fastboot_second_failure_surfaces_without_third_attempt() -> None:
    second = result(CommandStatus.FAILED, stderr="FAILED (remote: unknown command)")
    transport = FakeTransport(
        fastboot=[result(CommandStatus.FAILED), second, result(stdout="never")]
    )
    device, _, _, recovery = make_device(transport=transport)

    with pytest.raises(FastbootCommandError) as excinfo:
        device.execute_fastboot_command("foo")

    assert excinfo.value.result is second
    assert len(transport.fastboot_calls) == 2
    assert recovery.bootloader_calls == 1


def test_fastboot_transient_exception_is_treated_as_failed_result() -> None:
    transport = FakeTransport(fastboot=[TransportError("usb reset"), result(stdout="ok")])
    device, _, _, recovery = make_device(transport=transport)

    assert device.execute_fastboot_command("devices").stdout == "ok"
    assert recovery.bootloader_calls == 1


def test_fastboot_bootloader_recovery_failure_propagates() -> None:
    transport = FakeTransport(fastboot=[result(CommandStatus.FAILED)])
    recovery = FakeRecovery(bootloader_errors=[DeviceNotAvailableError("gone")])
    device, _, _, _ = make_device(transport=transport, recovery=recovery)

    with pytest.raises(DeviceNotAvailableError):
        device.execute_fastboot_command("foo")

    assert len(transport.fastboot_calls) == 1


def test_fastboot_with_recovery_disabled_does_not_recover() -> None:
    transport = FakeTransport(fastboot=[result(CommandStatus.FAILED)])
    device, _, _, recovery = make_device(
        transport=transport, recovery_mode=RecoveryMode.DISABLED
    )

    with pytest.raises(DeviceNotAvailableError):
        device.execute_fastboot_command("foo")

    assert recovery.bootloader_calls == 0


def test_fastboot_disabled_raises_unsupported_without_transport_call() -> None:
    device, transport, _, recovery = make_device(fastboot_enabled=False)

    with pytest.raises(UnsupportedOperationError):
        device.execute_fastboot_command("foo")
    with pytest.raises(UnsupportedOperationError):
        device.execute_long_fastboot_command("foo")
    with pytest.raises(UnsupportedOperationError):
        device.reboot_into_bootloader()

    assert transport.fastboot_calls == []
    assert transport.adb_calls == []
    assert recovery.bootloader_calls == 0


def test_long_fastboot_command_uses_long_timeout(monkeypatch) -> None:
    device, transport, _, _ = make_device(long_command_timeout_s=900.0)
    seen = []
    original = transport.execute_fastboot

    def spy(args, timeout_s):
        seen.append(timeout_s)
        return original(args, timeout_s)

    monkeypatch.setattr(transport, "execute_fastboot", spy)
    device.execute_long_fastboot_command("flash", "system", "system.img")

    assert seen == [900.0]
