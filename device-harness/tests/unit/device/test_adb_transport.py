from __future__ import annotations

import io
import os
import subprocess
from types import SimpleNamespace

import pytest

from device_harness.device.adb_transport import AdbTransport
from device_harness.device.errors import DeviceError
from device_harness.device.receivers import CollectingOutputReceiver
from device_harness.device.transport import (
    CommandRejectedError,
    DeviceTransport,
    ShellUnresponsiveError,
    TransportTimeoutError,
)
from device_harness.device.types import CommandStatus, DevicePhase


class _FakePopen:
    def __init__(self, stdout, returncode: int, on_kill=None) -> None:
        self.stdout = stdout
        self._rc = returncode
        self._on_kill = on_kill
        self.returncode = None
        self.killed = False

    def poll(self):
        return None if self._on_kill is not None and not self.killed else self._rc

    def kill(self) -> None:
        self.killed = True
        if self._on_kill is not None:
            self._on_kill()

    def wait(self, timeout=None) -> int:
        self.returncode = self._rc
        return self._rc


def _patch_popen(monkeypatch, proc: _FakePopen) -> list:
    calls: list = []

    def fake_popen(cmd, **kwargs):
        calls.append({"cmd": cmd, "kwargs": kwargs})
        return proc

    monkeypatch.setattr(subprocess, "Popen", fake_popen)
    return calls


def test_adb_transport_satisfies_protocol() -> None:
    assert isinstance(AdbTransport(serial="s"), DeviceTransport)
    with pytest.raises(ValueError):
        AdbTransport(serial="")


def test_execute_adb_builds_serial_command_and_maps_status(monkeypatch) -> None:
    calls: list[dict] = []

    def fake_run(cmd, **kwargs):
        calls.append({"cmd": cmd, "kwargs": kwargs})
        rc = 0 if cmd[-1] == "root" else 1
        return SimpleNamespace(stdout="restarting adbd as root\n", stderr="", returncode=rc)

    monkeypatch.setattr(subprocess, "run", fake_run)
    t = AdbTransport(serial="emulator-5554", adb_path="/opt/adb", timeout_s=12.0)

    ok = t.execute_adb(["root"], 0)
    failed = t.execute_adb(["usb"], 3.0)

    assert calls[0]["cmd"] == ["/opt/adb", "-s", "emulator-5554", "root"]
    assert calls[0]["kwargs"]["timeout"] == 12.0
    assert calls[1]["kwargs"]["timeout"] == 3.0
    assert ok.status is CommandStatus.SUCCESS
    assert failed.status is CommandStatus.FAILED


def test_execute_fastboot_timeout_keeps_partial_output(monkeypatch) -> None:
    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"], output=b"partial", stderr=None)

    monkeypatch.setattr(subprocess, "run", fake_run)
    res = AdbTransport(serial="s").execute_fastboot(["getvar", "product"], 1.0)

    assert res.status is CommandStatus.TIMED_OUT
    assert res.stdout == "partial"
    assert res.args[:3] == ["fastboot", "-s", "s"]


def test_missing_binary_raises_device_error(monkeypatch) -> None:
    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(DeviceError):
        AdbTransport(serial="s").execute_adb(["devices"], 1.0)


def test_execute_shell_streams_output_into_receiver(monkeypatch) -> None:
    proc = _FakePopen(io.BytesIO(b"line one\nline two\n"), 0)
    calls = _patch_popen(monkeypatch, proc)
    receiver = CollectingOutputReceiver()

    AdbTransport(serial="s").execute_shell("ls /sdcard", receiver, 5.0)

    assert calls[0]["cmd"] == ["adb", "-s", "s", "shell", "ls /sdcard"]
    assert receiver.get_output() == "line one\nline two\n"


def test_execute_shell_rejects_empty_command() -> None:
    with pytest.raises(ValueError):
        AdbTransport(serial="s").execute_shell("  ", CollectingOutputReceiver(), 1.0)


@pytest.mark.parametrize(
    "message",
    [
        b"error: device offline\n",
        b"error: device 's' not found\n",
        b"adb: device offline\n",
        b"adb: device 's' not found\n",
        b"adb: no devices/emulators found\n",
        b"partial output\nerror: closed\n",
    ],
)
def test_execute_shell_device_offline_is_command_rejected(monkeypatch, message: bytes) -> None:
    _patch_popen(monkeypatch, _FakePopen(io.BytesIO(message), 1))

    with pytest.raises(CommandRejectedError):
        AdbTransport(serial="s").execute_shell("id", CollectingOutputReceiver(), 1.0)


def test_execute_shell_nonzero_exit_from_command_is_not_an_error(monkeypatch) -> None:
    _patch_popen(monkeypatch, _FakePopen(io.BytesIO(b"sh: foo: not found\n"), 127))
    receiver = CollectingOutputReceiver()

    AdbTransport(serial="s").execute_shell("foo", receiver, 1.0)

    assert "not found" in receiver.get_output()


def test_execute_shell_killed_by_signal_is_unresponsive(monkeypatch) -> None:
    _patch_popen(monkeypatch, _FakePopen(io.BytesIO(b""), -9))

    with pytest.raises(ShellUnresponsiveError):
        AdbTransport(serial="s").execute_shell("id", CollectingOutputReceiver(), 1.0)


def test_execute_shell_times_out_and_kills_process(monkeypatch) -> None:
    r, w = os.pipe()
    reader = os.fdopen(r, "rb")
    proc = _FakePopen(reader, -9, on_kill=lambda: os.close(w))
    _patch_popen(monkeypatch, proc)

    try:
        with pytest.raises(TransportTimeoutError):
            AdbTransport(serial="s").execute_shell("logcat", CollectingOutputReceiver(), 0.3)
        assert proc.killed
    finally:
        reader.close()


def test_execute_shell_stops_when_receiver_cancelled(monkeypatch) -> None:
    r, w = os.pipe()
    reader = os.fdopen(r, "rb")
    proc = _FakePopen(reader, -9, on_kill=lambda: os.close(w))
    _patch_popen(monkeypatch, proc)

    class _Cancelled(CollectingOutputReceiver):
        def is_cancelled(self) -> bool:
            return True

    try:
        AdbTransport(serial="s").execute_shell("logcat", _Cancelled(), None)
        assert proc.killed
    finally:
        reader.close()


def test_get_property_caches_read_only_properties(monkeypatch) -> None:
    calls: list = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return SimpleNamespace(
            stdout="[ro.product.board]: [walleye]\n[sys.boot_completed]: [1]\n",
            stderr="",
            returncode=0,
        )

    monkeypatch.setattr(subprocess, "run", fake_run)
    t = AdbTransport(serial="s")

    assert t.get_property("ro.product.board") == "walleye"
    assert t.get_property("ro.product.board") == "walleye"
    assert t.get_property("sys.boot_completed") is None
    assert len(calls) == 1

    t.invalidate_properties()
    t.get_property("ro.product.board")
    assert len(calls) == 2


def test_get_state_variants(monkeypatch) -> None:
    responses: dict = {}

    def fake_run(cmd, **kwargs):
        key = cmd[-1]
        if key not in responses:
            raise FileNotFoundError(cmd[0])
        return responses[key]

    monkeypatch.setattr(subprocess, "run", fake_run)
    t = AdbTransport(serial="s")

    responses["get-state"] = SimpleNamespace(stdout="device\n", stderr="", returncode=0)
    assert t.get_state() is DevicePhase.ONLINE

    responses["get-state"] = SimpleNamespace(
        stdout="", stderr="error: device 's' not found", returncode=1
    )
    responses["devices"] = SimpleNamespace(stdout="s\tfastboot\n", stderr="", returncode=0)
    assert t.get_state() is DevicePhase.BOOTLOADER

    responses["get-state"] = SimpleNamespace(
        stdout="", stderr="error: device offline", returncode=1
    )
    responses["devices"] = SimpleNamespace(stdout="", stderr="", returncode=0)
    assert t.get_state() is DevicePhase.OFFLINE

    del responses["devices"]
    responses["get-state"] = SimpleNamespace(stdout="", stderr="", returncode=1)
    assert t.get_state() is DevicePhase.NOT_AVAILABLE
