from __future__ import annotations

from pathlib import Path
from typing import List

import pytest
from device_fakes import FakeRecovery, FakeTransport, make_device, result

from device_harness.device.errors import DeviceNotAvailableError
from device_harness.device.instrumentation import InstrumentationListener, InstrumentationRunner
from device_harness.device.types import CommandStatus


class _Listener:
    def __init__(self) -> None:
        self.failures: List[str] = []

    def test_run_failed(self, message: str) -> None:
        self.failures.append(message)


class _Runner:
    def __init__(self, *errors: BaseException) -> None:
        self._errors = list(errors)
        self.package_name = "com.example"
        self.max_time_s = None
        self.runs: List[list] = []

    def set_max_time_to_output_response(self, timeout_s: float) -> None:
        self.max_time_s = timeout_s

    def run(self, listeners) -> None:
        self.runs.append(list(listeners))
        if self._errors:
            raise self._errors.pop(0)


def test_fakes_satisfy_protocols() -> None:
    assert isinstance(_Runner(), InstrumentationRunner)
    assert isinstance(_Listener(), InstrumentationListener)


def test_run_instrumentation_tests_success() -> None:
    device, _, _, recovery = make_device(command_timeout_s=42.0)
    runner = _Runner()

    assert device.run_instrumentation_tests(runner, []) is True
    assert runner.runs == [[]]
    assert runner.max_time_s == 42.0
    assert recovery.device_calls == []


def test_run_instrumentation_tests_recovery_fails() -> None:
    recovery = FakeRecovery(device_errors=[DeviceNotAvailableError("gone")])
    device, _, _, _ = make_device(recovery=recovery)
    listener = _Listener()
    runner = _Runner(OSError("connection reset"))

    with pytest.raises(DeviceNotAvailableError):
        device.run_instrumentation_tests(runner, [listener])

    assert len(listener.failures) == 1
    assert recovery.device_calls == [False]


def test_run_instrumentation_tests_recovery_succeeds_without_rerun() -> None:
    device, _, _, recovery = make_device()
    listeners = [_Listener(), _Listener()]
    runner = _Runner(OSError("connection reset"))

    assert device.run_instrumentation_tests(runner, listeners) is False

    assert len(runner.runs) == 1
    assert all(len(listener.failures) == 1 for listener in listeners)
    assert "connection reset" in listeners[0].failures[0]
    assert recovery.device_calls == [False]


def test_sync_files_missing_local_does_no_io(tmp_path: Path) -> None:
    device, transport, _, _ = make_device()

    assert device.sync_files(tmp_path / "idontexist", "/sdcard") is False
    assert transport.adb_calls == []
    assert transport.shell_calls == []


def test_sync_files_pushes_directory(tmp_path: Path) -> None:
    (tmp_path / "data.txt").write_text("x", encoding="utf-8")
    transport = FakeTransport(
        adb={
            ("push", "--sync", f"{tmp_path}/.", "/sdcard/data"): [
                result(CommandStatus.FAILED, stderr="adb: error: failed to copy"),
            ]
        }
    )
    device, _, _, _ = make_device(transport=transport)

    assert device.sync_files(tmp_path, "/sdcard/data") is False
    assert device.sync_files(str(tmp_path), "/sdcard/data") is True
    assert transport.adb_calls == [["push", "--sync", f"{tmp_path}/.", "/sdcard/data"]] * 2
