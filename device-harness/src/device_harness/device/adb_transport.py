"""adb/fastboot transport backed by the platform-tools binaries.

This is a *thin* wrapper: every call shells out to `adb` or `fastboot` via
`subprocess`. It knows nothing about retries or recovery; those belong to
:class:`device_harness.device.managed_device.ManagedDevice`.

Notes
-----
* Shell output is streamed: a reader thread pushes chunks through a bounded
  queue so the caller can honour cancellation and timeouts without killing an
  uncooperative thread.
* Host-side failures of adb itself (device offline, device not found) are
  reported as :class:`CommandRejectedError`.
"""

from __future__ import annotations

import logging
import queue
import re
import subprocess
import threading
import time
from typing import IO, Dict, Optional, Sequence

from device_harness.device.errors import DeviceError
from device_harness.device.parsing import parse_device_list
from device_harness.device.receivers import ShellOutputReceiver
from device_harness.device.transport import (
    CommandRejectedError,
    ShellUnresponsiveError,
    TransportTimeoutError,
)
from device_harness.device.types import CommandResult, CommandStatus, DevicePhase

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 16 * 1024
_QUEUE_MAX_CHUNKS = 64
_POLL_INTERVAL_S = 0.2
_ERROR_TAIL_BYTES = 512

_GETPROP_LINE_RE = re.compile(r"^\[([^\]]+)\]:\s*\[(.*)\]\s*$")
# Host-side adb failures, old ("error: ...") and current ("adb: ...") platform-tools.
_ADB_REJECTION_RE = re.compile(
    r"^(?:adb|error):\s*(?:"
    r"device (?:'[^']*' )?(?:not found|offline|unauthorized|still authorizing)"
    r"|no devices(?:/emulators)? found"
    r"|closed"
    r")",
    re.MULTILINE,
)


def _to_text(value: object) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value if isinstance(value, str) else ""


def _parse_getprop(txt: str) -> Dict[str, str]:
    props: Dict[str, str] = {}
    for raw_line in txt.splitlines():
        m = _GETPROP_LINE_RE.match(raw_line.strip())
        if m:
            props[m.group(1)] = m.group(2)
    return props


def _pump(stream: IO[bytes], chunks: "queue.Queue[Optional[bytes]]") -> None:
    try:
        while True:
            data = stream.read1(_READ_CHUNK_BYTES)  # type: ignore[attr-defined]
            if not data:
                break
            chunks.put(data)
    except (OSError, ValueError):
        # Stream closed underneath us after a kill.
        pass
    finally:
        chunks.put(None)


class AdbTransport:
    """Device transport speaking to a single serial through adb/fastboot."""

    def __init__(
        self,
        *,
        serial: str,
        adb_path: str = "adb",
        fastboot_path: str = "fastboot",
        timeout_s: float = 30.0,
    ) -> None:
        if not serial:
            raise ValueError("serial must be a non-empty string")
        self._serial = serial
        self._adb_path = adb_path
        self._fastboot_path = fastboot_path
        self._timeout_s = float(timeout_s)
        self._props: Optional[Dict[str, str]] = None
        self._props_lock = threading.Lock()

    @property
    def serial(self) -> str:
        return self._serial

    def _adb_cmd(self) -> list[str]:
        return [self._adb_path, "-s", self._serial]

    def _fastboot_cmd(self) -> list[str]:
        return [self._fastboot_path, "-s", self._serial]

    def _resolve_timeout(self, timeout_s: Optional[float]) -> Optional[float]:
        if timeout_s is None:
            return None
        if float(timeout_s) <= 0:
            return self._timeout_s
        return float(timeout_s)

    def _run(self, cmd: list[str], timeout_s: Optional[float]) -> CommandResult:
        timeout = self._resolve_timeout(timeout_s)
        logger.debug(f"Executing: {' '.join(cmd)}")
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                status=CommandStatus.TIMED_OUT,
                stdout=_to_text(e.stdout),
                stderr=_to_text(e.stderr),
                args=cmd,
            )
        except FileNotFoundError as e:
            raise DeviceError(f"binary not found: {cmd[0]}", serial=self._serial) from e
        except OSError as e:
            return CommandResult(status=CommandStatus.EXCEPTION, stderr=str(e), args=cmd)
        return CommandResult(
            status=CommandStatus.SUCCESS if proc.returncode == 0 else CommandStatus.FAILED,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            args=cmd,
        )

    def execute_adb(self, args: Sequence[str], timeout_s: float) -> CommandResult:
        return self._run(self._adb_cmd() + [str(a) for a in args], timeout_s)

    def execute_fastboot(self, args: Sequence[str], timeout_s: float) -> CommandResult:
        return self._run(self._fastboot_cmd() + [str(a) for a in args], timeout_s)

    def execute_shell(
        self,
        command: str,
        receiver: ShellOutputReceiver,
        timeout_s: Optional[float],
    ) -> None:
        if not isinstance(command, str) or not command.strip():
            raise ValueError("shell command must be a non-empty string")

        timeout = self._resolve_timeout(timeout_s)
        cmd = self._adb_cmd() + ["shell", command]
        logger.debug(f"Executing: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
        except FileNotFoundError as e:
            raise DeviceError(f"binary not found: {cmd[0]}", serial=self._serial) from e

        chunks: "queue.Queue[Optional[bytes]]" = queue.Queue(maxsize=_QUEUE_MAX_CHUNKS)
        reader = threading.Thread(
            target=_pump, args=(proc.stdout, chunks), name=f"adb-shell-{self._serial}", daemon=True
        )
        reader.start()

        deadline = None if timeout is None else time.monotonic() + timeout
        tail = b""
        try:
            while True:
                if receiver.is_cancelled():
                    logger.debug(f"shell command cancelled: {command}")
                    return
                if deadline is not None and time.monotonic() >= deadline:
                    raise TransportTimeoutError(
                        f"shell command timed out after {timeout}s on {self._serial}: {command}"
                    )
                try:
                    data = chunks.get(timeout=_POLL_INTERVAL_S)
                except queue.Empty:
                    continue
                if data is None:
                    break
                tail = (tail + data)[-_ERROR_TAIL_BYTES:]
                receiver.add_output(data)
        finally:
            if proc.poll() is None:
                proc.kill()
            proc.wait()
            # Unblock the reader if it is stuck on a full queue.
            drain_deadline = time.monotonic() + 1.0
            while reader.is_alive() and time.monotonic() < drain_deadline:
                try:
                    chunks.get(timeout=0.05)
                except queue.Empty:
                    pass
            receiver.flush()

        if proc.returncode != 0:
            tail_txt = tail.decode("utf-8", errors="replace").lower()
            if _ADB_REJECTION_RE.search(tail_txt):
                raise CommandRejectedError(tail_txt.strip())
            if proc.returncode < 0:
                raise ShellUnresponsiveError(
                    f"adb shell terminated by signal {-proc.returncode}: {command}"
                )

    def get_property(self, name: str) -> Optional[str]:
        """Return a cached read-only property (``ro.*``), or None."""

        if not name.startswith("ro."):
            return None
        with self._props_lock:
            if self._props is None:
                res = self.execute_adb(["shell", "getprop"], self._timeout_s)
                if not res.ok():
                    return None
                props = _parse_getprop(res.stdout)
                if not props:
                    return None
                self._props = {k: v for k, v in props.items() if k.startswith("ro.")}
            value = self._props.get(name)
        return value or None

    def invalidate_properties(self) -> None:
        with self._props_lock:
            self._props = None

    def get_state(self) -> DevicePhase:
        res = self.execute_adb(["get-state"], self._timeout_s)
        if res.ok() and res.stdout.strip():
            return DevicePhase.from_adb_state(res.stdout.strip())

        try:
            fb = self._run([self._fastboot_path, "devices"], self._timeout_s)
        except DeviceError:
            fb = None
        if fb is not None and fb.ok():
            if parse_device_list(fb.stdout).get(self._serial) is DevicePhase.BOOTLOADER:
                return DevicePhase.BOOTLOADER
        if "offline" in (res.stderr or "").lower():
            return DevicePhase.OFFLINE
        return DevicePhase.NOT_AVAILABLE
