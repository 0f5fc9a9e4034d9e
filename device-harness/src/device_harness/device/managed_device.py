"""Command execution engine for a single Android device.

Every device command goes through one pipeline: invoke the transport,
classify the failure, ask the recovery strategy to bring the device back, and
retry within a bounded budget. When the budget runs out the device is
declared unresponsive; when recovery itself fails the device is declared
unavailable and the error propagates without further attempts.

Fastboot commands follow a narrower rule: one bootloader recovery and exactly
one retry.
"""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence, TypeVar, Union

from device_harness.config.device_options import DeviceOptions
from device_harness.device.errors import (
    DeviceNotAvailableError,
    DeviceUnresponsiveError,
    FastbootCommandError,
    UnsupportedOperationError,
)
from device_harness.device.instrumentation import (
    InstrumentationListener,
    InstrumentationRunner,
    report_run_failure,
)
from device_harness.device.logcat import LogcatReceiver
from device_harness.device.parsing import (
    count_error_dialogs,
    is_root_uid,
    parse_fastboot_product,
    parse_free_space_kb,
)
from device_harness.device.receivers import (
    CollectingOutputReceiver,
    NullOutputReceiver,
    ShellOutputReceiver,
)
from device_harness.device.recovery import DeviceRecovery
from device_harness.device.state_monitor import MNT_EXTERNAL_STORAGE, DeviceStateMonitor
from device_harness.device.transport import TRANSIENT_ERRORS, DeviceTransport
from device_harness.device.types import CommandResult, CommandStatus, DevicePhase, RecoveryMode
from device_harness.device.wifi import ShellWifiHelper, WifiHelper

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRY_ATTEMPTS = DeviceOptions.max_retry_attempts
ADB_TCP_PORT = 5555
DIALOG_CLEAR_MAX_ROUNDS = 3
ROOT_RESTART_WAIT_S = 5.0

DISABLE_KEYGUARD_COMMAND = "input keyevent 82"
DISMISS_DIALOG_COMMAND = "input keyevent 66"
DIALOG_QUERY_COMMAND = "dumpsys activity processes"
BUGREPORT_COMMAND = "bugreport"
ENCRYPTION_PROBE_COMMAND = "vdc cryptfs enablecrypto"

PRODUCT_BOARD_PROP = "ro.product.board"
PRODUCT_DEVICE_PROP = "ro.product.device"
CRYPTO_STATE_PROP = "ro.crypto.state"

_ROOT_CONFIRMATIONS = ("restarting adbd as root", "already running as root")
_VDC_OK_RE = re.compile(r"^200 \d+ 0\b")


class ManagedDevice:
    """Retry/recovery wrapper around a device transport.

    All collaborators are injected: the transport speaks the wire protocol,
    the monitor tracks the device phase and the recovery strategy brings the
    device back after a fault. The engine is synchronous; only the optional
    logcat session runs on its own thread.
    """

    def __init__(
        self,
        transport: DeviceTransport,
        monitor: DeviceStateMonitor,
        recovery: DeviceRecovery,
        *,
        options: Optional[DeviceOptions] = None,
        wifi: Optional[WifiHelper] = None,
    ) -> None:
        self._transport = transport
        self._monitor = monitor
        self._recovery = recovery
        self._options = options or DeviceOptions()
        self._wifi = wifi or ShellWifiHelper(transport)
        self._recovery_mode = self._options.recovery_mode
        self._encryption_supported: Optional[bool] = None
        self._logcat: Optional[LogcatReceiver] = None
        self._logcat_lock = threading.Lock()

    @property
    def serial(self) -> str:
        return self._transport.serial

    @property
    def options(self) -> DeviceOptions:
        return self._options

    @property
    def monitor(self) -> DeviceStateMonitor:
        return self._monitor

    @property
    def recovery_mode(self) -> RecoveryMode:
        return self._recovery_mode

    @recovery_mode.setter
    def recovery_mode(self, mode: RecoveryMode) -> None:
        self._recovery_mode = RecoveryMode(mode)

    def get_phase(self) -> DevicePhase:
        return self._monitor.get_phase()

    def _resolve_timeout(self, timeout_s: float) -> float:
        return self._options.command_timeout_s if not timeout_s or timeout_s <= 0 else timeout_s

    # ------------------------------------------------------------------
    # retry / recovery core
    # ------------------------------------------------------------------

    def _perform_with_retry(self, description: str, action: Callable[[], T]) -> T:
        attempts = 0
        while True:
            try:
                return action()
            except TRANSIENT_ERRORS as e:
                logger.warning(
                    f"{self.serial}: {description} failed ({type(e).__name__}: {e}); "
                    f"attempt {attempts + 1} of {self._options.max_retry_attempts + 1}"
                )
                self.recover_device()
                attempts += 1
                if attempts > self._options.max_retry_attempts:
                    raise DeviceUnresponsiveError(
                        f"{description} failed after {attempts} attempts on {self.serial}",
                        serial=self.serial,
                    ) from e

    def recover_device(self) -> None:
        """Run the recovery strategy according to the current recovery mode."""
        self._recover(self._recovery_mode is RecoveryMode.UNTIL_ONLINE)

    def _recover(self, until_online_only: bool) -> None:
        if self._recovery_mode is RecoveryMode.DISABLED:
            raise DeviceNotAvailableError(
                f"{self.serial}: recovery disabled; device presumed unavailable",
                serial=self.serial,
            )
        logger.warning(f"{self.serial}: attempting recovery (until_online={until_online_only})")
        self._monitor.set_phase(DevicePhase.RECOVERING)
        self._recovery.recover_device(self._monitor, until_online_only)
        if not until_online_only:
            self.post_boot_setup()
        logger.info(f"{self.serial}: recovery succeeded")

    def _recover_bootloader(self) -> None:
        if self._recovery_mode is RecoveryMode.DISABLED:
            raise DeviceNotAvailableError(
                f"{self.serial}: recovery disabled; bootloader presumed unavailable",
                serial=self.serial,
            )
        logger.warning(f"{self.serial}: attempting bootloader recovery")
        self._monitor.set_phase(DevicePhase.RECOVERING)
        self._recovery.recover_bootloader(self._monitor)

    def post_boot_setup(self) -> None:
        # Goes straight to the transport so a failure here never recurses into recovery.
        if not self._options.disable_keyguard:
            return
        try:
            self._transport.execute_shell(
                DISABLE_KEYGUARD_COMMAND, NullOutputReceiver(), self._options.command_timeout_s
            )
        except TRANSIENT_ERRORS as e:
            logger.warning(f"{self.serial}: failed to dismiss keyguard: {e}")

    # ------------------------------------------------------------------
    # command primitives
    # ------------------------------------------------------------------

    def shell_to_receiver(
        self,
        command: str,
        receiver: ShellOutputReceiver,
        *,
        timeout_s: float = 0,
    ) -> None:
        """Stream a shell command into `receiver`, recovering and retrying on
        transient failures."""
        timeout = self._resolve_timeout(timeout_s)
        self._perform_with_retry(
            f"shell '{command}'",
            lambda: self._transport.execute_shell(command, receiver, timeout),
        )

    def shell(self, command: str, *, timeout_s: float = 0) -> str:
        """Run a shell command and return its output as text."""
        timeout = self._resolve_timeout(timeout_s)

        def attempt() -> str:
            receiver = CollectingOutputReceiver()
            self._transport.execute_shell(command, receiver, timeout)
            return receiver.get_output()

        return self._perform_with_retry(f"shell '{command}'", attempt)

    def execute_adb_command(self, *args: str, timeout_s: float = 0) -> CommandResult:
        """Run a host-side adb command (``root``, ``tcpip``, ``usb``, ``reboot``...)."""
        timeout = self._resolve_timeout(timeout_s)
        return self._perform_with_retry(
            f"adb {' '.join(args)}",
            lambda: self._transport.execute_adb(list(args), timeout),
        )

    def _run_fastboot(self, args: Sequence[str], timeout: float) -> CommandResult:
        try:
            return self._transport.execute_fastboot(list(args), timeout)
        except TRANSIENT_ERRORS as e:
            return CommandResult(status=CommandStatus.EXCEPTION, stderr=str(e), args=list(args))

    def execute_fastboot_command(self, *args: str, timeout_s: float = 0) -> CommandResult:
        """Run a fastboot command with one bootloader recovery and one retry.

        Raises:
          UnsupportedOperationError: fastboot is disabled for this device.
          FastbootCommandError: the retry failed too; carries the second result.
        """
        if not self._options.fastboot_enabled:
            raise UnsupportedOperationError(
                f"fastboot is not enabled for {self.serial}", serial=self.serial
            )
        timeout = self._resolve_timeout(timeout_s)
        result = self._run_fastboot(args, timeout)
        if result.ok():
            return result

        logger.warning(
            f"{self.serial}: fastboot {' '.join(args)} returned {result.status.value}; "
            "recovering bootloader"
        )
        self._recover_bootloader()
        retry = self._run_fastboot(args, timeout)
        if retry.ok():
            return retry
        raise FastbootCommandError(
            f"fastboot {' '.join(args)} failed after bootloader recovery: {retry.status.value}",
            result=retry,
            serial=self.serial,
        )

    def execute_long_fastboot_command(self, *args: str) -> CommandResult:
        return self.execute_fastboot_command(*args, timeout_s=self._options.long_command_timeout_s)

    # ------------------------------------------------------------------
    # device operations
    # ------------------------------------------------------------------

    def is_adb_root(self) -> bool:
        return is_root_uid(self.shell("id"))

    def enable_adb_root(self) -> bool:
        """Restart adbd as root.

        Returns True when already root or once adbd confirms the restart, False
        when no attempt was confirmed.
        """
        if self.is_adb_root():
            return True

        attempts = self._options.root_retry_attempts
        for attempt in range(1, attempts + 1):
            result = self.execute_adb_command("root")
            output = f"{result.stdout}\n{result.stderr}".lower()
            if not any(marker in output for marker in _ROOT_CONFIRMATIONS):
                logger.warning(
                    f"{self.serial}: unexpected 'adb root' output (attempt {attempt}/{attempts}): "
                    f"{output.strip()!r}"
                )
                continue

            if "restarting" in output:
                # adbd drops the connection while it restarts.
                self._monitor.wait_for_not_available(ROOT_RESTART_WAIT_S)
                if self._monitor.wait_for_online(self._options.online_timeout_s) is None:
                    self.recover_device()
            return True

        logger.error(f"{self.serial}: failed to enable adb root after {attempts} attempts")
        return False

    def get_property(self, name: str) -> Optional[str]:
        cached = self._transport.get_property(name)
        if cached:
            return cached
        value = self.shell(f"getprop {name}").strip()
        return value or None

    def get_product_type(self) -> str:
        product = self._transport.get_property(PRODUCT_BOARD_PROP)
        if product:
            return product

        if self._monitor.get_phase() is DevicePhase.BOOTLOADER:
            result = self.execute_fastboot_command("getvar", "product")
            # fastboot prints variables on stderr.
            product = parse_fastboot_product(result.stderr) or ""
        else:
            product = self.shell(f"getprop {PRODUCT_BOARD_PROP}").strip()
            if not product:
                product = self.shell(f"getprop {PRODUCT_DEVICE_PROP}").strip()

        if not product:
            raise DeviceNotAvailableError(
                f"could not determine product type for {self.serial}", serial=self.serial
            )
        return product

    def get_external_store_free_space(self) -> int:
        """Free space on external storage in KB (0 when unknown)."""
        mount = self._monitor.get_mount_point(MNT_EXTERNAL_STORAGE)
        if not mount:
            logger.warning(f"{self.serial}: external storage mount point unknown")
            return 0
        output = self.shell(f"df {mount}")
        free_kb = parse_free_space_kb(output)
        if free_kb == 0:
            logger.warning(f"{self.serial}: could not parse free space from {output!r}")
        return free_kb

    def clear_error_dialogs(self) -> bool:
        """Dismiss ANR/crash dialogs; True once a query finds none."""
        for _ in range(DIALOG_CLEAR_MAX_ROUNDS):
            count = count_error_dialogs(self.shell(DIALOG_QUERY_COMMAND))
            if count == 0:
                return True
            logger.info(f"{self.serial}: dismissing {count} error dialog(s)")
            for _ in range(count):
                self.shell(DISMISS_DIALOG_COMMAND)
        logger.warning(
            f"{self.serial}: error dialogs still present after {DIALOG_CLEAR_MAX_ROUNDS} rounds"
        )
        return False

    def switch_to_adb_tcp(self) -> Optional[str]:
        """Switch adb to TCP mode; returns ``"<ip>:5555"`` or None."""
        ip = self._wifi.get_ip_address()
        if not ip:
            logger.warning(f"{self.serial}: no wifi address; cannot switch to adb over tcp")
            return None
        result = self.execute_adb_command("tcpip", str(ADB_TCP_PORT))
        if not result.ok():
            logger.warning(f"{self.serial}: adb tcpip failed: {result.stderr.strip()}")
            return None
        return f"{ip}:{ADB_TCP_PORT}"

    def switch_to_adb_usb(self) -> bool:
        result = self.execute_adb_command("usb")
        if not result.ok():
            logger.warning(f"{self.serial}: adb usb failed: {result.stderr.strip()}")
        return result.ok()

    # ------------------------------------------------------------------
    # reboot
    # ------------------------------------------------------------------

    def _do_reboot(self, into: Optional[str] = None) -> None:
        if self._monitor.get_phase() is DevicePhase.BOOTLOADER and self._options.fastboot_enabled:
            args = ["reboot-bootloader"] if into == "bootloader" else ["reboot"]
            self.execute_fastboot_command(*args)
            return
        args = ["reboot"] + ([into] if into else [])
        result = self.execute_adb_command(*args)
        if not result.ok():
            logger.warning(f"{self.serial}: adb {' '.join(args)} failed: {result.stderr.strip()}")

    def reboot(self) -> None:
        """Reboot and block until the device is available again."""
        logger.info(f"{self.serial}: rebooting")
        self._do_reboot()
        if (
            self._monitor.wait_for_online(self._options.reboot_timeout_s) is None
            or self._monitor.wait_for_available(self._options.available_timeout_s) is None
        ):
            logger.warning(f"{self.serial}: not available after reboot; recovering")
            self.recover_device()
            return
        self.post_boot_setup()

    def reboot_until_online(self) -> None:
        logger.info(f"{self.serial}: rebooting (until online)")
        self._do_reboot()
        if self._monitor.wait_for_online(self._options.reboot_timeout_s) is None:
            logger.warning(f"{self.serial}: not online after reboot; recovering")
            self._recover(True)

    def reboot_into_bootloader(self) -> None:
        if not self._options.fastboot_enabled:
            raise UnsupportedOperationError(
                f"fastboot is not enabled for {self.serial}", serial=self.serial
            )
        logger.info(f"{self.serial}: rebooting into bootloader")
        self._do_reboot("bootloader")
        if not self._monitor.wait_for_bootloader(self._options.bootloader_timeout_s):
            self._recover_bootloader()

    # ------------------------------------------------------------------
    # encryption
    # ------------------------------------------------------------------

    def is_encryption_supported(self) -> bool:
        if self._encryption_supported is None:
            output = self.shell(ENCRYPTION_PROBE_COMMAND).strip()
            # Without encryption support vdc prints nothing but a newline.
            self._encryption_supported = "enablecrypto" in output
        return self._encryption_supported

    def _require_encryption(self) -> None:
        if not self.is_encryption_supported():
            raise UnsupportedOperationError(
                f"encryption is not supported on {self.serial}", serial=self.serial
            )

    def is_device_encrypted(self) -> bool:
        if not self.is_encryption_supported():
            return False
        return self.shell(f"getprop {CRYPTO_STATE_PROP}").strip() == "encrypted"

    def encrypt_device(self, inplace: bool) -> bool:
        """Encrypt userdata (``inplace`` keeps data, otherwise it is wiped)."""
        self._require_encryption()
        if self.is_device_encrypted():
            return True

        self.enable_adb_root()
        mode = "inplace" if inplace else "wipe"
        command = f"{ENCRYPTION_PROBE_COMMAND} {mode} {self._options.encryption_password}"
        logger.info(f"{self.serial}: encrypting userdata ({mode})")
        # The device reboots mid-command, so a dropped connection is expected.
        try:
            self._transport.execute_shell(
                command, NullOutputReceiver(), self._options.long_command_timeout_s
            )
        except TRANSIENT_ERRORS as e:
            logger.debug(f"{self.serial}: connection dropped during encryption: {e}")

        self._monitor.wait_for_not_available(self._options.command_timeout_s)
        if self._monitor.wait_for_online(self._options.long_command_timeout_s) is None:
            raise DeviceNotAvailableError(
                f"{self.serial} did not come back online after encryption", serial=self.serial
            )
        self.unlock_device()
        return self.is_device_encrypted()

    def unlock_device(self) -> bool:
        self._require_encryption()
        if not self.is_device_encrypted():
            return True

        output = self.shell(f"vdc cryptfs checkpw {self._options.encryption_password}").strip()
        if not _VDC_OK_RE.match(output):
            logger.warning(f"{self.serial}: failed to unlock device: {output!r}")
            return False
        self.shell("vdc cryptfs restart")
        if self._monitor.wait_for_available(self._options.available_timeout_s) is None:
            self.recover_device()
        return True

    def unencrypt_device(self) -> bool:
        """Wipe userdata from the bootloader, leaving the device unencrypted."""
        self._require_encryption()
        if not self.is_device_encrypted():
            return True

        self.reboot_into_bootloader()
        self.execute_long_fastboot_command("erase", "userdata")
        self.execute_long_fastboot_command("erase", "cache")
        self.execute_fastboot_command("reboot")
        if self._monitor.wait_for_available(self._options.reboot_timeout_s) is None:
            self.recover_device()
        return True

    # ------------------------------------------------------------------
    # logs
    # ------------------------------------------------------------------

    def create_logcat_receiver(self) -> LogcatReceiver:
        return LogcatReceiver(
            self._transport,
            max_segment_bytes=self._options.logcat_max_segment_bytes,
            monitor=self._monitor,
            command=self._options.logcat_command,
        )

    def start_logcat(self) -> None:
        with self._logcat_lock:
            if self._logcat is not None:
                logger.debug(f"{self.serial}: logcat already running")
                return
            self._logcat = self.create_logcat_receiver()
            self._logcat.start()

    def get_logcat(self) -> bytes:
        with self._logcat_lock:
            session = self._logcat
        return session.get_logcat_data() if session is not None else b""

    def stop_logcat(self) -> None:
        with self._logcat_lock:
            session, self._logcat = self._logcat, None
        if session is not None:
            session.cancel()

    def get_bugreport(self) -> bytes:
        """Capture a bugreport; returns partial output if the device goes away."""
        attempts: List[CollectingOutputReceiver] = []

        def attempt() -> bytes:
            receiver = CollectingOutputReceiver()
            attempts.append(receiver)
            self._transport.execute_shell(
                BUGREPORT_COMMAND, receiver, self._options.long_command_timeout_s
            )
            return receiver.get_bytes()

        try:
            return self._perform_with_retry("bugreport", attempt)
        except DeviceNotAvailableError as e:
            partial = attempts[-1].get_bytes() if attempts else b""
            logger.warning(
                f"{self.serial}: device unavailable during bugreport ({e}); "
                f"returning {len(partial)} bytes"
            )
            return partial

    # ------------------------------------------------------------------
    # instrumentation / files
    # ------------------------------------------------------------------

    def run_instrumentation_tests(
        self,
        runner: InstrumentationRunner,
        listeners: Sequence[InstrumentationListener],
    ) -> bool:
        """Run `runner` once against `listeners`.

        A transient failure is reported to every listener as a failed run and
        followed by a device recovery; the run is not repeated. Returns True
        when the runner completed, False when it was interrupted and the
        device recovered.
        """
        runner.set_max_time_to_output_response(self._options.command_timeout_s)
        try:
            runner.run(listeners)
            return True
        except TRANSIENT_ERRORS as e:
            message = f"{type(e).__name__}: {e}"
            logger.warning(
                f"{self.serial}: instrumentation {runner.package_name} interrupted ({message}); "
                "recovering"
            )
            report_run_failure(listeners, message)
            self.recover_device()
            return False

    def sync_files(self, local_dir: Union[str, Path], remote_dir: str) -> bool:
        """Push the contents of `local_dir` to `remote_dir`, skipping unchanged files."""
        local = Path(local_dir)
        if not local.is_dir():
            logger.warning(f"{self.serial}: cannot sync {local}: not an existing directory")
            return False
        result = self.execute_adb_command(
            "push",
            "--sync",
            f"{local}/.",
            remote_dir,
            timeout_s=self._options.long_command_timeout_s,
        )
        if not result.ok():
            logger.warning(
                f"{self.serial}: sync of {local} to {remote_dir} failed: {result.stderr.strip()}"
            )
        return result.ok()
