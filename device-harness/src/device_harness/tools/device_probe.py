from __future__ import annotations

import argparse
import json
import logging
import os
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from device_harness.config.device_options import (
    DeviceOptions,
    DeviceOptionsError,
    load_device_options,
)
from device_harness.device.adb_transport import AdbTransport
from device_harness.device.errors import DeviceError
from device_harness.device.managed_device import ManagedDevice
from device_harness.device.parsing import parse_device_list
from device_harness.device.recovery import WaitDeviceRecovery
from device_harness.device.state_monitor import PollingStateMonitor
from device_harness.device.types import DevicePhase

logger = logging.getLogger(__name__)

_ADB_DEVICES_TIMEOUT_S = 5.0


def _env_float(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    return float(raw) if raw else None


def detect_single_device_serial(*, adb_path: str = "adb") -> str:
    """Pick the one device adb reports online; exits when the choice is ambiguous."""
    try:
        proc = subprocess.run(
            [adb_path, "devices"],
            capture_output=True,
            text=True,
            timeout=_ADB_DEVICES_TIMEOUT_S,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        raise SystemExit(f"cannot list adb devices with {adb_path}: {e}") from e

    online = [
        serial
        for serial, phase in parse_device_list(proc.stdout).items()
        if phase is DevicePhase.ONLINE
    ]
    if len(online) != 1:
        found = ", ".join(online) or "none"
        raise SystemExit(
            f"expected exactly one online device (found: {found}); "
            "pass --serial or set $DH_ANDROID_SERIAL"
        )
    return online[0]


def build_managed_device(*, serial: str, options: DeviceOptions) -> ManagedDevice:
    transport = AdbTransport(
        serial=serial,
        adb_path=options.adb_path,
        fastboot_path=options.fastboot_path,
        timeout_s=options.command_timeout_s,
    )
    monitor = PollingStateMonitor(
        transport,
        online_timeout_s=options.online_timeout_s,
        available_timeout_s=options.available_timeout_s,
        bootloader_timeout_s=options.bootloader_timeout_s,
    )
    recovery = WaitDeviceRecovery(
        online_wait_s=options.online_timeout_s,
        available_wait_s=options.available_timeout_s,
        bootloader_wait_s=options.bootloader_timeout_s,
        command_timeout_s=options.command_timeout_s,
    )
    monitor.refresh_phase()
    return ManagedDevice(transport, monitor, recovery, options=options)


def run_device_probe(
    *,
    out_dir: Path,
    device: ManagedDevice,
    logcat_s: float = 0.0,
) -> Dict[str, Any]:
    """Query basic device facts and write them to ``device_probe.json``.

    Individual query failures are recorded under ``errors`` rather than
    aborting the probe.
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    info: Dict[str, Any] = {
        "captured_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "serial": device.serial,
        "phase": device.get_phase().value,
        "errors": {},
    }

    queries = {
        "product_type": device.get_product_type,
        "is_root": device.is_adb_root,
        "external_free_kb": device.get_external_store_free_space,
    }
    for key, query in queries.items():
        try:
            info[key] = query()
        except DeviceError as e:
            logger.warning(f"{device.serial}: {key} query failed: {e}")
            info[key] = None
            info["errors"][key] = f"{type(e).__name__}: {e}"

    if logcat_s > 0:
        device.start_logcat()
        try:
            time.sleep(logcat_s)
            data = device.get_logcat()
        finally:
            device.stop_logcat()
        logcat_path = out_dir / "logcat.txt"
        logcat_path.write_bytes(data)
        info["artifacts"] = {"logcat": str(logcat_path.relative_to(out_dir))}

    report = json.dumps(info, indent=2, sort_keys=True)
    (out_dir / "device_probe.json").write_text(report + "\n", encoding="utf-8")
    return info


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Probe a connected Android device.")
    parser.add_argument(
        "--out_dir",
        type=Path,
        default=Path("runs/device_probe"),
        help="Output directory (default: runs/device_probe)",
    )
    parser.add_argument(
        "--serial",
        type=str,
        default=os.environ.get("DH_ANDROID_SERIAL"),
        help="adb device serial (default: $DH_ANDROID_SERIAL)",
    )
    parser.add_argument(
        "--options",
        type=Path,
        default=None,
        help="Device options YAML/JSON file",
    )
    parser.add_argument(
        "--adb_path",
        type=str,
        default=os.environ.get("DH_ADB_PATH"),
        help="Path to adb binary (default: options file, adb, or $DH_ADB_PATH)",
    )
    parser.add_argument(
        "--fastboot_path",
        type=str,
        default=os.environ.get("DH_FASTBOOT_PATH"),
        help="Path to fastboot binary (default: options file, fastboot, or $DH_FASTBOOT_PATH)",
    )
    parser.add_argument(
        "--timeout_s",
        type=float,
        default=_env_float("DH_ADB_TIMEOUT_S"),
        help="Timeout for device commands (default: options file or $DH_ADB_TIMEOUT_S)",
    )
    parser.add_argument(
        "--logcat_s",
        type=float,
        default=0.0,
        help="Capture logcat for this many seconds (default: 0, disabled)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Do not print anything (artifacts are still written).",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        options = load_device_options(args.options).with_overrides(
            adb_path=args.adb_path,
            fastboot_path=args.fastboot_path,
            command_timeout_s=args.timeout_s,
        )
    except (FileNotFoundError, DeviceOptionsError) as e:
        raise SystemExit(f"Invalid device options: {e}")

    if not args.serial:
        args.serial = detect_single_device_serial(adb_path=options.adb_path)

    device = build_managed_device(serial=str(args.serial), options=options)
    info = run_device_probe(out_dir=args.out_dir, device=device, logcat_s=float(args.logcat_s))
    if not args.quiet:
        print(json.dumps(info, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
