"""Parsers for raw device command output.

Parsers never raise on malformed input; they return None/0 and let the caller
decide whether the missing value matters.
"""

from __future__ import annotations

import re
from typing import Dict, Optional

from device_harness.device.types import DevicePhase

_FASTBOOT_PRODUCT_RE = re.compile(r"^product:[ \t]*(\S+)", re.MULTILINE)
_DF_COLON_RE = re.compile(r":\s.*?(\d+)K available")
_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)([KMG])?$", re.IGNORECASE)
_UNIT_TO_KB = {"K": 1, "M": 1024, "G": 1024 * 1024}
_INET_RE = re.compile(r"\binet\s+(\d{1,3}(?:\.\d{1,3}){3})")

ERROR_DIALOG_MARKERS: tuple[str, ...] = (
    "AppNotRespondingDialog",
    "AppErrorDialog",
    "StrictModeViolationDialog",
)
_ERROR_DIALOG_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(m) for m in ERROR_DIALOG_MARKERS) + r")@[0-9a-fA-F]+"
)


def parse_fastboot_product(txt: str) -> Optional[str]:
    """Parse `fastboot getvar product` output (printed on stderr)."""

    m = _FASTBOOT_PRODUCT_RE.search(txt or "")
    return m.group(1) if m else None


def parse_size_kb(token: str) -> Optional[int]:
    """Convert a df size token ('2G', '787M', '1024K', '4096') to KB.

    Tokens without a unit suffix are 1K blocks.
    """

    m = _SIZE_RE.match(str(token).strip())
    if not m:
        return None
    value = float(m.group(1))
    unit = (m.group(2) or "K").upper()
    return int(value * _UNIT_TO_KB[unit])


def parse_free_space_kb(df_output: str) -> int:
    """Return available KB from `df <mount>` output, or 0 if unparseable.

    Two formats are understood:

    * legacy single line:
      ``/mnt/sdcard: 3864064K total, 1282880K used, 2581184K available (block size 32768)``
    * table: ``Filesystem Size Used Free Blksize`` followed by rows; the fourth
      column is the free/available amount.
    """

    txt = df_output or ""
    m = _DF_COLON_RE.search(txt)
    if m:
        return int(m.group(1))

    for raw_line in reversed(txt.splitlines()):
        parts = raw_line.split()
        if len(parts) < 4 or parts[0].lower() == "filesystem":
            continue
        free = parse_size_kb(parts[3])
        if free is not None:
            return free
    return 0


def count_error_dialogs(dumpsys_output: str) -> int:
    return len(_ERROR_DIALOG_RE.findall(dumpsys_output or ""))


def is_root_uid(id_output: str) -> bool:
    return "uid=0(root)" in (id_output or "")


def parse_inet_address(ip_output: str) -> Optional[str]:
    m = _INET_RE.search(ip_output or "")
    return m.group(1) if m else None


def parse_device_list(txt: str) -> Dict[str, DevicePhase]:
    """Map serials to phases from `adb devices` or `fastboot devices` output."""

    devices: Dict[str, DevicePhase] = {}
    for raw in (txt or "").splitlines():
        line = raw.strip()
        if not line or line.startswith("*") or line.startswith("List of devices"):
            continue
        parts = line.split()
        if len(parts) >= 2:
            devices[parts[0]] = DevicePhase.from_adb_state(parts[1])
    return devices
