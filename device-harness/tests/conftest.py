from __future__ import annotations

import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[2]
    src = repo_root / "device-harness" / "src"
    src_str = str(src)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)

    # Shared device fakes live under `tests/unit/device`.
    device_tests_root = Path(__file__).resolve().parent / "unit" / "device"
    device_tests_root_str = str(device_tests_root)
    if device_tests_root.is_dir() and device_tests_root_str not in sys.path:
        sys.path.insert(0, device_tests_root_str)


_ensure_src_on_path()
