from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml
from jsonschema import Draft202012Validator

from device_harness.device.types import RecoveryMode

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "device_options.schema.json"


class DeviceOptionsError(RuntimeError):
    pass


_OPTION_FILE_LOADERS: Dict[str, Callable[[str], Any]] = {
    ".yaml": yaml.safe_load,
    ".yml": yaml.safe_load,
    ".json": json.loads,
}


def read_options_file(path: Path) -> Dict[str, Any]:
    """Read a YAML or JSON options file; an empty file means no overrides."""
    loader = _OPTION_FILE_LOADERS.get(path.suffix.lower())
    if loader is None:
        raise ValueError(f"device options must be a .yaml, .yml or .json file: {path}")
    data = loader(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise DeviceOptionsError(f"{path}: device options must be a mapping")
    return data


def load_schema(schema_path: Path = SCHEMA_PATH) -> Dict[str, Any]:
    return json.loads(schema_path.read_text(encoding="utf-8"))


@lru_cache(maxsize=1)
def _options_validator() -> Draft202012Validator:
    return Draft202012Validator(load_schema())


def check_options(data: Dict[str, Any], *, where: str) -> None:
    """Raise DeviceOptionsError naming every offending key in `data`."""
    errors = sorted(_options_validator().iter_errors(data), key=lambda e: e.json_path)
    if errors:
        problems = "; ".join(f"{e.json_path}: {e.message}" for e in errors)
        raise DeviceOptionsError(f"invalid device options in {where}: {problems}")


@dataclass(frozen=True)
class DeviceOptions:
    """Knobs for a single managed device.

    Timeouts are seconds. ``max_retry_attempts`` counts retries after the
    first attempt, so a command is tried at most ``max_retry_attempts + 1``
    times before the device is declared unresponsive.
    """

    command_timeout_s: float = 120.0
    long_command_timeout_s: float = 600.0
    recovery_mode: RecoveryMode = RecoveryMode.FULL
    fastboot_enabled: bool = True
    max_retry_attempts: int = 2
    root_retry_attempts: int = 3
    logcat_max_segment_bytes: int = 10 * 1024 * 1024
    logcat_command: str = "logcat -v threadtime"
    reboot_timeout_s: float = 240.0
    online_timeout_s: float = 60.0
    available_timeout_s: float = 240.0
    bootloader_timeout_s: float = 60.0
    disable_keyguard: bool = True
    encryption_password: str = "android"
    adb_path: str = "adb"
    fastboot_path: str = "fastboot"

    @classmethod
    def from_mapping(cls, data: Dict[str, Any], *, where: str = "<options>") -> "DeviceOptions":
        check_options(dict(data), where=where)
        kwargs = dict(data)
        if "recovery_mode" in kwargs:
            kwargs["recovery_mode"] = RecoveryMode(kwargs["recovery_mode"])
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["recovery_mode"] = self.recovery_mode.value
        return out

    def with_overrides(self, **overrides: Any) -> "DeviceOptions":
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise DeviceOptionsError(f"Unknown device option(s): {', '.join(unknown)}")
        merged = self.to_dict()
        merged.update({k: v for k, v in overrides.items() if v is not None})
        if isinstance(merged.get("recovery_mode"), RecoveryMode):
            merged["recovery_mode"] = merged["recovery_mode"].value
        return DeviceOptions.from_mapping(merged, where="<overrides>")


def load_device_options(path: Optional[Path]) -> DeviceOptions:
    """Load options from YAML/JSON; ``None`` yields the defaults."""
    if path is None:
        return DeviceOptions()
    data = read_options_file(Path(path))
    return DeviceOptions.from_mapping(data, where=str(path))
