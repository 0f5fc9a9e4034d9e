"""Device option loading (YAML/JSON validated against a bundled schema)."""

from __future__ import annotations

from device_harness.config.device_options import (
    DeviceOptions,
    DeviceOptionsError,
    load_device_options,
)

__all__ = [
    "DeviceOptions",
    "DeviceOptionsError",
    "load_device_options",
]
