"""device-harness: command execution and recovery for a single Android device.

- `device_harness.device`: transport, state monitor, recovery and the
  `ManagedDevice` execution engine
- `device_harness.config`: device options (YAML/JSON + JSON Schema)
- `device_harness.tools`: command-line probes
"""

__all__ = [
    "config",
    "device",
    "tools",
]
