from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable


@runtime_checkable
class InstrumentationListener(Protocol):
    def test_run_failed(self, message: str) -> None: ...


@runtime_checkable
class InstrumentationRunner(Protocol):
    """Runs one instrumentation package and reports to the listeners."""

    @property
    def package_name(self) -> str: ...

    def set_max_time_to_output_response(self, timeout_s: float) -> None: ...

    def run(self, listeners: Sequence[InstrumentationListener]) -> None: ...


def report_run_failure(listeners: Sequence[InstrumentationListener], message: str) -> None:
    for listener in listeners:
        listener.test_run_failed(message)
