from __future__ import annotations

from typing import Any


EXIT_OK = 0
EXIT_FAILED = 1
EXIT_TIMEOUT = 124
EXIT_CANCELLED = 130

TIMEOUT_REASON = "timeout"


class RuntimeFault(RuntimeError):
    """Base class for run/scheduler/queue errors."""


class AlreadyRunning(RuntimeFault):
    """A run is already in progress for the lane; nothing was recorded."""

    def __init__(self, lane: str, *, run_id: str | None = None) -> None:
        super().__init__(f"A run is already in progress for lane {lane!r}.")
        self.lane = lane
        self.run_id = run_id


class ExecutorError(RuntimeFault):
    """Non-zero exit, spawn failure or provider error reported by an executor."""

    def __init__(self, message: str, *, exit_code: int = EXIT_FAILED, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.exit_code = int(exit_code)
        self.details = details or {}


class CancellationError(RuntimeFault):
    exit_code = EXIT_CANCELLED


class RunTimeoutError(RuntimeFault):
    exit_code = EXIT_TIMEOUT


class PersistenceError(RuntimeFault):
    """State store write failed while finalizing a run."""

    def __init__(self, message: str, *, run_id: str | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id
