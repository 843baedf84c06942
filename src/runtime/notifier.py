from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol


MAX_OUTPUT_LENGTH = 3500
TRUNCATION_SUFFIX = "\n\n... (truncated)"


@dataclass(frozen=True)
class JobExecutionResult:
    job_id: str
    job_name: str
    source_file: str
    started_at: float
    completed_at: float
    success: bool
    output: str
    exit_code: int
    run_id: str | None = None
    error: str | None = None

    @property
    def duration_s(self) -> float:
        return max(0.0, self.completed_at - self.started_at)


class Notifier(Protocol):
    def notify(self, result: JobExecutionResult) -> None: ...


def format_duration(seconds: float) -> str:
    ms = int(round(seconds * 1000))
    if ms < 1000:
        return f"{ms}ms"
    secs = int(round(ms / 1000))
    if secs < 60:
        return f"{secs}s"
    return f"{secs // 60}m {secs % 60}s"


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_SUFFIX


def format_job_result(result: JobExecutionResult) -> str:
    status = "completed" if result.success else "failed"
    message = f"{result.job_name} {status}\nDuration: {format_duration(result.duration_s)}\n\n"
    if result.success:
        return message + _truncate(result.output, MAX_OUTPUT_LENGTH)

    message += f"Error: {result.error or 'Unknown error'}"
    if result.output:
        message += "\n\nOutput:\n" + _truncate(result.output, MAX_OUTPUT_LENGTH // 2)
    return message


def should_notify(result: JobExecutionResult, *, notify_on_success: bool, notify_on_failure: bool) -> bool:
    return notify_on_success if result.success else notify_on_failure


class LoggingNotifier:
    """Default notifier: writes the formatted result to the log."""

    def __init__(self, name: str = "homer.notify") -> None:
        self._log = logging.getLogger(name)

    def notify(self, result: JobExecutionResult) -> None:
        level = logging.INFO if result.success else logging.WARNING
        self._log.log(level, "%s", format_job_result(result))


class CollectingNotifier:
    """Keeps every notification in memory (handy for embedding and tests)."""

    def __init__(self) -> None:
        self.results: list[JobExecutionResult] = []

    def notify(self, result: JobExecutionResult) -> None:
        self.results.append(result)
