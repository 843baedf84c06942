from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Callable

from src.config.load_config import AppConfig, parse_app_config
from src.executors.base import ExecuteOptions, Executor, ExecutorResult
from src.runtime.errors import CancellationError


class StubExecutor(Executor):
    """Scriptable executor for race control in tests.

    With `block=True` it waits for `release` (or for cancellation, unless
    `ignore_cancel` is set) before reporting its configured result.
    """

    def __init__(
        self,
        name: str = "stub",
        *,
        output: str = "ok",
        exit_code: int = 0,
        token: str | None = "tok-1",
        block: bool = False,
        ignore_cancel: bool = False,
        error: Exception | None = None,
        context: str = "",
        memory_hint: bool = False,
        continuation: bool = True,
    ) -> None:
        self.name = name
        self.default_model = "stub-model"
        self.output = output
        self.exit_code = exit_code
        self.token = token
        self.block = block
        self.ignore_cancel = ignore_cancel
        self.error = error
        self.context = context
        self.uses_memory_hint = memory_hint
        self.supports_continuation = continuation
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls: list[tuple[str, ExecuteOptions]] = []

    def system_context(self) -> str:
        return self.context

    def execute(self, prompt: str, options: ExecuteOptions) -> ExecutorResult:
        self.calls.append((prompt, options))
        self.started.set()
        if self.block:
            while not self.release.wait(0.01):
                if options.cancel.cancelled and not self.ignore_cancel:
                    raise CancellationError(options.cancel.reason or "cancelled")
        if self.error is not None:
            raise self.error
        return ExecutorResult(
            output=self.output,
            exit_code=self.exit_code,
            duration_s=0.0,
            continuation_token=self.token,
        )


def wait_until(predicate: Callable[[], bool], timeout_s: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def make_config(db_path: str, **sections: dict[str, Any]) -> AppConfig:
    raw: dict[str, Any] = {
        "daemon": {"db_path": db_path, "cancel_grace_s": 1.0, "max_concurrent_runs": 4},
        "scheduler": {"enabled": False, "tick_interval_s": 60.0},
        "queue": {"enabled": False, "poll_interval_s": 0.05, "backoff_base_s": 1.0},
        "executors": {"dry_run": {"kind": "dry_run"}},
    }
    for name, values in sections.items():
        raw.setdefault(name, {}).update(values)
    return parse_app_config(raw, base_dir=Path(db_path).parent)
