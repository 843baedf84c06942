from __future__ import annotations

import hashlib
import time

from src.executors.base import ExecuteOptions, Executor, ExecutorResult
from src.runtime.errors import EXIT_OK


class DryRunExecutor(Executor):
    """Deterministic offline backend.

    Echoes the last paragraph of the prompt (the user query) so a full run can
    be exercised without any external agent installed. `delay_s` simulates a
    slow backend while still honouring cancellation.
    """

    supports_continuation = True

    def __init__(self, *, name: str = "dry_run", model: str | None = "dry-run", delay_s: float = 0.0) -> None:
        self.name = name
        self.default_model = model
        self.delay_s = float(delay_s)

    def execute(self, prompt: str, options: ExecuteOptions) -> ExecutorResult:
        started = time.monotonic()
        if self.delay_s > 0:
            options.cancel.wait(self.delay_s)
        options.cancel.raise_if_cancelled()

        query = prompt.rsplit("\n\n", 1)[-1].strip()
        token = options.continuation_token
        if token is None:
            token = "dry_" + hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]
        return ExecutorResult(
            output=f"[dry-run:{options.model or self.default_model}] {query}",
            exit_code=EXIT_OK,
            duration_s=time.monotonic() - started,
            continuation_token=token,
        )
