from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from src.runtime.errors import EXIT_TIMEOUT, TIMEOUT_REASON, AlreadyRunning, ExecutorError, RunTimeoutError
from src.runtime.lane_runs import LaneRunManager
from src.storage.sqlite_store import QueueItem, SQLiteStore


logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 3
BASE_RETRY_DELAY_S = 1.0
MAX_RETRY_DELAY_S = 300.0


def retry_delay_s(attempts: int, *, base_s: float = BASE_RETRY_DELAY_S, max_s: float = MAX_RETRY_DELAY_S) -> float:
    """Delay before the next attempt after `attempts` failures: base * 2**(attempts-1), capped."""
    return min(float(max_s), float(base_s) * (2 ** max(0, int(attempts) - 1)))


class LaneBusy(RuntimeError):
    """Handler signal: the target lane is busy; retry later without using an attempt."""

    def __init__(self, lane: str, *, retry_after_s: float | None = None) -> None:
        super().__init__(f"Lane {lane!r} is busy.")
        self.lane = lane
        self.retry_after_s = retry_after_s


class QueueManager:
    """Durable FIFO of background tasks stored in SQLite.

    Claims are atomic across threads and processes; every transition is a
    single transaction. Items are plain JSON payloads.
    """

    def __init__(
        self,
        *,
        db_path: str,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        backoff_base_s: float = BASE_RETRY_DELAY_S,
        backoff_max_s: float = MAX_RETRY_DELAY_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = db_path
        self.max_attempts = int(max_attempts)
        self.backoff_base_s = float(backoff_base_s)
        self.backoff_max_s = float(backoff_max_s)
        self._clock = clock

    def _open_store(self) -> SQLiteStore:
        return SQLiteStore(self._db_path)

    def _backoff(self, attempts: int) -> float:
        return retry_delay_s(attempts, base_s=self.backoff_base_s, max_s=self.backoff_max_s)

    def enqueue(self, payload: dict[str, Any], *, max_attempts: int | None = None, delay_s: float = 0.0) -> str:
        store = self._open_store()
        try:
            item = store.enqueue_item(
                payload=payload,
                max_attempts=max_attempts or self.max_attempts,
                next_attempt_at=self._clock() + max(0.0, float(delay_s)),
            )
        finally:
            store.close()
        logger.debug("enqueued item_id=%s", item.item_id)
        return item.item_id

    def dequeue_next(self) -> QueueItem | None:
        store = self._open_store()
        try:
            return store.claim_next_queue_item(now=self._clock())
        finally:
            store.close()

    def complete(self, item_id: str, result: str | None = None) -> bool:
        store = self._open_store()
        try:
            return store.complete_queue_item(item_id=item_id, result=result)
        finally:
            store.close()

    def fail(self, item_id: str, error: str) -> QueueItem | None:
        """Record a failed attempt. Returns the updated item (pending for retry, or failed)."""
        store = self._open_store()
        try:
            item = store.fail_queue_item(item_id=item_id, error=error, now=self._clock(), backoff=self._backoff)
        finally:
            store.close()
        if item is not None and item.status == "failed":
            logger.warning("queue item %s failed permanently after %d attempt(s): %s", item_id, item.attempts, error)
        return item

    def defer(self, item_id: str, delay_s: float, *, reason: str | None = None) -> bool:
        store = self._open_store()
        try:
            return store.defer_queue_item(
                item_id=item_id,
                next_attempt_at=self._clock() + max(0.0, float(delay_s)),
                reason=reason,
            )
        finally:
            store.close()

    def get(self, item_id: str) -> QueueItem | None:
        store = self._open_store()
        try:
            return store.get_queue_item(item_id=item_id)
        finally:
            store.close()

    def list_recent(self, limit: int = 50, *, statuses: list[str] | None = None) -> list[QueueItem]:
        store = self._open_store()
        try:
            return store.list_queue_items(limit=limit, statuses=statuses)
        finally:
            store.close()

    def stats(self) -> dict[str, int]:
        store = self._open_store()
        try:
            return store.count_queue_items_by_status()
        finally:
            store.close()


@dataclass(frozen=True)
class LaneRunTask:
    lane: str
    query: str
    executor: str | None = None
    model: str | None = None
    cwd: str | None = None
    attachments: tuple[str, ...] = ()
    timeout_s: float | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, default_lane: str) -> "LaneRunTask":
        query = str(payload.get("query") or "").strip()
        if not query:
            raise ValueError("queue payload is missing 'query'")
        timeout = payload.get("timeout_s")
        return cls(
            lane=str(payload.get("lane") or default_lane),
            query=query,
            executor=payload.get("executor") or None,
            model=payload.get("model") or None,
            cwd=payload.get("cwd") or None,
            attachments=tuple(str(a) for a in (payload.get("attachments") or [])),
            timeout_s=float(timeout) if timeout is not None else None,
        )


class LaneRunDispatcher:
    """Queue handler that turns a payload into a lane run and waits for it."""

    def __init__(self, runs: LaneRunManager, *, default_lane: str, busy_retry_s: float = 5.0) -> None:
        self._runs = runs
        self._default_lane = default_lane
        self._busy_retry_s = float(busy_retry_s)

    def __call__(self, item: QueueItem) -> str:
        task = LaneRunTask.from_payload(item.payload, default_lane=self._default_lane)
        try:
            handle = self._runs.start_run(
                task.lane,
                task.query,
                executor=task.executor,
                model=task.model,
                cwd=task.cwd,
                attachments=task.attachments,
            )
        except AlreadyRunning as e:
            raise LaneBusy(task.lane, retry_after_s=self._busy_retry_s) from e

        outcome = self._runs.wait(handle, task.timeout_s)
        if task.timeout_s is not None and outcome.exit_code == EXIT_TIMEOUT and outcome.error == TIMEOUT_REASON:
            raise RunTimeoutError(f"run {outcome.run_id} timed out after {task.timeout_s:g}s")
        if not outcome.ok:
            raise ExecutorError(
                f"run {outcome.run_id} {outcome.status} (exit {outcome.exit_code}): {outcome.error or ''}".rstrip(": "),
                exit_code=outcome.exit_code,
                details={"run_id": outcome.run_id},
            )
        return outcome.output
