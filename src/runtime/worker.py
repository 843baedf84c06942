from __future__ import annotations

import logging
import sqlite3
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any, Callable

from src.runtime.errors import PersistenceError
from src.runtime.queue import LaneBusy, QueueManager
from src.storage.sqlite_store import QueueItem


logger = logging.getLogger(__name__)

TaskHandler = Callable[[QueueItem], Any]


@dataclass(frozen=True)
class WorkerConfig:
    poll_interval_s: float = 1.0
    busy_lane_delay_s: float = 5.0
    finalize_retries: int = 3
    finalize_backoff_s: float = 0.05


class QueueWorker:
    """Single-threaded background worker that drains the task queue.

    `stop()` is observed before the next poll; an item already claimed runs to
    completion first.
    """

    def __init__(
        self,
        *,
        queue: QueueManager,
        handler: TaskHandler,
        config: WorkerConfig | None = None,
    ) -> None:
        self._queue = queue
        self._handler = handler
        self._config = config or WorkerConfig()
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._processed = 0
        self._current: str | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "poll_interval_s": float(self._config.poll_interval_s),
            "processed": self._processed,
            "current_item_id": self._current,
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="homer-queue-worker", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is None:
            return
        t.join(timeout=timeout_s)

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                handled = self.run_once()
            except Exception:
                # Never crash the worker loop (e.g. the DB is briefly locked).
                logger.exception("queue worker iteration failed")
                handled = False
            if not handled:
                self._stop.wait(self._config.poll_interval_s)

    def run_once(self) -> bool:
        """Claim and process at most one item. Returns False when the queue had nothing due."""
        item = self._queue.dequeue_next()
        if item is None:
            return False

        self._current = item.item_id
        try:
            self._process(item)
        finally:
            self._current = None
            self._processed += 1
        return True

    def _process(self, item: QueueItem) -> None:
        logger.info("processing queue item %s (attempt %d/%d)", item.item_id, item.attempts + 1, item.max_attempts)
        try:
            result = self._handler(item)
        except LaneBusy as e:
            delay = e.retry_after_s if e.retry_after_s is not None else self._config.busy_lane_delay_s
            logger.info("queue item %s deferred %.1fs: lane %s busy", item.item_id, delay, e.lane)
            self._finalize(item.item_id, "defer", lambda: self._queue.defer(item.item_id, delay, reason=str(e)))
            return
        except Exception as e:
            logger.warning("queue item %s failed: %s", item.item_id, e)
            logger.debug("%s", traceback.format_exc())
            error = f"{type(e).__name__}: {e}"
            self._finalize(item.item_id, "fail", lambda: self._queue.fail(item.item_id, error))
            return

        text = None if result is None else str(result)
        self._finalize(item.item_id, "complete", lambda: self._queue.complete(item.item_id, result=text))

    def _finalize(self, item_id: str, action: str, write: Callable[[], Any]) -> None:
        """Apply the item's final state write, retrying on `sqlite3.Error`.

        When every attempt fails the item stays `running` until the next
        startup reconcile; the failure is logged, not raised.
        """
        attempts = max(1, int(self._config.finalize_retries))
        last_error: Exception | None = None
        for attempt in range(attempts):
            try:
                write()
                return
            except sqlite3.Error as e:
                last_error = e
                logger.warning(
                    "queue item %s: %s failed (attempt %d/%d): %s", item_id, action, attempt + 1, attempts, e
                )
                time.sleep(self._config.finalize_backoff_s * (2**attempt))

        err = PersistenceError(f"Could not {action} queue item {item_id}: {last_error}")
        logger.error("%s", err)
