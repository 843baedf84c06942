from __future__ import annotations

import logging
import time
from typing import Any, Callable

from src.config.load_config import AppConfig
from src.executors.registry import ExecutorRegistry
from src.runtime.lane_runs import LaneRunManager
from src.runtime.notifier import Notifier
from src.runtime.queue import LaneRunDispatcher, QueueManager
from src.runtime.schedule_loader import ScheduleSource
from src.runtime.scheduler import JobScheduler
from src.runtime.worker import QueueWorker, WorkerConfig
from src.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)


class HomerDaemon:
    """Wires the run manager, scheduler and queue worker over one database."""

    def __init__(
        self,
        config: AppConfig,
        *,
        registry: ExecutorRegistry | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.db_path = config.daemon.db_path
        self.registry = registry or ExecutorRegistry.from_config(config)
        self.runs = LaneRunManager(config=config, registry=self.registry)
        self.queue = QueueManager(
            db_path=self.db_path,
            max_attempts=config.queue.max_attempts,
            backoff_base_s=config.queue.backoff_base_s,
            backoff_max_s=config.queue.backoff_max_s,
            clock=clock,
        )
        self.worker = QueueWorker(
            queue=self.queue,
            handler=LaneRunDispatcher(
                self.runs,
                default_lane=config.default_lane,
                busy_retry_s=config.queue.busy_lane_delay_s,
            ),
            config=WorkerConfig(
                poll_interval_s=config.queue.poll_interval_s,
                busy_lane_delay_s=config.queue.busy_lane_delay_s,
                finalize_retries=config.daemon.persist_retries,
            ),
        )
        self.scheduler = JobScheduler(
            runs=self.runs,
            db_path=self.db_path,
            source=ScheduleSource(
                config.scheduler.schedule_files,
                default_lane=config.default_lane,
                default_timeout_s=config.scheduler.default_timeout_s,
            ),
            notifier=notifier,
            tick_interval_s=config.scheduler.tick_interval_s,
            clock=clock,
        )
        self.reconciled: dict[str, int] = {"runs": 0, "queue_items": 0}

    def reconcile(self) -> dict[str, int]:
        """Repair state left behind by a previous process."""
        store = SQLiteStore(self.db_path)
        try:
            runs = store.reconcile_running_runs()
            items = store.reconcile_running_queue_items()
        finally:
            store.close()
        self.reconciled = {"runs": int(runs), "queue_items": int(items)}
        if runs or items:
            logger.warning("reconciled %d stale run(s) and %d queue item(s) on startup", runs, items)
        return self.reconciled

    def start(self, *, reconcile: bool = True) -> None:
        if reconcile:
            self.reconcile()
        if self.config.queue.enabled:
            self.worker.start()
        if self.config.scheduler.enabled:
            self.scheduler.start()
        logger.info(
            "daemon started db=%s worker=%s scheduler=%s executors=%s",
            self.db_path,
            self.worker.running,
            self.scheduler.running,
            ",".join(self.registry.names()),
        )

    def stop(self) -> None:
        self.scheduler.stop()
        self.worker.stop()
        self.runs.shutdown(cancel=True)
        logger.info("daemon stopped")

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "db_path": self.db_path,
            "active_lanes": self.runs.active_lanes(),
            "worker": {"enabled": self.config.queue.enabled, **self.worker.status_snapshot()},
            "scheduler": {"enabled": self.config.scheduler.enabled, **self.scheduler.status_snapshot()},
            "executors": self.registry.names(),
            "reconciled": dict(self.reconciled),
        }
