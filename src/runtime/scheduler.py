from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Iterable

from src.runtime.cron import next_due_after
from src.runtime.errors import EXIT_FAILED, AlreadyRunning, ExecutorError
from src.runtime.lane_runs import LaneRunManager, RunHandle
from src.runtime.notifier import JobExecutionResult, LoggingNotifier, Notifier, should_notify
from src.runtime.schedule_loader import ScheduleSource
from src.storage.sqlite_store import ScheduledJobRecord, SQLiteStore


logger = logging.getLogger(__name__)


class UnknownJobError(KeyError):
    pass


def _log_supervision_error(job_id: str, fut: Future[JobExecutionResult]) -> None:
    if fut.cancelled():
        return
    exc = fut.exception()
    if exc is not None:
        logger.error("supervising job %s failed", job_id, exc_info=exc)


class JobScheduler:
    """Cron-driven trigger for lane runs.

    Each `tick(now)` fires every enabled job whose next due time is `<= now`
    exactly once, then advances that job to its first due time after `now`.
    Boundaries missed while the daemon was busy or asleep collapse into one
    trigger. Runs are supervised on a small pool so a slow job never delays
    the tick loop.
    """

    def __init__(
        self,
        *,
        runs: LaneRunManager,
        db_path: str,
        source: ScheduleSource | None = None,
        notifier: Notifier | None = None,
        tick_interval_s: float = 30.0,
        clock: Callable[[], float] = time.time,
        max_supervisors: int = 4,
    ) -> None:
        self._runs = runs
        self._db_path = db_path
        self._source = source
        self._notifier: Notifier = notifier or LoggingNotifier()
        self._tick_interval_s = float(tick_interval_s)
        self._clock = clock
        self._pool = ThreadPoolExecutor(max_workers=max_supervisors, thread_name_prefix="job-supervisor")

        self._lock = threading.Lock()
        self._next_due: dict[str, float] = {}
        self._cron_of: dict[str, str] = {}
        self._last_tick = float(clock())

        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    def _open_store(self) -> SQLiteStore:
        return SQLiteStore(self._db_path)

    # --- Definitions
    def reload(self, *, force: bool = False) -> bool:
        """Sync job definitions from the schedule files when they changed."""
        if self._source is None or not (force or self._source.changed()):
            return False
        jobs = self._source.load()
        self.register_jobs(jobs, replace=True)
        logger.info("loaded %d scheduled job(s) from %d file(s)", len(jobs), len(self._source.paths))
        return True

    def register_jobs(self, jobs: Iterable[ScheduledJobRecord], *, replace: bool = False) -> None:
        jobs = list(jobs)
        store = self._open_store()
        try:
            with store.transaction():
                for job in jobs:
                    store.upsert_scheduled_job(job)
                if replace:
                    store.delete_scheduled_jobs_except(j.job_id for j in jobs)
        finally:
            store.close()

    def next_due(self, job_id: str) -> float | None:
        with self._lock:
            return self._next_due.get(job_id)

    # --- Ticking
    def tick(self, now: float | None = None) -> list[Future[JobExecutionResult]]:
        """Fire due jobs. Returns the supervision futures of runs started."""
        self.reload()
        now = float(self._clock() if now is None else now)

        store = self._open_store()
        try:
            jobs = store.list_scheduled_jobs(enabled_only=True)
        finally:
            store.close()

        due_jobs: list[ScheduledJobRecord] = []
        with self._lock:
            anchor = self._last_tick
            live = {j.job_id for j in jobs}
            for stale in set(self._next_due) - live:
                del self._next_due[stale]
                self._cron_of.pop(stale, None)

            for job in jobs:
                due = self._next_due.get(job.job_id)
                if due is None or self._cron_of.get(job.job_id) != job.cron:
                    due = next_due_after(job.cron, anchor)
                    self._cron_of[job.job_id] = job.cron
                    if due is None:
                        self._next_due.pop(job.job_id, None)
                        continue
                    self._next_due[job.job_id] = due
                if due <= now:
                    following = next_due_after(job.cron, now)
                    if following is None:
                        del self._next_due[job.job_id]
                    else:
                        self._next_due[job.job_id] = following
                    due_jobs.append(job)
            self._last_tick = max(self._last_tick, now)

        futures: list[Future[JobExecutionResult]] = []
        for job in due_jobs:
            try:
                fut = self._trigger(job, at=now)
            except Exception as e:
                logger.exception("job %s trigger failed", job.job_id)
                self._record_trigger_failure(job, at=now, error=e)
                continue
            if fut is not None:
                futures.append(fut)
        return futures

    def trigger_job(self, job_id: str) -> Future[JobExecutionResult] | None:
        """Run a job now, regardless of its schedule or `enabled` flag.

        Returns None when the job's lane is busy (the skip is recorded). A job
        that cannot start has its failure recorded and the error re-raised.
        """
        store = self._open_store()
        try:
            job = store.get_scheduled_job(job_id=job_id)
        finally:
            store.close()
        if job is None:
            raise UnknownJobError(job_id)
        return self._trigger(job, at=float(self._clock()), reraise=True)

    def _trigger(
        self, job: ScheduledJobRecord, *, at: float, reraise: bool = False
    ) -> Future[JobExecutionResult] | None:
        try:
            handle = self._runs.start_run(
                job.lane,
                job.query,
                executor=job.executor,
                model=job.model,
                context_files=job.context_files,
            )
        except AlreadyRunning as e:
            logger.info("job %s skipped: lane %s busy (run_id=%s)", job.job_id, job.lane, e.run_id)
            store = self._open_store()
            try:
                store.record_job_skip(job_id=job.job_id, at=at, reason="lane_busy")
            finally:
                store.close()
            return None
        except (ExecutorError, ValueError) as e:
            logger.error("job %s could not start: %s", job.job_id, e)
            self._finish(job, started_at=at, run_id=None, success=False, exit_code=EXIT_FAILED, output="", error=str(e))
            if reraise:
                raise
            return None

        logger.info("job %s triggered run_id=%s lane=%s", job.job_id, handle.run_id, job.lane)
        fut = self._pool.submit(self._supervise, job, handle, at)
        fut.add_done_callback(lambda f: _log_supervision_error(job.job_id, f))
        return fut

    def _record_trigger_failure(self, job: ScheduledJobRecord, *, at: float, error: Exception) -> None:
        try:
            self._finish(
                job,
                started_at=at,
                run_id=None,
                success=False,
                exit_code=EXIT_FAILED,
                output="",
                error=f"trigger_failed: {error}",
            )
        except Exception:
            logger.exception("could not record trigger failure for job %s", job.job_id)

    def _supervise(self, job: ScheduledJobRecord, handle: RunHandle, started_at: float) -> JobExecutionResult:
        outcome = self._runs.wait(handle, job.timeout_s)
        return self._finish(
            job,
            started_at=started_at,
            run_id=outcome.run_id,
            success=outcome.ok,
            exit_code=outcome.exit_code,
            output=outcome.output,
            error=outcome.error,
        )

    def _finish(
        self,
        job: ScheduledJobRecord,
        *,
        started_at: float,
        run_id: str | None,
        success: bool,
        exit_code: int,
        output: str,
        error: str | None,
    ) -> JobExecutionResult:
        completed_at = float(self._clock())
        store = self._open_store()
        try:
            store.record_job_outcome(
                job_id=job.job_id,
                started_at=started_at,
                completed_at=completed_at,
                success=success,
                exit_code=exit_code,
                run_id=run_id,
                error=error,
            )
        finally:
            store.close()

        result = JobExecutionResult(
            job_id=job.job_id,
            job_name=job.name,
            source_file=job.source_file,
            started_at=started_at,
            completed_at=completed_at,
            success=success,
            output=output,
            exit_code=exit_code,
            run_id=run_id,
            error=error,
        )
        if should_notify(result, notify_on_success=job.notify_on_success, notify_on_failure=job.notify_on_failure):
            try:
                self._notifier.notify(result)
            except Exception:
                logger.exception("notifier failed for job %s", job.job_id)
        return result

    # --- Lifecycle
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            next_due = dict(self._next_due)
        return {
            "running": self.running,
            "tick_interval_s": self._tick_interval_s,
            "schedule_files": list(self._source.paths) if self._source else [],
            "next_due": next_due,
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self.reload(force=True)
        self._thread = threading.Thread(target=self._run_loop, name="homer-scheduler", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        """Stop ticking. In-flight runs keep going and are still recorded."""
        self._stop.set()
        t = self._thread
        if t is not None:
            t.join(timeout=timeout_s)
        self._pool.shutdown(wait=False)

    def _run_loop(self) -> None:
        while not self._stop.wait(self._tick_interval_s):
            try:
                self.tick()
            except Exception:
                # Never let one bad tick kill the scheduler.
                logger.exception("scheduler tick failed")
