from __future__ import annotations

import logging
import sqlite3
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Sequence

from src.config.load_config import AppConfig
from src.executors.base import ExecuteOptions, Executor, ExecutorResult
from src.executors.registry import ExecutorRegistry, UnknownExecutorError
from src.runtime.errors import (
    EXIT_CANCELLED,
    EXIT_FAILED,
    EXIT_OK,
    EXIT_TIMEOUT,
    TIMEOUT_REASON,
    AlreadyRunning,
    ExecutorError,
    PersistenceError,
)
from src.runtime.prompt import PromptParts, build_prompt, load_context_files
from src.storage.sqlite_store import SQLiteStore
from src.utils.cancel import CancellationToken


logger = logging.getLogger(__name__)

# Per-run lifecycle. Only the first transition out of RUNNING counts.
RUNNING = "running"
CANCELLING = "cancelling"
SETTLED = "settled"


@dataclass(frozen=True)
class RunOutcome:
    run_id: str
    lane: str
    executor: str
    model: str | None
    status: str
    exit_code: int
    output: str
    error: str | None
    continuation_token: str | None
    duration_s: float

    @property
    def ok(self) -> bool:
        return self.status == "completed" and self.exit_code == EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "lane": self.lane,
            "executor": self.executor,
            "model": self.model,
            "status": self.status,
            "exit_code": self.exit_code,
            "output": self.output,
            "error": self.error,
            "duration_s": self.duration_s,
        }


class RunHandle:
    """What `start_run` returns: the run's identity plus a way to wait for its result."""

    def __init__(
        self,
        *,
        run_id: str,
        lane: str,
        executor: str,
        model: str | None,
        started_at: float,
        future: Future[RunOutcome],
    ) -> None:
        self.run_id = run_id
        self.lane = lane
        self.executor = executor
        self.model = model
        self.started_at = started_at
        self._future = future

    def result(self, timeout: float | None = None) -> RunOutcome:
        """Block until the run is finalized. Raises `TimeoutError` on expiry."""
        return self._future.result(timeout=timeout)

    def done(self) -> bool:
        return self._future.done()

    def snapshot(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "lane": self.lane,
            "executor": self.executor,
            "model": self.model,
            "started_at": self.started_at,
        }


@dataclass
class _ActiveRun:
    handle: RunHandle
    future: Future[RunOutcome]
    cancel: CancellationToken = field(default_factory=CancellationToken)
    lock: threading.Lock = field(default_factory=threading.Lock)
    state: str = RUNNING
    cancel_reason: str | None = None
    settled: threading.Event = field(default_factory=threading.Event)
    result: ExecutorResult | None = None
    error: BaseException | None = None

    def request_cancel(self, reason: str) -> bool:
        """First call wins; repeats while cancelling are accepted no-ops.

        Returns False once the executor has settled on its own: the outcome is
        already decided even if the driver has not released the lane yet.
        """
        with self.lock:
            if self.state == CANCELLING:
                return True
            if self.state != RUNNING:
                return False
            self.state = CANCELLING
            self.cancel_reason = reason
        self.cancel.request_cancel(reason)
        return True

    def record_settlement(self, *, result: ExecutorResult | None, error: BaseException | None) -> None:
        with self.lock:
            self.result = result
            self.error = error
            if self.state == RUNNING:
                self.state = SETTLED
        self.settled.set()


class LaneRunManager:
    """Runs at most one executor invocation per lane.

    `start_run` resolves the executor and session, records the run and hands
    execution to a driver thread. The driver waits for the executor (or for a
    cancellation plus a bounded grace period), decides the final status and
    persists it. Whichever of cancel and completion is recorded first decides
    the outcome.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        registry: ExecutorRegistry,
        db_path: str | None = None,
        max_workers: int | None = None,
        cancel_grace_s: float | None = None,
        persist_retries: int | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._db_path = db_path or config.daemon.db_path
        self._cancel_grace_s = float(cancel_grace_s if cancel_grace_s is not None else config.daemon.cancel_grace_s)
        self._persist_retries = int(persist_retries if persist_retries is not None else config.daemon.persist_retries)
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or config.daemon.max_concurrent_runs,
            thread_name_prefix="lane-run",
        )
        self._lock = threading.Lock()
        self._active: dict[str, _ActiveRun] = {}
        self._reserved: set[str] = set()
        self._closed = False

    def _open_store(self) -> SQLiteStore:
        return SQLiteStore(self._db_path)

    # --- Queries
    def get_active_run(self, lane: str) -> RunHandle | None:
        with self._lock:
            active = self._active.get(lane)
            return active.handle if active is not None else None

    def active_lanes(self) -> list[str]:
        with self._lock:
            return sorted(self._active)

    def is_busy(self, lane: str) -> bool:
        with self._lock:
            return lane in self._active or lane in self._reserved

    # --- Start
    def start_run(
        self,
        lane: str,
        query: str,
        *,
        executor: str | None = None,
        model: str | None = None,
        cwd: str | None = None,
        attachments: Sequence[str] | None = None,
        context_files: Sequence[str] | None = None,
    ) -> RunHandle:
        """Start a run on `lane`.

        Raises `AlreadyRunning` before recording anything when the lane is busy,
        and `ExecutorError` when the executor name is unknown.
        """
        lane = (lane or self._config.default_lane).strip()
        if not query or not query.strip():
            raise ValueError("query must be a non-empty string")

        with self._lock:
            if self._closed:
                raise RuntimeError("LaneRunManager is shut down")
            if lane in self._active:
                raise AlreadyRunning(lane, run_id=self._active[lane].handle.run_id)
            if lane in self._reserved:
                raise AlreadyRunning(lane)
            self._reserved.add(lane)

        try:
            return self._start_reserved(
                lane,
                query,
                executor=executor,
                model=model,
                cwd=cwd,
                attachments=list(attachments or []),
                context_files=list(context_files or []),
            )
        finally:
            with self._lock:
                self._reserved.discard(lane)

    def _start_reserved(
        self,
        lane: str,
        query: str,
        *,
        executor: str | None,
        model: str | None,
        cwd: str | None,
        attachments: list[str],
        context_files: list[str],
    ) -> RunHandle:
        lane_cfg = self._config.lane(lane)
        store = self._open_store()
        try:
            state = store.get_executor_state(lane=lane)

            executor_name = executor or (state.executor if state else None) or lane_cfg.executor
            executor_name = executor_name or self._registry.default or ""
            try:
                ex = self._registry.get(executor_name)
            except UnknownExecutorError:
                raise ExecutorError(
                    f"Unknown executor {executor_name!r}.",
                    details={"known": self._registry.names()},
                ) from None

            same_session = state is not None and state.executor == executor_name
            resolved_model = (
                model
                or (state.model if same_session and state is not None else None)
                or (lane_cfg.model if lane_cfg.executor in (None, executor_name) else None)
                or ex.default_model
            )
            token = state.continuation_token if same_session and state is not None and ex.supports_continuation else None

            run_cwd = cwd or lane_cfg.cwd
            prompt = build_prompt(
                PromptParts(
                    query=query,
                    system_context=ex.system_context(),
                    context_files=context_files,
                    attachments=attachments,
                    include_memory_hint=ex.uses_memory_hint,
                ),
                context_text=load_context_files(context_files, base_dir=run_cwd),
            )

            record = store.create_run_if_lane_idle(lane=lane, executor=executor_name, model=resolved_model)
            if record is None:
                active_row = store.get_active_run_for_lane(lane=lane)
                raise AlreadyRunning(lane, run_id=str(active_row["run_id"]) if active_row is not None else None)

            try:
                if not same_session:
                    store.set_executor_state(lane=lane, executor=executor_name, model=resolved_model)
                store.mark_run_running(record.run_id)
                store.append_event(
                    record.run_id,
                    "run_started",
                    {"executor": executor_name, "model": resolved_model, "resumed": token is not None},
                )
            except BaseException as e:
                self._abandon(record.run_id, f"start_failed: {e}", store=store)
                raise
        finally:
            store.close()

        future: Future[RunOutcome] = Future()
        handle = RunHandle(
            run_id=record.run_id,
            lane=lane,
            executor=executor_name,
            model=resolved_model,
            started_at=time.time(),
            future=future,
        )
        active = _ActiveRun(handle=handle, future=future)
        options = ExecuteOptions(cwd=run_cwd, continuation_token=token, model=resolved_model, cancel=active.cancel)

        with self._lock:
            self._active[lane] = active
        try:
            self._pool.submit(self._drive, active, ex, prompt, options)
        except BaseException as e:
            with self._lock:
                self._active.pop(lane, None)
            self._abandon(record.run_id, "manager_shut_down" if isinstance(e, RuntimeError) else f"start_failed: {e}")
            raise

        logger.info(
            "run started lane=%s run_id=%s executor=%s model=%s resumed=%s",
            lane,
            record.run_id,
            executor_name,
            resolved_model,
            token is not None,
        )
        return handle

    def _abandon(self, run_id: str, error: str, *, store: SQLiteStore | None = None) -> None:
        """Fail a run row that never reached its executor so the lane frees up."""
        own = store is None
        store = store or self._open_store()
        try:
            store.complete_run(run_id, status="failed", exit_code=EXIT_FAILED, error=error)
        except sqlite3.Error:
            logger.exception("could not fail abandoned run run_id=%s", run_id)
        finally:
            if own:
                store.close()

    # --- Cancel
    def cancel_run(self, lane: str, reason: str = "cancelled") -> bool:
        """Request cancellation of the lane's active run.

        Returns False when nothing is running or the run already settled, including
        the short window where a settled run is still registered while its
        outcome is being persisted; that run finishes with its own status.
        """
        with self._lock:
            active = self._active.get(lane)
        if active is None:
            return False
        accepted = active.request_cancel(reason)
        if accepted:
            logger.info("cancel requested lane=%s run_id=%s reason=%s", lane, active.handle.run_id, reason)
        return accepted

    def wait(self, handle: RunHandle, timeout_s: float | None = None) -> RunOutcome:
        """Wait for `handle` to finalize. Past `timeout_s` the run is cancelled with reason `timeout`."""
        try:
            return handle.result(timeout=timeout_s)
        except TimeoutError:
            logger.warning("run timed out after %.1fs lane=%s run_id=%s", timeout_s, handle.lane, handle.run_id)
            self.cancel_run(handle.lane, TIMEOUT_REASON)
            return handle.result()

    # --- Driver
    def _drive(self, active: _ActiveRun, ex: Executor, prompt: str, options: ExecuteOptions) -> None:
        handle = active.handle
        started = time.monotonic()
        outcome: RunOutcome | None = None
        try:
            def _call() -> None:
                try:
                    result = ex.execute(prompt, options)
                except Exception as e:
                    active.record_settlement(result=None, error=e)
                else:
                    active.record_settlement(result=result, error=None)

            threading.Thread(target=_call, name=f"executor-{handle.lane}", daemon=True).start()

            while not active.settled.wait(0.05):
                if active.cancel.cancelled:
                    if not active.settled.wait(self._cancel_grace_s):
                        logger.warning(
                            "executor did not stop within %.1fs after cancel lane=%s run_id=%s",
                            self._cancel_grace_s,
                            handle.lane,
                            handle.run_id,
                        )
                    break

            outcome = self._decide(active, duration_s=time.monotonic() - started)
            self._persist(outcome)
        except Exception as e:
            logger.exception("run driver crashed lane=%s run_id=%s", handle.lane, handle.run_id)
            if outcome is None:
                outcome = RunOutcome(
                    run_id=handle.run_id,
                    lane=handle.lane,
                    executor=handle.executor,
                    model=handle.model,
                    status="failed",
                    exit_code=EXIT_FAILED,
                    output="",
                    error=f"driver_error: {e}",
                    continuation_token=None,
                    duration_s=time.monotonic() - started,
                )
        finally:
            with self._lock:
                if self._active.get(handle.lane) is active:
                    del self._active[handle.lane]
            if outcome is not None:
                active.future.set_result(outcome)
            logger.info(
                "run finished lane=%s run_id=%s status=%s exit_code=%s",
                handle.lane,
                handle.run_id,
                outcome.status if outcome else None,
                outcome.exit_code if outcome else None,
            )

    def _decide(self, active: _ActiveRun, *, duration_s: float) -> RunOutcome:
        handle = active.handle
        with active.lock:
            state = active.state
            reason = active.cancel_reason
            result = active.result
            error = active.error

        common = {
            "run_id": handle.run_id,
            "lane": handle.lane,
            "executor": handle.executor,
            "model": handle.model,
            "duration_s": duration_s,
        }
        if state == CANCELLING:
            if reason == TIMEOUT_REASON:
                return RunOutcome(
                    **common,
                    status="failed",
                    exit_code=EXIT_TIMEOUT,
                    output="",
                    error=TIMEOUT_REASON,
                    continuation_token=None,
                )
            return RunOutcome(
                **common,
                status="cancelled",
                exit_code=EXIT_CANCELLED,
                output="",
                error=None if reason in (None, "cancelled") else reason,
                continuation_token=None,
            )

        if error is not None:
            exit_code = error.exit_code if isinstance(error, ExecutorError) else EXIT_FAILED
            return RunOutcome(
                **common,
                status="failed",
                exit_code=exit_code,
                output="",
                error=str(error) or type(error).__name__,
                continuation_token=None,
            )

        if result is None:
            return RunOutcome(
                **common,
                status="failed",
                exit_code=EXIT_FAILED,
                output="",
                error="executor returned no result",
                continuation_token=None,
            )
        if result.exit_code == EXIT_OK:
            return RunOutcome(
                **common,
                status="completed",
                exit_code=EXIT_OK,
                output=result.output,
                error=None,
                continuation_token=result.continuation_token,
            )
        return RunOutcome(
            **common,
            status="failed",
            exit_code=int(result.exit_code),
            output=result.output,
            error=f"exit code {result.exit_code}",
            continuation_token=result.continuation_token,
        )

    def _persist(self, outcome: RunOutcome) -> None:
        """Write the final run state, session bookkeeping and transcript entry.

        Each step runs once; a `sqlite3.Error` retries the remaining steps.
        """
        if outcome.status == "completed":
            transcript = outcome.output
        elif outcome.status == "cancelled":
            transcript = "Cancelled"
        else:
            transcript = f"Error: {outcome.error}"

        done: set[str] = set()
        last_error: Exception | None = None
        for attempt in range(self._persist_retries):
            try:
                store = self._open_store()
                try:
                    if "run" not in done:
                        store.complete_run(
                            outcome.run_id,
                            status=outcome.status,
                            exit_code=outcome.exit_code,
                            output=outcome.output,
                            error=outcome.error,
                            continuation_token=outcome.continuation_token,
                        )
                        done.add("run")
                    if "session" not in done:
                        if outcome.status != "cancelled":
                            state = store.get_executor_state(lane=outcome.lane)
                            if state is not None and state.executor == outcome.executor:
                                store.record_executor_turn(
                                    lane=outcome.lane,
                                    continuation_token=outcome.continuation_token,
                                )
                        done.add("session")
                    if "transcript" not in done:
                        store.append_transcript_message(
                            lane=outcome.lane,
                            role="assistant",
                            content=transcript,
                            metadata={
                                "run_id": outcome.run_id,
                                "status": outcome.status,
                                "exit_code": outcome.exit_code,
                                "executor": outcome.executor,
                            },
                        )
                        done.add("transcript")
                finally:
                    store.close()
                return
            except sqlite3.Error as e:
                last_error = e
                logger.warning(
                    "persisting run failed (attempt %d/%d) run_id=%s: %s",
                    attempt + 1,
                    self._persist_retries,
                    outcome.run_id,
                    e,
                )
                time.sleep(0.05 * (2**attempt))

        err = PersistenceError(f"Could not persist run outcome: {last_error}", run_id=outcome.run_id)
        logger.error("%s (steps done: %s)", err, sorted(done))

    # --- Shutdown
    def shutdown(self, *, cancel: bool = True, timeout_s: float | None = None) -> None:
        with self._lock:
            self._closed = True
            actives = list(self._active.values())
        if cancel:
            for active in actives:
                active.request_cancel("shutdown")
        wait_s = timeout_s if timeout_s is not None else self._cancel_grace_s + 5.0
        deadline = time.monotonic() + wait_s
        for active in actives:
            try:
                active.handle.result(timeout=max(0.0, deadline - time.monotonic()))
            except TimeoutError:
                logger.warning("run did not settle before shutdown lane=%s run_id=%s", active.handle.lane, active.handle.run_id)
        self._pool.shutdown(wait=False)
