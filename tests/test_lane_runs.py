from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import Future

import pytest

from src.config.load_config import AppConfig
from src.executors.base import ExecutorResult
from src.executors.registry import ExecutorRegistry
from src.runtime.errors import AlreadyRunning, ExecutorError
from src.runtime.lane_runs import LaneRunManager, RunHandle, RunOutcome, _ActiveRun
from src.runtime.prompt import MEMORY_HINT
from src.storage.sqlite_store import SQLiteStore
from tests.stubs import StubExecutor, wait_until


def _manager(app_config: AppConfig, *executors: StubExecutor, grace_s: float = 1.0) -> LaneRunManager:
    registry = ExecutorRegistry(executors, default=executors[0].name)
    return LaneRunManager(config=app_config, registry=registry, cancel_grace_s=grace_s)


def test_run_completes_and_records_session(app_config: AppConfig, db_path: str) -> None:
    stub = StubExecutor(output="hello back", token="sess-1")
    runs = _manager(app_config, stub)
    try:
        handle = runs.start_run("work", "hi")
        outcome = handle.result(timeout=5)

        assert outcome.status == "completed"
        assert outcome.exit_code == 0
        assert outcome.output == "hello back"
        assert runs.get_active_run("work") is None

        store = SQLiteStore(db_path)
        try:
            row = store.get_run(run_id=handle.run_id)
            assert row["status"] == "completed"
            assert row["exit_code"] == 0
            assert row["started_at"] is not None
            events = {e["event_type"] for e in store.iter_events(handle.run_id)}
            assert {"run_created", "run_started", "run_completed"} <= events

            state = store.get_executor_state(lane="work")
            assert state is not None
            assert state.executor == "stub"
            assert state.continuation_token == "sess-1"
            assert state.message_count == 1
        finally:
            store.close()
    finally:
        runs.shutdown()


def test_second_start_on_busy_lane_raises_and_writes_nothing(app_config: AppConfig, db_path: str) -> None:
    stub = StubExecutor(block=True)
    runs = _manager(app_config, stub)
    try:
        first = runs.start_run("work", "one")
        assert stub.started.wait(5)

        with pytest.raises(AlreadyRunning) as exc_info:
            runs.start_run("work", "two")
        assert exc_info.value.run_id == first.run_id

        store = SQLiteStore(db_path)
        try:
            assert store.count_runs_for_lane(lane="work") == 1
        finally:
            store.close()

        stub.release.set()
        assert first.result(timeout=5).status == "completed"
        # Lane is free again once the first run is finalized.
        runs.start_run("work", "three").result(timeout=5)
    finally:
        stub.release.set()
        runs.shutdown()


def test_lanes_run_concurrently(app_config: AppConfig) -> None:
    stub = StubExecutor(block=True)
    runs = _manager(app_config, stub)
    try:
        a = runs.start_run("work", "a")
        b = runs.start_run("life", "b")
        assert wait_until(lambda: len(stub.calls) == 2)
        assert runs.active_lanes() == ["life", "work"]
        stub.release.set()
        assert a.result(timeout=5).ok and b.result(timeout=5).ok
    finally:
        stub.release.set()
        runs.shutdown()


def test_cancel_on_idle_lane_returns_false(app_config: AppConfig, db_path: str) -> None:
    runs = _manager(app_config, StubExecutor())
    try:
        assert runs.cancel_run("work") is False
        store = SQLiteStore(db_path)
        try:
            assert store.count_runs_for_lane(lane="work") == 0
        finally:
            store.close()
    finally:
        runs.shutdown()


def test_cancel_before_settlement_wins_over_late_success(app_config: AppConfig, db_path: str) -> None:
    # The executor ignores the signal and later reports success.
    stub = StubExecutor(block=True, ignore_cancel=True, output="too late", token="late-token")
    runs = _manager(app_config, stub, grace_s=5.0)
    try:
        handle = runs.start_run("work", "hi")
        assert stub.started.wait(5)

        assert runs.cancel_run("work", "user") is True
        assert runs.cancel_run("work", "user") is True  # idempotent while cancelling
        stub.release.set()

        outcome = handle.result(timeout=10)
        assert outcome.status == "cancelled"
        assert outcome.exit_code == 130

        store = SQLiteStore(db_path)
        try:
            row = store.get_run(run_id=handle.run_id)
            assert row["status"] == "cancelled"
            assert row["exit_code"] == 130
            state = store.get_executor_state(lane="work")
            assert state.message_count == 0
            assert state.continuation_token is None
        finally:
            store.close()
    finally:
        stub.release.set()
        runs.shutdown()


def test_cancel_after_settlement_has_no_effect(app_config: AppConfig) -> None:
    runs = _manager(app_config, StubExecutor())
    try:
        handle = runs.start_run("work", "hi")
        assert handle.result(timeout=5).status == "completed"
        assert runs.cancel_run("work") is False
    finally:
        runs.shutdown()


def test_unresponsive_executor_is_abandoned_after_grace(app_config: AppConfig) -> None:
    stub = StubExecutor(block=True, ignore_cancel=True)
    runs = _manager(app_config, stub, grace_s=0.2)
    try:
        handle = runs.start_run("work", "hi")
        assert stub.started.wait(5)
        runs.cancel_run("work")
        outcome = handle.result(timeout=5)
        assert outcome.status == "cancelled"
        assert runs.get_active_run("work") is None
    finally:
        stub.release.set()
        runs.shutdown()


def test_timeout_cancel_reason_maps_to_exit_124(app_config: AppConfig) -> None:
    stub = StubExecutor(block=True)
    runs = _manager(app_config, stub)
    try:
        handle = runs.start_run("work", "hi")
        assert stub.started.wait(5)
        runs.cancel_run("work", "timeout")
        outcome = handle.result(timeout=5)
        assert outcome.status == "failed"
        assert outcome.exit_code == 124
        assert outcome.error == "timeout"
    finally:
        runs.shutdown()


def test_executor_exception_becomes_failed_run(app_config: AppConfig, db_path: str) -> None:
    stub = StubExecutor(error=ExecutorError("spawn failed", exit_code=127))
    runs = _manager(app_config, stub)
    try:
        outcome = runs.start_run("work", "hi").result(timeout=5)
        assert outcome.status == "failed"
        assert outcome.exit_code == 127
        assert "spawn failed" in (outcome.error or "")

        store = SQLiteStore(db_path)
        try:
            # Failed (non-cancelled) runs still count as a message.
            assert store.get_executor_state(lane="work").message_count == 1
        finally:
            store.close()
    finally:
        runs.shutdown()


def test_nonzero_exit_code_is_kept(app_config: AppConfig) -> None:
    runs = _manager(app_config, StubExecutor(exit_code=2, output="boom"))
    try:
        outcome = runs.start_run("work", "hi").result(timeout=5)
        assert outcome.status == "failed"
        assert outcome.exit_code == 2
        assert outcome.output == "boom"
    finally:
        runs.shutdown()


def test_continuation_token_reused_only_for_same_executor(app_config: AppConfig, db_path: str) -> None:
    first = StubExecutor("first", token="sess-A")
    second = StubExecutor("second", token="sess-B")
    runs = _manager(app_config, first, second)
    try:
        runs.start_run("work", "one").result(timeout=5)
        runs.start_run("work", "two").result(timeout=5)
        assert first.calls[0][1].continuation_token is None
        assert first.calls[1][1].continuation_token == "sess-A"

        runs.start_run("work", "three", executor="second").result(timeout=5)
        assert second.calls[0][1].continuation_token is None

        store = SQLiteStore(db_path)
        try:
            state = store.get_executor_state(lane="work")
            assert state.executor == "second"
            assert state.continuation_token == "sess-B"
            assert state.message_count == 1
        finally:
            store.close()

        # The stored session now decides the executor.
        runs.start_run("work", "four").result(timeout=5)
        assert len(second.calls) == 2
        assert second.calls[1][1].continuation_token == "sess-B"
    finally:
        runs.shutdown()


def test_prompt_order_and_transcript(app_config: AppConfig, db_path: str, tmp_path) -> None:
    ctx = tmp_path / "notes.md"
    ctx.write_text("remember the milk", encoding="utf-8")
    stub = StubExecutor(context="SYSTEM", memory_hint=True, output="done")
    runs = _manager(app_config, stub)

    store = SQLiteStore(db_path)
    try:
        store.create_transcript(lane="work")
    finally:
        store.close()

    try:
        runs.start_run(
            "work",
            "do it",
            attachments=["/tmp/a.png"],
            context_files=[str(ctx)],
        ).result(timeout=5)
        prompt = stub.calls[0][0]
        assert prompt == "\n\n".join(
            [
                "SYSTEM",
                f"# Context from {ctx}\n\nremember the milk",
                MEMORY_HINT,
                "Attached files (local paths):\n- /tmp/a.png",
                "do it",
            ]
        )

        store = SQLiteStore(db_path)
        try:
            msgs = store.list_transcript_messages(lane="work")
            assert [m["content"] for m in msgs] == ["done"]
            assert msgs[0]["metadata"]["status"] == "completed"
        finally:
            store.close()
    finally:
        runs.shutdown()


def test_unknown_executor_is_rejected_without_rows(app_config: AppConfig, db_path: str) -> None:
    runs = _manager(app_config, StubExecutor())
    try:
        with pytest.raises(ExecutorError):
            runs.start_run("work", "hi", executor="nope")
        assert not runs.is_busy("work")
        store = SQLiteStore(db_path)
        try:
            assert store.count_runs_for_lane(lane="work") == 0
        finally:
            store.close()
    finally:
        runs.shutdown()


def test_undecodable_context_file_is_skipped(app_config: AppConfig, tmp_path) -> None:
    bad = tmp_path / "latin1.md"
    bad.write_bytes(b"caf\xe9 au lait")
    stub = StubExecutor()
    runs = _manager(app_config, stub)
    try:
        outcome = runs.start_run("work", "hi", context_files=[str(bad)]).result(timeout=5)
        assert outcome.status == "completed"
        assert stub.calls[0][0] == "hi"
        assert not runs.is_busy("work")
    finally:
        runs.shutdown()


def test_prompt_failure_writes_no_run_row(app_config: AppConfig, db_path: str) -> None:
    class BrokenContext(StubExecutor):
        def system_context(self) -> str:
            raise RuntimeError("context unavailable")

    runs = _manager(app_config, BrokenContext())
    try:
        with pytest.raises(RuntimeError):
            runs.start_run("work", "hi")
        assert not runs.is_busy("work")
        store = SQLiteStore(db_path)
        try:
            assert store.count_runs_for_lane(lane="work") == 0
        finally:
            store.close()
    finally:
        runs.shutdown()


def test_start_failure_after_insert_frees_the_lane(
    app_config: AppConfig, db_path: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    original = SQLiteStore.append_event

    def broken_append(self, run_id, event_type, payload):
        raise RuntimeError("event log unavailable")

    monkeypatch.setattr(SQLiteStore, "append_event", broken_append)
    runs = _manager(app_config, StubExecutor())
    try:
        with pytest.raises(RuntimeError):
            runs.start_run("work", "hi")
        assert not runs.is_busy("work")

        store = SQLiteStore(db_path)
        try:
            assert store.get_active_run_for_lane(lane="work") is None
        finally:
            store.close()

        monkeypatch.setattr(SQLiteStore, "append_event", original)
        assert runs.start_run("work", "again").result(timeout=5).status == "completed"
    finally:
        runs.shutdown()


def test_persist_failure_still_settles_handle_and_frees_lane(
    app_config: AppConfig, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    def locked(self, run_id, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    stub = StubExecutor(block=True)
    registry = ExecutorRegistry([stub], default="stub")
    runs = LaneRunManager(config=app_config, registry=registry, cancel_grace_s=1.0, persist_retries=2)
    try:
        handle = runs.start_run("work", "hi")
        assert stub.started.wait(5)
        monkeypatch.setattr(SQLiteStore, "complete_run", locked)
        stub.release.set()
        with caplog.at_level(logging.ERROR, logger="src.runtime.lane_runs"):
            outcome = handle.result(timeout=5)
        assert outcome.status == "completed"
        assert runs.get_active_run("work") is None
        assert wait_until(lambda: "Could not persist run outcome" in caplog.text)
    finally:
        runs.shutdown()


def test_cancel_is_refused_once_executor_settled() -> None:
    future: Future[RunOutcome] = Future()
    handle = RunHandle(run_id="run_1", lane="work", executor="stub", model=None, started_at=0.0, future=future)
    active = _ActiveRun(handle=handle, future=future)
    active.record_settlement(result=ExecutorResult(output="ok", exit_code=0, duration_s=0.0), error=None)

    assert active.request_cancel("cancelled") is False
    assert not active.cancel.cancelled


def test_missing_executor_result_becomes_failed_outcome(app_config: AppConfig) -> None:
    runs = _manager(app_config, StubExecutor())
    try:
        future: Future[RunOutcome] = Future()
        handle = RunHandle(run_id="run_1", lane="work", executor="stub", model=None, started_at=0.0, future=future)
        active = _ActiveRun(handle=handle, future=future)
        active.record_settlement(result=None, error=None)

        outcome = runs._decide(active, duration_s=0.0)
        assert outcome.status == "failed"
        assert outcome.exit_code == 1
        assert outcome.error == "executor returned no result"
    finally:
        runs.shutdown()
