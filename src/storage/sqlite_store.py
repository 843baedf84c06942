from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable


SCHEMA_VERSION = 3

RUN_ACTIVE_STATUSES = ("pending", "running")
RUN_TERMINAL_STATUSES = ("completed", "failed", "cancelled")
QUEUE_STATUSES = ("pending", "running", "completed", "failed")


# Identifies this process's runs across pid reuse (e.g. a restarted
# container whose daemon gets the same pid as its predecessor).
PROCESS_INSTANCE_ID = uuid.uuid4().hex


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def default_db_path() -> str:
    return os.getenv("HOMER_SQLITE_PATH", "data/homer.db")


def pid_alive(pid: int | None) -> bool:
    if pid is None or int(pid) <= 0:
        return False
    try:
        os.kill(int(pid), 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    return True


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    lane: str
    executor: str
    model: str | None
    created_at: float
    status: str


@dataclass(frozen=True)
class ExecutorSessionState:
    lane: str
    executor: str
    model: str | None
    continuation_token: str | None
    message_count: int
    switched_at: float


@dataclass(frozen=True)
class ScheduledJobRecord:
    job_id: str
    name: str
    cron: str
    lane: str
    query: str
    executor: str | None
    model: str | None
    timeout_s: float
    enabled: bool
    notify_on_success: bool
    notify_on_failure: bool
    context_files: list[str] = field(default_factory=list)
    source_file: str = ""
    last_run_at: float | None = None
    last_success_at: float | None = None
    consecutive_failures: int = 0


@dataclass(frozen=True)
class QueueItem:
    item_id: str
    payload: dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    order_key: int
    created_at: float
    next_attempt_at: float
    last_error: str | None = None
    result: str | None = None


def _row_to_executor_state(row: sqlite3.Row) -> ExecutorSessionState:
    return ExecutorSessionState(
        lane=str(row["lane"]),
        executor=str(row["executor"]),
        model=row["model"],
        continuation_token=row["continuation_token"],
        message_count=int(row["message_count"]),
        switched_at=float(row["switched_at"]),
    )


def _row_to_job(row: sqlite3.Row) -> ScheduledJobRecord:
    return ScheduledJobRecord(
        job_id=str(row["job_id"]),
        name=str(row["name"]),
        cron=str(row["cron"]),
        lane=str(row["lane"]),
        query=str(row["query"]),
        executor=row["executor"],
        model=row["model"],
        timeout_s=float(row["timeout_s"]),
        enabled=bool(row["enabled"]),
        notify_on_success=bool(row["notify_on_success"]),
        notify_on_failure=bool(row["notify_on_failure"]),
        context_files=list(json.loads(row["context_files_json"] or "[]")),
        source_file=str(row["source_file"] or ""),
        last_run_at=float(row["last_run_at"]) if row["last_run_at"] is not None else None,
        last_success_at=float(row["last_success_at"]) if row["last_success_at"] is not None else None,
        consecutive_failures=int(row["consecutive_failures"]),
    )


def _row_to_queue_item(row: sqlite3.Row) -> QueueItem:
    return QueueItem(
        item_id=str(row["item_id"]),
        payload=json.loads(row["payload_json"] or "{}"),
        status=str(row["status"]),
        attempts=int(row["attempts"]),
        max_attempts=int(row["max_attempts"]),
        order_key=int(row["order_key"]),
        created_at=float(row["created_at"]),
        next_attempt_at=float(row["next_attempt_at"]),
        last_error=row["last_error"],
        result=row["result"],
    )


class SQLiteStore:
    """SQLite-backed state store for lane runs, schedules and the task queue.

    Design goals:
    - Single daemon instance; no multi-host coordination.
    - One connection per thread. Cross-thread races are settled by
      `BEGIN IMMEDIATE` transactions, never by read-then-write in Python.
    - Run lifecycle is also recorded in `events` so it can be replayed.
    """

    def __init__(self, db_path: str | Path | None = None, *, timeout_s: float = 10.0) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode: transactions are opened explicitly with BEGIN.
        self._conn = sqlite3.connect(str(self.db_path), timeout=timeout_s, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteStore":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` takes the write lock up front, so the read and the
        write inside the block are atomic with respect to other connections.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.execute("COMMIT;")
        except BaseException:
            self._conn.execute("ROLLBACK;")
            raise

    def _init_schema(self) -> None:
        with self.transaction():
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                  run_id TEXT PRIMARY KEY,
                  lane TEXT NOT NULL,
                  executor TEXT NOT NULL,
                  model TEXT,
                  status TEXT NOT NULL,
                  created_at REAL NOT NULL,
                  started_at REAL,
                  completed_at REAL,
                  exit_code INTEGER,
                  continuation_token TEXT,
                  output TEXT,
                  error TEXT,
                  owner_pid INTEGER
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                  event_id TEXT PRIMARY KEY,
                  run_id TEXT NOT NULL,
                  created_at REAL NOT NULL,
                  event_type TEXT NOT NULL,
                  payload_json TEXT NOT NULL,
                  FOREIGN KEY (run_id) REFERENCES runs(run_id) ON DELETE CASCADE
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS executor_state (
                  lane TEXT PRIMARY KEY,
                  executor TEXT NOT NULL,
                  model TEXT,
                  continuation_token TEXT,
                  message_count INTEGER NOT NULL DEFAULT 0,
                  switched_at REAL NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS transcripts (
                  lane TEXT PRIMARY KEY,
                  created_at REAL NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS transcript_messages (
                  message_id TEXT PRIMARY KEY,
                  lane TEXT NOT NULL,
                  role TEXT NOT NULL,
                  content TEXT NOT NULL,
                  created_at REAL NOT NULL,
                  metadata_json TEXT NOT NULL,
                  FOREIGN KEY (lane) REFERENCES transcripts(lane) ON DELETE CASCADE
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS scheduled_jobs (
                  job_id TEXT PRIMARY KEY,
                  name TEXT NOT NULL,
                  cron TEXT NOT NULL,
                  lane TEXT NOT NULL,
                  query TEXT NOT NULL,
                  executor TEXT,
                  model TEXT,
                  timeout_s REAL NOT NULL,
                  enabled INTEGER NOT NULL,
                  notify_on_success INTEGER NOT NULL,
                  notify_on_failure INTEGER NOT NULL,
                  context_files_json TEXT NOT NULL,
                  source_file TEXT,
                  last_run_at REAL,
                  last_success_at REAL,
                  consecutive_failures INTEGER NOT NULL DEFAULT 0,
                  updated_at REAL NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS job_runs (
                  job_run_id TEXT PRIMARY KEY,
                  job_id TEXT NOT NULL,
                  run_id TEXT,
                  started_at REAL NOT NULL,
                  completed_at REAL,
                  success INTEGER NOT NULL,
                  skipped INTEGER NOT NULL DEFAULT 0,
                  exit_code INTEGER,
                  error TEXT
                );
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_lane_status ON runs(lane, status);")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_created ON runs(created_at, run_id);")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_events_run_ts ON events(run_id, created_at, event_id);")
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_transcript_messages_lane ON transcript_messages(lane, created_at);"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_job_runs_job ON job_runs(job_id, started_at);")
            cur.execute(
                "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
                ("schema_version", "1"),
            )

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except (TypeError, ValueError):
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        with self.transaction():
            cur = self._conn.cursor()
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                elif current == 2:
                    self._migrate_2_to_3(cur)
                    current = 3
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Durable background queue.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS queue_items (
              item_id TEXT PRIMARY KEY,
              payload_json TEXT NOT NULL,
              status TEXT NOT NULL,
              attempts INTEGER NOT NULL DEFAULT 0,
              max_attempts INTEGER NOT NULL,
              order_key INTEGER NOT NULL,
              created_at REAL NOT NULL,
              next_attempt_at REAL NOT NULL,
              started_at REAL,
              completed_at REAL,
              last_error TEXT,
              result TEXT
            );
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_queue_claim ON queue_items(status, next_attempt_at, order_key);"
        )

    def _migrate_2_to_3(self, cur: sqlite3.Cursor) -> None:
        cur.execute("ALTER TABLE runs ADD COLUMN owner_instance TEXT;")

    # --- Runs
    def get_run(self, *, run_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT
              run_id, lane, executor, model, status, created_at, started_at, completed_at,
              exit_code, continuation_token, output, error, owner_pid, owner_instance
            FROM runs
            WHERE run_id = ?
            LIMIT 1;
            """,
            (run_id,),
        ).fetchone()

    def get_active_run_for_lane(self, *, lane: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT run_id, lane, executor, status, created_at
            FROM runs
            WHERE lane = ? AND status IN ('pending', 'running')
            ORDER BY created_at DESC
            LIMIT 1;
            """,
            (lane,),
        ).fetchone()

    def count_runs_for_lane(self, *, lane: str) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM runs WHERE lane = ?;", (lane,)).fetchone()
        return int(row["n"])

    def count_runs_by_status(self) -> dict[str, int]:
        rows = self._conn.execute("SELECT status, COUNT(*) AS n FROM runs GROUP BY status;").fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def list_runs_page(
        self,
        *,
        lane: str | None,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None,
    ) -> dict[str, Any]:
        """List runs newest-first with stable keyset pagination."""
        where: list[str] = []
        params: list[Any] = []
        if lane:
            where.append("lane = ?")
            params.append(lane)
        if statuses:
            where.append(f"status IN ({','.join('?' for _ in statuses)})")
            params.extend(statuses)
        if cursor is not None:
            where.append("(created_at < ? OR (created_at = ? AND run_id < ?))")
            params.extend([cursor[0], cursor[0], cursor[1]])
        clause = f"WHERE {' AND '.join(where)}" if where else ""
        rows = self._conn.execute(
            f"""
            SELECT run_id, lane, executor, model, status, created_at, started_at, completed_at, exit_code, error
            FROM runs
            {clause}
            ORDER BY created_at DESC, run_id DESC
            LIMIT ?;
            """,
            (*params, int(limit) + 1),
        ).fetchall()

        has_more = len(rows) > limit
        rows = rows[:limit]
        items = [
            {
                "run_id": r["run_id"],
                "lane": r["lane"],
                "executor": r["executor"],
                "model": r["model"],
                "status": r["status"],
                "created_at": float(r["created_at"]),
                "started_at": float(r["started_at"]) if r["started_at"] is not None else None,
                "completed_at": float(r["completed_at"]) if r["completed_at"] is not None else None,
                "exit_code": int(r["exit_code"]) if r["exit_code"] is not None else None,
                "error": r["error"],
            }
            for r in rows
        ]
        next_cursor = None
        if has_more and rows:
            last = rows[-1]
            next_cursor = (float(last["created_at"]), str(last["run_id"]))
        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def create_run_if_lane_idle(
        self,
        *,
        lane: str,
        executor: str,
        model: str | None,
        owner_pid: int | None = None,
        owner_instance: str | None = None,
    ) -> RunRecord | None:
        """Insert a `pending` run unless the lane already has a pending/running run.

        Returns None (and writes nothing) when the lane is busy.
        """
        with self.transaction(mode="IMMEDIATE"):
            busy = self._conn.execute(
                "SELECT 1 FROM runs WHERE lane = ? AND status IN ('pending', 'running') LIMIT 1;",
                (lane,),
            ).fetchone()
            if busy is not None:
                return None

            run_id = _new_id("run")
            created_at = _utc_ts()
            self._conn.execute(
                """
                INSERT INTO runs(run_id, lane, executor, model, status, created_at, owner_pid, owner_instance)
                VALUES(?, ?, ?, ?, 'pending', ?, ?, ?);
                """,
                (
                    run_id,
                    lane,
                    executor,
                    model,
                    created_at,
                    owner_pid if owner_pid is not None else os.getpid(),
                    owner_instance or PROCESS_INSTANCE_ID,
                ),
            )
            self._insert_event(run_id, "run_created", {"lane": lane, "executor": executor, "model": model}, ts=created_at)
        return RunRecord(
            run_id=run_id,
            lane=lane,
            executor=executor,
            model=model,
            created_at=created_at,
            status="pending",
        )

    def mark_run_running(self, run_id: str) -> bool:
        cur = self._conn.execute(
            """
            UPDATE runs
            SET status = 'running', started_at = COALESCE(started_at, ?)
            WHERE run_id = ? AND status = 'pending';
            """,
            (_utc_ts(), run_id),
        )
        return cur.rowcount == 1

    def complete_run(
        self,
        run_id: str,
        *,
        status: str,
        exit_code: int,
        output: str | None = None,
        error: str | None = None,
        continuation_token: str | None = None,
    ) -> bool:
        """Move a run from an active status to a terminal one.

        Compare-and-swap on status: a run that is already terminal is never
        overwritten. Returns True when this call performed the transition.
        """
        if status not in RUN_TERMINAL_STATUSES:
            raise ValueError(f"Invalid terminal status: {status!r}")
        ts = _utc_ts()
        with self.transaction(mode="IMMEDIATE"):
            cur = self._conn.execute(
                """
                UPDATE runs
                SET
                  status = ?,
                  completed_at = ?,
                  exit_code = ?,
                  output = ?,
                  error = COALESCE(?, error),
                  continuation_token = ?
                WHERE run_id = ? AND status IN ('pending', 'running');
                """,
                (status, ts, int(exit_code), output, error, continuation_token, run_id),
            )
            if cur.rowcount != 1:
                return False
            event_type = {"completed": "run_completed", "failed": "run_failed", "cancelled": "run_cancelled"}[status]
            payload: dict[str, Any] = {"exit_code": int(exit_code)}
            if error:
                payload["error"] = error
            self._insert_event(run_id, event_type, payload, ts=ts)
        return True

    # --- Reconcile (startup safety)
    def reconcile_running_runs(
        self,
        *,
        reason: str = "daemon_restarted",
        instance_id: str | None = None,
        is_alive: Callable[[int | None], bool] = pid_alive,
    ) -> int:
        """Mark active runs whose owning process is gone as failed.

        Runs stamped with this process's instance id are left alone. A run from
        another instance is stale when its pid is dead or equals ours, since a
        matching pid then belongs to a predecessor. Returns the number of runs
        reconciled.
        """
        ts = _utc_ts()
        me = os.getpid()
        current = instance_id or PROCESS_INSTANCE_ID

        def _stale(row: sqlite3.Row) -> bool:
            if row["owner_instance"] == current:
                return False
            return row["owner_pid"] == me or not is_alive(row["owner_pid"])

        with self.transaction(mode="IMMEDIATE"):
            rows = self._conn.execute(
                "SELECT run_id, owner_pid, owner_instance FROM runs WHERE status IN ('pending', 'running');",
            ).fetchall()
            stale = [str(r["run_id"]) for r in rows if _stale(r)]
            for run_id in stale:
                self._conn.execute(
                    """
                    UPDATE runs
                    SET
                      status = 'failed',
                      completed_at = COALESCE(completed_at, ?),
                      exit_code = COALESCE(exit_code, 1),
                      error = COALESCE(error, ?)
                    WHERE run_id = ? AND status IN ('pending', 'running');
                    """,
                    (ts, reason, run_id),
                )
                self._insert_event(run_id, "run_failed", {"error": reason}, ts=ts)
        return len(stale)

    # --- Events (trace)
    def _insert_event(self, run_id: str, event_type: str, payload: dict[str, Any], *, ts: float | None = None) -> str:
        event_id = _new_id("evt")
        self._conn.execute(
            """
            INSERT INTO events(event_id, run_id, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (event_id, run_id, ts if ts is not None else _utc_ts(), event_type, _json_dumps(payload)),
        )
        return event_id

    def append_event(self, run_id: str, event_type: str, payload: dict[str, Any]) -> str:
        return self._insert_event(run_id, event_type, payload)

    def iter_events(self, run_id: str) -> Iterable[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT event_id, created_at, event_type, payload_json
            FROM events WHERE run_id = ?
            ORDER BY created_at, event_id;
            """,
            (run_id,),
        ).fetchall()
        for r in rows:
            yield {
                "event_id": r["event_id"],
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(r["payload_json"]),
            }

    def get_latest_event(self, *, run_id: str, event_type: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT event_id, run_id, created_at, event_type, payload_json
            FROM events
            WHERE run_id = ? AND event_type = ?
            ORDER BY created_at DESC, event_id DESC
            LIMIT 1;
            """,
            (run_id, event_type),
        ).fetchone()

    # --- Executor session state
    def get_executor_state(self, *, lane: str) -> ExecutorSessionState | None:
        row = self._conn.execute(
            """
            SELECT lane, executor, model, continuation_token, message_count, switched_at
            FROM executor_state WHERE lane = ?;
            """,
            (lane,),
        ).fetchone()
        return _row_to_executor_state(row) if row is not None else None

    def list_executor_states(self) -> list[ExecutorSessionState]:
        rows = self._conn.execute(
            """
            SELECT lane, executor, model, continuation_token, message_count, switched_at
            FROM executor_state ORDER BY switched_at DESC;
            """
        ).fetchall()
        return [_row_to_executor_state(r) for r in rows]

    def set_executor_state(
        self,
        *,
        lane: str,
        executor: str,
        model: str | None,
        continuation_token: str | None = None,
    ) -> None:
        """Switch a lane's executor; resets the message count."""
        self._conn.execute(
            """
            INSERT INTO executor_state(lane, executor, model, continuation_token, message_count, switched_at)
            VALUES(?, ?, ?, ?, 0, ?)
            ON CONFLICT(lane) DO UPDATE SET
              executor = excluded.executor,
              model = excluded.model,
              continuation_token = excluded.continuation_token,
              message_count = 0,
              switched_at = excluded.switched_at;
            """,
            (lane, executor, model, continuation_token, _utc_ts()),
        )

    def record_executor_turn(self, *, lane: str, continuation_token: str | None) -> None:
        """Store the newest continuation token (if any) and count one message."""
        self._conn.execute(
            """
            UPDATE executor_state
            SET
              continuation_token = COALESCE(?, continuation_token),
              message_count = message_count + 1
            WHERE lane = ?;
            """,
            (continuation_token, lane),
        )

    def clear_executor_state(self, *, lane: str) -> bool:
        cur = self._conn.execute("DELETE FROM executor_state WHERE lane = ?;", (lane,))
        return cur.rowcount > 0

    # --- Transcripts
    def create_transcript(self, *, lane: str) -> bool:
        cur = self._conn.execute(
            "INSERT OR IGNORE INTO transcripts(lane, created_at) VALUES(?, ?);",
            (lane, _utc_ts()),
        )
        return cur.rowcount == 1

    def has_transcript(self, *, lane: str) -> bool:
        row = self._conn.execute("SELECT 1 FROM transcripts WHERE lane = ? LIMIT 1;", (lane,)).fetchone()
        return row is not None

    def append_transcript_message(
        self,
        *,
        lane: str,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> str | None:
        """Append a message if the lane has a transcript. Returns the message id or None."""
        with self.transaction(mode="IMMEDIATE"):
            if not self.has_transcript(lane=lane):
                return None
            message_id = _new_id("msg")
            self._conn.execute(
                """
                INSERT INTO transcript_messages(message_id, lane, role, content, created_at, metadata_json)
                VALUES(?, ?, ?, ?, ?, ?);
                """,
                (message_id, lane, role, content, _utc_ts(), _json_dumps(metadata or {})),
            )
        return message_id

    def list_transcript_messages(self, *, lane: str, limit: int = 200) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT message_id, role, content, created_at, metadata_json
            FROM transcript_messages
            WHERE lane = ?
            ORDER BY created_at ASC, message_id ASC
            LIMIT ?;
            """,
            (lane, int(limit)),
        ).fetchall()
        return [
            {
                "message_id": r["message_id"],
                "role": r["role"],
                "content": r["content"],
                "created_at": float(r["created_at"]),
                "metadata": json.loads(r["metadata_json"]),
            }
            for r in rows
        ]

    # --- Scheduled jobs
    def upsert_scheduled_job(self, job: ScheduledJobRecord) -> None:
        """Insert or update a job definition. Run history columns are preserved."""
        self._conn.execute(
            """
            INSERT INTO scheduled_jobs(
              job_id, name, cron, lane, query, executor, model, timeout_s, enabled,
              notify_on_success, notify_on_failure, context_files_json, source_file,
              consecutive_failures, updated_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            ON CONFLICT(job_id) DO UPDATE SET
              name = excluded.name,
              cron = excluded.cron,
              lane = excluded.lane,
              query = excluded.query,
              executor = excluded.executor,
              model = excluded.model,
              timeout_s = excluded.timeout_s,
              enabled = excluded.enabled,
              notify_on_success = excluded.notify_on_success,
              notify_on_failure = excluded.notify_on_failure,
              context_files_json = excluded.context_files_json,
              source_file = excluded.source_file,
              updated_at = excluded.updated_at;
            """,
            (
                job.job_id,
                job.name,
                job.cron,
                job.lane,
                job.query,
                job.executor,
                job.model,
                float(job.timeout_s),
                1 if job.enabled else 0,
                1 if job.notify_on_success else 0,
                1 if job.notify_on_failure else 0,
                _json_dumps(list(job.context_files)),
                job.source_file,
                _utc_ts(),
            ),
        )

    def delete_scheduled_jobs_except(self, job_ids: Iterable[str]) -> int:
        keep = list(job_ids)
        if keep:
            cur = self._conn.execute(
                f"DELETE FROM scheduled_jobs WHERE job_id NOT IN ({','.join('?' for _ in keep)});",
                keep,
            )
        else:
            cur = self._conn.execute("DELETE FROM scheduled_jobs;")
        return cur.rowcount

    def get_scheduled_job(self, *, job_id: str) -> ScheduledJobRecord | None:
        row = self._conn.execute("SELECT * FROM scheduled_jobs WHERE job_id = ?;", (job_id,)).fetchone()
        return _row_to_job(row) if row is not None else None

    def list_scheduled_jobs(self, *, enabled_only: bool = False) -> list[ScheduledJobRecord]:
        sql = "SELECT * FROM scheduled_jobs"
        if enabled_only:
            sql += " WHERE enabled = 1"
        rows = self._conn.execute(sql + " ORDER BY job_id;").fetchall()
        return [_row_to_job(r) for r in rows]

    def record_job_outcome(
        self,
        *,
        job_id: str,
        started_at: float,
        completed_at: float,
        success: bool,
        exit_code: int | None,
        run_id: str | None = None,
        error: str | None = None,
    ) -> str:
        """Update job counters and append a history row in one transaction."""
        job_run_id = _new_id("jobrun")
        with self.transaction(mode="IMMEDIATE"):
            self._conn.execute(
                """
                UPDATE scheduled_jobs
                SET
                  last_run_at = ?,
                  last_success_at = CASE WHEN ? THEN ? ELSE last_success_at END,
                  consecutive_failures = CASE WHEN ? THEN 0 ELSE consecutive_failures + 1 END
                WHERE job_id = ?;
                """,
                (started_at, 1 if success else 0, completed_at, 1 if success else 0, job_id),
            )
            self._conn.execute(
                """
                INSERT INTO job_runs(job_run_id, job_id, run_id, started_at, completed_at, success, skipped, exit_code, error)
                VALUES(?, ?, ?, ?, ?, ?, 0, ?, ?);
                """,
                (job_run_id, job_id, run_id, started_at, completed_at, 1 if success else 0, exit_code, error),
            )
        return job_run_id

    def record_job_skip(self, *, job_id: str, at: float, reason: str) -> str:
        """History row for a trigger that did not start a run. Counters are untouched."""
        job_run_id = _new_id("jobrun")
        self._conn.execute(
            """
            INSERT INTO job_runs(job_run_id, job_id, run_id, started_at, completed_at, success, skipped, exit_code, error)
            VALUES(?, ?, NULL, ?, ?, 0, 1, NULL, ?);
            """,
            (job_run_id, job_id, at, at, reason),
        )
        return job_run_id

    def list_job_runs(self, *, job_id: str, limit: int = 20) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT job_run_id, job_id, run_id, started_at, completed_at, success, skipped, exit_code, error
            FROM job_runs
            WHERE job_id = ?
            ORDER BY started_at DESC, job_run_id DESC
            LIMIT ?;
            """,
            (job_id, int(limit)),
        ).fetchall()
        return [
            {
                "job_run_id": r["job_run_id"],
                "job_id": r["job_id"],
                "run_id": r["run_id"],
                "started_at": float(r["started_at"]),
                "completed_at": float(r["completed_at"]) if r["completed_at"] is not None else None,
                "success": bool(r["success"]),
                "skipped": bool(r["skipped"]),
                "exit_code": int(r["exit_code"]) if r["exit_code"] is not None else None,
                "error": r["error"],
            }
            for r in rows
        ]

    # --- Queue
    def _next_order_key(self) -> int:
        row = self._conn.execute("SELECT COALESCE(MAX(order_key), 0) + 1 AS k FROM queue_items;").fetchone()
        return int(row["k"])

    def enqueue_item(
        self,
        *,
        payload: dict[str, Any],
        max_attempts: int,
        next_attempt_at: float | None = None,
    ) -> QueueItem:
        if int(max_attempts) < 1:
            raise ValueError("max_attempts must be >= 1")
        item_id = _new_id("task")
        created_at = _utc_ts()
        due = created_at if next_attempt_at is None else float(next_attempt_at)
        with self.transaction(mode="IMMEDIATE"):
            order_key = self._next_order_key()
            self._conn.execute(
                """
                INSERT INTO queue_items(
                  item_id, payload_json, status, attempts, max_attempts, order_key, created_at, next_attempt_at
                ) VALUES(?, ?, 'pending', 0, ?, ?, ?, ?);
                """,
                (item_id, _json_dumps(payload), int(max_attempts), order_key, created_at, due),
            )
        return QueueItem(
            item_id=item_id,
            payload=dict(payload),
            status="pending",
            attempts=0,
            max_attempts=int(max_attempts),
            order_key=order_key,
            created_at=created_at,
            next_attempt_at=due,
        )

    def get_queue_item(self, *, item_id: str) -> QueueItem | None:
        row = self._conn.execute("SELECT * FROM queue_items WHERE item_id = ?;", (item_id,)).fetchone()
        return _row_to_queue_item(row) if row is not None else None

    def list_queue_items(self, *, limit: int = 50, statuses: list[str] | None = None) -> list[QueueItem]:
        params: list[Any] = []
        clause = ""
        if statuses:
            clause = f"WHERE status IN ({','.join('?' for _ in statuses)})"
            params.extend(statuses)
        rows = self._conn.execute(
            f"SELECT * FROM queue_items {clause} ORDER BY order_key DESC LIMIT ?;",
            (*params, int(limit)),
        ).fetchall()
        return [_row_to_queue_item(r) for r in rows]

    def count_queue_items_by_status(self) -> dict[str, int]:
        counts = {s: 0 for s in QUEUE_STATUSES}
        rows = self._conn.execute("SELECT status, COUNT(*) AS n FROM queue_items GROUP BY status;").fetchall()
        for r in rows:
            counts[str(r["status"])] = int(r["n"])
        return counts

    def claim_next_queue_item(self, *, now: float) -> QueueItem | None:
        """Atomically claim the next eligible pending item and mark it running."""
        with self.transaction(mode="IMMEDIATE"):
            row = self._conn.execute(
                """
                SELECT item_id
                FROM queue_items
                WHERE status = 'pending' AND next_attempt_at <= ?
                ORDER BY order_key ASC
                LIMIT 1;
                """,
                (now,),
            ).fetchone()
            if row is None:
                return None

            item_id = str(row["item_id"])
            updated = self._conn.execute(
                """
                UPDATE queue_items
                SET status = 'running', started_at = ?
                WHERE item_id = ? AND status = 'pending';
                """,
                (now, item_id),
            )
            if updated.rowcount != 1:
                return None
            return self.get_queue_item(item_id=item_id)

    def complete_queue_item(self, *, item_id: str, result: str | None = None) -> bool:
        cur = self._conn.execute(
            """
            UPDATE queue_items
            SET status = 'completed', attempts = attempts + 1, completed_at = ?, result = ?
            WHERE item_id = ? AND status = 'running';
            """,
            (_utc_ts(), result, item_id),
        )
        return cur.rowcount == 1

    def fail_queue_item(
        self,
        *,
        item_id: str,
        error: str,
        now: float,
        backoff: Callable[[int], float],
    ) -> QueueItem | None:
        """Count a failed attempt; retry with backoff or fail terminally.

        A retried item receives a fresh order key so it rejoins the back of
        the queue.
        """
        with self.transaction(mode="IMMEDIATE"):
            row = self._conn.execute(
                "SELECT attempts, max_attempts FROM queue_items WHERE item_id = ? AND status = 'running';",
                (item_id,),
            ).fetchone()
            if row is None:
                return None
            attempts = int(row["attempts"]) + 1
            if attempts >= int(row["max_attempts"]):
                self._conn.execute(
                    """
                    UPDATE queue_items
                    SET status = 'failed', attempts = ?, last_error = ?, completed_at = ?
                    WHERE item_id = ?;
                    """,
                    (attempts, error, now, item_id),
                )
            else:
                self._conn.execute(
                    """
                    UPDATE queue_items
                    SET
                      status = 'pending',
                      attempts = ?,
                      last_error = ?,
                      next_attempt_at = ?,
                      order_key = ?,
                      started_at = NULL
                    WHERE item_id = ?;
                    """,
                    (attempts, error, now + float(backoff(attempts)), self._next_order_key(), item_id),
                )
            return self.get_queue_item(item_id=item_id)

    def defer_queue_item(self, *, item_id: str, next_attempt_at: float, reason: str | None = None) -> bool:
        """Return a claimed item to pending without counting an attempt."""
        cur = self._conn.execute(
            """
            UPDATE queue_items
            SET status = 'pending', next_attempt_at = ?, started_at = NULL, last_error = COALESCE(?, last_error)
            WHERE item_id = ? AND status = 'running';
            """,
            (next_attempt_at, reason, item_id),
        )
        return cur.rowcount == 1

    def reconcile_running_queue_items(self, *, reason: str = "daemon_restarted") -> int:
        """Items left `running` by a dead process lose that attempt and go back to pending
        (or fail terminally if it was their last)."""
        ts = _utc_ts()
        with self.transaction(mode="IMMEDIATE"):
            rows = self._conn.execute(
                "SELECT item_id, attempts, max_attempts FROM queue_items WHERE status = 'running';"
            ).fetchall()
            for r in rows:
                attempts = int(r["attempts"]) + 1
                status = "failed" if attempts >= int(r["max_attempts"]) else "pending"
                self._conn.execute(
                    """
                    UPDATE queue_items
                    SET
                      status = ?,
                      attempts = ?,
                      last_error = ?,
                      started_at = NULL,
                      next_attempt_at = ?,
                      completed_at = CASE WHEN ? = 'failed' THEN ? ELSE completed_at END
                    WHERE item_id = ?;
                    """,
                    (status, attempts, reason, ts, status, ts, str(r["item_id"])),
                )
        return len(rows)
