from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request

from src.api.dependencies import open_store
from src.api.errors import APIError
from src.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor


router = APIRouter()


@router.get("/runs")
def list_runs(
    request: Request,
    lane: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
) -> dict[str, Any]:
    store = open_store(request)
    try:
        cursor_obj: Cursor | None = None
        if cursor:
            try:
                cursor_obj = decode_cursor(cursor)
            except CursorError as e:
                raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

        page = store.list_runs_page(
            lane=(lane.strip() if lane else None),
            limit=int(limit),
            cursor=cursor_obj.as_key() if cursor_obj is not None else None,
            statuses=status or None,
        )
        next_cursor = page.get("next_cursor")
        if next_cursor is not None:
            page["next_cursor"] = encode_cursor(Cursor.from_key(next_cursor))
        return page
    finally:
        store.close()


@router.get("/runs/{run_id}")
def get_run(request: Request, run_id: str) -> dict[str, Any]:
    store = open_store(request)
    try:
        row = store.get_run(run_id=run_id)
        if row is None:
            raise APIError(status_code=404, code="not_found", message="Run not found.")
        return {
            "run": {
                "run_id": row["run_id"],
                "lane": row["lane"],
                "executor": row["executor"],
                "model": row["model"],
                "status": row["status"],
                "created_at": float(row["created_at"]),
                "started_at": float(row["started_at"]) if row["started_at"] is not None else None,
                "completed_at": float(row["completed_at"]) if row["completed_at"] is not None else None,
                "exit_code": int(row["exit_code"]) if row["exit_code"] is not None else None,
                "output": row["output"],
                "error": row["error"],
            }
        }
    finally:
        store.close()


@router.get("/runs/{run_id}/events")
def list_run_events(
    request: Request,
    run_id: str,
    event_type: list[str] | None = Query(default=None),
) -> dict[str, Any]:
    store = open_store(request)
    try:
        if store.get_run(run_id=run_id) is None:
            raise APIError(status_code=404, code="not_found", message="Run not found.")
        wanted = set(event_type or [])
        items = [e for e in store.iter_events(run_id) if not wanted or e["event_type"] in wanted]
        return {"run_id": run_id, "items": items}
    finally:
        store.close()
