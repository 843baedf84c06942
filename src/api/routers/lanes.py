from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from src.api.dependencies import get_daemon, open_store
from src.api.errors import APIError


router = APIRouter()


class StartRunRequest(BaseModel):
    query: str = Field(min_length=1)
    executor: str | None = None
    model: str | None = None
    cwd: str | None = None
    attachments: list[str] = Field(default_factory=list)
    context_files: list[str] = Field(default_factory=list)


class CancelRunRequest(BaseModel):
    reason: str = Field(default="cancelled", min_length=1)


@router.post("/lanes/{lane}/runs", status_code=202)
def start_run(
    request: Request,
    lane: str,
    body: StartRunRequest,
    wait: bool = Query(default=False, description="Block until the run is finalized."),
    wait_timeout_s: float = Query(default=60.0, gt=0, le=3600),
) -> dict[str, Any]:
    daemon = get_daemon(request)
    try:
        handle = daemon.runs.start_run(
            lane,
            body.query,
            executor=body.executor,
            model=body.model,
            cwd=body.cwd,
            attachments=body.attachments,
            context_files=body.context_files,
        )
    except ValueError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

    payload: dict[str, Any] = {"run": handle.snapshot()}
    if wait:
        try:
            payload["result"] = handle.result(timeout=wait_timeout_s).to_dict()
        except TimeoutError:
            payload["result"] = None
    return payload


@router.post("/lanes/{lane}/cancel")
def cancel_run(request: Request, lane: str, body: CancelRunRequest | None = None) -> dict[str, Any]:
    daemon = get_daemon(request)
    active = daemon.runs.get_active_run(lane)
    cancelled = daemon.runs.cancel_run(lane, (body or CancelRunRequest()).reason)
    return {
        "lane": lane,
        "cancelled": cancelled,
        "run_id": active.run_id if active is not None else None,
    }


@router.get("/lanes/{lane}/active")
def get_active_run(request: Request, lane: str) -> dict[str, Any]:
    handle = get_daemon(request).runs.get_active_run(lane)
    return {"lane": lane, "run": handle.snapshot() if handle is not None else None}


@router.get("/lanes/{lane}/session")
def get_session(request: Request, lane: str) -> dict[str, Any]:
    store = open_store(request)
    try:
        state = store.get_executor_state(lane=lane)
        if state is None:
            raise APIError(status_code=404, code="not_found", message="No executor session for lane.")
        return {
            "session": {
                "lane": state.lane,
                "executor": state.executor,
                "model": state.model,
                "has_continuation": state.continuation_token is not None,
                "message_count": state.message_count,
                "switched_at": state.switched_at,
            }
        }
    finally:
        store.close()


@router.delete("/lanes/{lane}/session")
def reset_session(request: Request, lane: str) -> dict[str, Any]:
    store = open_store(request)
    try:
        return {"lane": lane, "cleared": store.clear_executor_state(lane=lane)}
    finally:
        store.close()


@router.post("/lanes/{lane}/transcript")
def create_transcript(request: Request, lane: str) -> dict[str, Any]:
    store = open_store(request)
    try:
        return {"lane": lane, "created": store.create_transcript(lane=lane)}
    finally:
        store.close()


@router.get("/lanes/{lane}/transcript")
def get_transcript(
    request: Request,
    lane: str,
    limit: int = Query(default=200, ge=1, le=1000),
) -> dict[str, Any]:
    store = open_store(request)
    try:
        if not store.has_transcript(lane=lane):
            raise APIError(status_code=404, code="not_found", message="Lane has no transcript.")
        return {"lane": lane, "items": store.list_transcript_messages(lane=lane, limit=int(limit))}
    finally:
        store.close()
