from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from src.api.dependencies import get_daemon
from src.api.errors import APIError


router = APIRouter()


class EnqueueRequest(BaseModel):
    lane: str | None = None
    query: str = Field(min_length=1)
    executor: str | None = None
    model: str | None = None
    cwd: str | None = None
    attachments: list[str] = Field(default_factory=list)
    timeout_s: float | None = Field(default=None, gt=0)
    max_attempts: int | None = Field(default=None, ge=1, le=20)
    delay_s: float = Field(default=0.0, ge=0)


@router.post("/queue", status_code=201)
def enqueue(request: Request, body: EnqueueRequest) -> dict[str, Any]:
    daemon = get_daemon(request)
    payload = body.model_dump(exclude={"max_attempts", "delay_s"}, exclude_none=True)
    item_id = daemon.queue.enqueue(payload, max_attempts=body.max_attempts, delay_s=body.delay_s)
    return {"item_id": item_id}


@router.get("/queue")
def list_queue(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    status: list[str] | None = Query(default=None),
) -> dict[str, Any]:
    items = get_daemon(request).queue.list_recent(int(limit), statuses=status or None)
    return {"items": [asdict(i) for i in items]}


@router.get("/queue/stats")
def queue_stats(request: Request) -> dict[str, Any]:
    return {"by_status": get_daemon(request).queue.stats()}


@router.get("/queue/{item_id}")
def get_queue_item(request: Request, item_id: str) -> dict[str, Any]:
    item = get_daemon(request).queue.get(item_id)
    if item is None:
        raise APIError(status_code=404, code="not_found", message="Queue item not found.")
    return {"item": asdict(item)}
