from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Query, Request

from src.api.dependencies import get_daemon, open_store
from src.api.errors import APIError
from src.runtime.scheduler import UnknownJobError


router = APIRouter()


@router.get("/jobs")
def list_jobs(request: Request) -> dict[str, Any]:
    daemon = get_daemon(request)
    store = open_store(request)
    try:
        jobs = store.list_scheduled_jobs()
    finally:
        store.close()
    return {
        "items": [{**asdict(j), "next_due_at": daemon.scheduler.next_due(j.job_id)} for j in jobs],
    }


@router.get("/jobs/{job_id}")
def get_job(request: Request, job_id: str) -> dict[str, Any]:
    daemon = get_daemon(request)
    store = open_store(request)
    try:
        job = store.get_scheduled_job(job_id=job_id)
    finally:
        store.close()
    if job is None:
        raise APIError(status_code=404, code="not_found", message="Job not found.")
    return {"job": {**asdict(job), "next_due_at": daemon.scheduler.next_due(job_id)}}


@router.post("/jobs/{job_id}/run", status_code=202)
def trigger_job(request: Request, job_id: str) -> dict[str, Any]:
    daemon = get_daemon(request)
    try:
        fut = daemon.scheduler.trigger_job(job_id)
    except UnknownJobError as e:
        raise APIError(status_code=404, code="not_found", message="Job not found.") from e
    except ValueError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e
    if fut is None:
        raise APIError(status_code=409, code="already_running", message="Job lane is busy; trigger skipped.")
    return {"job_id": job_id, "triggered": True}


@router.get("/jobs/{job_id}/history")
def job_history(
    request: Request,
    job_id: str,
    limit: int = Query(default=20, ge=1, le=200),
) -> dict[str, Any]:
    store = open_store(request)
    try:
        if store.get_scheduled_job(job_id=job_id) is None:
            raise APIError(status_code=404, code="not_found", message="Job not found.")
        return {"job_id": job_id, "items": store.list_job_runs(job_id=job_id, limit=int(limit))}
    finally:
        store.close()
