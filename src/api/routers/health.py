from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter
from fastapi import Request

from src.api.dependencies import get_daemon, open_store
from src.storage.sqlite_store import SCHEMA_VERSION


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "homer-runtime",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "croniter": _pkg_version("croniter"),
            "openai": _pkg_version("openai"),
        },
        "ts": time.time(),
    }


@router.get("/system/daemon")
def system_daemon(request: Request) -> dict[str, Any]:
    daemon = get_daemon(request)
    store = open_store(request)
    try:
        return {
            "ts": time.time(),
            "daemon": daemon.status_snapshot(),
            "counts": {
                "runs_by_status": store.count_runs_by_status(),
                "queue_by_status": store.count_queue_items_by_status(),
            },
            "startup": {"reconciled": dict(daemon.reconciled)},
        }
    finally:
        store.close()
