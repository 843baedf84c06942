from __future__ import annotations

from fastapi import Request

from src.api.errors import APIError
from src.runtime.daemon import HomerDaemon
from src.storage.sqlite_store import SQLiteStore


def get_daemon(request: Request) -> HomerDaemon:
    """FastAPI dependency: the daemon built in the app lifespan."""
    daemon = getattr(request.app.state, "daemon", None)
    if not isinstance(daemon, HomerDaemon):
        raise APIError(status_code=503, code="unavailable", message="Daemon is not running.")
    return daemon


def open_store(request: Request) -> SQLiteStore:
    """Open a connection on the daemon's database. Callers close it."""
    return SQLiteStore(get_daemon(request).db_path)
