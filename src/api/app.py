from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from src.api.errors import (
    APIError,
    api_error_handler,
    runtime_fault_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from src.config.load_config import AppConfig, load_app_config
from src.runtime.daemon import HomerDaemon
from src.runtime.errors import RuntimeFault

from .routers.health import router as health_router
from .routers.jobs import router as jobs_router
from .routers.lanes import router as lanes_router
from .routers.queue import router as queue_router
from .routers.runs import router as runs_router


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("HOMER_CORS_ORIGINS", "").strip()
    if not raw:
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def create_app(
    config: AppConfig | None = None,
    *,
    daemon_factory: Callable[[AppConfig], HomerDaemon] = HomerDaemon,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        cfg = config or load_app_config()
        daemon = daemon_factory(cfg)
        # Reconcile stuck runs / claimed queue items from a previous process.
        daemon.start(reconcile=_env_bool("HOMER_RECONCILE_ON_STARTUP", True))
        app.state.daemon = daemon
        try:
            yield
        finally:
            daemon.stop()

    app = FastAPI(title="homer-runtime API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RuntimeFault, runtime_fault_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins_from_env(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(lanes_router, prefix="/api/v1", tags=["lanes"])
    app.include_router(runs_router, prefix="/api/v1", tags=["runs"])
    app.include_router(jobs_router, prefix="/api/v1", tags=["jobs"])
    app.include_router(queue_router, prefix="/api/v1", tags=["queue"])

    if _env_bool("HOMER_ENABLE_DEBUG_ENDPOINTS", False):
        @app.get("/api/v1/_debug/env", include_in_schema=False)
        def debug_env() -> dict[str, Any]:
            # Non-sensitive values only.
            return {
                "HOMER_CONFIG_PATH": os.getenv("HOMER_CONFIG_PATH", ""),
                "HOMER_SQLITE_PATH": os.getenv("HOMER_SQLITE_PATH", ""),
                "OPENAI_API_BASE": os.getenv("OPENAI_API_BASE") or os.getenv("OPENAI_BASE_URL") or "",
            }

    return app


app = create_app()
