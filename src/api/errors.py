from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from src.runtime.errors import AlreadyRunning, ExecutorError, PersistenceError, RunTimeoutError, RuntimeFault


logger = logging.getLogger(__name__)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


# Checked in order; the first matching class decides the response.
_FAULT_RESPONSES: tuple[tuple[type[RuntimeFault], int, str], ...] = (
    (AlreadyRunning, 409, "already_running"),
    (RunTimeoutError, 504, "timeout"),
    (ExecutorError, 400, "invalid_argument"),
    (PersistenceError, 503, "persistence_failed"),
)


def fault_to_api_error(exc: RuntimeFault) -> APIError:
    """Map a runtime fault onto the HTTP error contract."""
    status_code, code = 500, "internal"
    for cls, status, name in _FAULT_RESPONSES:
        if isinstance(exc, cls):
            status_code, code = status, name
            break

    details: dict[str, Any] = {}
    if isinstance(exc, AlreadyRunning):
        details = {"lane": exc.lane, "run_id": exc.run_id}
    elif isinstance(exc, ExecutorError):
        details = dict(exc.details)
    elif isinstance(exc, PersistenceError) and exc.run_id:
        details = {"run_id": exc.run_id}
    return APIError(status_code=status_code, code=code, message=str(exc), details=details or None)


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=int(status_code), content=payload)


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def runtime_fault_handler(req: Request, exc: RuntimeFault) -> JSONResponse:
    err = fault_to_api_error(exc)
    if err.status_code >= 500:
        logger.error("runtime fault on %s %s: %s", req.method, req.url.path, exc)
    return await api_error_handler(req, err)


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def unhandled_error_handler(req: Request, exc: Exception) -> JSONResponse:
    # Safe body for clients; the traceback goes to the server log.
    logger.error("unhandled error on %s %s", req.method, req.url.path, exc_info=exc)
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )
