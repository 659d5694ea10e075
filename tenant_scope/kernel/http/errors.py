from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from tenant_scope.kernel.errors import TenantScopeError

logger = structlog.get_logger()


def _get_request_id(request: Request) -> str | None:
    return getattr(getattr(request, "state", None), "request_id", None)


def register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers on a FastAPI app.

    Connection and tenant-context failures arrive here as generic
    `service.unavailable` / `internal.error` errors; the handler renders only
    their public payload. Anything that is not a `TenantScopeError` renders as
    a generic 500.
    """

    @app.exception_handler(TenantScopeError)
    async def _typed_error_handler(request: Request, exc: TenantScopeError) -> Response:
        request_id = _get_request_id(request)
        if exc.status_code >= 500:
            logger.error(
                "Request failed",
                request_id=request_id,
                code=exc.code,
                error_type=type(exc).__name__,
                cause=str(exc.__cause__) if exc.__cause__ is not None else None,
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_public_dict(request_id=request_id))

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception) -> Response:
        request_id = _get_request_id(request)
        logger.exception("Unhandled exception", request_id=request_id, error=str(exc))

        payload: dict[str, Any] = {
            "detail": "Internal Server Error",
            "code": "internal.error",
        }
        if request_id:
            payload["request_id"] = request_id
        return JSONResponse(status_code=500, content=payload)
