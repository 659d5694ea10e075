"""HTTP glue for FastAPI services built on tenant-scoped operations."""

from fastapi import FastAPI

from .errors import register_exception_handlers
from .middleware import RequestIDMiddleware


def install_http_support(app: FastAPI) -> None:
    """Tag every request with an id and render package errors on `app`."""
    app.add_middleware(RequestIDMiddleware)
    register_exception_handlers(app)


__all__ = ["RequestIDMiddleware", "install_http_support", "register_exception_handlers"]
