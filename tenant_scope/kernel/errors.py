from __future__ import annotations

import re
from enum import Enum
from typing import Any, TypeVar

T = TypeVar("T")

_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class ErrorKind(str, Enum):
    """Stable discriminator so callers can branch on type, not on message text."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    UNAVAILABLE = "unavailable"
    INTERNAL = "internal"


class TenantScopeError(Exception):
    """Base typed error.

    - Stable `code` for programmatic handling across clients.
    - Human-readable `message` for UI surfaces.
    - Optional `meta` payload for debugging (safe-to-expose only).
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        *,
        code: str,
        message: str,
        status_code: int = 500,
        meta: dict[str, Any] | None = None,
    ) -> None:
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid error code. Expected dot-separated lowercase tokens, "
                f"got: {code!r}"
            )
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = int(status_code)
        self.meta = dict(meta or {})

    def to_public_dict(self, *, request_id: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "detail": self.message,
            "code": self.code,
        }
        if request_id:
            payload["request_id"] = request_id
        if self.meta:
            payload["meta"] = self.meta
        return payload


class NotFoundError(TenantScopeError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, *, message: str = "Not found", code: str = "resource.not_found", meta: dict[str, Any] | None = None):
        super().__init__(code=code, message=message, status_code=404, meta=meta)


class UnauthorizedError(TenantScopeError):
    kind = ErrorKind.UNAUTHORIZED

    def __init__(
        self,
        *,
        message: str = "Not authenticated",
        code: str = "auth.unauthorized",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=401, meta=meta)


class ForbiddenError(TenantScopeError):
    kind = ErrorKind.FORBIDDEN

    def __init__(
        self,
        *,
        message: str = "Forbidden",
        code: str = "auth.forbidden",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=403, meta=meta)


class ConflictError(TenantScopeError):
    kind = ErrorKind.CONFLICT

    def __init__(
        self,
        *,
        message: str = "Conflict",
        code: str = "request.conflict",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=409, meta=meta)


class ValidationError(TenantScopeError):
    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        *,
        message: str = "Validation error",
        code: str = "request.validation_error",
        meta: dict[str, Any] | None = None,
        status_code: int = 422,
    ):
        super().__init__(code=code, message=message, status_code=status_code, meta=meta)


class ServiceUnavailableError(TenantScopeError):
    kind = ErrorKind.UNAVAILABLE

    def __init__(
        self,
        *,
        message: str = "Service temporarily unavailable",
        code: str = "service.unavailable",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=503, meta=meta)


class InternalError(TenantScopeError):
    kind = ErrorKind.INTERNAL

    def __init__(
        self,
        *,
        message: str = "Internal Server Error",
        code: str = "internal.error",
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, status_code=500, meta=meta)


def raise_if_not_found(value: T | None, message: str = "Not found", *, code: str = "resource.not_found") -> T:
    """Return `value`, or raise NotFoundError when it is None."""
    if value is None:
        raise NotFoundError(message=message, code=code)
    return value
