from __future__ import annotations

import pytest

from tenant_scope.kernel.errors import (
    ConflictError,
    ErrorKind,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ServiceUnavailableError,
    TenantScopeError,
    UnauthorizedError,
    ValidationError,
    raise_if_not_found,
)


@pytest.mark.parametrize(
    ("error_cls", "kind", "status_code"),
    [
        (NotFoundError, ErrorKind.NOT_FOUND, 404),
        (ConflictError, ErrorKind.CONFLICT, 409),
        (ValidationError, ErrorKind.VALIDATION, 422),
        (UnauthorizedError, ErrorKind.UNAUTHORIZED, 401),
        (ForbiddenError, ErrorKind.FORBIDDEN, 403),
        (ServiceUnavailableError, ErrorKind.UNAVAILABLE, 503),
        (InternalError, ErrorKind.INTERNAL, 500),
    ],
)
def test_error_kinds_and_status_codes(error_cls, kind, status_code):
    error = error_cls()

    assert error.kind is kind
    assert error.status_code == status_code
    assert isinstance(error, TenantScopeError)


def test_invalid_error_code_is_rejected():
    with pytest.raises(ValueError):
        TenantScopeError(code="Not A Code", message="x")


def test_dotted_error_code_is_accepted():
    error = TenantScopeError(code="profesional.email_taken", message="taken", status_code=409)

    assert error.to_public_dict(request_id=None) == {"detail": "taken", "code": "profesional.email_taken"}


def test_meta_is_included_when_present():
    error = ValidationError(message="bad", meta={"field": "email"})

    assert error.to_public_dict(request_id="r")["meta"] == {"field": "email"}


def test_raise_if_not_found_returns_value():
    row = {"id": 1}

    assert raise_if_not_found(row) is row
    assert raise_if_not_found(0) == 0


def test_raise_if_not_found_raises_typed_error():
    with pytest.raises(NotFoundError) as exc_info:
        raise_if_not_found(None, "Professional not found", code="profesional.not_found")

    assert exc_info.value.kind is ErrorKind.NOT_FOUND
    assert exc_info.value.code == "profesional.not_found"
