"""Errors raised by the scoped connection primitives.

Every class here renders the same generic public payload as its parent
(`service.unavailable` or `internal.error`), so clients can never tell a
context-setting problem apart from any other internal failure. The
`operation` attribute and the exception chain carry the detail for logs.
"""

from __future__ import annotations

from tenant_scope.kernel.errors import InternalError, ServiceUnavailableError


class AcquisitionFailure(ServiceUnavailableError):
    """Pool exhausted, acquisition timed out, or the server refused the connection."""

    def __init__(self, *, operation: str, timeout: float | None = None) -> None:
        super().__init__()
        self.operation = operation
        self.timeout = timeout


class ContextApplyFailure(InternalError):
    """Setting the session attributes failed; the operation never ran."""

    def __init__(self, *, operation: str) -> None:
        super().__init__()
        self.operation = operation


class ContextClearFailure(InternalError):
    """Clearing or verifying the session attributes failed.

    Never raised to callers. Built so the teardown path has a single typed
    value to log and count before discarding the connection.
    """

    def __init__(self, *, operation: str, leftover: dict[str, str] | None = None) -> None:
        super().__init__()
        self.operation = operation
        self.leftover = dict(leftover or {})


class CommitFailure(InternalError):
    def __init__(self, *, operation: str) -> None:
        super().__init__()
        self.operation = operation


class RollbackFailure(InternalError):
    """Rolling back failed. `original_error` is what triggered the rollback."""

    def __init__(self, *, operation: str, original_error: BaseException | None = None) -> None:
        super().__init__()
        self.operation = operation
        self.original_error = original_error
