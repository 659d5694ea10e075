"""Scoped connection primitives.

Every database operation borrows one connection, binds a tenant context to
it, runs caller-supplied work, and hands the connection back with that
context erased. The bound connection is passed to the work explicitly; there
is no ambient "current tenant".

Usage:
    scope = get_tenant_scope()

    async def _list(conn):
        return await conn.fetch("SELECT * FROM profesionales")

    rows = await scope.with_tenant(7, _list)

    async with scope.tenant_transaction(7) as conn:
        await conn.execute("UPDATE profesionales SET activo = false WHERE id = $1", 42)

Teardown rules:
- Every primitive opens a transaction before writing context, and writes it
  transaction-local, so COMMIT/ROLLBACK erases it. The plain primitives use
  that transaction only to scope the context; the `_transaction` forms make
  its atomicity part of their contract.
- Work may open nested transactions (savepoints); the outer COMMIT/ROLLBACK
  closes them.
- Afterwards every setting is reset at session scope and read back. If
  anything is left, the connection is still inside a transaction, or any
  teardown step fails, the connection is discarded instead of released.
- Teardown runs shielded from task cancellation.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar, Union

import structlog

from tenant_scope.audit.events import AuditEvent, EventEmitter, PostgresEventEmitter, emit_best_effort
from tenant_scope.config import get_settings
from tenant_scope.db.context import Actor, Role, TenantContext
from tenant_scope.db.errors import (
    AcquisitionFailure,
    CommitFailure,
    ContextApplyFailure,
    ContextClearFailure,
    RollbackFailure,
)
from tenant_scope.db.pool import ConnectionPool, get_pool
from tenant_scope.db.session_settings import apply_context, clear_context, leftover_settings
from tenant_scope.kernel.errors import ValidationError
from tenant_scope.monitoring.metrics import Metrics, get_metrics

logger = structlog.get_logger()

T = TypeVar("T")

Work = Callable[[Any], Awaitable[T]]
AuditSpec = Union[AuditEvent, Callable[[Any], Union[AuditEvent, None]], None]

DEFAULT_AUDIT_TIMEOUT_SECONDS = 5.0

# Teardowns outliving a cancelled caller; held so they are not collected mid-run.
_pending_teardowns: set[asyncio.Task] = set()


class TenantScope:
    """Runs work on pooled connections bound to a tenant context."""

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        acquire_timeout: float | None = None,
        emitter: EventEmitter | None = None,
        metrics: Metrics | None = None,
        audit_timeout: float | None = DEFAULT_AUDIT_TIMEOUT_SECONDS,
    ):
        self._pool = pool
        self._acquire_timeout = acquire_timeout
        self.emitter = emitter
        self._metrics = metrics
        self._audit_timeout = audit_timeout

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def metrics(self) -> Metrics:
        return self._metrics or get_metrics()

    # ------------------------------------------------------------------
    # Callback primitives
    # ------------------------------------------------------------------

    async def with_tenant(
        self,
        tenant_id: int,
        work: Work[T],
        *,
        actor: Actor | None = None,
        timeout: float | None = None,
        audit: AuditSpec = None,
    ) -> T:
        """Run `work(conn)` with row filtering for `tenant_id`."""
        context = TenantContext.for_tenant(tenant_id, actor)
        return await self._run("with_tenant", context, work, timeout=timeout, audit=audit)

    async def with_tenant_transaction(
        self,
        tenant_id: int,
        work: Work[T],
        *,
        actor: Actor | None = None,
        timeout: float | None = None,
        audit: AuditSpec = None,
    ) -> T:
        """Like `with_tenant`; all of `work` commits or none of it does."""
        context = TenantContext.for_tenant(tenant_id, actor)
        return await self._run("with_tenant_transaction", context, work, timeout=timeout, audit=audit)

    async def with_bypass(
        self,
        work: Work[T],
        *,
        actor: Actor | None = None,
        timeout: float | None = None,
        audit: AuditSpec = None,
    ) -> T:
        """Run `work(conn)` exempt from tenant row filtering.

        Only for system bootstrap, cross-tenant super-admin reads,
        maintenance jobs and login-candidate lookup.
        """
        context = TenantContext.for_bypass(actor)
        return await self._run("with_bypass", context, work, timeout=timeout, audit=audit)

    async def with_bypass_transaction(
        self,
        work: Work[T],
        *,
        actor: Actor | None = None,
        timeout: float | None = None,
        audit: AuditSpec = None,
    ) -> T:
        context = TenantContext.for_bypass(actor)
        return await self._run("with_bypass_transaction", context, work, timeout=timeout, audit=audit)

    async def with_role(
        self,
        role: Role | str,
        work: Work[T],
        *,
        tenant_id: int | None = None,
        user_id: int | None = None,
        timeout: float | None = None,
        audit: AuditSpec = None,
    ) -> T:
        """Run `work(conn)` under `role` without bypass, e.g. `Role.LOGIN_CONTEXT`."""
        context = TenantContext.for_role(role, tenant_id=tenant_id, user_id=user_id)
        return await self._run("with_role", context, work, timeout=timeout, audit=audit)

    async def with_login_lookup(
        self,
        email: str,
        work: Work[T],
        *,
        timeout: float | None = None,
    ) -> T:
        """Bypass context plus `app.login_email`, for finding a login candidate.

        The email is stored exactly as given; policies compare it as-is.
        """
        if not isinstance(email, str) or not email.strip():
            raise ValidationError(message="email is required", code="tenant.invalid_login_email")
        context = TenantContext.for_bypass(Actor(role=Role.LOGIN_CONTEXT), login_email=email)
        return await self._run("with_login_lookup", context, work, timeout=timeout, audit=None)

    # ------------------------------------------------------------------
    # Context manager forms
    # ------------------------------------------------------------------

    def tenant(self, tenant_id: int, *, actor: Actor | None = None, timeout: float | None = None):
        context = TenantContext.for_tenant(tenant_id, actor)
        return self._bound("with_tenant", context, timeout=timeout)

    def tenant_transaction(self, tenant_id: int, *, actor: Actor | None = None, timeout: float | None = None):
        context = TenantContext.for_tenant(tenant_id, actor)
        return self._bound("with_tenant_transaction", context, timeout=timeout)

    def bypass(self, *, actor: Actor | None = None, timeout: float | None = None):
        context = TenantContext.for_bypass(actor)
        return self._bound("with_bypass", context, timeout=timeout)

    def bypass_transaction(self, *, actor: Actor | None = None, timeout: float | None = None):
        context = TenantContext.for_bypass(actor)
        return self._bound("with_bypass_transaction", context, timeout=timeout)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(
        self,
        operation: str,
        context: TenantContext,
        work: Work[T],
        *,
        timeout: float | None,
        audit: AuditSpec,
    ) -> T:
        started = time.perf_counter()
        outcome = "error"
        try:
            async with self._bound(operation, context, timeout=timeout) as conn:
                result = await work(conn)
            outcome = "ok"
        finally:
            self.metrics.track_operation(operation, outcome, time.perf_counter() - started)

        if audit is not None:
            await self._emit_audit(operation, audit, result)
        return result

    async def _emit_audit(self, operation: str, audit: AuditSpec, result: Any) -> None:
        try:
            event = audit(result) if callable(audit) else audit
        except Exception as exc:
            logger.warning("Audit event could not be built", operation=operation, error=str(exc))
            return
        if event is not None:
            await emit_best_effort(self.emitter, event, timeout=self._audit_timeout)

    @asynccontextmanager
    async def _bound(
        self,
        operation: str,
        context: TenantContext,
        *,
        timeout: float | None,
    ) -> AsyncIterator[Any]:
        conn = await self._acquire(operation, context, timeout)
        discard_reason: str | None = None
        try:
            transaction = conn.transaction()
            try:
                await transaction.start()
            except BaseException as exc:
                discard_reason = "begin_failed"
                if not isinstance(exc, Exception):
                    raise
                logger.error("Failed to open transaction", operation=operation, error=str(exc))
                raise ContextApplyFailure(operation=operation) from exc

            try:
                await apply_context(conn, context)
            except BaseException as exc:
                discard_reason = "apply_failed"
                await self._rollback_quietly(transaction, operation)
                if not isinstance(exc, Exception):
                    raise
                logger.error(
                    "Failed to apply tenant context",
                    operation=operation,
                    error=str(exc),
                    **context.log_fields(),
                )
                raise ContextApplyFailure(operation=operation) from exc

            try:
                yield conn
            except BaseException as exc:
                try:
                    await transaction.rollback()
                except BaseException as rollback_exc:
                    discard_reason = "rollback_failed"
                    if not isinstance(rollback_exc, Exception):
                        raise
                    logger.error(
                        "Rollback failed",
                        operation=operation,
                        error=str(rollback_exc),
                        original_error=str(exc),
                    )
                    raise RollbackFailure(operation=operation, original_error=exc) from rollback_exc
                raise
            else:
                try:
                    await transaction.commit()
                except BaseException as exc:
                    discard_reason = "commit_failed"
                    if not isinstance(exc, Exception):
                        raise
                    logger.error("Commit failed", operation=operation, error=str(exc))
                    raise CommitFailure(operation=operation) from exc
        finally:
            teardown = asyncio.ensure_future(self._teardown(conn, operation, discard_reason))
            _pending_teardowns.add(teardown)
            teardown.add_done_callback(_pending_teardowns.discard)
            await asyncio.shield(teardown)

    async def _acquire(self, operation: str, context: TenantContext, timeout: float | None) -> Any:
        effective_timeout = self._acquire_timeout if timeout is None else timeout
        try:
            conn = await self._pool.acquire(effective_timeout)
        except Exception as exc:
            logger.error(
                "Connection acquisition failed",
                operation=operation,
                timeout=effective_timeout,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise AcquisitionFailure(operation=operation, timeout=effective_timeout) from exc
        logger.debug("Connection acquired", operation=operation, **context.log_fields())
        return conn

    async def _rollback_quietly(self, transaction: Any, operation: str) -> None:
        try:
            await transaction.rollback()
        except Exception as exc:
            logger.error("Rollback after failed context apply failed", operation=operation, error=str(exc))

    async def _clear(self, conn: Any, operation: str) -> None:
        try:
            await clear_context(conn)
            leftover = await leftover_settings(conn)
        except Exception as exc:
            raise ContextClearFailure(operation=operation) from exc
        if leftover:
            raise ContextClearFailure(operation=operation, leftover=leftover)

    async def _teardown(self, conn: Any, operation: str, discard_reason: str | None) -> None:
        if discard_reason is None and conn.is_closed():
            discard_reason = "connection_closed"

        # A reset written inside a still-open transaction would be undone by its rollback.
        if discard_reason is None and conn.is_in_transaction():
            logger.critical("Connection left inside a transaction; discarding", operation=operation)
            discard_reason = "transaction_left_open"

        if discard_reason is None:
            try:
                await self._clear(conn, operation)
            except ContextClearFailure as exc:
                cause = exc.__cause__
                logger.critical(
                    "Failed to clear tenant context; discarding connection",
                    operation=operation,
                    leftover=sorted(exc.leftover),
                    error=str(cause) if cause is not None else None,
                    error_type=type(cause).__name__ if cause is not None else None,
                )
                discard_reason = "context_leftover" if exc.leftover else "clear_failed"

        if discard_reason is None:
            try:
                await self._pool.release(conn)
            except Exception as exc:
                logger.error("Connection release failed", operation=operation, error=str(exc))
            else:
                logger.debug("Connection released", operation=operation)
            return

        self.metrics.track_discard(discard_reason)
        try:
            await self._pool.discard(conn)
        except Exception as exc:
            logger.critical(
                "Connection discard failed",
                operation=operation,
                reason=discard_reason,
                error=str(exc),
            )
        else:
            logger.warning("Connection discarded", operation=operation, reason=discard_reason)


_scope: TenantScope | None = None


def get_tenant_scope() -> TenantScope:
    """Scope over the shared pool, with audit events written to Postgres if enabled."""
    global _scope
    pool = get_pool()
    if _scope is None or _scope.pool is not pool:
        settings = get_settings()
        _scope = TenantScope(
            pool,
            acquire_timeout=settings.db_pool_acquire_timeout_seconds,
            audit_timeout=settings.audit_emit_timeout_seconds,
        )
        if settings.audit_events_enabled:
            _scope.emitter = PostgresEventEmitter(_scope)
    return _scope
