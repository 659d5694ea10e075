"""Audit events for privileged and state-changing operations.

Audit is advisory: recording an event never fails, delays, or rolls back
the operation it describes.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from tenant_scope.kernel.time import utc_now
from tenant_scope.monitoring.metrics import get_metrics

if TYPE_CHECKING:
    from tenant_scope.db.scope import TenantScope

logger = structlog.get_logger()

INSERT_EVENT_SQL = """
    INSERT INTO eventos_sistema (
        organizacion_id, tipo_evento, entidad_tipo, entidad_id,
        descripcion, metadata, usuario_id, creado_en
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
"""


@dataclass(frozen=True, slots=True)
class AuditEvent:
    tenant_id: int | None
    event_type: str
    entity_type: str | None = None
    entity_id: int | None = None
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    actor_user_id: int | None = None
    created_at: datetime = field(default_factory=utc_now)


class EventEmitter(Protocol):
    async def emit(self, event: AuditEvent) -> None:
        ...


async def record_event(conn: Any, event: AuditEvent) -> None:
    """Insert `event` using `conn` as-is."""
    await conn.execute(
        INSERT_EVENT_SQL,
        event.tenant_id,
        event.event_type,
        event.entity_type,
        event.entity_id,
        event.description,
        dict(event.metadata),
        event.actor_user_id,
        event.created_at,
    )


async def record_event_in_transaction(conn: Any, event: AuditEvent) -> bool:
    """Record `event` inside the caller's open transaction.

    The insert runs in a nested transaction, which asyncpg issues as a
    SAVEPOINT. A failed insert rolls back to that savepoint only, so the
    caller's transaction stays usable. Returns whether the event was written.
    """
    try:
        async with conn.transaction():
            await record_event(conn, event)
    except Exception as exc:
        logger.warning(
            "Audit event not recorded",
            event_type=event.event_type,
            tenant_id=event.tenant_id,
            error=str(exc),
        )
        get_metrics().track_audit_failure(event.event_type)
        return False
    return True


class PostgresEventEmitter:
    """Writes events to `eventos_sistema` on a connection of its own.

    Events are written with bypass so system events without a tenant can be
    stored, and so the write never shares a connection or transaction with
    the operation being audited.
    """

    def __init__(self, scope: "TenantScope"):
        self._scope = scope

    async def emit(self, event: AuditEvent) -> None:
        async def _write(conn: Any) -> None:
            await record_event(conn, event)

        await self._scope.with_bypass_transaction(_write)


async def emit_best_effort(
    emitter: EventEmitter | None,
    event: AuditEvent,
    *,
    timeout: float | None = None,
) -> bool:
    """Emit `event`, logging and swallowing any failure.

    With `timeout` set, an emission still running after that many seconds is
    cancelled and counted as a failure.
    """
    if emitter is None:
        logger.debug("No audit emitter configured", event_type=event.event_type)
        return False
    try:
        await asyncio.wait_for(emitter.emit(event), timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "Audit emission timed out",
            event_type=event.event_type,
            tenant_id=event.tenant_id,
            timeout=timeout,
        )
        get_metrics().track_audit_failure(event.event_type)
        return False
    except Exception as exc:
        logger.warning(
            "Audit emission failed",
            event_type=event.event_type,
            tenant_id=event.tenant_id,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            error=str(exc),
        )
        get_metrics().track_audit_failure(event.event_type)
        return False
    return True
