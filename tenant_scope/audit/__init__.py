"""Audit event emission."""

from .events import (
    AuditEvent,
    EventEmitter,
    PostgresEventEmitter,
    emit_best_effort,
    record_event,
    record_event_in_transaction,
)

__all__ = [
    "AuditEvent",
    "EventEmitter",
    "PostgresEventEmitter",
    "emit_best_effort",
    "record_event",
    "record_event_in_transaction",
]
