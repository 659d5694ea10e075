"""
Prometheus Metrics

Counters for the scoped connection primitives and audit emission.
"""

from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from tenant_scope.config import get_settings

# Singleton metrics instance
_metrics: "Metrics | None" = None


class Metrics:
    """
    Tracks:
    - scoped operations by primitive and outcome
    - connections discarded instead of returned to the pool
    - audit emission failures
    """

    def __init__(self, *, enabled: bool = True, registry: CollectorRegistry = REGISTRY):
        self._enabled = enabled
        if not enabled:
            return

        self.scoped_operations_total = Counter(
            "tenant_scope_operations_total",
            "Scoped database operations",
            ["primitive", "outcome"],
            registry=registry,
        )

        self.scoped_operation_duration_seconds = Histogram(
            "tenant_scope_operation_duration_seconds",
            "Scoped database operation duration in seconds",
            ["primitive"],
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=registry,
        )

        self.connections_discarded_total = Counter(
            "tenant_scope_connections_discarded_total",
            "Connections closed instead of being returned to the idle pool",
            ["reason"],
            registry=registry,
        )

        self.audit_emit_failures_total = Counter(
            "tenant_scope_audit_emit_failures_total",
            "Audit events that could not be recorded",
            ["event_type"],
            registry=registry,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    def track_operation(self, primitive: str, outcome: str, duration: float) -> None:
        if not self._enabled:
            return
        self.scoped_operations_total.labels(primitive=primitive, outcome=outcome).inc()
        self.scoped_operation_duration_seconds.labels(primitive=primitive).observe(duration)

    def track_discard(self, reason: str) -> None:
        if not self._enabled:
            return
        self.connections_discarded_total.labels(reason=reason).inc()

    def track_audit_failure(self, event_type: str) -> None:
        if not self._enabled:
            return
        self.audit_emit_failures_total.labels(event_type=event_type).inc()


def get_metrics() -> Metrics:
    """Get or create the singleton metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = Metrics(enabled=get_settings().metrics_enabled)
    return _metrics
