"""
Monitoring Module

Provides Prometheus metrics for the scoped connection primitives.
"""

from tenant_scope.monitoring.metrics import Metrics, get_metrics

__all__ = [
    "Metrics",
    "get_metrics",
]
