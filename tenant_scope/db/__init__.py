"""PostgreSQL access with per-operation tenant context."""

from .context import Actor, Role, TenantContext
from .errors import (
    AcquisitionFailure,
    CommitFailure,
    ContextApplyFailure,
    ContextClearFailure,
    RollbackFailure,
)
from .pool import AsyncpgConnectionPool, ConnectionPool, close_pool, get_pool, init_pool
from .scope import TenantScope, get_tenant_scope

__all__ = [
    "Actor",
    "Role",
    "TenantContext",
    "AcquisitionFailure",
    "CommitFailure",
    "ContextApplyFailure",
    "ContextClearFailure",
    "RollbackFailure",
    "AsyncpgConnectionPool",
    "ConnectionPool",
    "close_pool",
    "get_pool",
    "init_pool",
    "TenantScope",
    "get_tenant_scope",
]
