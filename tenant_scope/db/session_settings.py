"""Apply, clear and inspect tenant context settings on one connection.

Context is written with `set_config(name, value, true)`, which scopes the
value to the open transaction; PostgreSQL drops it at COMMIT or ROLLBACK.
Every primitive therefore applies context inside a transaction, and a value
never outlives the server connection it was written on, even behind a
transaction-mode pooler.

The reset on the way out uses `is_local=false`, so it also overwrites any
session-level value work may have set under the same names.

Values are sent as bind parameters, never interpolated.
"""

from __future__ import annotations

from typing import Any

from tenant_scope.db.context import CLEARED_VALUE, CONTEXT_SETTINGS, TenantContext

SET_CONFIG_SQL = "SELECT set_config($1, $2, $3)"

READ_CONTEXT_SQL = "SELECT " + ", ".join(
    f"current_setting('{name}', true)" for name in CONTEXT_SETTINGS
)


async def apply_context(conn: Any, context: TenantContext) -> None:
    """Write every context setting on `conn`, transaction-local, in one round trip."""
    await conn.executemany(
        SET_CONFIG_SQL,
        [(name, value, True) for name, value in context.as_settings().items()],
    )


async def clear_context(conn: Any) -> None:
    """Reset every context setting to the cleared value at session scope."""
    await conn.executemany(
        SET_CONFIG_SQL,
        [(name, CLEARED_VALUE, False) for name in CONTEXT_SETTINGS],
    )


async def read_context(conn: Any) -> dict[str, str]:
    """Current value of each context setting. Unset settings read as ''."""
    row = await conn.fetchrow(READ_CONTEXT_SQL)
    return {
        name: (row[index] if row is not None and row[index] is not None else CLEARED_VALUE)
        for index, name in enumerate(CONTEXT_SETTINGS)
    }


async def leftover_settings(conn: Any) -> dict[str, str]:
    """Settings still holding a non-cleared value."""
    current = await read_context(conn)
    return {name: value for name, value in current.items() if value != CLEARED_VALUE}
