"""Tenant isolation across pooled connection reuse."""

from __future__ import annotations

import asyncio

import pytest

from tenant_scope.audit.events import AuditEvent, PostgresEventEmitter
from tenant_scope.db.context import (
    BYPASS_SETTING,
    CONTEXT_SETTINGS,
    LOGIN_EMAIL_SETTING,
    ROLE_SETTING,
    TENANT_ID_SETTING,
    USER_ID_SETTING,
    Actor,
    Role,
)
from tenant_scope.db.scope import TenantScope
from tenant_scope.monitoring.metrics import Metrics
from tests.support.audit import StalledEmitter
from tests.support.fake_postgres import FakePool

INSERT_PROFESSIONAL = "INSERT INTO profesionales (organizacion_id, nombre) VALUES ($1, $2) RETURNING *"
LIST_PROFESSIONALS = "SELECT * FROM profesionales"


def _insert(organization_id: int, name: str):
    async def _work(conn):
        return await conn.fetchrow(INSERT_PROFESSIONAL, organization_id, name)

    return _work


async def _list(conn):
    return await conn.fetch(LIST_PROFESSIONALS)


def _snapshot(conn) -> dict[str, str | None]:
    return {name: conn.setting(name) for name in CONTEXT_SETTINGS}


def _assert_cleared(conn) -> None:
    assert all(not value for value in _snapshot(conn).values()), _snapshot(conn)


@pytest.mark.asyncio
async def test_sequential_reuse_sees_only_current_tenant(scope, fake_pool):
    seen: dict[str, object] = {}

    async def _as_first(conn):
        seen["first"] = conn
        return conn.setting(TENANT_ID_SETTING)

    async def _as_second(conn):
        seen["second"] = conn
        return _snapshot(conn)

    assert await scope.with_tenant(7, _as_first) == "7"
    second = await scope.with_tenant(9, _as_second)

    assert seen["first"] is seen["second"]
    assert second[TENANT_ID_SETTING] == "9"
    assert second[BYPASS_SETTING] == "false"
    _assert_cleared(fake_pool.connections[0])
    assert fake_pool.discarded == []


@pytest.mark.asyncio
async def test_professional_created_by_one_org_is_invisible_to_another(scope, fake_pool):
    created = await scope.with_tenant(7, _insert(7, "Dra. Ruiz"))
    assert created["organizacion_id"] == 7

    assert await scope.with_tenant(9, _list) == []
    assert [row["nombre"] for row in await scope.with_tenant(7, _list)] == ["Dra. Ruiz"]
    assert len(fake_pool.connections) == 1


@pytest.mark.asyncio
async def test_callback_error_does_not_leak_into_next_borrow(scope, fake_pool):
    boom = RuntimeError("query failed")

    async def _fails(conn):
        raise boom

    with pytest.raises(RuntimeError) as exc_info:
        await scope.with_tenant(7, _fails)
    assert exc_info.value is boom

    _assert_cleared(fake_pool.connections[0])
    assert await scope.with_tenant(9, lambda conn: _async(_snapshot(conn))) == {
        TENANT_ID_SETTING: "9",
        USER_ID_SETTING: "",
        ROLE_SETTING: "",
        BYPASS_SETTING: "false",
        LOGIN_EMAIL_SETTING: "",
    }
    assert fake_pool.discarded == []
    assert len(fake_pool.released) == 2


@pytest.mark.asyncio
async def test_bypass_is_gone_when_connection_is_reused_by_a_tenant(scope, fake_pool):
    await scope.with_bypass(_insert(7, "Org 7 pro"))
    await scope.with_bypass(_insert(9, "Org 9 pro"))
    _assert_cleared(fake_pool.connections[0])

    async def _tenant_view(conn):
        return conn.setting(BYPASS_SETTING), await conn.fetch(LIST_PROFESSIONALS)

    bypass_flag, rows = await scope.with_tenant(9, _tenant_view)
    assert bypass_flag == "false"
    assert [row["nombre"] for row in rows] == ["Org 9 pro"]


@pytest.mark.asyncio
async def test_bypass_sees_every_tenant(scope):
    await scope.with_tenant(7, _insert(7, "a"))
    await scope.with_tenant(9, _insert(9, "b"))

    rows = await scope.with_bypass(_list)
    assert sorted(row["organizacion_id"] for row in rows) == [7, 9]


@pytest.mark.asyncio
async def test_transaction_rollback_discards_writes_and_context(scope, fake_pool):
    conn = fake_pool.connections[0]
    during: dict[str, object] = {}

    async def _writes_then_fails(tx_conn):
        await tx_conn.fetchrow(INSERT_PROFESSIONAL, 7, "never committed")
        during["local"] = dict(tx_conn.local)
        during["session_tenant"] = tx_conn.session.get(TENANT_ID_SETTING)
        raise ValueError("business rule violated")

    with pytest.raises(ValueError):
        await scope.with_tenant_transaction(7, _writes_then_fails)

    assert during["local"][TENANT_ID_SETTING] == "7"
    assert during["session_tenant"] in (None, "")
    assert "ROLLBACK" in conn.statements
    assert "COMMIT" not in conn.statements
    _assert_cleared(conn)
    assert await scope.with_bypass(_list) == []
    assert fake_pool.discarded == []


@pytest.mark.asyncio
async def test_transaction_commit_makes_writes_visible(scope, fake_pool):
    created = await scope.with_tenant_transaction(7, _insert(7, "committed"))

    assert created["nombre"] == "committed"
    assert fake_pool.db.tables["profesionales"] == [created]
    _assert_cleared(fake_pool.connections[0])


@pytest.mark.asyncio
async def test_context_is_set_after_begin_in_transactions(scope, fake_pool):
    await scope.with_bypass_transaction(_list)

    statements = fake_pool.connections[0].statements
    begin = statements.index("BEGIN")
    first_set = next(i for i, sql in enumerate(statements) if "set_config" in sql)
    assert begin < first_set < statements.index("COMMIT")


@pytest.mark.asyncio
async def test_nested_bypass_uses_an_independent_connection():
    pool = FakePool(size=2)
    scope = TenantScope(pool, acquire_timeout=1.0, metrics=Metrics(enabled=False))
    observed: dict[str, object] = {}

    async def _inner(conn):
        observed["inner_conn"] = conn
        observed["inner"] = _snapshot(conn)
        return "inner"

    async def _outer(conn):
        observed["outer_before"] = _snapshot(conn)
        assert await scope.with_bypass(_inner) == "inner"
        observed["outer_after"] = _snapshot(conn)
        return conn

    outer_conn = await scope.with_tenant(7, _outer)

    assert observed["inner_conn"] is not outer_conn
    assert observed["inner"][BYPASS_SETTING] == "true"
    assert observed["outer_before"] == observed["outer_after"]
    assert observed["outer_after"][TENANT_ID_SETTING] == "7"
    assert observed["outer_after"][BYPASS_SETTING] == "false"
    assert pool.acquired_count == 2
    assert len(pool.released) == 2


@pytest.mark.asyncio
async def test_concurrent_operations_never_observe_each_other():
    pool = FakePool(size=3)
    scope = TenantScope(pool, acquire_timeout=1.0, metrics=Metrics(enabled=False))

    async def _check(tenant_id: int):
        async def _work(conn):
            for _ in range(5):
                assert conn.setting(TENANT_ID_SETTING) == str(tenant_id)
                await asyncio.sleep(0)
            return tenant_id

        return await scope.with_tenant(tenant_id, _work)

    results = await asyncio.gather(*(_check(tenant_id) for tenant_id in range(1, 21)))

    assert results == list(range(1, 21))
    assert pool.borrowed == []
    assert pool.discarded == []
    for conn in pool.connections:
        _assert_cleared(conn)


@pytest.mark.asyncio
async def test_audit_failure_does_not_change_result_or_roll_back(scope, fake_pool, recording_emitter):
    recording_emitter.error = RuntimeError("audit store down")
    scope.emitter = recording_emitter

    created = await scope.with_bypass_transaction(
        _insert(7, "bootstrap"),
        audit=lambda row: AuditEvent(tenant_id=7, event_type="profesional_creado", entity_id=row["id"]),
    )

    assert created["nombre"] == "bootstrap"
    assert fake_pool.db.tables["profesionales"] == [created]
    assert recording_emitter.events == []


@pytest.mark.asyncio
async def test_postgres_emitter_failure_leaves_primary_write_committed(scope, fake_pool):
    scope.emitter = PostgresEventEmitter(scope)
    fake_pool.connections[0].event_insert_error = RuntimeError("eventos_sistema missing")

    created = await scope.with_bypass_transaction(
        _insert(7, "kept"),
        audit=AuditEvent(tenant_id=7, event_type="profesional_creado", entity_type="profesional"),
    )

    assert created["nombre"] == "kept"
    assert fake_pool.db.tables["profesionales"] == [created]
    assert fake_pool.db.tables["eventos_sistema"] == []
    _assert_cleared(fake_pool.connections[0])


@pytest.mark.asyncio
async def test_postgres_emitter_records_event_after_success(scope, fake_pool):
    scope.emitter = PostgresEventEmitter(scope)

    await scope.with_tenant(
        7,
        _insert(7, "Dr. Vega"),
        actor=Actor(user_id=3, role=Role.ADMIN),
        audit=lambda row: AuditEvent(
            tenant_id=7,
            event_type="profesional_creado",
            entity_type="profesional",
            entity_id=row["id"],
            description="Professional created",
            metadata={"nombre": row["nombre"]},
            actor_user_id=3,
        ),
    )

    [event_row] = fake_pool.db.tables["eventos_sistema"]
    assert event_row["organizacion_id"] == 7
    assert event_row["tipo_evento"] == "profesional_creado"
    assert event_row["metadata"] == {"nombre": "Dr. Vega"}
    assert event_row["usuario_id"] == 3


@pytest.mark.asyncio
async def test_stalled_audit_store_does_not_hold_back_a_committed_result(fake_pool):
    emitter = StalledEmitter()
    scope = TenantScope(fake_pool, acquire_timeout=1.0, metrics=Metrics(enabled=False), audit_timeout=0.05)
    scope.emitter = emitter

    created = await asyncio.wait_for(
        scope.with_bypass_transaction(
            _insert(7, "Dr. Lara"),
            audit=AuditEvent(tenant_id=7, event_type="profesional_creado"),
        ),
        timeout=2,
    )

    assert created["nombre"] == "Dr. Lara"
    assert fake_pool.db.tables["profesionales"] == [created]
    assert emitter.started.is_set()
    assert emitter.cancelled
    assert fake_pool.borrowed == []


async def _async(value):
    return value
