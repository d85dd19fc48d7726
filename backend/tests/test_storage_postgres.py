"""
PostgresTable against a fake async connection.

Checks parameter binding order, transaction use for bulk inserts and the
mapping of driver errors onto the store port's failures.
"""
from __future__ import annotations

import pytest

psycopg = pytest.importorskip("psycopg")

from psycopg.types.json import Json  # noqa: E402

from backend.storage.ports import Query, StoreFailure, UniqueViolation  # noqa: E402
from backend.storage.postgres import PostgresTable  # noqa: E402


class _FakeCursor:
    def __init__(self, conn):
        self._conn = conn
        self.rowcount = conn.rowcount

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, stmt, params):
        if self._conn.error is not None:
            raise self._conn.error
        self._conn.executed.append((stmt, list(params)))

    async def fetchall(self):
        return self._conn.results.pop(0) if self._conn.results else []

    async def fetchone(self):
        rows = await self.fetchall()
        return rows[0] if rows else None


class _FakeTransaction:
    def __init__(self, conn):
        self._conn = conn

    async def __aenter__(self):
        self._conn.transactions += 1
        return self

    async def __aexit__(self, *exc):
        return False


class _FakeConnection:
    def __init__(self, results=None, error=None, rowcount=0):
        self.results = list(results or [])
        self.error = error
        self.rowcount = rowcount
        self.executed = []
        self.transactions = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def cursor(self):
        return _FakeCursor(self)

    def transaction(self):
        return _FakeTransaction(self)


def _table(monkeypatch: pytest.MonkeyPatch, conn: _FakeConnection, name: str = "students") -> PostgresTable:
    table = PostgresTable("postgresql://app@localhost/test", name)

    async def _connect():
        return conn

    monkeypatch.setattr(table, "_connect", _connect)
    return table


def test_rejects_invalid_identifiers():
    with pytest.raises(ValueError):
        PostgresTable("postgresql://app@localhost/test", "students; drop table x")
    with pytest.raises(RuntimeError):
        PostgresTable("", "students")


@pytest.mark.anyio
async def test_select_binds_filters_then_paging(monkeypatch: pytest.MonkeyPatch):
    conn = _FakeConnection(results=[[{"id": "a"}], [{"total": 7}]])
    table = _table(monkeypatch, conn)

    rows, total = await table.select(
        Query(eq={"status": "active"}, in_={"id": ("a", "b")}, order_by="enrollment_date", offset=10, limit=5)
    )

    assert rows == [{"id": "a"}]
    assert total == 7
    (_, page_params), (_, count_params) = conn.executed
    assert page_params == ["active", ["a", "b"], 5, 10]
    assert count_params == ["active", ["a", "b"]]


@pytest.mark.anyio
async def test_search_binds_one_pattern_per_column(monkeypatch: pytest.MonkeyPatch):
    conn = _FakeConnection(results=[[], [{"total": 0}]])
    table = _table(monkeypatch, conn)

    await table.select(Query(search="sara", search_columns=("full_name", "email")))

    (_, params), _ = conn.executed
    assert params == ["%sara%", "%sara%"]


@pytest.mark.anyio
async def test_select_rejects_invalid_column(monkeypatch: pytest.MonkeyPatch):
    table = _table(monkeypatch, _FakeConnection())
    with pytest.raises(ValueError):
        await table.select(Query(order_by="name desc; --"))


@pytest.mark.anyio
async def test_insert_many_runs_in_one_transaction(monkeypatch: pytest.MonkeyPatch):
    conn = _FakeConnection(results=[[{"id": 1}, {"id": 2}]])
    table = _table(monkeypatch, conn, "student_section_access")

    rows = await table.insert_many(
        [{"student_id": "u1", "section_id": "s1"}, {"student_id": "u1", "section_id": "s2"}]
    )

    assert [r["id"] for r in rows] == [1, 2]
    assert conn.transactions == 1
    [(_, params)] = conn.executed
    assert params == ["u1", "s1", "u1", "s2"]


@pytest.mark.anyio
async def test_insert_wraps_json_values(monkeypatch: pytest.MonkeyPatch):
    conn = _FakeConnection(results=[[{"id": 1}]])
    table = _table(monkeypatch, conn, "activity_logs")

    await table.insert({"action": "login", "details": {"description": "hi"}})

    [(_, params)] = conn.executed
    assert params[0] == "login"
    assert isinstance(params[1], Json)


@pytest.mark.anyio
async def test_insert_many_rejects_mixed_columns(monkeypatch: pytest.MonkeyPatch):
    table = _table(monkeypatch, _FakeConnection())
    with pytest.raises(ValueError):
        await table.insert_many([{"a": 1}, {"b": 2}])


@pytest.mark.anyio
async def test_unique_violation_is_mapped(monkeypatch: pytest.MonkeyPatch):
    conn = _FakeConnection(error=psycopg.errors.UniqueViolation("duplicate key"))
    table = _table(monkeypatch, conn)
    with pytest.raises(UniqueViolation) as ei:
        await table.insert({"email": "a@example.com"})
    assert ei.value.store == "students"


@pytest.mark.anyio
async def test_driver_errors_become_store_failure(monkeypatch: pytest.MonkeyPatch):
    conn = _FakeConnection(error=psycopg.OperationalError("connection refused"))
    table = _table(monkeypatch, conn)
    with pytest.raises(StoreFailure) as ei:
        await table.update(Query(eq={"id": "u1"}), {"status": "suspended"})
    assert not isinstance(ei.value, UniqueViolation)
    assert isinstance(ei.value.__cause__, psycopg.OperationalError)


@pytest.mark.anyio
async def test_delete_returns_rowcount(monkeypatch: pytest.MonkeyPatch):
    table = _table(monkeypatch, _FakeConnection(rowcount=3), "student_section_access")
    assert await table.delete(Query(eq={"student_id": "u1"})) == 3


@pytest.mark.anyio
async def test_rpc_returns_result_column(monkeypatch: pytest.MonkeyPatch):
    conn = _FakeConnection(results=[[{"result": {"totalLogs": 4}}]])
    table = _table(monkeypatch, conn, "activity_logs")
    assert await table.rpc("get_activity_stats") == {"totalLogs": 4}
    with pytest.raises(ValueError):
        await table.rpc("bad name()")
