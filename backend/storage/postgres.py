"""
Database-backed TableStore for direct Postgres access (self-hosted Supabase DB).

Why: Deployments that reach the database directly (service jobs, CI against a
local `supabase start`) should not depend on PostgREST. This store implements
the same port with psycopg3's async API.

Security:
- Use an environment-specific login role; RLS still applies to every statement.
- Identifiers are composed with `psycopg.sql`; values are always bound
  parameters. Table names are validated up front.

Note: Each call opens a short-lived connection. `insert_many` runs inside one
transaction so a rejected row rolls back the whole batch.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import re

try:
    import psycopg
    from psycopg import sql
    from psycopg.rows import dict_row
    from psycopg.types.json import Json
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from .ports import Query, StoreFailure, UniqueViolation

_log = logging.getLogger("eduplatform.storage")

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")
_COLUMN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:->>[A-Za-z_][A-Za-z0-9_]{0,62})?$")


def _split(name: str) -> Tuple[str, str]:
    if "." in name:
        schema, tbl = name.split(".", 1)
        return schema, tbl
    return "public", name


def _column(col: str) -> "sql.Composable":
    if not _COLUMN.match(col or ""):
        raise ValueError(f"Invalid column name: {col!r}")
    if "->>" in col:
        base, key = col.split("->>", 1)
        return sql.SQL("({}->>{})").format(sql.Identifier(base), sql.Literal(key))
    return sql.Identifier(col)


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Json(value)
    return value


def _where(query: Query) -> Tuple["sql.Composable", List[Any]]:
    parts: List[sql.Composable] = []
    params: List[Any] = []
    for col, val in query.eq.items():
        parts.append(sql.SQL("{} = %s").format(_column(col)))
        params.append(_adapt(val))
    for col, values in query.in_.items():
        parts.append(sql.SQL("{} = any(%s)").format(_column(col)))
        params.append(list(values))
    for col, bound in query.gte.items():
        parts.append(sql.SQL("{} >= %s").format(_column(col)))
        params.append(bound)
    for col, bound in query.lte.items():
        parts.append(sql.SQL("{} <= %s").format(_column(col)))
        params.append(bound)
    if query.search and query.search_columns:
        ors = [sql.SQL("{}::text ilike %s").format(_column(c)) for c in query.search_columns]
        parts.append(sql.SQL("({})").format(sql.SQL(" or ").join(ors)))
        params.extend([f"%{query.search}%"] * len(ors))
    if not parts:
        return sql.SQL(""), params
    return sql.SQL(" where ") + sql.SQL(" and ").join(parts), params


class PostgresTable:
    """TableStore over one Postgres table.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string.
    name:
        Table name, optionally schema-qualified. Defaults to schema `public`.
    """

    def __init__(self, dsn: str, name: str) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for PostgresTable")
        if not dsn:
            raise RuntimeError("No database DSN provided for PostgresTable")
        if not _IDENT.match(name or ""):
            raise ValueError("Invalid table name")
        self._dsn = dsn
        self.name = name

    def _table(self) -> "sql.Composable":
        schema, tbl = _split(self.name)
        return sql.SQL("{}.{}").format(sql.Identifier(schema), sql.Identifier(tbl))

    def _fail(self, op: str, exc: Exception) -> StoreFailure:
        _log.warning("postgres %s on %s failed: %s", op, self.name, exc.__class__.__name__)
        if isinstance(exc, psycopg.errors.UniqueViolation):
            return UniqueViolation(f"{self.name}_unique", store=self.name)
        return StoreFailure(f"{op}_failed", store=self.name)

    async def _connect(self):
        return await psycopg.AsyncConnection.connect(self._dsn, autocommit=True, row_factory=dict_row)

    def _insert_stmt(self, rows: Sequence[Mapping[str, Any]]) -> Tuple["sql.Composable", List[Any]]:
        cols = list(rows[0].keys())
        values: List[sql.Composable] = []
        params: List[Any] = []
        for row in rows:
            if list(row.keys()) != cols:
                raise ValueError("insert_many rows must share the same columns")
            values.append(sql.SQL("({})").format(sql.SQL(", ").join(sql.Placeholder() * len(cols))))
            params.extend(_adapt(row[c]) for c in cols)
        stmt = sql.SQL("insert into {} ({}) values {} returning *").format(
            self._table(),
            sql.SQL(", ").join(_column(c) for c in cols),
            sql.SQL(", ").join(values),
        )
        return stmt, params

    async def insert(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        rows = await self.insert_many([row])
        if not rows:
            raise StoreFailure("insert_returned_no_row", store=self.name)
        return rows[0]

    async def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        if not rows:
            return []
        stmt, params = self._insert_stmt(rows)
        try:
            async with await self._connect() as conn:
                async with conn.transaction():
                    async with conn.cursor() as cur:
                        await cur.execute(stmt, params)
                        return [dict(r) for r in await cur.fetchall()]
        except Exception as exc:
            raise self._fail("insert", exc) from exc

    async def update(self, query: Query, patch: Mapping[str, Any]) -> List[Dict[str, Any]]:
        if not patch:
            return []
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(_column(c)) for c in patch.keys()
        )
        where, wparams = _where(query)
        stmt = sql.SQL("update {} set {}{} returning *").format(self._table(), assignments, where)
        params = [_adapt(v) for v in patch.values()] + wparams
        try:
            async with await self._connect() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(stmt, params)
                    return [dict(r) for r in await cur.fetchall()]
        except Exception as exc:
            raise self._fail("update", exc) from exc

    async def delete(self, query: Query) -> int:
        where, params = _where(query)
        stmt = sql.SQL("delete from {}{}").format(self._table(), where)
        try:
            async with await self._connect() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(stmt, params)
                    return int(cur.rowcount or 0)
        except Exception as exc:
            raise self._fail("delete", exc) from exc

    async def select(self, query: Query) -> Tuple[List[Dict[str, Any]], int]:
        where, params = _where(query)
        cols = (
            sql.SQL(", ").join(_column(c) for c in query.columns) if query.columns else sql.SQL("*")
        )
        stmt = sql.SQL("select {} from {}{}").format(cols, self._table(), where)
        if query.order_by:
            direction = sql.SQL(" desc nulls last") if query.descending else sql.SQL(" asc nulls last")
            stmt = stmt + sql.SQL(" order by {}").format(_column(query.order_by)) + direction
        page_params = list(params)
        if query.limit is not None:
            stmt = stmt + sql.SQL(" limit %s")
            page_params.append(max(0, int(query.limit)))
        if query.offset:
            stmt = stmt + sql.SQL(" offset %s")
            page_params.append(max(0, int(query.offset)))
        count_stmt = sql.SQL("select count(*) as total from {}{}").format(self._table(), where)
        try:
            async with await self._connect() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(stmt, page_params)
                    rows = [dict(r) for r in await cur.fetchall()]
                    await cur.execute(count_stmt, params)
                    total_row = await cur.fetchone()
        except Exception as exc:
            raise self._fail("select", exc) from exc
        total = int((total_row or {}).get("total") or 0)
        return rows, total

    async def rpc(self, function: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        if not _IDENT.match(function or ""):
            raise ValueError("Invalid function name")
        schema, fn = _split(function)
        args = dict(params or {})
        arg_sql = sql.SQL(", ").join(
            sql.SQL("{} => %s").format(sql.Identifier(k)) for k in args.keys()
        )
        stmt = sql.SQL("select {}.{}({}) as result").format(
            sql.Identifier(schema), sql.Identifier(fn), arg_sql
        )
        try:
            async with await self._connect() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(stmt, [_adapt(v) for v in args.values()])
                    row = await cur.fetchone()
        except Exception as exc:
            raise self._fail("rpc", exc) from exc
        return (row or {}).get("result")


__all__ = ["PostgresTable"]
