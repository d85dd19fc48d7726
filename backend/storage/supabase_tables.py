"""
Supabase-backed adapters for the table and credential store ports.

These adapters use a provided *async* Supabase client (`supabase.acreate_client`)
and are intentionally duck-typed to avoid a hard dependency during testing. The
client is expected to expose:

- `.table(name)` returning a PostgREST request builder with
  `select/insert/update/delete`, filters (`eq`, `in_`, `gte`, `lte`, `or_`),
  `order`, `range` and an awaitable `execute()`.
- `.rpc(function, params)` returning a builder with `execute()`.
- `.auth.admin.create_user/update_user_by_id/delete_user/list_users` and
  `.auth.sign_in_with_password` for credentials.

Security:
- The caller must ensure the client is initialized with the Service Role key.
- Passwords are forwarded to Supabase Auth only; they are never logged.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import logging
import re

from .ports import CredentialSession, InvalidCredentials, Query, StoreFailure, UniqueViolation

_log = logging.getLogger("eduplatform.storage")

# Postgres SQLSTATE for unique_violation, surfaced by PostgREST as `code`.
_PG_UNIQUE_VIOLATION = "23505"
_AUTH_DUPLICATE_CODES = frozenset({"email_exists", "user_already_exists", "phone_exists"})
_AUTH_INVALID_CODES = frozenset({"invalid_credentials", "invalid_grant", "email_not_confirmed"})
# PostgREST `or=(...)` uses these as syntax; strip them from user search text.
_OR_RESERVED = re.compile(r"[,()*%\\]")


def _field(res: Any, name: str) -> Any:
    """Read `name` from either an APIResponse-like object or a dict."""
    if isinstance(res, Mapping):
        return res.get(name)
    return getattr(res, name, None)


def _error_code(exc: BaseException) -> str:
    code = getattr(exc, "code", None)
    if code is None and exc.args and isinstance(exc.args[0], Mapping):
        code = exc.args[0].get("code")
    return str(code or "")


def _apply_filters(builder: Any, query: Query) -> Any:
    for col, val in query.eq.items():
        builder = builder.eq(col, val)
    for col, values in query.in_.items():
        builder = builder.in_(col, list(values))
    for col, bound in query.gte.items():
        builder = builder.gte(col, bound)
    for col, bound in query.lte.items():
        builder = builder.lte(col, bound)
    if query.search and query.search_columns:
        term = _OR_RESERVED.sub(" ", query.search).strip()
        if term:
            clauses = ",".join(f"{col}.ilike.%{term}%" for col in query.search_columns)
            builder = builder.or_(clauses)
    return builder


class SupabaseTable:
    """TableStore over one PostgREST table."""

    def __init__(self, client: Any, name: str) -> None:
        self._client = client
        self.name = name

    def _table(self) -> Any:
        table = getattr(self._client, "table", None)
        if table is None:
            raise StoreFailure("invalid_supabase_client", store=self.name)
        return table(self.name)

    async def _execute(self, op: str, builder: Any) -> Any:
        try:
            return await builder.execute()
        except StoreFailure:
            raise
        except Exception as exc:
            code = _error_code(exc)
            _log.warning("supabase %s on %s failed: %s code=%s", op, self.name, exc.__class__.__name__, code or "-")
            if code == _PG_UNIQUE_VIOLATION:
                raise UniqueViolation(f"{self.name}_unique", store=self.name) from exc
            raise StoreFailure(f"{op}_failed", store=self.name) from exc

    async def insert(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        res = await self._execute("insert", self._table().insert(dict(row)))
        data = _field(res, "data") or []
        if not data:
            raise StoreFailure("insert_returned_no_row", store=self.name)
        return dict(data[0])

    async def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        if not rows:
            return []
        # A single bulk insert is one statement on the server: all rows or none.
        res = await self._execute("insert_many", self._table().insert([dict(r) for r in rows]))
        return [dict(r) for r in (_field(res, "data") or [])]

    async def update(self, query: Query, patch: Mapping[str, Any]) -> List[Dict[str, Any]]:
        builder = _apply_filters(self._table().update(dict(patch)), query)
        res = await self._execute("update", builder)
        return [dict(r) for r in (_field(res, "data") or [])]

    async def delete(self, query: Query) -> int:
        builder = _apply_filters(self._table().delete(), query)
        res = await self._execute("delete", builder)
        return len(_field(res, "data") or [])

    async def select(self, query: Query) -> Tuple[List[Dict[str, Any]], int]:
        columns = ",".join(query.columns) if query.columns else "*"
        builder = _apply_filters(self._table().select(columns, count="exact"), query)
        if query.order_by:
            builder = builder.order(query.order_by, desc=query.descending)
        if query.limit is not None:
            start = max(0, query.offset)
            builder = builder.range(start, start + max(0, query.limit) - 1)
        elif query.offset:
            builder = builder.range(query.offset, query.offset + 1_000_000)
        res = await self._execute("select", builder)
        rows = [dict(r) for r in (_field(res, "data") or [])]
        count = _field(res, "count")
        return rows, int(count) if count is not None else len(rows)

    async def rpc(self, function: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        rpc = getattr(self._client, "rpc", None)
        if rpc is None:
            raise StoreFailure(f"rpc_unavailable:{function}", store=self.name)
        res = await self._execute("rpc", rpc(function, dict(params or {})))
        return _field(res, "data")


class SupabaseCredentialStore:
    """CredentialStore over Supabase Auth (admin API)."""

    name = "credentials"

    def __init__(self, client: Any, *, sign_in_client: Any | None = None) -> None:
        # Sign-in must not replace the service-role session of the admin client.
        self._client = client
        self._sign_in_client = sign_in_client or client

    def _admin(self) -> Any:
        auth = getattr(self._client, "auth", None)
        admin = getattr(auth, "admin", None)
        if admin is None:
            raise StoreFailure("invalid_supabase_client", store=self.name)
        return admin

    def _translate(self, op: str, exc: Exception) -> StoreFailure:
        code = _error_code(exc)
        _log.warning("supabase auth %s failed: %s code=%s", op, exc.__class__.__name__, code or "-")
        if code in _AUTH_DUPLICATE_CODES or "already" in str(exc).lower():
            return UniqueViolation("email_exists", store=self.name)
        if op == "sign_in" and (code in _AUTH_INVALID_CODES or getattr(exc, "status", None) == 400):
            return InvalidCredentials("invalid_credentials", store=self.name)
        return StoreFailure(f"{op}_failed", store=self.name)

    async def create(self, *, email: str, password: str, metadata: Mapping[str, Any]) -> str:
        attrs = {
            "email": email,
            "password": password,
            "email_confirm": True,
            "user_metadata": dict(metadata),
        }
        try:
            res = await self._admin().create_user(attrs)
        except StoreFailure:
            raise
        except Exception as exc:
            raise self._translate("create", exc) from exc
        user = _field(res, "user")
        uid = _field(user, "id") if user is not None else None
        if not uid:
            raise StoreFailure("user_id_missing", store=self.name)
        return str(uid)

    async def update_by_id(self, credential_id: str, patch: Mapping[str, Any]) -> None:
        attrs: Dict[str, Any] = {}
        if patch.get("email"):
            attrs["email"] = patch["email"]
        if patch.get("metadata"):
            attrs["user_metadata"] = dict(patch["metadata"])
        if not attrs:
            return
        try:
            await self._admin().update_user_by_id(credential_id, attrs)
        except StoreFailure:
            raise
        except Exception as exc:
            raise self._translate("update", exc) from exc

    async def delete_by_id(self, credential_id: str) -> None:
        try:
            await self._admin().delete_user(credential_id)
        except StoreFailure:
            raise
        except Exception as exc:
            raise self._translate("delete", exc) from exc

    async def list(self) -> List[Dict[str, Any]]:
        try:
            users = await self._admin().list_users()
        except StoreFailure:
            raise
        except Exception as exc:
            raise self._translate("list", exc) from exc
        out: List[Dict[str, Any]] = []
        for u in users or []:
            out.append(
                {
                    "id": str(_field(u, "id")),
                    "email": _field(u, "email") or "",
                    "metadata": dict(_field(u, "user_metadata") or {}),
                }
            )
        return out

    async def sign_in(self, *, email: str, password: str) -> CredentialSession:
        auth = getattr(self._sign_in_client, "auth", None)
        if auth is None:
            raise StoreFailure("invalid_supabase_client", store=self.name)
        try:
            res = await auth.sign_in_with_password({"email": email, "password": password})
        except StoreFailure:
            raise
        except Exception as exc:
            raise self._translate("sign_in", exc) from exc
        user = _field(res, "user")
        if user is None:
            raise InvalidCredentials("invalid_credentials", store=self.name)
        session = _field(res, "session")
        return CredentialSession(
            credential_id=str(_field(user, "id")),
            email=_field(user, "email") or email,
            metadata=dict(_field(user, "user_metadata") or {}),
            access_token=_field(session, "access_token") if session is not None else None,
        )


__all__ = ["SupabaseCredentialStore", "SupabaseTable"]
