"""
In-memory stores for development and tests: InMemoryTable, InMemoryCredentialStore.

Why: Services depend only on the store ports. These adapters let unit tests run
without Supabase/Keycloak/Postgres and make partial failures reproducible.

Fault injection:
    Both stores accept `fail_on={"op", ...}` (and expose `fail_next(op)`) so a
    test can force a single primitive to raise `StoreFailure`. Every call is
    recorded in `calls` as `(op, detail)` so tests can assert that a step was
    attempted even when it failed.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple
from uuid import uuid4
import json

from .ports import CredentialSession, InvalidCredentials, Query, StoreFailure, UniqueViolation


class _FaultInjection:
    def __init__(self, fail_on: Iterable[str] | None) -> None:
        self.fail_on: Set[str] = set(fail_on or ())
        self._fail_once: List[str] = []
        self.calls: List[Tuple[str, Any]] = []

    def fail_next(self, op: str) -> None:
        """Fail only the next call of `op`."""
        self._fail_once.append(op)

    def _enter(self, op: str, detail: Any, store: str) -> None:
        self.calls.append((op, detail))
        if op in self._fail_once:
            self._fail_once.remove(op)
            raise StoreFailure(f"{op}_failed", store=store)
        if op in self.fail_on:
            raise StoreFailure(f"{op}_failed", store=store)

    def attempted(self, op: str) -> int:
        return sum(1 for name, _ in self.calls if name == op)


def _column_value(row: Mapping[str, Any], column: str) -> Any:
    # Support the `details->>description` JSON addressing used by PostgREST.
    if "->>" in column:
        base, key = column.split("->>", 1)
        doc = row.get(base)
        if isinstance(doc, str):
            try:
                doc = json.loads(doc)
            except ValueError:
                return None
        if isinstance(doc, Mapping):
            return doc.get(key)
        return None
    return row.get(column)


def matches(row: Mapping[str, Any], query: Query) -> bool:
    for col, val in query.eq.items():
        if row.get(col) != val:
            return False
    for col, allowed in query.in_.items():
        if row.get(col) not in set(allowed):
            return False
    for col, bound in query.gte.items():
        cur = row.get(col)
        if cur is None or str(cur) < str(bound):
            return False
    for col, bound in query.lte.items():
        cur = row.get(col)
        if cur is None or str(cur) > str(bound):
            return False
    if query.search:
        needle = query.search.lower()
        hit = False
        for col in query.search_columns:
            value = _column_value(row, col)
            if value is not None and needle in str(value).lower():
                hit = True
                break
        if not hit:
            return False
    return True


class InMemoryTable:
    """Dict-backed table with optional unique constraints.

    Parameters
    ----------
    name:
        Table name used in error codes and logs.
    unique:
        Column tuples that must be unique across rows, e.g. `[("email",)]`.
        String values compare case-insensitively.
    rpc_functions:
        Optional mapping of function name -> callable(rows) implementing
        server-side aggregations. Without it `rpc` raises `StoreFailure`.
    """

    def __init__(
        self,
        name: str,
        *,
        unique: Sequence[Tuple[str, ...]] = (),
        fail_on: Iterable[str] | None = None,
        rpc_functions: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.name = name
        self.rows: Dict[str, Dict[str, Any]] = {}
        self._unique = [tuple(cols) for cols in unique]
        self._faults = _FaultInjection(fail_on)
        self._rpc = dict(rpc_functions or {})

    # --- Fault injection passthrough ---------------------------------------------

    @property
    def calls(self) -> List[Tuple[str, Any]]:
        return self._faults.calls

    @property
    def fail_on(self) -> Set[str]:
        return self._faults.fail_on

    def fail_next(self, op: str) -> None:
        self._faults.fail_next(op)

    def attempted(self, op: str) -> int:
        return self._faults.attempted(op)

    # --- Helpers -----------------------------------------------------------------

    def _key(self, row: Mapping[str, Any], cols: Tuple[str, ...]) -> Tuple[Any, ...]:
        out = []
        for col in cols:
            val = row.get(col)
            out.append(val.lower() if isinstance(val, str) else val)
        return tuple(out)

    def _check_unique(self, candidates: Sequence[Mapping[str, Any]], *, ignore: Set[str] = frozenset()) -> None:
        for cols in self._unique:
            seen = {
                self._key(existing, cols)
                for rid, existing in self.rows.items()
                if rid not in ignore
            }
            for row in candidates:
                key = self._key(row, cols)
                if any(part is None for part in key):
                    continue
                if key in seen:
                    raise UniqueViolation(f"{self.name}_{'_'.join(cols)}_key", store=self.name)
                seen.add(key)

    def _prepare(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        rec = dict(row)
        rec.setdefault("id", str(uuid4()))
        return rec

    # --- Port methods ------------------------------------------------------------

    async def insert(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        return (await self._insert("insert", [row]))[0]

    async def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        return await self._insert("insert_many", rows)

    async def _insert(self, op: str, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        self._faults._enter(op, [dict(r) for r in rows], self.name)
        prepared = [self._prepare(r) for r in rows]
        # Validate the whole batch before touching state so a rejected batch
        # leaves no partial rows behind.
        self._check_unique(prepared)
        for rec in prepared:
            if rec["id"] in self.rows:
                raise UniqueViolation(f"{self.name}_pkey", store=self.name)
        for rec in prepared:
            self.rows[rec["id"]] = rec
        return [dict(rec) for rec in prepared]

    async def update(self, query: Query, patch: Mapping[str, Any]) -> List[Dict[str, Any]]:
        self._faults._enter("update", (query, dict(patch)), self.name)
        targets = [rid for rid, row in self.rows.items() if matches(row, query)]
        updated = {rid: {**self.rows[rid], **dict(patch)} for rid in targets}
        self._check_unique(list(updated.values()), ignore=set(targets))
        self.rows.update(updated)
        return [dict(r) for r in updated.values()]

    async def delete(self, query: Query) -> int:
        self._faults._enter("delete", query, self.name)
        targets = [rid for rid, row in self.rows.items() if matches(row, query)]
        for rid in targets:
            self.rows.pop(rid, None)
        return len(targets)

    async def select(self, query: Query) -> Tuple[List[Dict[str, Any]], int]:
        self._faults._enter("select", query, self.name)
        found = [dict(row) for row in self.rows.values() if matches(row, query)]
        if query.order_by:
            col = query.order_by
            present = [r for r in found if r.get(col) is not None]
            missing = [r for r in found if r.get(col) is None]
            present.sort(key=lambda r: r[col], reverse=query.descending)
            found = present + missing
        total = len(found)
        start = max(0, query.offset)
        window = found[start:] if query.limit is None else found[start:start + query.limit]
        if query.columns:
            window = [{c: r.get(c) for c in query.columns} for r in window]
        return window, total

    async def rpc(self, function: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        self._faults._enter("rpc", function, self.name)
        fn = self._rpc.get(function)
        if fn is None:
            raise StoreFailure(f"rpc_unavailable:{function}", store=self.name)
        return fn([dict(r) for r in self.rows.values()], **dict(params or {}))


class InMemoryCredentialStore:
    """Credential store keeping entities in a dict keyed by generated id.

    Emails are unique case-insensitively, mirroring hosted auth providers.
    """

    name = "credentials"

    def __init__(self, *, fail_on: Iterable[str] | None = None) -> None:
        self.entities: Dict[str, Dict[str, Any]] = {}
        self._faults = _FaultInjection(fail_on)

    @property
    def calls(self) -> List[Tuple[str, Any]]:
        return self._faults.calls

    @property
    def fail_on(self) -> Set[str]:
        return self._faults.fail_on

    def fail_next(self, op: str) -> None:
        self._faults.fail_next(op)

    def attempted(self, op: str) -> int:
        return self._faults.attempted(op)

    def _by_email(self, email: str) -> Optional[Dict[str, Any]]:
        needle = (email or "").strip().lower()
        for ent in self.entities.values():
            if ent["email"].lower() == needle:
                return ent
        return None

    async def create(self, *, email: str, password: str, metadata: Mapping[str, Any]) -> str:
        self._faults._enter("create", email, self.name)
        if self._by_email(email) is not None:
            raise UniqueViolation("email_exists", store=self.name)
        cid = str(uuid4())
        self.entities[cid] = {
            "id": cid,
            "email": email.strip(),
            "password": password,
            "email_confirmed": True,
            "metadata": dict(metadata),
        }
        return cid

    async def update_by_id(self, credential_id: str, patch: Mapping[str, Any]) -> None:
        self._faults._enter("update_by_id", (credential_id, dict(patch)), self.name)
        ent = self.entities.get(credential_id)
        if ent is None:
            raise StoreFailure("credential_not_found", store=self.name)
        new_email = patch.get("email")
        if new_email:
            other = self._by_email(new_email)
            if other is not None and other["id"] != credential_id:
                raise UniqueViolation("email_exists", store=self.name)
            ent["email"] = str(new_email).strip()
        meta = patch.get("metadata")
        if isinstance(meta, Mapping):
            ent["metadata"].update(meta)

    async def delete_by_id(self, credential_id: str) -> None:
        self._faults._enter("delete_by_id", credential_id, self.name)
        if self.entities.pop(credential_id, None) is None:
            raise StoreFailure("credential_not_found", store=self.name)

    async def list(self) -> List[Dict[str, Any]]:
        self._faults._enter("list", None, self.name)
        return [
            {"id": e["id"], "email": e["email"], "metadata": dict(e["metadata"])}
            for e in self.entities.values()
        ]

    async def sign_in(self, *, email: str, password: str) -> CredentialSession:
        self._faults._enter("sign_in", email, self.name)
        ent = self._by_email(email)
        if ent is None or ent["password"] != password:
            raise InvalidCredentials("invalid_credentials", store=self.name)
        return CredentialSession(
            credential_id=ent["id"],
            email=ent["email"],
            metadata=dict(ent["metadata"]),
            access_token=f"mem-{uuid4().hex}",
        )


__all__ = ["InMemoryCredentialStore", "InMemoryTable", "matches"]
