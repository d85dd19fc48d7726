"""
Store ports used by the identity, grants and audit services.

Keep these small and framework-agnostic so tests can supply simple fakes.

Intent:
    Services talk to two independent systems: a credential store (login
    identity) and a table store (profiles, grants, sections, audit rows).
    Both are reached through the protocols below; adapters in this package
    translate a concrete SDK (Supabase, Keycloak, psycopg) into them.

Errors:
    Adapters raise `StoreFailure` for any I/O problem and `UniqueViolation`
    when a uniqueness constraint rejected a write. Services never see raw
    driver exceptions and translate these two into their own taxonomy.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple


class StoreFailure(RuntimeError):
    """An adapter could not complete a read or write."""

    def __init__(self, code: str, *, store: str = "") -> None:
        super().__init__(code)
        self.code = code
        self.store = store


class UniqueViolation(StoreFailure):
    """A uniqueness constraint rejected the write (e.g., duplicate email)."""


class InvalidCredentials(StoreFailure):
    """Sign-in was rejected for the given email/password pair."""


@dataclass(frozen=True)
class Query:
    """Backend-neutral selection for table stores.

    Fields:
        eq: column -> value equality filters (AND).
        in_: column -> allowed values.
        gte / lte: inclusive range filters (ISO timestamps compare lexically).
        search: case-insensitive substring matched against any of
            `search_columns` (OR). A column may address a JSON key via
            `details->>description`.
        order_by / descending: single sort key.
        offset / limit: window; `limit=None` returns all matches.
        columns: projection; empty means all columns.
    """

    eq: Mapping[str, Any] = field(default_factory=dict)
    in_: Mapping[str, Sequence[Any]] = field(default_factory=dict)
    gte: Mapping[str, Any] = field(default_factory=dict)
    lte: Mapping[str, Any] = field(default_factory=dict)
    search: Optional[str] = None
    search_columns: Tuple[str, ...] = ()
    order_by: Optional[str] = None
    descending: bool = False
    offset: int = 0
    limit: Optional[int] = None
    columns: Tuple[str, ...] = ()

    def where(self, **eq: Any) -> "Query":
        merged = dict(self.eq)
        merged.update(eq)
        return replace(self, eq=merged)

    def window(self, *, offset: int, limit: Optional[int]) -> "Query":
        return replace(self, offset=max(0, int(offset)), limit=limit)


@dataclass(frozen=True)
class CredentialSession:
    """Result of a successful credential sign-in."""

    credential_id: str
    email: str
    metadata: Dict[str, Any]
    access_token: Optional[str] = None


class CredentialStore(Protocol):
    """System of record for login identity (email/password, confirmation)."""

    async def create(self, *, email: str, password: str, metadata: Mapping[str, Any]) -> str:
        ...

    async def update_by_id(self, credential_id: str, patch: Mapping[str, Any]) -> None:
        ...

    async def delete_by_id(self, credential_id: str) -> None:
        ...

    async def list(self) -> List[Dict[str, Any]]:
        ...

    async def sign_in(self, *, email: str, password: str) -> CredentialSession:
        ...


class TableStore(Protocol):
    """Table-like primitives for profile, grant, section and audit rows.

    Adapters may also offer `rpc(function, params)` for server-side
    aggregation; callers probe for it with `getattr`.
    """

    name: str

    async def insert(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        ...

    async def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Insert all rows or none."""
        ...

    async def update(self, query: Query, patch: Mapping[str, Any]) -> List[Dict[str, Any]]:
        ...

    async def delete(self, query: Query) -> int:
        ...

    async def select(self, query: Query) -> Tuple[List[Dict[str, Any]], int]:
        """Return (rows in window, total matches ignoring the window)."""
        ...


__all__ = [
    "CredentialSession",
    "CredentialStore",
    "InvalidCredentials",
    "Query",
    "StoreFailure",
    "TableStore",
    "UniqueViolation",
]
