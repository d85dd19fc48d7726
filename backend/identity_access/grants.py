"""Section access grants (student <-> content section).

Behavior:
    - `assign` inserts all new pairs in a single multi-row insert. Either every
      pair is stored or none is.
    - `replace` deletes all grants and then inserts the new set. The two steps
      are not transactional. A failure after the delete leaves the account
      with zero grants; that window is logged and surfaced as StoreError.
    - `query` resolves titles of granted sections in grant order.

Permissions:
    Callers gate on `editStudents`; this module does not check roles.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Iterable, List
import logging

from backend.audit.entries import SYSTEM_ACTOR, Actor, AuditEntry
from backend.audit.log import AuditLog
from backend.storage.ports import Query, TableStore

from . import telemetry
from .domain import Grant, tail
from .errors import NotFoundError, StoreError, ValidationError

_log = logging.getLogger("eduplatform.identity_access")


def normalize_section_ids(section_ids: Iterable[str]) -> List[str]:
    """Strip, validate and de-duplicate section ids, keeping first-seen order."""
    seen: set[str] = set()
    out: List[str] = []
    for raw in section_ids or ():
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError("invalid_section_id")
        sid = raw.strip()
        if sid not in seen:
            seen.add(sid)
            out.append(sid)
    return out


class AccessGrantManager:
    """Manage many-to-many grants between accounts and sections."""

    def __init__(
        self,
        grants: TableStore,
        profiles: TableStore,
        sections: TableStore,
        audit: AuditLog,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._grants = grants
        self._profiles = profiles
        self._sections = sections
        self._audit = audit
        self._clock = clock

    async def _require_account(self, account_id: str) -> str:
        if not isinstance(account_id, str) or not account_id.strip():
            raise ValidationError("account_id_required")
        try:
            rows, _ = await self._profiles.select(Query(eq={"id": account_id}, columns=("id", "full_name"), limit=1))
        except Exception as exc:
            raise StoreError(store="profiles", step="select") from exc
        if not rows:
            raise NotFoundError("account", account_id)
        return rows[0].get("full_name") or ""

    async def _insert(self, account_id: str, section_ids: List[str]) -> List[Grant]:
        now = self._clock().isoformat()
        rows = [{"student_id": account_id, "section_id": sid, "granted_at": now} for sid in section_ids]
        created = await self._grants.insert_many(rows)
        return [Grant.from_row(r) for r in created]

    async def _existing(self, account_id: str) -> List[Grant]:
        try:
            rows, _ = await self._grants.select(
                Query(eq={"student_id": account_id}, order_by="granted_at", descending=False)
            )
        except Exception as exc:
            raise StoreError(store="grants", step="select") from exc
        return [Grant.from_row(r) for r in rows]

    async def _audit_grants(self, actor: Actor, action: str, account_id: str, name: str, section_ids: List[str]) -> None:
        await self._audit.append(
            AuditEntry.by(
                actor,
                action=action,
                action_type="update",
                resource_type="section_access",
                resource_id=account_id,
                details={"student_name": name, "section_ids": list(section_ids), "count": len(section_ids)},
                severity="low",
                status="success",
            )
        )

    async def assign(self, account_id: str, section_ids: Iterable[str], *, actor: Actor | None = None) -> List[Grant]:
        """Grant `section_ids` to the account; existing pairs are skipped."""
        actor = actor or SYSTEM_ACTOR
        wanted = normalize_section_ids(section_ids)
        name = await self._require_account(account_id)
        if not wanted:
            return []
        held = {g.section_id for g in await self._existing(account_id)}
        fresh = [sid for sid in wanted if sid not in held]
        if not fresh:
            return []
        try:
            created = await self._insert(account_id, fresh)
        except Exception as exc:
            telemetry.increment_counter(telemetry.PROVISIONING_FAILURES, store="grants")
            _log.warning("grant insert failed: account=%s n=%s err=%s", tail(account_id), len(fresh), exc.__class__.__name__)
            raise StoreError(store="grants", step="insert") from exc
        await self._audit_grants(actor, "sections_assigned", account_id, name, fresh)
        return created

    async def replace(self, account_id: str, section_ids: Iterable[str], *, actor: Actor | None = None) -> List[Grant]:
        """Make `section_ids` the complete grant set; empty input clears all."""
        actor = actor or SYSTEM_ACTOR
        wanted = normalize_section_ids(section_ids)
        name = await self._require_account(account_id)
        try:
            await self._grants.delete(Query(eq={"student_id": account_id}))
        except Exception as exc:
            _log.warning("grant replace delete failed: account=%s err=%s", tail(account_id), exc.__class__.__name__)
            raise StoreError(store="grants", step="delete") from exc
        created: List[Grant] = []
        if wanted:
            try:
                created = await self._insert(account_id, wanted)
            except Exception as exc:
                telemetry.increment_counter(telemetry.PROVISIONING_FAILURES, store="grants")
                _log.error(
                    "grant replace insert failed after delete; account has zero grants: account=%s err=%s",
                    tail(account_id),
                    exc.__class__.__name__,
                )
                raise StoreError(store="grants", step="insert") from exc
        await self._audit_grants(actor, "sections_replaced", account_id, name, wanted)
        return created

    async def query(self, account_id: str) -> List[str]:
        """Titles of granted sections in grant order; unknown sections are skipped."""
        grants = await self._existing(account_id)
        ids = normalize_section_ids(g.section_id for g in grants)
        if not ids:
            return []
        try:
            rows, _ = await self._sections.select(Query(in_={"id": tuple(ids)}, columns=("id", "title")))
        except Exception as exc:
            raise StoreError(store="sections", step="select") from exc
        titles = {str(r["id"]): r.get("title") for r in rows}
        return [titles[sid] for sid in ids if titles.get(sid)]

    async def revoke_all(self, account_id: str) -> int:
        try:
            removed = await self._grants.delete(Query(eq={"student_id": account_id}))
        except Exception as exc:
            _log.warning("grant revoke failed: account=%s err=%s", tail(account_id), exc.__class__.__name__)
            raise StoreError(store="grants", step="delete") from exc
        return removed


__all__ = ["AccessGrantManager", "normalize_section_ids"]
