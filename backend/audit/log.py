"""Audit log service: append, query, CSV export and statistics.

Why:
    Every administrative mutation leaves exactly one entry. Appending must never
    change the outcome of the business operation that triggered it, so `append`
    reports failures through its return value and the diagnostic logger only.

Behavior:
    - `query` orders newest first and paginates by offset.
    - `export_csv` writes RFC 4180 text with a fixed column order; a row cap
      bounds the materialized result.
    - `stats` prefers the `get_activity_stats` aggregation and otherwise
      reduces the stored rows deterministically, fetched window by window.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional
import csv
import io
import json
import logging

from backend.identity_access.errors import StoreError
from backend.identity_access import telemetry
from backend.storage.ports import Query, TableStore

from .entries import AuditEntry, AuditFilters, AuditPage, AuditStats

_log = logging.getLogger("eduplatform.audit")

CSV_COLUMNS = (
    "timestamp",
    "actor",
    "role",
    "action",
    "action_type",
    "resource_type",
    "severity",
    "status",
    "details",
)
SEARCH_COLUMNS = ("action", "user_name", "details->>description")
STATS_FUNCTION = "get_activity_stats"
# Window for the row-reduction fallback; PostgREST caps responses (max-rows).
STATS_PAGE_SIZE = 1000

# Keys returned by the `get_activity_stats` database function.
_RPC_KEYS = {
    "total": ("total", "totalLogs"),
    "today": ("today", "todayLogs"),
    "successful": ("successful", "successfulActions"),
    "failed": ("failed", "failedActions"),
    "critical": ("critical", "criticalEvents"),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _filters_to_query(filters: AuditFilters) -> Query:
    eq: Dict[str, Any] = {}
    if filters.action_type:
        eq["action_type"] = filters.action_type
    if filters.actor_role:
        eq["user_role"] = filters.actor_role
    if filters.severity:
        eq["severity"] = filters.severity
    if filters.status:
        eq["status"] = filters.status
    gte: Dict[str, Any] = {}
    lte: Dict[str, Any] = {}
    if filters.date_from:
        gte["timestamp"] = f"{filters.date_from.isoformat()}T00:00:00"
    if filters.date_to:
        lte["timestamp"] = f"{filters.date_to.isoformat()}T23:59:59.999999+00:00"
    return Query(
        eq=eq,
        gte=gte,
        lte=lte,
        search=filters.search,
        search_columns=SEARCH_COLUMNS if filters.search else (),
        order_by="timestamp",
        descending=True,
    )


def _rpc_stats(data: Any) -> Optional[AuditStats]:
    if isinstance(data, list) and len(data) == 1:
        data = data[0]
    if not isinstance(data, Mapping):
        return None
    values: Dict[str, int] = {}
    for field_name, keys in _RPC_KEYS.items():
        for key in keys:
            if key in data and data[key] is not None:
                values[field_name] = int(data[key])
                break
        else:
            return None
    return AuditStats(**values)


def reduce_stats(rows: Iterable[Mapping[str, Any]], today: str) -> AuditStats:
    """Deterministic statistics over fetched rows; `today` is `YYYY-MM-DD` (UTC)."""
    total = day = ok = failed = critical = 0
    for row in rows:
        total += 1
        if str(row.get("timestamp") or "").startswith(today):
            day += 1
        status = row.get("status")
        if status == "success":
            ok += 1
        elif status == "failed":
            failed += 1
        if row.get("severity") == "critical":
            critical += 1
    return AuditStats(total=total, today=day, successful=ok, failed=failed, critical=critical)


class AuditLog:
    """Append-only audit trail over a table store."""

    def __init__(
        self,
        table: TableStore,
        *,
        export_row_cap: int = 10_000,
        page_size: int = 20,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._table = table
        self._export_row_cap = max(1, int(export_row_cap))
        self._page_size = max(1, min(100, int(page_size)))
        self._clock = clock

    async def append(self, entry: AuditEntry) -> bool:
        """Persist one entry; return False (and log) when the store fails.

        Raises ValidationError for malformed entries before any I/O.
        """
        entry.validate()
        row = entry.to_row(self._clock().isoformat())
        try:
            await self._table.insert(row)
        except Exception as exc:
            telemetry.increment_counter(telemetry.AUDIT_APPEND_FAILURES, action=entry.action)
            _log.warning(
                "audit append failed: action=%s resource=%s err=%s",
                entry.action,
                (entry.resource_id or "")[-6:],
                exc.__class__.__name__,
            )
            return False
        return True

    async def query(self, filters: AuditFilters | None = None, page: int = 1, limit: int | None = None) -> AuditPage:
        norm = (filters or AuditFilters()).normalized()
        page = max(1, int(page or 1))
        limit = max(1, min(100, int(limit or self._page_size)))
        q = _filters_to_query(norm).window(offset=(page - 1) * limit, limit=limit)
        rows, total = await self._select(q)
        return AuditPage(entries=[AuditEntry.from_row(r) for r in rows], total=total, page=page, limit=limit)

    async def export_csv(self, filters: AuditFilters | None = None) -> str:
        norm = (filters or AuditFilters()).normalized()
        q = _filters_to_query(norm).window(offset=0, limit=self._export_row_cap)
        rows, total = await self._select(q)
        if total > len(rows):
            _log.info("audit export truncated: rows=%s total=%s", len(rows), total)
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for row in rows:
            entry = AuditEntry.from_row(row)
            writer.writerow(
                [
                    entry.timestamp or "",
                    entry.actor_name,
                    entry.actor_role,
                    entry.action,
                    entry.action_type,
                    entry.resource_type,
                    entry.severity,
                    entry.status,
                    json.dumps(entry.details, ensure_ascii=False, sort_keys=True),
                ]
            )
        return buf.getvalue()

    async def stats(self, now: datetime | None = None) -> AuditStats:
        rpc = getattr(self._table, "rpc", None)
        if rpc is not None:
            try:
                found = _rpc_stats(await rpc(STATS_FUNCTION))
            except Exception as exc:
                _log.info("audit stats aggregation unavailable: %s", exc.__class__.__name__)
                found = None
            if found is not None:
                return found
        today = (now or self._clock()).astimezone(timezone.utc).date().isoformat()
        rows = await self._select_all(Query(columns=("timestamp", "status", "severity"), order_by="id"))
        return reduce_stats(rows, today)

    async def purge_resource(self, resource_type: str, resource_id: str) -> int:
        """Delete entries for one resource. Raises StoreError on failure."""
        try:
            return await self._table.delete(Query(eq={"resource_type": resource_type, "resource_id": resource_id}))
        except Exception as exc:
            raise StoreError(store="audit", step="purge") from exc

    async def entries_for(self, resource_type: str, resource_id: str) -> List[AuditEntry]:
        rows, _ = await self._select(
            Query(
                eq={"resource_type": resource_type, "resource_id": resource_id},
                order_by="timestamp",
                descending=True,
            )
        )
        return [AuditEntry.from_row(r) for r in rows]

    async def _select_all(self, query: Query) -> List[Dict[str, Any]]:
        """Fetch every match in windows; hosted stores cap rows per response."""
        rows: List[Dict[str, Any]] = []
        while True:
            batch, total = await self._select(query.window(offset=len(rows), limit=STATS_PAGE_SIZE))
            rows.extend(batch)
            if not batch or len(rows) >= total:
                return rows

    async def _select(self, query: Query):
        try:
            return await self._table.select(query)
        except Exception as exc:
            _log.warning("audit select failed: %s", exc.__class__.__name__)
            raise StoreError(store="audit", step="select") from exc


__all__ = ["AuditLog", "CSV_COLUMNS", "reduce_stats"]
