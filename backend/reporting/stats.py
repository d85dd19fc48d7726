"""
Dashboard rollups over the profile store and the audit log (read-only).

Behavior:
    - `monthly_signups` counts accounts by enrollment month for the trailing
      six calendar months including the current one, oldest first.
    - `recent_activity` lists the `n` newest accounts as activity items;
      `n <= 0` yields an empty list.
    - `dashboard` gathers every rollup concurrently.

Failures surface as StoreError; partial dashboards are not assembled.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Tuple
import asyncio
import logging

from backend.audit.entries import AuditStats
from backend.audit.log import AuditLog
from backend.identity_access.errors import StoreError
from backend.storage.ports import Query, TableStore

_log = logging.getLogger("eduplatform.reporting")

MONTH_LABELS = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)
TRAILING_MONTHS = 6


@dataclass(frozen=True)
class MonthlySignups:
    label: str
    year: int
    month: int
    count: int


@dataclass(frozen=True)
class ActivityItem:
    id: str
    kind: str
    message: str
    timestamp: str


@dataclass(frozen=True)
class StudentStats:
    total: int
    active: int
    suspended: int
    new_this_month: int


@dataclass(frozen=True)
class Dashboard:
    students: StudentStats
    monthly_signups: List[MonthlySignups]
    recent_activity: List[ActivityItem]
    audit: AuditStats


def trailing_months(now: datetime, count: int = TRAILING_MONTHS) -> List[Tuple[int, int]]:
    """(year, month) pairs ending with `now`'s month, oldest first."""
    year, month = now.year, now.month
    out: List[Tuple[int, int]] = []
    for _ in range(count):
        out.append((year, month))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    out.reverse()
    return out


def _month_start(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}-01T00:00:00"


class StatsAggregator:
    def __init__(
        self,
        profiles: TableStore,
        audit: AuditLog,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._profiles = profiles
        self._audit = audit
        self._clock = clock

    def _now(self, now: datetime | None) -> datetime:
        return (now or self._clock()).astimezone(timezone.utc)

    async def _select(self, query: Query) -> Tuple[List[dict], int]:
        try:
            return await self._profiles.select(query)
        except Exception as exc:
            _log.warning("profile rollup select failed: %s", exc.__class__.__name__)
            raise StoreError(store="profiles", step="select") from exc

    async def _count(self, **kwargs: Any) -> int:
        # limit=1 keeps the payload small; the total ignores the window.
        _, total = await self._select(Query(columns=("id",), limit=1, **kwargs))
        return total

    async def monthly_signups(self, now: datetime | None = None) -> List[MonthlySignups]:
        months = trailing_months(self._now(now))
        first_year, first_month = months[0]
        rows, _ = await self._select(
            Query(gte={"enrollment_date": _month_start(first_year, first_month)}, columns=("enrollment_date",))
        )
        buckets = {f"{y:04d}-{m:02d}": 0 for y, m in months}
        for row in rows:
            key = str(row.get("enrollment_date") or "")[:7]
            if key in buckets:
                buckets[key] += 1
        return [
            MonthlySignups(label=MONTH_LABELS[m - 1], year=y, month=m, count=buckets[f"{y:04d}-{m:02d}"])
            for y, m in months
        ]

    async def recent_activity(self, n: int = 5) -> List[ActivityItem]:
        n = int(n)
        if n <= 0:
            return []
        rows, _ = await self._select(
            Query(
                columns=("id", "full_name", "enrollment_date"),
                order_by="enrollment_date",
                descending=True,
                limit=n,
            )
        )
        return [
            ActivityItem(
                id=str(row["id"]),
                kind="new_student",
                message=f"{row.get('full_name') or 'A student'} joined the platform",
                timestamp=str(row.get("enrollment_date") or ""),
            )
            for row in rows
        ]

    async def student_stats(self, now: datetime | None = None) -> StudentStats:
        current = self._now(now)
        total, active, suspended, fresh = await asyncio.gather(
            self._count(),
            self._count(eq={"status": "active"}),
            self._count(eq={"status": "suspended"}),
            self._count(gte={"enrollment_date": _month_start(current.year, current.month)}),
        )
        return StudentStats(total=total, active=active, suspended=suspended, new_this_month=fresh)

    async def dashboard(self, now: datetime | None = None) -> Dashboard:
        current = self._now(now)
        students, signups, recent, audit = await asyncio.gather(
            self.student_stats(current),
            self.monthly_signups(current),
            self.recent_activity(),
            self._audit.stats(current),
        )
        return Dashboard(students=students, monthly_signups=signups, recent_activity=recent, audit=audit)


__all__ = [
    "ActivityItem",
    "Dashboard",
    "MonthlySignups",
    "StatsAggregator",
    "StudentStats",
    "trailing_months",
]
