"""
Dashboard rollups: monthly signups, recent activity and student counts.
"""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from backend.identity_access.errors import StoreError
from backend.reporting.stats import trailing_months

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


async def _seed(stack) -> None:
    for name, enrolled, status in (
        ("Old Timer", "2025-09-30T23:00:00+00:00", "active"),
        ("Rana", "2025-10-01T08:00:00+00:00", "active"),
        ("Yousef", "2026-01-20T09:30:00+00:00", "suspended"),
        ("Huda", "2026-03-02T10:00:00+00:00", "active"),
        ("Khaled", "2026-03-09T10:00:00+00:00", "pending"),
    ):
        await stack.profiles.insert(
            {"full_name": name, "email": f"{name.split()[0].lower()}@example.com", "status": status, "enrollment_date": enrolled}
        )


def test_trailing_months_crosses_year_boundary():
    assert trailing_months(datetime(2026, 2, 1, tzinfo=timezone.utc)) == [
        (2025, 9),
        (2025, 10),
        (2025, 11),
        (2025, 12),
        (2026, 1),
        (2026, 2),
    ]


@pytest.mark.anyio
async def test_monthly_signups_trailing_six_months_oldest_first(stack):
    await _seed(stack)
    buckets = await stack.stats.monthly_signups(NOW)

    assert [(b.label, b.count) for b in buckets] == [
        ("October", 1),
        ("November", 0),
        ("December", 0),
        ("January", 1),
        ("February", 0),
        ("March", 2),
    ]
    assert (buckets[0].year, buckets[-1].year) == (2025, 2026)


@pytest.mark.anyio
async def test_recent_activity_lists_newest_accounts(stack):
    await _seed(stack)
    items = await stack.stats.recent_activity(2)

    assert [i.message for i in items] == ["Khaled joined the platform", "Huda joined the platform"]
    assert {i.kind for i in items} == {"new_student"}
    assert items[0].timestamp == "2026-03-09T10:00:00+00:00"
    assert len(await stack.stats.recent_activity()) == 5


@pytest.mark.anyio
async def test_student_stats_counts(stack):
    await _seed(stack)
    stats = await stack.stats.student_stats(NOW)
    assert (stats.total, stats.active, stats.suspended, stats.new_this_month) == (5, 3, 1, 2)


@pytest.mark.anyio
async def test_dashboard_gathers_all_rollups(stack):
    await _seed(stack)
    await stack.provisioner.change_status(
        next(r["id"] for r in stack.profiles.rows.values() if r["full_name"] == "Rana"), "suspended"
    )

    board = await stack.stats.dashboard(NOW)

    assert board.students.suspended == 2
    assert len(board.monthly_signups) == 6
    assert board.recent_activity[0].message == "Khaled joined the platform"
    assert board.audit.total == 1


@pytest.mark.anyio
async def test_profile_store_failure_raises_store_error(stack):
    stack.profiles.fail_on.add("select")
    with pytest.raises(StoreError) as ei:
        await stack.stats.monthly_signups(NOW)
    assert ei.value.store == "profiles"


@pytest.mark.anyio
async def test_recent_activity_non_positive_is_empty_and_large_n_returns_all(stack):
    await _seed(stack)
    assert await stack.stats.recent_activity(0) == []
    assert await stack.stats.recent_activity(-3) == []
    assert len(await stack.stats.recent_activity(500)) == 5
