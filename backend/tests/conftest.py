"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors).
Provides an in-memory service stack with fault injection and a ticking clock
so ordering and "today" statistics are deterministic.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

# Load .env only when E2E suite is explicit enabled.
try:
    from dotenv import load_dotenv  # type: ignore
    if os.getenv("RUN_E2E", "0") == "1":
        load_dotenv()
except Exception:
    pass

# Ensure `backend.*` namespace packages are importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
TESTS_DIR = REPO_ROOT / "backend" / "tests"
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)

from backend.audit.log import AuditLog  # noqa: E402
from backend.identity_access import telemetry  # noqa: E402
from backend.identity_access.accounts import AccountProvisioner  # noqa: E402
from backend.identity_access.console import AdminConsole  # noqa: E402
from backend.identity_access.grants import AccessGrantManager  # noqa: E402
from backend.identity_access.permissions import PermissionEngine  # noqa: E402
from backend.identity_access.roles import default_catalog  # noqa: E402
from backend.identity_access.sessions import SignInService  # noqa: E402
from backend.reporting.stats import StatsAggregator  # noqa: E402
from backend.storage.memory import InMemoryCredentialStore, InMemoryTable  # noqa: E402

START = datetime(2026, 3, 15, 10, 0, 0, tzinfo=timezone.utc)


class TickClock:
    """Returns `start`, then advances one second per call."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current = value + timedelta(seconds=1)
        return value


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_telemetry():
    telemetry.reset_for_tests()
    yield
    telemetry.reset_for_tests()


@pytest.fixture(autouse=True)
def _clear_identity_env(monkeypatch: pytest.MonkeyPatch):
    """Keep env-driven config deterministic; tests opt into values explicitly."""
    for var in (
        "EDU_ENV",
        "DEFAULT_ADMIN_EMAIL",
        "MIN_PASSWORD_LENGTH",
        "AUDIT_EXPORT_ROW_CAP",
        "AUDIT_PAGE_SIZE",
        "IDENTITY_TABLE_BACKEND",
        "IDENTITY_CREDENTIAL_BACKEND",
        "PROFILES_TABLE",
        "GRANTS_TABLE",
        "SECTIONS_TABLE",
        "AUDIT_TABLE",
        "KC_ADMIN_CLIENT_SECRET",
        "KC_BASE_URL",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def clock() -> TickClock:
    return TickClock()


@pytest.fixture
def stack(clock: TickClock) -> SimpleNamespace:
    """In-memory stores wired into the real services."""
    credentials = InMemoryCredentialStore()
    profiles = InMemoryTable("students", unique=[("email",)])
    grants_table = InMemoryTable("student_section_access", unique=[("student_id", "section_id")])
    sections = InMemoryTable("sections")
    audit_table = InMemoryTable("activity_logs")

    audit = AuditLog(audit_table, clock=clock)
    engine = PermissionEngine(default_catalog())
    grants = AccessGrantManager(grants_table, profiles, sections, audit, clock=clock)
    provisioner = AccountProvisioner(credentials, profiles, audit, grants=grants, clock=clock)
    stats = StatsAggregator(profiles, audit, clock=clock)
    console = AdminConsole(
        engine=engine,
        provisioner=provisioner,
        grants=grants,
        audit=audit,
        stats=stats,
        sessions=SignInService(credentials, engine, audit),
    )
    return SimpleNamespace(
        credentials=credentials,
        profiles=profiles,
        grants_table=grants_table,
        sections=sections,
        audit_table=audit_table,
        audit=audit,
        engine=engine,
        grants=grants,
        provisioner=provisioner,
        stats=stats,
        console=console,
        clock=clock,
    )
