"""
Centralized storage configuration for table names and store backends.

Intent:
    Provide a single source of truth for default table names and their
    environment-variable overrides used by accounts (profiles), grants,
    sections and the audit log. Prevents drift across modules and enables
    simple testing.

Behavior:
    - *_TABLE_DEFAULT define canonical defaults matching the hosted schema
      ("students", "student_section_access", "sections", "activity_logs").
    - get_*_table() read env overrides with sane fallbacks.
    - get_table_backend()/get_credential_backend() select the adapters wired
      by `backend.identity_access.wiring`.

Permissions:
    Pure configuration; no external calls or privileges required.
"""
from __future__ import annotations

import os


PROFILES_TABLE_DEFAULT = "students"
GRANTS_TABLE_DEFAULT = "student_section_access"
SECTIONS_TABLE_DEFAULT = "sections"
AUDIT_TABLE_DEFAULT = "activity_logs"

TABLE_BACKENDS = frozenset({"memory", "supabase", "postgres"})
CREDENTIAL_BACKENDS = frozenset({"memory", "supabase", "keycloak"})


def _table(env_name: str, default: str) -> str:
    return (os.getenv(env_name) or default).strip()


def get_profiles_table() -> str:
    """Return the profile (account) table name. Env: PROFILES_TABLE."""
    return _table("PROFILES_TABLE", PROFILES_TABLE_DEFAULT)


def get_grants_table() -> str:
    """Return the section-access grant table name. Env: GRANTS_TABLE."""
    return _table("GRANTS_TABLE", GRANTS_TABLE_DEFAULT)


def get_sections_table() -> str:
    """Return the content sections table name. Env: SECTIONS_TABLE."""
    return _table("SECTIONS_TABLE", SECTIONS_TABLE_DEFAULT)


def get_audit_table() -> str:
    """Return the audit log table name. Env: AUDIT_TABLE."""
    return _table("AUDIT_TABLE", AUDIT_TABLE_DEFAULT)


def _choice(env_name: str, default: str, allowed: frozenset[str]) -> str:
    value = (os.getenv(env_name) or default).strip().lower()
    if value not in allowed:
        raise ValueError(f"{env_name} must be one of {sorted(allowed)}, got: {value!r}")
    return value


def get_table_backend() -> str:
    """Return the table backend. Env: IDENTITY_TABLE_BACKEND (default memory)."""
    return _choice("IDENTITY_TABLE_BACKEND", "memory", TABLE_BACKENDS)


def get_credential_backend() -> str:
    """Return the credential backend. Env: IDENTITY_CREDENTIAL_BACKEND (default memory)."""
    return _choice("IDENTITY_CREDENTIAL_BACKEND", "memory", CREDENTIAL_BACKENDS)


__all__ = [
    "AUDIT_TABLE_DEFAULT",
    "CREDENTIAL_BACKENDS",
    "GRANTS_TABLE_DEFAULT",
    "PROFILES_TABLE_DEFAULT",
    "SECTIONS_TABLE_DEFAULT",
    "TABLE_BACKENDS",
    "get_audit_table",
    "get_credential_backend",
    "get_grants_table",
    "get_profiles_table",
    "get_sections_table",
    "get_table_backend",
]

# --- Size limits --------------------------------------------------------------

def _parse_int_env(name: str, default: int, *, contract_max: int | None = None) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value <= 0:
        return default
    if isinstance(contract_max, int) and contract_max > 0:
        value = min(value, contract_max)
    return value


def get_audit_export_row_cap() -> int:
    """Maximum rows materialized by an audit CSV export (default/clamped 10000)."""
    contract_max = 10_000
    return _parse_int_env("AUDIT_EXPORT_ROW_CAP", contract_max, contract_max=contract_max)


def get_audit_page_size() -> int:
    """Default audit page size (default 20, clamped to 100)."""
    return _parse_int_env("AUDIT_PAGE_SIZE", 20, contract_max=100)


__all__ += [
    "get_audit_export_row_cap",
    "get_audit_page_size",
]
