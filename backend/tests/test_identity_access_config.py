"""
Identity configuration parsing and the production startup guard.

Validates defaults, env overrides, rejection of invalid values, and that
prod-like environments refuse unsafe store and secret settings while
development stays permissive.
"""
from __future__ import annotations

import pytest

from backend.identity_access.config import ensure_secure_identity_config, load_identity_config
from backend.storage import config as storage_config


def test_defaults():
    cfg = load_identity_config()
    assert cfg.default_admin_email == "admin@educational-platform.com"
    assert cfg.min_password_length == 6
    assert (cfg.table_backend, cfg.credential_backend) == ("memory", "memory")
    assert (cfg.profiles_table, cfg.grants_table, cfg.sections_table, cfg.audit_table) == (
        "students",
        "student_section_access",
        "sections",
        "activity_logs",
    )
    assert (cfg.audit_export_row_cap, cfg.audit_page_size) == (10_000, 20)


def test_env_overrides(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("DEFAULT_ADMIN_EMAIL", "root@school.test")
    monkeypatch.setenv("MIN_PASSWORD_LENGTH", "12")
    monkeypatch.setenv("IDENTITY_TABLE_BACKEND", "Postgres")
    monkeypatch.setenv("PROFILES_TABLE", "learners")
    monkeypatch.setenv("AUDIT_PAGE_SIZE", "500")
    cfg = load_identity_config()
    assert cfg.default_admin_email == "root@school.test"
    assert cfg.min_password_length == 12
    assert cfg.table_backend == "postgres"
    assert cfg.profiles_table == "learners"
    assert cfg.audit_page_size == 100


@pytest.mark.parametrize(
    "var, value",
    [
        ("MIN_PASSWORD_LENGTH", "0"),
        ("MIN_PASSWORD_LENGTH", "six"),
        ("IDENTITY_TABLE_BACKEND", "mongo"),
        ("IDENTITY_CREDENTIAL_BACKEND", "ldap"),
        ("DEFAULT_ADMIN_EMAIL", "not-an-email"),
    ],
)
def test_invalid_values_raise(monkeypatch: pytest.MonkeyPatch, var: str, value: str):
    monkeypatch.setenv(var, value)
    with pytest.raises(ValueError):
        load_identity_config()


def test_unparsable_export_cap_falls_back_to_default(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("AUDIT_EXPORT_ROW_CAP", "lots")
    assert storage_config.get_audit_export_row_cap() == 10_000
    monkeypatch.setenv("AUDIT_EXPORT_ROW_CAP", "50000")
    assert storage_config.get_audit_export_row_cap() == 10_000
    monkeypatch.setenv("AUDIT_EXPORT_ROW_CAP", "250")
    assert storage_config.get_audit_export_row_cap() == 250


def test_guard_is_permissive_in_dev():
    ensure_secure_identity_config(load_identity_config())


def test_guard_refuses_memory_stores_in_prod(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("EDU_ENV", "prod")
    with pytest.raises(SystemExit):
        ensure_secure_identity_config(load_identity_config())


def test_guard_refuses_dummy_service_key_in_prod(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("EDU_ENV", "staging")
    monkeypatch.setenv("IDENTITY_TABLE_BACKEND", "supabase")
    monkeypatch.setenv("IDENTITY_CREDENTIAL_BACKEND", "supabase")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "DUMMY_DO_NOT_USE")
    with pytest.raises(SystemExit):
        ensure_secure_identity_config(load_identity_config())

    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "REAL_NON_DUMMY")
    ensure_secure_identity_config(load_identity_config())


def test_guard_refuses_sslmode_disable_in_prod(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("EDU_ENV", "production")
    monkeypatch.setenv("IDENTITY_TABLE_BACKEND", "postgres")
    monkeypatch.setenv("IDENTITY_CREDENTIAL_BACKEND", "supabase")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "REAL_NON_DUMMY")
    monkeypatch.setenv("DATABASE_URL", "postgresql://app:pw@db.example.com/postgres?sslmode=disable")
    with pytest.raises(SystemExit):
        ensure_secure_identity_config(load_identity_config())


def test_guard_keycloak_secret_and_https(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("EDU_ENV", "prod")
    monkeypatch.setenv("IDENTITY_TABLE_BACKEND", "postgres")
    monkeypatch.setenv("IDENTITY_CREDENTIAL_BACKEND", "keycloak")
    monkeypatch.setenv("DATABASE_URL", "postgresql://app:pw@db.example.com/postgres?sslmode=require")
    monkeypatch.setenv("KC_ADMIN_CLIENT_SECRET", "CHANGE_ME_DEV")
    with pytest.raises(SystemExit):
        ensure_secure_identity_config(load_identity_config())

    monkeypatch.setenv("KC_ADMIN_CLIENT_SECRET", "REAL_SECRET")
    monkeypatch.setenv("KC_BASE_URL", "http://id.example.com")
    with pytest.raises(SystemExit):
        ensure_secure_identity_config(load_identity_config())

    monkeypatch.setenv("KC_BASE_URL", "https://id.example.com")
    ensure_secure_identity_config(load_identity_config())
