"""
Identity configuration parsing and startup safety checks.

Intent:
    Provide a single place to read environment variables that control store
    selection (DI), the reserved administrator address, password policy and
    audit limits.

Why:
    Centralising configuration reduces drift across modules and makes
    validation and defaults explicit (KISS). It also helps tests exercise
    config behaviour without wiring any store.
"""
from __future__ import annotations

from dataclasses import dataclass
import os

from backend.storage import config as storage_config

from .domain import DEFAULT_ADMIN_EMAIL


@dataclass(frozen=True)
class IdentityConfig:
    default_admin_email: str
    min_password_length: int
    table_backend: str  # "memory" | "supabase" | "postgres"
    credential_backend: str  # "memory" | "supabase" | "keycloak"
    profiles_table: str
    grants_table: str
    sections_table: str
    audit_table: str
    audit_export_row_cap: int
    audit_page_size: int
    system_actor_id: str
    system_actor_name: str


def _int_env(name: str, default: int, *, low: int, high: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")
    if value < low or value > high:
        raise ValueError(f"{name} out of range ({low}..{high}), got: {value}")
    return value


def _is_prod_like() -> bool:
    env = (os.getenv("EDU_ENV") or "dev").lower()
    return env in {"prod", "production", "stage", "staging"}


def load_identity_config() -> IdentityConfig:
    """
    Parse and validate identity-related configuration from environment variables.

    Behavior:
        - `IDENTITY_TABLE_BACKEND` / `IDENTITY_CREDENTIAL_BACKEND` select
          adapters (default: memory).
        - `DEFAULT_ADMIN_EMAIL` overrides the reserved administrator address.
        - `MIN_PASSWORD_LENGTH` must be within 1..128 (default 6).
    """
    admin_email = (os.getenv("DEFAULT_ADMIN_EMAIL") or DEFAULT_ADMIN_EMAIL).strip()
    if "@" not in admin_email:
        raise ValueError("DEFAULT_ADMIN_EMAIL must be an email address")
    return IdentityConfig(
        default_admin_email=admin_email,
        min_password_length=_int_env("MIN_PASSWORD_LENGTH", 6, low=1, high=128),
        table_backend=storage_config.get_table_backend(),
        credential_backend=storage_config.get_credential_backend(),
        profiles_table=storage_config.get_profiles_table(),
        grants_table=storage_config.get_grants_table(),
        sections_table=storage_config.get_sections_table(),
        audit_table=storage_config.get_audit_table(),
        audit_export_row_cap=storage_config.get_audit_export_row_cap(),
        audit_page_size=storage_config.get_audit_page_size(),
        system_actor_id=(os.getenv("AUDIT_SYSTEM_ACTOR_ID") or "system").strip(),
        system_actor_name=(os.getenv("AUDIT_SYSTEM_ACTOR_NAME") or "System").strip(),
    )


def ensure_secure_identity_config(cfg: IdentityConfig) -> None:
    """Fail fast on insecure production configuration.

    Intent: Abort startup when obviously unsafe settings are detected in
    production/staging. Development remains permissive for convenience.

    Checks:
    - In-memory stores lose every account on restart; forbidden in prod.
    - Supabase backends need a real service role key.
    - Keycloak credential backend needs a confidential admin client secret
      and an https base URL.
    """
    if not _is_prod_like():
        return

    if cfg.table_backend == "memory" or cfg.credential_backend == "memory":
        raise SystemExit("Refusing to start: in-memory identity stores are not allowed in production/staging.")

    if "supabase" in (cfg.table_backend, cfg.credential_backend):
        srole = (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip()
        if not srole or srole.upper() == "DUMMY_DO_NOT_USE":
            raise SystemExit(
                "Refusing to start: SUPABASE_SERVICE_ROLE_KEY is unset or a dummy placeholder in production."
            )

    if cfg.table_backend == "postgres":
        dsn = os.getenv("DATABASE_URL", "")
        if "sslmode=disable" in dsn:
            raise SystemExit(
                "Refusing to start: DATABASE_URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
            )

    if cfg.credential_backend == "keycloak":
        kc_secret = (os.getenv("KC_ADMIN_CLIENT_SECRET", "") or "").strip()
        if not kc_secret or kc_secret.upper().startswith("CHANGE_ME"):
            raise SystemExit(
                "Refusing to start: KC_ADMIN_CLIENT_SECRET is unset or a placeholder in production."
            )
        base = (os.getenv("KC_BASE_URL") or "").strip().lower()
        if base.startswith("http://"):
            raise SystemExit("Refusing to start: KC_BASE_URL must use https in production (got http).")


__all__ = ["IdentityConfig", "ensure_secure_identity_config", "load_identity_config"]
