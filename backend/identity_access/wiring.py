"""
Compose an AdminConsole from configuration.

Why:
    Store selection is configuration (DI), not code. This module is the only
    place that knows which adapter backs which port; services receive ports.

Behavior:
    - `memory` backends build in-process stores (dev and tests).
    - `supabase` builds an async client with `supabase.acreate_client` from
      `SUPABASE_URL` / `SUPABASE_SERVICE_ROLE_KEY` unless one is injected.
      Credential sign-in gets a second client (`SUPABASE_ANON_KEY` when set).
    - `postgres` tables connect with `DATABASE_URL`.
    - `keycloak` credentials read `KC_*` variables.

Security:
    Calls `ensure_secure_identity_config` first so unsafe production settings
    abort before any client is built.
"""
from __future__ import annotations

from typing import Any, Dict, Optional
import logging
import os

from backend.audit.entries import Actor
from backend.audit.log import AuditLog
from backend.reporting.stats import StatsAggregator
from backend.storage.memory import InMemoryCredentialStore, InMemoryTable
from backend.storage.postgres import PostgresTable
from backend.storage.supabase_tables import SupabaseCredentialStore, SupabaseTable

from .accounts import AccountProvisioner
from .config import IdentityConfig, ensure_secure_identity_config, load_identity_config
from .console import AdminConsole
from .grants import AccessGrantManager
from .keycloak_store import KeycloakCredentialStore, load_keycloak_config
from .permissions import PermissionEngine
from .roles import RoleCatalog, default_catalog
from .sessions import SignInService

_log = logging.getLogger("eduplatform.identity_access")


async def _supabase_client(*key_envs: str) -> Any:
    """Create an async client with the first configured key among `key_envs`."""
    url = (os.getenv("SUPABASE_URL") or "").strip()
    key = ""
    for name in key_envs:
        key = (os.getenv(name) or "").strip()
        if key:
            break
    if not url or not key:
        raise RuntimeError(f"SUPABASE_URL and one of {', '.join(key_envs)} are required for the supabase backend")
    from supabase import acreate_client

    return await acreate_client(url, key)


def _memory_tables(cfg: IdentityConfig) -> Dict[str, Any]:
    return {
        "profiles": InMemoryTable(cfg.profiles_table, unique=[("email",)]),
        "grants": InMemoryTable(cfg.grants_table, unique=[("student_id", "section_id")]),
        "sections": InMemoryTable(cfg.sections_table),
        "audit": InMemoryTable(cfg.audit_table),
    }


async def build_console(
    cfg: Optional[IdentityConfig] = None,
    *,
    catalog: Optional[RoleCatalog] = None,
    supabase_client: Any = None,
    sign_in_client: Any = None,
) -> AdminConsole:
    """Build the console for `cfg` (defaults to `load_identity_config()`).

    Supabase sign-in runs on its own client: a successful sign-in replaces the
    client's session, which must never happen to the service-role client.
    """
    cfg = cfg or load_identity_config()
    ensure_secure_identity_config(cfg)

    needs_supabase = "supabase" in (cfg.table_backend, cfg.credential_backend)
    if needs_supabase and supabase_client is None:
        supabase_client = await _supabase_client("SUPABASE_SERVICE_ROLE_KEY")

    if cfg.table_backend == "supabase":
        tables = {
            "profiles": SupabaseTable(supabase_client, cfg.profiles_table),
            "grants": SupabaseTable(supabase_client, cfg.grants_table),
            "sections": SupabaseTable(supabase_client, cfg.sections_table),
            "audit": SupabaseTable(supabase_client, cfg.audit_table),
        }
    elif cfg.table_backend == "postgres":
        dsn = (os.getenv("DATABASE_URL") or "").strip()
        if not dsn:
            raise RuntimeError("DATABASE_URL is required for the postgres backend")
        tables = {
            "profiles": PostgresTable(dsn, cfg.profiles_table),
            "grants": PostgresTable(dsn, cfg.grants_table),
            "sections": PostgresTable(dsn, cfg.sections_table),
            "audit": PostgresTable(dsn, cfg.audit_table),
        }
    else:
        tables = _memory_tables(cfg)

    if cfg.credential_backend == "supabase":
        if sign_in_client is None:
            sign_in_client = await _supabase_client("SUPABASE_ANON_KEY", "SUPABASE_SERVICE_ROLE_KEY")
        credentials: Any = SupabaseCredentialStore(supabase_client, sign_in_client=sign_in_client)
    elif cfg.credential_backend == "keycloak":
        credentials = KeycloakCredentialStore(load_keycloak_config())
    else:
        credentials = InMemoryCredentialStore()

    engine = PermissionEngine(catalog or default_catalog(), default_admin_email=cfg.default_admin_email)
    actor = Actor(id=cfg.system_actor_id, name=cfg.system_actor_name, role="system")
    audit = AuditLog(tables["audit"], export_row_cap=cfg.audit_export_row_cap, page_size=cfg.audit_page_size)
    grants = AccessGrantManager(tables["grants"], tables["profiles"], tables["sections"], audit)
    provisioner = AccountProvisioner(
        credentials,
        tables["profiles"],
        audit,
        grants=grants,
        min_password_length=cfg.min_password_length,
        system_actor=actor,
    )
    _log.info(
        "admin console wired: tables=%s credentials=%s",
        cfg.table_backend,
        cfg.credential_backend,
    )
    return AdminConsole(
        engine=engine,
        provisioner=provisioner,
        grants=grants,
        audit=audit,
        stats=StatsAggregator(tables["profiles"], audit),
        sessions=SignInService(credentials, engine, audit),
        system_actor=actor,
    )


__all__ = ["build_console"]
