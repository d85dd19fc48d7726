"""
AdminConsole: the single boundary administrative callers use.

Why:
    Callers should not assemble engine, provisioner, grant manager, audit log
    and stats themselves. The console composes them and applies the
    permission gate before delegating.

Permissions:
    Every gated method takes an optional `principal`. With a principal the
    matching permission is required (PermissionDeniedError otherwise) and the
    principal becomes the audit actor. Without one the call is treated as a
    trusted internal call and audited as the system actor.
"""
from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Optional

import logging

from backend.audit.entries import SYSTEM_ACTOR, Actor, AuditEntry, AuditFilters, AuditPage, AuditStats
from backend.audit.log import AuditLog
from backend.reporting.stats import ActivityItem, Dashboard, MonthlySignups, StatsAggregator

from .accounts import AccountPage, AccountPatch, AccountProvisioner, NewAccount
from .domain import Account, Grant, tail
from .errors import OperationResult, PermissionDeniedError
from .grants import AccessGrantManager, normalize_section_ids
from .permissions import PermissionEngine, RoleResolution
from .roles import Role
from .sessions import Principal, SignInService

_log = logging.getLogger("eduplatform.identity_access")


class AdminConsole:
    def __init__(
        self,
        *,
        engine: PermissionEngine,
        provisioner: AccountProvisioner,
        grants: AccessGrantManager,
        audit: AuditLog,
        stats: StatsAggregator,
        sessions: SignInService,
        system_actor: Actor = SYSTEM_ACTOR,
    ) -> None:
        self.engine = engine
        self.provisioner = provisioner
        self.grants = grants
        self.audit = audit
        self.stats = stats
        self.sessions = sessions
        self._system_actor = system_actor

    # --- Permission gate ---------------------------------------------------------

    def resolve_role(self, email: str, metadata: Mapping[str, Any] | None = None) -> RoleResolution:
        return self.engine.resolve_role(email, metadata)

    def has_permission(self, email: str, permission: str, metadata: Mapping[str, Any] | None = None) -> bool:
        return self.engine.has_permission(email, permission, metadata)

    def require_permission(self, principal: Principal, permission: str) -> Role:
        return self.engine.require(principal.email, permission, principal.metadata)

    def _gate(self, principal: Optional[Principal], permission: str) -> Actor:
        if principal is None:
            return self._system_actor
        try:
            self.require_permission(principal, permission)
        except PermissionDeniedError:
            _log.info("permission denied: cred=%s permission=%s", tail(principal.credential_id), permission)
            raise
        return principal.as_actor()

    # --- Sessions ----------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> Principal:
        return await self.sessions.sign_in(email, password)

    async def sign_out(self, principal: Principal) -> None:
        await self.sessions.sign_out(principal)

    # --- Accounts ----------------------------------------------------------------

    async def create_account(
        self,
        data: NewAccount,
        *,
        principal: Optional[Principal] = None,
        section_ids: Iterable[str] = (),
    ) -> OperationResult[Account]:
        """Create an account and optionally grant sections.

        When the grant insert fails, the fresh account is deleted again and
        the grant error is re-raised.
        """
        actor = self._gate(principal, "addStudents")
        wanted = normalize_section_ids(section_ids)
        result = await self.provisioner.create_account(data, actor=actor)
        if not wanted:
            return result
        try:
            await self.grants.assign(result.value.id, wanted, actor=actor)
        except Exception:
            _log.warning("grant assignment failed after create; deleting account=%s", tail(result.value.id))
            try:
                await self.provisioner.delete_account(result.value.id, actor=actor)
            except Exception as rollback_exc:
                _log.error(
                    "compensation delete account failed: account=%s err=%s",
                    tail(result.value.id),
                    rollback_exc.__class__.__name__,
                )
            else:
                _log.info("compensation delete account ok: account=%s", tail(result.value.id))
            raise
        return result

    async def update_account(
        self, account_id: str, patch: AccountPatch, *, principal: Optional[Principal] = None
    ) -> OperationResult[Account]:
        actor = self._gate(principal, "editStudents")
        return await self.provisioner.update_account(account_id, patch, actor=actor)

    async def change_status(
        self, account_id: str, status: str, *, principal: Optional[Principal] = None
    ) -> OperationResult[Account]:
        actor = self._gate(principal, "editStudents")
        return await self.provisioner.change_status(account_id, status, actor=actor)

    async def delete_account(self, account_id: str, *, principal: Optional[Principal] = None) -> OperationResult[None]:
        actor = self._gate(principal, "deleteStudents")
        return await self.provisioner.delete_account(account_id, actor=actor)

    async def get_account(self, account_id: str, *, principal: Optional[Principal] = None) -> Account:
        self._gate(principal, "viewStudents")
        return await self.provisioner.get_account(account_id)

    async def list_accounts(self, *, principal: Optional[Principal] = None, **filters: Any) -> AccountPage:
        self._gate(principal, "viewStudents")
        return await self.provisioner.list_accounts(**filters)

    # --- Grants ------------------------------------------------------------------

    async def assign_sections(
        self, account_id: str, section_ids: Iterable[str], *, principal: Optional[Principal] = None
    ) -> List[Grant]:
        actor = self._gate(principal, "editStudents")
        return await self.grants.assign(account_id, section_ids, actor=actor)

    async def replace_sections(
        self, account_id: str, section_ids: Iterable[str], *, principal: Optional[Principal] = None
    ) -> List[Grant]:
        actor = self._gate(principal, "editStudents")
        return await self.grants.replace(account_id, section_ids, actor=actor)

    async def query_grants(self, account_id: str, *, principal: Optional[Principal] = None) -> List[str]:
        self._gate(principal, "viewStudents")
        return await self.grants.query(account_id)

    # --- Audit -------------------------------------------------------------------

    async def append_audit_entry(self, entry: AuditEntry) -> bool:
        return await self.audit.append(entry)

    async def query_audit_log(
        self,
        filters: AuditFilters | None = None,
        page: int = 1,
        limit: int | None = None,
        *,
        principal: Optional[Principal] = None,
    ) -> AuditPage:
        self._gate(principal, "viewSystemLogs")
        return await self.audit.query(filters, page=page, limit=limit)

    async def export_audit_csv(
        self, filters: AuditFilters | None = None, *, principal: Optional[Principal] = None
    ) -> str:
        actor = self._gate(principal, "viewSystemLogs")
        text = await self.audit.export_csv(filters)
        await self.audit.append(
            AuditEntry.by(
                actor,
                action="audit_log_exported",
                action_type="export",
                resource_type="activity_logs",
                details={"format": "csv"},
                severity="low",
                status="success",
            )
        )
        return text

    async def get_audit_stats(self, *, principal: Optional[Principal] = None) -> AuditStats:
        self._gate(principal, "viewSystemLogs")
        return await self.audit.stats()

    # --- Reporting ---------------------------------------------------------------

    async def monthly_signups(self, *, principal: Optional[Principal] = None) -> List[MonthlySignups]:
        self._gate(principal, "viewDashboard")
        return await self.stats.monthly_signups()

    async def recent_activity(self, n: int = 5, *, principal: Optional[Principal] = None) -> List[ActivityItem]:
        self._gate(principal, "viewDashboard")
        return await self.stats.recent_activity(n)

    async def dashboard(self, *, principal: Optional[Principal] = None) -> Dashboard:
        self._gate(principal, "viewDashboard")
        return await self.stats.dashboard()


__all__ = ["AdminConsole"]
