"""Student account provisioning across the credential and profile stores.

Why:
    A student exists twice: as a login identity in the credential store and as
    a profile row in the profile store. The two stores never share a
    transaction, so every multi-step operation is written as a saga: forward
    steps run strictly in order, each has a named compensating or best-effort
    follow-up, and the outcome of a compensation is logged on its own line.

Outcomes:
    - Primary failures raise from the closed taxonomy in `errors`.
    - Secondary failures (credential rollback, credential mirroring, credential
      cleanup, audit purge/append) become `ConsistencyWarning`s in the returned
      `OperationResult`; they never flip a successful primary write.

Concurrency:
    No locks. Two concurrent creates for one email are arbitrated by the
    credential store's uniqueness constraint; the loser gets DuplicateError.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import logging

from backend.audit.entries import SYSTEM_ACTOR, Actor, AuditEntry
from backend.audit.log import AuditLog
from backend.storage.ports import CredentialStore, Query, TableStore, UniqueViolation

from . import telemetry
from .domain import ACCOUNT_STATUSES, STUDENT_ROLE, Account, tail
from .errors import (
    ConsistencyWarning,
    DuplicateError,
    NotFoundError,
    OperationResult,
    StoreError,
    ValidationError,
)

_log = logging.getLogger("eduplatform.identity_access")

_UNSET: Any = object()

# Patch attribute -> profile column.
_PATCH_COLUMNS = {
    "full_name": "full_name",
    "email": "email",
    "phone": "phone",
    "parent_phone": "parent_phone",
    "status": "status",
    "expires_at": "account_expires_at",
}
# Profile columns mirrored into credential metadata (email goes top-level).
_MIRRORED_METADATA = ("full_name", "phone", "parent_phone")
_SORTABLE = frozenset({"enrollment_date", "full_name", "email", "last_activity", "status"})


@dataclass(frozen=True)
class NewAccount:
    full_name: str
    email: str
    password: str
    phone: Optional[str] = None
    parent_phone: Optional[str] = None
    status: str = "active"
    expires_at: Optional[str] = None


@dataclass(frozen=True)
class AccountPatch:
    full_name: Any = _UNSET
    email: Any = _UNSET
    phone: Any = _UNSET
    parent_phone: Any = _UNSET
    status: Any = _UNSET
    expires_at: Any = _UNSET


@dataclass(frozen=True)
class AccountPage:
    accounts: List[Account]
    total: int
    page: int
    limit: int


def _required_text(value: object, code: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(code)
    trimmed = value.strip()
    if not trimmed:
        raise ValidationError(code)
    return trimmed


def _optional_text(value: object, code: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(code)
    return value.strip() or None


def _normalize_status(value: object) -> str:
    if value not in ACCOUNT_STATUSES:
        raise ValidationError("invalid_status")
    return str(value)


def _normalize_expires_at(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ValidationError("invalid_expires_at") from exc
    else:
        raise ValidationError("invalid_expires_at")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def _normalize_patch(patch: AccountPatch) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    if patch.full_name is not _UNSET:
        changes["full_name"] = _required_text(patch.full_name, "full_name_required")
    if patch.email is not _UNSET:
        changes["email"] = _required_text(patch.email, "email_required")
    if patch.phone is not _UNSET:
        changes["phone"] = _optional_text(patch.phone, "invalid_phone")
    if patch.parent_phone is not _UNSET:
        changes["parent_phone"] = _optional_text(patch.parent_phone, "invalid_parent_phone")
    if patch.status is not _UNSET:
        changes["status"] = _normalize_status(patch.status)
    if patch.expires_at is not _UNSET:
        changes["account_expires_at"] = _normalize_expires_at(patch.expires_at)
    if not changes:
        raise ValidationError("empty_patch")
    return changes


def _credential_mirror(changes: Dict[str, Any], current: Account) -> Dict[str, Any]:
    """Identity fields that actually changed, shaped for `update_by_id`."""
    mirror: Dict[str, Any] = {}
    if "email" in changes and changes["email"] != current.email:
        mirror["email"] = changes["email"]
    meta = {
        col: changes[col]
        for col in _MIRRORED_METADATA
        if col in changes and changes[col] != getattr(current, col)
    }
    if meta:
        mirror["metadata"] = meta
    return mirror


class AccountProvisioner:
    """Create, update and delete student accounts (saga over two stores)."""

    def __init__(
        self,
        credentials: CredentialStore,
        profiles: TableStore,
        audit: AuditLog,
        *,
        grants: Any = None,
        min_password_length: int = 6,
        system_actor: Actor = SYSTEM_ACTOR,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._credentials = credentials
        self._profiles = profiles
        self._audit = audit
        # AccessGrantManager; optional so provisioning works without grants.
        self._grants = grants
        self._min_password_length = int(min_password_length)
        self._system_actor = system_actor
        self._clock = clock

    # --- Helpers -----------------------------------------------------------------

    def _warn(self, warnings: List[ConsistencyWarning], step: str, store: str, exc: BaseException | None) -> None:
        detail = exc.__class__.__name__ if exc is not None else ""
        warning = ConsistencyWarning(step=step, store=store, detail=detail)
        warnings.append(warning)
        telemetry.increment_counter(telemetry.CONSISTENCY_WARNINGS, step=step)
        _log.warning("consistency warning: step=%s store=%s err=%s", step, store, detail or "-")

    async def _audit_step(self, warnings: List[ConsistencyWarning], entry: AuditEntry) -> None:
        if not await self._audit.append(entry):
            self._warn(warnings, "audit_append", "audit", None)

    def _primary_failure(self, store: str, step: str, exc: BaseException) -> StoreError:
        telemetry.increment_counter(telemetry.PROVISIONING_FAILURES, store=store)
        _log.warning("primary step failed: store=%s step=%s err=%s", store, step, exc.__class__.__name__)
        return StoreError(store=store, step=step)

    async def _load(self, account_id: str) -> Account:
        if not isinstance(account_id, str) or not account_id.strip():
            raise ValidationError("account_id_required")
        try:
            rows, _ = await self._profiles.select(Query(eq={"id": account_id}, limit=1))
        except Exception as exc:
            raise self._primary_failure("profiles", "select", exc) from exc
        if not rows:
            raise NotFoundError("account", account_id)
        return Account.from_row(rows[0])

    def _validate_new(self, data: NewAccount) -> NewAccount:
        full_name = _required_text(data.full_name, "full_name_required")
        email = _required_text(data.email, "email_required")
        if not isinstance(data.password, str) or len(data.password) < self._min_password_length:
            raise ValidationError("password_too_short")
        return NewAccount(
            full_name=full_name,
            email=email,
            password=data.password,
            phone=_optional_text(data.phone, "invalid_phone"),
            parent_phone=_optional_text(data.parent_phone, "invalid_parent_phone"),
            status=_normalize_status(data.status),
            expires_at=_normalize_expires_at(data.expires_at),
        )

    # --- Reads -------------------------------------------------------------------

    async def get_account(self, account_id: str) -> Account:
        return await self._load(account_id)

    async def list_accounts(
        self,
        *,
        search: str | None = None,
        status: str | None = None,
        sort_by: str = "enrollment_date",
        descending: bool = True,
        page: int = 1,
        limit: int = 20,
    ) -> AccountPage:
        """Return a page of accounts with total count.

        Behavior:
            - `search` matches name or email case-insensitively.
            - `limit` is clamped to 1..100, `page` to >= 1.
        """
        if status is not None and status not in ACCOUNT_STATUSES:
            raise ValidationError("invalid_status")
        if sort_by not in _SORTABLE:
            raise ValidationError("invalid_sort")
        page = max(1, int(page or 1))
        limit = max(1, min(100, int(limit or 20)))
        term = (search or "").strip() or None
        query = Query(
            eq={"status": status} if status else {},
            search=term,
            search_columns=("full_name", "email") if term else (),
            order_by=sort_by,
            descending=descending,
            offset=(page - 1) * limit,
            limit=limit,
        )
        try:
            rows, total = await self._profiles.select(query)
        except Exception as exc:
            raise self._primary_failure("profiles", "select", exc) from exc
        return AccountPage(accounts=[Account.from_row(r) for r in rows], total=total, page=page, limit=limit)

    # --- Create ------------------------------------------------------------------

    async def create_account(self, data: NewAccount, *, actor: Actor | None = None) -> OperationResult[Account]:
        """Provision credential entity, then profile row, then audit entry.

        Raises:
            ValidationError: before any I/O.
            DuplicateError: the credential store already knows the email.
            StoreError: credential create (`credentials`) or profile insert
                (`profiles`) failed. A failed profile insert first rolls back
                the credential entity; a failed rollback is attached to the
                error's `warnings`.
        """
        actor = actor or self._system_actor
        req = self._validate_new(data)

        # Step A: credential entity.
        metadata = {
            "full_name": req.full_name,
            "role": STUDENT_ROLE,
            "phone": req.phone,
            "parent_phone": req.parent_phone,
        }
        try:
            credential_id = await self._credentials.create(email=req.email, password=req.password, metadata=metadata)
        except UniqueViolation as exc:
            _log.info("credential create rejected: duplicate email")
            raise DuplicateError("email") from exc
        except Exception as exc:
            raise self._primary_failure("credentials", "create", exc) from exc

        # Step B: profile row referencing the credential entity.
        now = self._clock().isoformat()
        row = {
            "auth_user_id": credential_id,
            "full_name": req.full_name,
            "email": req.email,
            "phone": req.phone,
            "parent_phone": req.parent_phone,
            "status": req.status,
            "account_expires_at": req.expires_at,
            "enrollment_date": now,
            "last_activity": now,
            "total_courses": 0,
            "study_hours": 0,
        }
        try:
            created = await self._profiles.insert(row)
        except Exception as exc:
            failure = self._primary_failure("profiles", "insert", exc)
            # Compensation for step A; its outcome is logged separately.
            try:
                await self._credentials.delete_by_id(credential_id)
            except Exception as comp_exc:
                _log.error(
                    "compensation rollback_credential failed: cred=%s err=%s",
                    tail(credential_id),
                    comp_exc.__class__.__name__,
                )
                self._warn(failure.warnings, "rollback_credential", "credentials", comp_exc)
            else:
                _log.info("compensation rollback_credential succeeded: cred=%s", tail(credential_id))
            raise failure from exc

        account = Account.from_row(created)
        result: OperationResult[Account] = OperationResult(value=account)

        # Step C: audit (secondary).
        await self._audit_step(
            result.warnings,
            AuditEntry.by(
                actor,
                action="account_created",
                action_type="create",
                resource_type="user",
                resource_id=account.id,
                details={
                    "student_name": account.full_name,
                    "student_email": account.email,
                    "created_with_auth": True,
                },
                severity="low",
                status="success",
            ),
        )
        _log.info("account created: id=%s cred=%s", tail(account.id), tail(credential_id))
        return result

    # --- Update ------------------------------------------------------------------

    async def update_account(
        self,
        account_id: str,
        patch: AccountPatch,
        *,
        actor: Actor | None = None,
        action: str = "account_updated",
    ) -> OperationResult[Account]:
        """Patch the profile row, then mirror identity fields best-effort.

        The profile write is primary; the credential mirror is secondary and a
        failure there only adds a ConsistencyWarning.
        """
        actor = actor or self._system_actor
        changes = _normalize_patch(patch)
        current = await self._load(account_id)

        try:
            rows = await self._profiles.update(Query(eq={"id": account_id}), changes)
        except Exception as exc:
            failure = self._primary_failure("profiles", "update", exc)
            await self._audit_step(
                failure.warnings,
                AuditEntry.by(
                    actor,
                    action=action,
                    action_type="update",
                    resource_type="user",
                    resource_id=account_id,
                    details={"updated_fields": sorted(changes), "error": exc.__class__.__name__},
                    severity="medium",
                    status="failed",
                ),
            )
            raise failure from exc
        if not rows:
            # Row vanished between load and update (concurrent delete).
            raise NotFoundError("account", account_id)

        account = Account.from_row(rows[0])
        result: OperationResult[Account] = OperationResult(value=account)

        mirror = _credential_mirror(changes, current)
        mirrored = False
        if mirror and current.credential_ref:
            try:
                await self._credentials.update_by_id(current.credential_ref, mirror)
                mirrored = True
            except Exception as exc:
                self._warn(result.warnings, "mirror_credential", "credentials", exc)

        details: Dict[str, Any] = {
            "updated_fields": sorted(changes),
            "student_name": account.full_name,
            "credential_mirrored": mirrored,
        }
        if "status" in changes:
            details["previous_status"] = current.status
            details["status"] = account.status
        suspended = changes.get("status") in {"suspended", "inactive"}
        await self._audit_step(
            result.warnings,
            AuditEntry.by(
                actor,
                action=action,
                action_type="update",
                resource_type="user",
                resource_id=account.id,
                details=details,
                severity="medium" if suspended else "low",
                status="success",
            ),
        )
        return result

    async def change_status(self, account_id: str, status: str, *, actor: Actor | None = None) -> OperationResult[Account]:
        return await self.update_account(
            account_id,
            AccountPatch(status=_normalize_status(status)),
            actor=actor,
            action="account_status_changed",
        )

    # --- Delete ------------------------------------------------------------------

    async def delete_account(self, account_id: str, *, actor: Actor | None = None) -> OperationResult[None]:
        """Delete the account, its grants and its `user` audit history.

        Order: load -> purge audit entries (secondary) -> revoke grants
        (primary) -> delete profile (primary) -> delete credential
        (secondary, always attempted when referenced) -> audit.

        The audit purge removes historical entries for this account. That is
        the platform's current behavior and conflicts with append-only audit
        expectations; it stays until a product decision changes it.
        """
        actor = actor or self._system_actor
        current = await self._load(account_id)
        result: OperationResult[None] = OperationResult(value=None)

        purged = 0
        try:
            purged = await self._audit.purge_resource("user", account_id)
        except Exception as exc:
            self._warn(result.warnings, "purge_audit", "audit", exc.__cause__ or exc)

        if self._grants is not None:
            # Raises StoreError(store="grants"); nothing else has been removed yet.
            await self._grants.revoke_all(account_id)

        try:
            await self._profiles.delete(Query(eq={"id": account_id}))
        except Exception as exc:
            raise self._primary_failure("profiles", "delete", exc) from exc

        credential_deleted = False
        if current.credential_ref:
            try:
                await self._credentials.delete_by_id(current.credential_ref)
                credential_deleted = True
            except Exception as exc:
                _log.error(
                    "credential cleanup failed, orphaned credential: account=%s cred=%s",
                    tail(account_id),
                    tail(current.credential_ref),
                )
                self._warn(result.warnings, "delete_credential", "credentials", exc)

        await self._audit_step(
            result.warnings,
            AuditEntry.by(
                actor,
                action="account_deleted",
                action_type="delete",
                resource_type="user",
                resource_id=account_id,
                details={
                    "student_name": current.full_name,
                    "deleted_auth_account": credential_deleted,
                    "audit_entries_purged": purged,
                    "permanent_deletion": True,
                },
                severity="medium",
                status="success",
            ),
        )
        _log.info("account deleted: id=%s partial=%s", tail(account_id), result.partial)
        return result


__all__ = ["AccountPage", "AccountPatch", "AccountProvisioner", "NewAccount"]
