"""
Administrator sign-in and sign-out.

Intent:
    Authenticate an email/password pair against the credential store, resolve
    the principal's role through the PermissionEngine and leave a `login` or
    `logout` audit entry. Session storage belongs to the caller.

Security:
    - Never log passwords or tokens; emails are logged by domain only.
    - Rejected sign-ins are audited as failed with severity `high`.
    - Credentials carrying the learner role are refused; the role fallback
      would otherwise hand them an administrative role.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

from backend.audit.entries import Actor, AuditEntry
from backend.audit.log import AuditLog
from backend.storage.ports import CredentialStore, InvalidCredentials

from .domain import STUDENT_ROLE, tail
from .errors import AuthenticationError, StoreError, ValidationError
from .permissions import PermissionEngine
from .roles import Role

_log = logging.getLogger("eduplatform.identity_access")


@dataclass(frozen=True)
class Principal:
    """An authenticated administrator with the role resolved at sign-in."""

    credential_id: str
    email: str
    role: Role
    is_default: bool
    metadata: Dict[str, Any] = field(default_factory=dict)
    access_token: Optional[str] = None

    @property
    def display_name(self) -> str:
        name = self.metadata.get("full_name") or self.metadata.get("name")
        return str(name) if name else self.email

    def as_actor(self) -> Actor:
        return Actor(id=self.credential_id, name=self.display_name, role=self.role.id)


def _domain(email: str) -> str:
    return email.rsplit("@", 1)[-1] if "@" in email else "-"


class SignInService:
    def __init__(self, credentials: CredentialStore, engine: PermissionEngine, audit: AuditLog) -> None:
        self._credentials = credentials
        self._engine = engine
        self._audit = audit

    async def sign_in(self, email: str, password: str) -> Principal:
        email = (email or "").strip()
        if not email:
            raise ValidationError("email_required")
        if not password:
            raise ValidationError("password_required")
        try:
            session = await self._credentials.sign_in(email=email, password=password)
        except InvalidCredentials as exc:
            _log.info("sign-in rejected: domain=%s", _domain(email))
            await self._audit_rejection(email, "invalid_credentials")
            raise AuthenticationError("invalid_credentials") from exc
        except Exception as exc:
            _log.warning("sign-in store failure: err=%s", exc.__class__.__name__)
            raise StoreError(store="credentials", step="sign_in") from exc

        # Provisioned learners share the credential store but never administer.
        if session.metadata.get("role") == STUDENT_ROLE:
            _log.info("sign-in rejected for learner account: cred=%s", tail(session.credential_id))
            await self._audit_rejection(email, "not_an_administrator", resource_id=session.credential_id)
            raise AuthenticationError("not_an_administrator")

        resolution = self._engine.resolve_role(session.email, session.metadata)
        principal = Principal(
            credential_id=session.credential_id,
            email=session.email,
            role=resolution.role,
            is_default=resolution.is_default,
            metadata=dict(session.metadata),
            access_token=session.access_token,
        )
        await self._audit.append(
            AuditEntry.by(
                principal.as_actor(),
                action="login",
                action_type="login",
                resource_type="session",
                resource_id=principal.credential_id,
                details={"is_default_admin": principal.is_default},
                severity="low",
                status="success",
            )
        )
        return principal

    async def _audit_rejection(self, email: str, reason: str, *, resource_id: Optional[str] = None) -> None:
        await self._audit.append(
            AuditEntry(
                actor_id="anonymous",
                actor_name=email,
                actor_role="unknown",
                action="login_failed",
                action_type="login",
                resource_type="session",
                resource_id=resource_id,
                details={"reason": reason},
                severity="high",
                status="failed",
            )
        )

    async def sign_out(self, principal: Principal) -> None:
        await self._audit.append(
            AuditEntry.by(
                principal.as_actor(),
                action="logout",
                action_type="logout",
                resource_type="session",
                resource_id=principal.credential_id,
                severity="low",
                status="success",
            )
        )


__all__ = ["Principal", "SignInService"]
