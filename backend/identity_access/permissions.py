"""
Role resolution and permission checks for administrators.

Why:
    Principals carry loosely shaped metadata from the credential store. Instead
    of guessing inline, resolution runs an explicit, ordered list of strategies;
    the first one returning a match wins. Each strategy is a plain callable so
    it can be tested on its own.

Behavior:
    1. reserved default-administrator email -> top role, is_default=True
    2. metadata["role"] names a catalog role -> that role
    3. metadata["is_super_admin"] truthy -> top role
    4. otherwise -> second-highest role (permissive fallback, kept on purpose
       until a product decision replaces it)

Pure and I/O-free; no caching, safe for concurrent use.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

from .domain import DEFAULT_ADMIN_EMAIL
from .errors import PermissionDeniedError, ValidationError
from .roles import Role, RoleCatalog


@dataclass(frozen=True)
class RoleResolution:
    role: Role
    is_default: bool


Strategy = Callable[[RoleCatalog, str, Mapping[str, Any]], Optional[RoleResolution]]


def default_admin_email_strategy(admin_email: str) -> Strategy:
    def _match(catalog: RoleCatalog, email: str, metadata: Mapping[str, Any]) -> Optional[RoleResolution]:
        if email == admin_email:
            return RoleResolution(role=catalog.top, is_default=True)
        return None

    _match.__name__ = "default_admin_email"
    return _match


def metadata_role_strategy(catalog: RoleCatalog, email: str, metadata: Mapping[str, Any]) -> Optional[RoleResolution]:
    role_id = metadata.get("role")
    if not isinstance(role_id, str) or not role_id:
        return None
    role = catalog.get(role_id)
    if role is None:
        return None
    return RoleResolution(role=role, is_default=False)


def super_admin_flag_strategy(catalog: RoleCatalog, email: str, metadata: Mapping[str, Any]) -> Optional[RoleResolution]:
    if metadata.get("is_super_admin"):
        return RoleResolution(role=catalog.top, is_default=False)
    return None


def fallback_strategy(catalog: RoleCatalog, email: str, metadata: Mapping[str, Any]) -> Optional[RoleResolution]:
    return RoleResolution(role=catalog.second, is_default=False)


class PermissionEngine:
    """Resolve roles and answer permission checks against an injected catalog."""

    def __init__(
        self,
        catalog: RoleCatalog,
        *,
        default_admin_email: str = DEFAULT_ADMIN_EMAIL,
        strategies: Sequence[Strategy] | None = None,
    ) -> None:
        self.catalog = catalog
        self.default_admin_email = default_admin_email
        if strategies is None:
            strategies = (
                default_admin_email_strategy(default_admin_email),
                metadata_role_strategy,
                super_admin_flag_strategy,
                fallback_strategy,
            )
        self._strategies = tuple(strategies)

    @property
    def strategies(self) -> tuple[Strategy, ...]:
        return self._strategies

    def resolve_role(self, email: str, metadata: Mapping[str, Any] | None = None) -> RoleResolution:
        meta: Mapping[str, Any] = metadata if isinstance(metadata, Mapping) else {}
        for strategy in self._strategies:
            found = strategy(self.catalog, email or "", meta)
            if found is not None:
                return found
        # Custom strategy lists may omit the fallback.
        return RoleResolution(role=self.catalog.second, is_default=False)

    def has_permission(self, email: str, permission: str, metadata: Mapping[str, Any] | None = None) -> bool:
        if not self.catalog.is_permission(permission):
            raise ValidationError("unknown_permission", f"unknown permission: {permission}")
        return self.resolve_role(email, metadata).role.allows(permission)

    def require(self, email: str, permission: str, metadata: Mapping[str, Any] | None = None) -> Role:
        """Return the resolved role or raise PermissionDeniedError."""
        resolution = self.resolve_role(email, metadata)
        if not self.catalog.is_permission(permission):
            raise ValidationError("unknown_permission", f"unknown permission: {permission}")
        if not resolution.role.allows(permission):
            raise PermissionDeniedError(permission)
        return resolution.role

    def admin_level(self, email: str, metadata: Mapping[str, Any] | None = None) -> int:
        return self.resolve_role(email, metadata).role.level

    def can_manage(
        self,
        manager_email: str,
        target_email: str,
        manager_metadata: Mapping[str, Any] | None = None,
        target_metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        """True when the manager's level is strictly above the target's."""
        return self.admin_level(manager_email, manager_metadata) > self.admin_level(target_email, target_metadata)


__all__ = [
    "PermissionEngine",
    "RoleResolution",
    "Strategy",
    "default_admin_email_strategy",
    "fallback_strategy",
    "metadata_role_strategy",
    "super_admin_flag_strategy",
]
