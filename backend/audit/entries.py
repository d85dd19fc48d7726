"""
Audit trail value types.

Rows live in the `activity_logs` table; column names follow the hosted schema
(`user_id`, `user_name`, `user_role` for the actor). Entries are append-only by
contract.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
import json

from backend.identity_access.errors import ValidationError

ACTION_TYPES = frozenset({"create", "update", "delete", "login", "logout", "view", "export", "system"})
SEVERITIES = frozenset({"low", "medium", "high", "critical"})
STATUSES = frozenset({"success", "failed", "pending"})


@dataclass(frozen=True)
class Actor:
    """Who performed an audited action."""

    id: str
    name: str
    role: str


SYSTEM_ACTOR = Actor(id="system", name="System", role="system")


@dataclass(frozen=True)
class AuditEntry:
    actor_id: str
    actor_name: str
    actor_role: str
    action: str
    action_type: str
    resource_type: str
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    severity: str = "low"
    status: str = "success"
    timestamp: Optional[str] = None
    id: Optional[str] = None

    @classmethod
    def by(cls, actor: Actor, **kwargs: Any) -> "AuditEntry":
        return cls(actor_id=actor.id, actor_name=actor.name, actor_role=actor.role, **kwargs)

    def validate(self) -> None:
        if not (self.action or "").strip():
            raise ValidationError("invalid_action")
        if self.action_type not in ACTION_TYPES:
            raise ValidationError("invalid_action_type")
        if self.severity not in SEVERITIES:
            raise ValidationError("invalid_severity")
        if self.status not in STATUSES:
            raise ValidationError("invalid_status")
        if not (self.resource_type or "").strip():
            raise ValidationError("invalid_resource_type")

    def to_row(self, timestamp: str) -> Dict[str, Any]:
        return {
            "user_id": self.actor_id,
            "user_name": self.actor_name,
            "user_role": self.actor_role,
            "action": self.action,
            "action_type": self.action_type,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": dict(self.details),
            "severity": self.severity,
            "status": self.status,
            "timestamp": self.timestamp or timestamp,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AuditEntry":
        details = row.get("details")
        if isinstance(details, str):
            try:
                details = json.loads(details)
            except ValueError:
                details = {"description": details}
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            actor_id=str(row.get("user_id") or ""),
            actor_name=row.get("user_name") or "",
            actor_role=row.get("user_role") or "",
            action=row.get("action") or "",
            action_type=row.get("action_type") or "system",
            resource_type=row.get("resource_type") or "",
            resource_id=row.get("resource_id"),
            details=dict(details or {}),
            severity=row.get("severity") or "low",
            status=row.get("status") or "success",
            timestamp=str(row["timestamp"]) if row.get("timestamp") is not None else None,
        )


def _parse_day(value: Any, name: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(f"invalid_{name}") from exc


@dataclass(frozen=True)
class AuditFilters:
    """Filters accepted by query/export. Date bounds are inclusive whole days (UTC)."""

    search: Optional[str] = None
    action_type: Optional[str] = None
    actor_role: Optional[str] = None
    severity: Optional[str] = None
    status: Optional[str] = None
    date_from: Optional[Any] = None
    date_to: Optional[Any] = None

    def normalized(self) -> "AuditFilters":
        if self.action_type and self.action_type not in ACTION_TYPES:
            raise ValidationError("invalid_action_type")
        if self.severity and self.severity not in SEVERITIES:
            raise ValidationError("invalid_severity")
        if self.status and self.status not in STATUSES:
            raise ValidationError("invalid_status")
        start = _parse_day(self.date_from, "date_from")
        end = _parse_day(self.date_to, "date_to")
        if start and end and start > end:
            raise ValidationError("invalid_date_range")
        return AuditFilters(
            search=(self.search or "").strip() or None,
            action_type=self.action_type or None,
            actor_role=self.actor_role or None,
            severity=self.severity or None,
            status=self.status or None,
            date_from=start,
            date_to=end,
        )


@dataclass(frozen=True)
class AuditPage:
    entries: List[AuditEntry]
    total: int
    page: int
    limit: int


@dataclass(frozen=True)
class AuditStats:
    total: int
    today: int
    successful: int
    failed: int
    critical: int


__all__ = [
    "ACTION_TYPES",
    "Actor",
    "AuditEntry",
    "AuditFilters",
    "AuditPage",
    "AuditStats",
    "SEVERITIES",
    "STATUSES",
    "SYSTEM_ACTOR",
]
