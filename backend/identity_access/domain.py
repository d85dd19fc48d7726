"""
Identity domain constants and simple value types.

Why:
- Centralize allowed account statuses and the reserved administrator address
  to avoid drift between provisioning, grants and reporting.
- Keep row <-> object mapping in one place; services exchange plain dicts
  with the stores and dataclasses with callers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

# Keep statuses minimal and explicit. Immutable to prevent accidental mutation.
ACCOUNT_STATUSES = frozenset({"active", "suspended", "pending", "inactive"})

# Role id embedded in credential metadata for provisioned students.
STUDENT_ROLE = "student"

DEFAULT_ADMIN_EMAIL = "admin@educational-platform.com"


def tail(identifier: Optional[str]) -> str:
    """Last six characters of an identifier for logs (avoid full ids)."""
    return (identifier or "")[-6:]


@dataclass(frozen=True)
class Account:
    id: str
    credential_ref: Optional[str]
    full_name: str
    email: str
    phone: Optional[str]
    parent_phone: Optional[str]
    status: str
    expires_at: Optional[str]
    enrollment_date: str
    last_activity: Optional[str]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Account":
        return cls(
            id=str(row["id"]),
            credential_ref=row.get("auth_user_id"),
            full_name=row.get("full_name") or "",
            email=row.get("email") or "",
            phone=row.get("phone"),
            parent_phone=row.get("parent_phone"),
            status=row.get("status") or "active",
            expires_at=row.get("account_expires_at"),
            enrollment_date=row.get("enrollment_date") or "",
            last_activity=row.get("last_activity"),
        )


@dataclass(frozen=True)
class Grant:
    account_id: str
    section_id: str
    granted_at: str

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Grant":
        return cls(
            account_id=str(row["student_id"]),
            section_id=str(row["section_id"]),
            granted_at=row.get("granted_at") or "",
        )


__all__ = [
    "ACCOUNT_STATUSES",
    "Account",
    "DEFAULT_ADMIN_EMAIL",
    "Grant",
    "STUDENT_ROLE",
    "tail",
]
