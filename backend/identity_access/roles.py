"""
Administrative role catalog.

Why:
    Permission checks must not depend on a hidden mutable global. The catalog is
    an immutable, ordered registry built once at startup and injected into the
    PermissionEngine. Construction validates that every role declares the full
    permission-key universe, so a lookup can never miss a key.
"""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple

# Grouped as in the admin console navigation. Order is stable and public.
PERMISSION_KEYS: Tuple[str, ...] = (
    # Dashboard
    "viewDashboard",
    "viewAnalytics",
    "viewReports",
    # Students
    "viewStudents",
    "addStudents",
    "editStudents",
    "deleteStudents",
    "viewStudentProgress",
    # Courses
    "viewCourses",
    "addCourses",
    "editCourses",
    "deleteCourses",
    "manageCourseContent",
    "publishCourses",
    # Website content
    "manageWebsiteContent",
    "editHomePage",
    "manageNews",
    "manageAnnouncements",
    # System
    "manageSettings",
    "viewSystemLogs",
    "manageNotifications",
    "manageBackups",
    "manageIntegrations",
    # Finance
    "viewFinancials",
    "managePayments",
    "generateFinancialReports",
    # Communication
    "sendNotifications",
    "manageMessages",
    "broadcastAnnouncements",
)


@dataclass(frozen=True)
class Role:
    id: str
    display_name: str
    localized_name: str
    description: str
    localized_description: str
    permissions: Mapping[str, bool]
    level: int

    def allows(self, permission: str) -> bool:
        return bool(self.permissions[permission])


class RoleCatalog:
    """Ordered, read-only set of roles keyed by id.

    Raises ValueError on construction when ids repeat, levels repeat, or a role
    does not declare exactly the catalog's permission keys.
    """

    def __init__(self, roles: Iterable[Role], *, permission_keys: Iterable[str] = PERMISSION_KEYS) -> None:
        keys = tuple(permission_keys)
        universe = frozenset(keys)
        frozen: list[Role] = []
        seen_ids: set[str] = set()
        seen_levels: set[int] = set()
        for role in roles:
            if role.id in seen_ids:
                raise ValueError(f"duplicate role id: {role.id}")
            if role.level in seen_levels:
                raise ValueError(f"duplicate role level: {role.level}")
            declared = frozenset(role.permissions.keys())
            if declared != universe:
                missing = sorted(universe - declared)
                extra = sorted(declared - universe)
                raise ValueError(f"role {role.id} permission keys mismatch: missing={missing} extra={extra}")
            seen_ids.add(role.id)
            seen_levels.add(role.level)
            perms = MappingProxyType({k: bool(role.permissions[k]) for k in keys})
            frozen.append(
                Role(
                    id=role.id,
                    display_name=role.display_name,
                    localized_name=role.localized_name,
                    description=role.description,
                    localized_description=role.localized_description,
                    permissions=perms,
                    level=int(role.level),
                )
            )
        if len(frozen) < 2:
            raise ValueError("role catalog needs at least two roles")
        self._roles: Tuple[Role, ...] = tuple(frozen)
        self._by_id: Mapping[str, Role] = MappingProxyType({r.id: r for r in frozen})
        self._by_level: Tuple[Role, ...] = tuple(sorted(frozen, key=lambda r: r.level, reverse=True))
        self.permission_keys: Tuple[str, ...] = keys
        self._key_set = universe

    def __iter__(self) -> Iterator[Role]:
        return iter(self._roles)

    def __len__(self) -> int:
        return len(self._roles)

    def get(self, role_id: str) -> Optional[Role]:
        return self._by_id.get(role_id)

    @property
    def top(self) -> Role:
        """Highest-level role."""
        return self._by_level[0]

    @property
    def second(self) -> Role:
        """Second-highest-level role; used as the resolution fallback."""
        return self._by_level[1]

    def is_permission(self, name: str) -> bool:
        return name in self._key_set


def _all(value: bool) -> Dict[str, bool]:
    return {k: value for k in PERMISSION_KEYS}


def default_catalog() -> RoleCatalog:
    """Build the platform's predefined roles (levels 100/80/60)."""
    super_admin = _all(True)

    course_manager = dict(super_admin)
    course_manager.update(
        manageSettings=False,
        viewSystemLogs=False,
        manageBackups=False,
        deleteStudents=False,
        viewFinancials=False,
        managePayments=False,
        generateFinancialReports=False,
    )

    student_advisor = _all(False)
    student_advisor.update(
        viewDashboard=True,
        viewAnalytics=True,
        viewReports=True,
        viewStudents=True,
        addStudents=True,
        editStudents=True,
        viewStudentProgress=True,
        viewCourses=True,
        manageNotifications=True,
        sendNotifications=True,
        manageMessages=True,
    )

    return RoleCatalog(
        [
            Role(
                id="super_admin",
                display_name="Super Administrator",
                localized_name="مدير عام",
                description="Full access to all system features and settings",
                localized_description="صلاحيات كاملة لجميع ميزات النظام والإعدادات",
                permissions=super_admin,
                level=100,
            ),
            Role(
                id="course_manager",
                display_name="Course Manager",
                localized_name="مدير الكورسات",
                description="Manage courses and content",
                localized_description="إدارة الكورسات والمحتوى",
                permissions=course_manager,
                level=80,
            ),
            Role(
                id="student_advisor",
                display_name="Student Advisor",
                localized_name="مرشد أكاديمي",
                description="Manage students and track their progress",
                localized_description="إدارة الطلاب ومتابعة تقدمهم الأكاديمي",
                permissions=student_advisor,
                level=60,
            ),
        ]
    )


__all__ = ["PERMISSION_KEYS", "Role", "RoleCatalog", "default_catalog"]
