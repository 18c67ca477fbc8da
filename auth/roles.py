"""
auth/roles.py -- Static role -> UI section table and role resolution.

The section list for each role is immutable configuration, not stored per
user or per role row. Roles in the database only say whether a role exists
and is active; which sections it unlocks is decided here, by name.

A user whose role is unset, missing from the roles table, or inactive gets
DefaultRole (the single "overview" section) instead of a failed login.

super-admin can access every section, including ones not listed for it.
"""

from __future__ import annotations

import dataclasses
import logging
from types import MappingProxyType

from auth.models import DefaultRole, RoleRef, User
from auth.store import CredentialStore

logger = logging.getLogger("retailauth.roles")

SUPER_ADMIN = "super-admin"
ADMIN_ROLES = frozenset({SUPER_ADMIN, "hr-admin"})

_MARKETING_STAFF_SECTIONS = (
    "overview",
    "marketing",
    "marketing-overview",
    "promotions-announcements",
    "event-campaigns",
    "insights-analytics",
    "template-management",
    "client-notifications",
)

ROLE_SECTIONS = MappingProxyType(
    {
        SUPER_ADMIN: (
            "overview",
            "inventory-management",
            "all-products",
            "categories",
            "low-stock",
            "sales-pos",
            "sales-records",
            "sales-dashboard",
            "daily-sales",
            "product-sales",
            "staff-user-management",
            "user-accounts",
            "add-staff",
            "roles-permissions",
            "activity-logs",
            "session-history",
            "user-roles-overview",
            "user-permissions",
            "hr",
            "hr-dashboard",
            "staff",
            "attendance-dashboard",
            "leave-management",
            "hr-analytics",
            "payroll",
            "marketing",
            "analytics",
            "notifications",
            "promotions-campaigns",
            "campaign-management",
            "template-management",
            "client-notifications",
            "marketing-overview",
            "reports",
            "event-center",
            "settings",
        ),
        "hr-admin": (
            "hr-dashboard",
            "staff",
            "attendance-dashboard",
            "leave-management",
            "hr-analytics",
            "payroll",
            "user-accounts",
            "roles-permissions",
            "activity-logs",
            "session-history",
            "user-roles-overview",
            "user-permissions",
            "add-staff",
            "hr",
        ),
        "hr-staff": (
            "hr-dashboard",
            "staff",
            "attendance-dashboard",
            "leave-management",
        ),
        "marketing-admin": _MARKETING_STAFF_SECTIONS + ("facebook-integration", "reports"),
        "marketing-staff": _MARKETING_STAFF_SECTIONS,
        "cashier": (
            "sales-pos",
            "sales-records",
            "daily-sales",
        ),
        "inventory-clerk": (
            "inventory-management",
            "all-products",
            "categories",
            "low-stock",
        ),
        "finance-staff": (
            "finance",
            "finance-dashboard",
            "sales-income",
            "expenses",
            "cash-flow",
            "financial-reports",
        ),
        "user": DefaultRole().sections,
    }
)


def normalize_role_name(name: str | None) -> str:
    """Lower-case and hyphenate a role name: "Super Admin" -> "super-admin"."""
    return "-".join((name or "").strip().lower().replace("_", " ").split())


def sections_for(role_name: str | None) -> tuple[str, ...]:
    """Ordered sections for a role name. Unknown names get the default sections."""
    return ROLE_SECTIONS.get(normalize_role_name(role_name), DefaultRole().sections)


def resolve_role(store: CredentialStore, user: User) -> RoleRef:
    """Load the user's role row with its sections, or DefaultRole.

    Storage errors propagate: the caller is on the login critical path and
    decides how to report them.
    """
    if not user.role:
        return DefaultRole()
    role = store.find_role_by_name(normalize_role_name(user.role))
    if role is None or not role.is_active:
        logger.warning("User id=%s has unresolvable role %r; using default role", user.id, user.role)
        return DefaultRole()
    return dataclasses.replace(role, sections=sections_for(role.name))


def can_access_section(role_name: str | None, section: str) -> bool:
    name = normalize_role_name(role_name)
    if name == SUPER_ADMIN:
        return True
    return section in sections_for(name)


def accessible_sections(role_name: str | None) -> list[str]:
    return list(sections_for(role_name))


def is_admin(role_name: str | None) -> bool:
    return normalize_role_name(role_name) in ADMIN_ROLES
