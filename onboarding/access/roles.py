"""Operator roles and the permissions they carry.

Roles:
- ADMIN: runs imports, recovery, retries and resends
- OFFICER: staff account without onboarding rights
- MEMBER: an onboarded member; never an operator
"""
from __future__ import annotations

ROLES = ["admin", "officer", "member"]

VALID_ROLES: frozenset[str] = frozenset(ROLES)

PERMISSION_ROLE_MAP: dict[str, frozenset[str]] = {
    "imports:write": frozenset({"admin"}),
    "imports:read": frozenset({"admin"}),
    "members:read": frozenset({"admin"}),
    "audit:read": frozenset({"admin"}),
}

VALID_PERMISSIONS: frozenset[str] = frozenset(PERMISSION_ROLE_MAP.keys())


def normalize_role(role: str | None) -> str | None:
    if role is None:
        return None
    return role.strip().lower() or None


def has_permission(role: str, permission: str) -> bool:
    """Return whether *role* grants *permission*."""
    if role not in VALID_ROLES:
        raise ValueError(
            f"Unknown role {role!r}; must be one of {sorted(VALID_ROLES)}"
        )
    if permission not in VALID_PERMISSIONS:
        raise ValueError(
            f"Unknown permission {permission!r}; "
            f"must be one of {sorted(VALID_PERMISSIONS)}"
        )
    return role in PERMISSION_ROLE_MAP[permission]
