"""Permission tiers checked against community nodes."""

from __future__ import annotations

from enum import StrEnum


class Permission(StrEnum):
    READ = "read"
    WRITE = "write"
    MODERATE = "moderate"
    ADMIN = "admin"
    INVITE = "invite"


# Tiers reachable only through global bypass or an admin assignment
ADMIN_ONLY: frozenset[Permission] = frozenset(
    {Permission.MODERATE, Permission.ADMIN, Permission.INVITE}
)


def parse_permission(raw: str | Permission) -> Permission:
    """Parse a permission name. Raises ValueError for unknown tiers."""
    if isinstance(raw, Permission):
        return raw
    try:
        return Permission(raw.strip().lower())
    except ValueError:
        valid = ", ".join(p.value for p in Permission)
        raise ValueError(f"Invalid permission: {raw}. Must be one of {valid}") from None


def requires_admin(permission: Permission) -> bool:
    """Whether no membership-based path can grant this permission."""
    return permission in ADMIN_ONLY
