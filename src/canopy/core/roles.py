"""Role classifier — maps global account roles to privilege tiers.

This is the only module that turns raw stored role strings into
:class:`GlobalRole` values. Everything downstream compares enum members.
"""

from __future__ import annotations

import logging
from enum import StrEnum

from canopy.models.account import Account, GlobalRole
from canopy.models.membership import AssignmentKind

logger = logging.getLogger(__name__)


class PrivilegeTier(StrEnum):
    BYPASS_ALL = "bypass_all"
    COMMUNITY_ADMIN_ELIGIBLE = "community_admin_eligible"
    SUB_COMMUNITY_ADMIN_ELIGIBLE = "sub_community_admin_eligible"
    ORDINARY = "ordinary"


# Spellings found in older rows
_ROLE_ALIASES: dict[str, GlobalRole] = {
    "superadmin": GlobalRole.SUPER_ADMIN,
    "super-admin": GlobalRole.SUPER_ADMIN,
    "dev": GlobalRole.DEVELOPER,
    "community-admin": GlobalRole.COMMUNITY_ADMIN,
    "sub-community-admin": GlobalRole.SUB_COMMUNITY_ADMIN,
    "ordinary": GlobalRole.USER,
}

_TIERS: dict[GlobalRole, PrivilegeTier] = {
    GlobalRole.SUPER_ADMIN: PrivilegeTier.BYPASS_ALL,
    GlobalRole.DEVELOPER: PrivilegeTier.BYPASS_ALL,
    GlobalRole.COMMUNITY_ADMIN: PrivilegeTier.COMMUNITY_ADMIN_ELIGIBLE,
    GlobalRole.SUB_COMMUNITY_ADMIN: PrivilegeTier.SUB_COMMUNITY_ADMIN_ELIGIBLE,
    GlobalRole.USER: PrivilegeTier.ORDINARY,
}

_ELIGIBLE_KINDS: dict[PrivilegeTier, frozenset[AssignmentKind]] = {
    PrivilegeTier.BYPASS_ALL: frozenset(AssignmentKind),
    PrivilegeTier.COMMUNITY_ADMIN_ELIGIBLE: frozenset(
        {AssignmentKind.COMMUNITY_ADMIN, AssignmentKind.SUB_COMMUNITY_ADMIN}
    ),
    PrivilegeTier.SUB_COMMUNITY_ADMIN_ELIGIBLE: frozenset({AssignmentKind.SUB_COMMUNITY_ADMIN}),
    PrivilegeTier.ORDINARY: frozenset(),
}


def parse_role(raw: str | GlobalRole | None) -> GlobalRole:
    """Map a stored role value to a GlobalRole. Unknown values fall back to USER."""
    if isinstance(raw, GlobalRole):
        return raw
    if raw is None:
        return GlobalRole.USER
    value = raw.strip().lower()
    try:
        return GlobalRole(value)
    except ValueError:
        pass
    if value in _ROLE_ALIASES:
        return _ROLE_ALIASES[value]
    logger.warning("Unknown global role %r, treating as %s", raw, GlobalRole.USER)
    return GlobalRole.USER


def classify(subject: Account | GlobalRole | str | None) -> PrivilegeTier:
    """Classify an account (or a bare role) into its privilege tier."""
    role = subject.role if isinstance(subject, Account) else parse_role(subject)
    return _TIERS[role]


def eligible_kinds(tier: PrivilegeTier) -> frozenset[AssignmentKind]:
    """Admin assignment kinds that take effect for accounts of this tier."""
    return _ELIGIBLE_KINDS[tier]


def can_hold(role: GlobalRole, kind: AssignmentKind) -> bool:
    """Whether an account with this global role may be given an assignment of kind."""
    return kind in eligible_kinds(classify(role))
