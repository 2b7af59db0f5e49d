"""Canopy data models."""

from canopy.models.account import Account, GlobalRole
from canopy.models.audit import AuditEntry
from canopy.models.community import CommunityNode
from canopy.models.invite import InviteCode
from canopy.models.membership import (
    AdminAssignment,
    AssignmentKind,
    Membership,
    MembershipRole,
    MembershipStatus,
)

__all__ = [
    "Account",
    "AdminAssignment",
    "AssignmentKind",
    "AuditEntry",
    "CommunityNode",
    "GlobalRole",
    "InviteCode",
    "Membership",
    "MembershipRole",
    "MembershipStatus",
]
