"""Event type constants for Canopy."""

from enum import StrEnum


class EventType(StrEnum):
    ACCOUNT_CREATED = "account.created"
    ACCOUNT_UPDATED = "account.updated"

    COMMUNITY_CREATED = "community.created"
    COMMUNITY_UPDATED = "community.updated"
    COMMUNITY_REPARENTED = "community.reparented"
    COMMUNITY_DEACTIVATED = "community.deactivated"
    COMMUNITY_RESTORED = "community.restored"

    MEMBER_JOINED = "member.joined"
    MEMBER_LEFT = "member.left"
    MEMBER_UPDATED = "member.updated"

    ADMIN_ASSIGNED = "admin.assigned"
    ADMIN_REMOVED = "admin.removed"

    INVITE_CREATED = "invite.created"
    INVITE_REDEEMED = "invite.redeemed"
    INVITE_DEACTIVATED = "invite.deactivated"
