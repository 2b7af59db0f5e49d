"""Membership and admin-assignment models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class MembershipRole(StrEnum):
    MEMBER = "member"
    ADMIN = "admin"


class MembershipStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    BANNED = "banned"


class AssignmentKind(StrEnum):
    COMMUNITY_ADMIN = "community_admin"
    SUB_COMMUNITY_ADMIN = "sub_community_admin"


class Membership(BaseModel):
    """Direct membership of an account in exactly one node."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    account_id: str
    community_id: str
    role: MembershipRole = MembershipRole.MEMBER
    status: MembershipStatus = MembershipStatus.ACTIVE
    invited_by: str | None = None
    joined_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    responded_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")

    def to_response(self) -> dict:
        return {
            "_v": "1.0",
            "account_id": self.account_id,
            "community_id": self.community_id,
            "role": self.role.value,
            "status": self.status.value,
            "joined_at": self.joined_at,
        }


class AdminAssignment(BaseModel):
    """Admin rights on a node, inherited by every descendant of that node."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    account_id: str
    community_id: str
    kind: AssignmentKind
    assigned_by: str
    permissions: dict | None = None
    assigned_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")

    def to_response(self) -> dict:
        return {
            "_v": "1.0",
            "account_id": self.account_id,
            "community_id": self.community_id,
            "kind": self.kind.value,
            "assigned_by": self.assigned_by,
            "assigned_at": self.assigned_at,
        }
