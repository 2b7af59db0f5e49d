"""Invite code model."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from canopy.models.membership import MembershipRole


class InviteCode(BaseModel):
    """A redeemable code granting membership in one node."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    code: str
    community_id: str
    created_by: str
    role: MembershipRole = MembershipRole.MEMBER
    max_uses: int = 1
    current_uses: int = 0
    expires_at: str | None = None
    is_active: bool = True
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    updated_at: str | None = None

    def is_expired(self, *, at: datetime | None = None) -> bool:
        if not self.expires_at:
            return False
        at = at or datetime.now(UTC)
        expires = datetime.fromisoformat(self.expires_at)
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=UTC)
        return expires <= at

    def is_exhausted(self) -> bool:
        return self.current_uses >= self.max_uses

    def is_redeemable(self, *, at: datetime | None = None) -> bool:
        return self.is_active and not self.is_expired(at=at) and not self.is_exhausted()

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")

    def to_response(self) -> dict:
        return {
            "_v": "1.0",
            "id": self.id,
            "code": self.code,
            "community_id": self.community_id,
            "role": self.role.value,
            "max_uses": self.max_uses,
            "current_uses": self.current_uses,
            "expires_at": self.expires_at,
            "is_active": self.is_active,
        }
