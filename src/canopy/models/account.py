"""Account model and the closed set of global roles."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class GlobalRole(StrEnum):
    USER = "user"
    SUB_COMMUNITY_ADMIN = "sub_community_admin"
    COMMUNITY_ADMIN = "community_admin"
    DEVELOPER = "developer"
    SUPER_ADMIN = "super_admin"


class Account(BaseModel):
    """A platform account. The global role is a capability ceiling."""

    id: str
    email: str | None = None
    name: str | None = None
    role: GlobalRole = GlobalRole.USER
    is_active: bool = True
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_storage(self) -> dict:
        return self.model_dump(mode="json")

    def to_response(self) -> dict[str, Any]:
        return {
            "_v": "1.0",
            "id": self.id,
            "name": self.name,
            "role": self.role.value,
            "is_active": self.is_active,
        }
