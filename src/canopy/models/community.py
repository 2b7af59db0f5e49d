"""Community node model with its materialized ancestor path."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

PATH_SEPARATOR = "/"


class CommunityNode(BaseModel):
    """A community or sub-community in the hierarchy.

    ``path`` holds every id from the root down to this node, inclusive,
    joined with ``/``. ``level`` is the number of ancestors.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    name: str
    slug: str
    description: str | None = None
    parent_id: str | None = None
    path: str | None = None
    level: int = 0
    is_public: bool = True
    is_active: bool = True
    created_by: str | None = None
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    updated_at: str | None = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def to_storage(self) -> dict:
        return self.model_dump()

    def to_response(self, *, detail: str = "summary") -> dict[str, Any]:
        data: dict[str, Any] = {
            "_v": "1.0",
            "id": self.id,
            "name": self.name,
            "parent_id": self.parent_id,
            "is_public": self.is_public,
        }
        if detail != "summary":
            data.update(
                {
                    "slug": self.slug,
                    "description": self.description,
                    "path": self.path,
                    "level": self.level,
                    "is_active": self.is_active,
                    "created_at": self.created_at,
                    "updated_at": self.updated_at,
                }
            )
        return data
