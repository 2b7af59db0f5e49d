"""Audit log — a persisted trail of moderation and administration actions."""

from __future__ import annotations

import logging
from typing import Any

from canopy.events.bus import EventBus, Subscription
from canopy.events.types import EventType
from canopy.models.audit import AuditEntry
from canopy.storage.base import StorageBackend

logger = logging.getLogger(__name__)

AUDITED_EVENTS = frozenset(
    {
        EventType.COMMUNITY_CREATED,
        EventType.COMMUNITY_REPARENTED,
        EventType.COMMUNITY_DEACTIVATED,
        EventType.COMMUNITY_RESTORED,
        EventType.MEMBER_LEFT,
        EventType.MEMBER_UPDATED,
        EventType.ADMIN_ASSIGNED,
        EventType.ADMIN_REMOVED,
        EventType.INVITE_CREATED,
        EventType.INVITE_REDEEMED,
        EventType.INVITE_DEACTIVATED,
    }
)

# Keys lifted into their own columns
_ENVELOPE = ("community_id", "actor_id", "account_id")


class AuditLog:
    """Subscribes to the event bus and records each audited event as a row.

    Self-service joins and account changes are not audited. ``actor_id`` is
    whoever performed the action; ``subject_id`` is the account it was
    performed on, when there is one.
    """

    def __init__(self, store: StorageBackend) -> None:
        self._store = store
        self._subscription: Subscription | None = None

    def attach(self, bus: EventBus) -> None:
        if self._subscription is None:
            self._subscription = bus.subscribe(self.record, AUDITED_EVENTS)

    def detach(self, bus: EventBus) -> None:
        if self._subscription is not None:
            bus.unsubscribe(self._subscription)
            self._subscription = None

    async def record(self, event_type: EventType, data: dict[str, Any]) -> AuditEntry:
        entry = AuditEntry(
            event=event_type.value,
            community_id=data.get("community_id"),
            actor_id=data.get("actor_id"),
            subject_id=data.get("account_id"),
            details={k: v for k, v in data.items() if k not in _ENVELOPE},
        )
        await self._store.insert_audit_entry(entry.to_storage())
        logger.debug("Audited %s on %s by %s", entry.event, entry.community_id, entry.actor_id)
        return entry

    async def list_entries(
        self, community_id: str | None = None, *, limit: int = 50
    ) -> list[AuditEntry]:
        rows = await self._store.list_audit_entries(community_id=community_id, limit=limit)
        return [AuditEntry(**row) for row in rows]
