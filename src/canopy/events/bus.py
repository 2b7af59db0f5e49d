"""Async event bus for Canopy.

Tree, membership, admin and invite changes are announced here after they
are written. Subscribers (the audit log is one) react without the
emitting engine knowing about them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass
from typing import Any

from canopy.events.types import EventType

logger = logging.getLogger(__name__)

Listener = Callable[[EventType, dict[str, Any]], Coroutine[Any, Any, Any]]


@dataclass(frozen=True, eq=False)
class Subscription:
    """A listener and the event types it receives. No types means every event."""

    listener: Listener
    event_types: frozenset[EventType]

    def matches(self, event_type: EventType) -> bool:
        return not self.event_types or event_type in self.event_types


class EventBus:
    """Delivers events to subscribers in subscription order."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self, listener: Listener, event_types: Iterable[EventType] = ()
    ) -> Subscription:
        subscription = Subscription(listener, frozenset(event_types))
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        if subscription not in self._subscriptions:
            return False
        self._subscriptions.remove(subscription)
        return True

    def subscribers(self, event_type: EventType) -> list[Listener]:
        return [s.listener for s in self._subscriptions if s.matches(event_type)]

    async def emit(self, event_type: EventType, data: dict[str, Any] | None = None) -> int:
        """Deliver an event and return how many listeners handled it.

        A failing listener is logged and skipped; the change that raised
        the event has already been committed.
        """
        payload = dict(data or {})
        delivered = 0
        for listener in self.subscribers(event_type):
            try:
                await listener(event_type, payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Listener %s failed on %s (community=%s)",
                    getattr(listener, "__qualname__", repr(listener)),
                    event_type,
                    payload.get("community_id"),
                )
                continue
            delivered += 1
        return delivered

    def clear(self) -> None:
        self._subscriptions.clear()
