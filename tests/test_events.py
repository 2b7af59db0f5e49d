"""Tests for the async event bus."""

from __future__ import annotations

import asyncio

import pytest

from canopy.events.bus import EventBus
from canopy.events.types import EventType


async def test_typed_and_catch_all_subscriptions():
    bus = EventBus()
    specific, everything = [], []

    async def _specific(event_type, data):
        specific.append(data)

    async def _everything(event_type, data):
        everything.append(event_type)

    bus.subscribe(_specific, {EventType.COMMUNITY_CREATED})
    bus.subscribe(_everything)
    delivered = await bus.emit(EventType.COMMUNITY_CREATED, {"community_id": "root"})
    await bus.emit(EventType.MEMBER_JOINED)

    assert delivered == 2
    assert specific == [{"community_id": "root"}]
    assert everything == [EventType.COMMUNITY_CREATED, EventType.MEMBER_JOINED]


async def test_subscription_to_several_types():
    bus = EventBus()
    seen = []

    async def _listener(event_type, data):
        seen.append(event_type)

    bus.subscribe(_listener, [EventType.ADMIN_ASSIGNED, EventType.ADMIN_REMOVED])
    await bus.emit(EventType.ADMIN_ASSIGNED)
    await bus.emit(EventType.MEMBER_LEFT)
    await bus.emit(EventType.ADMIN_REMOVED)
    assert seen == [EventType.ADMIN_ASSIGNED, EventType.ADMIN_REMOVED]
    assert bus.subscribers(EventType.MEMBER_LEFT) == []


async def test_unsubscribe_and_clear():
    bus = EventBus()
    calls = []

    async def _listener(event_type, data):
        calls.append(event_type)

    subscription = bus.subscribe(_listener, {EventType.ADMIN_ASSIGNED})
    assert bus.unsubscribe(subscription) is True
    assert bus.unsubscribe(subscription) is False
    assert await bus.emit(EventType.ADMIN_ASSIGNED) == 0

    bus.subscribe(_listener)
    bus.clear()
    await bus.emit(EventType.ADMIN_ASSIGNED)
    assert calls == []


async def test_listener_gets_its_own_copy_of_the_payload():
    bus = EventBus()
    original = {"community_id": "root"}

    async def _mutating(event_type, data):
        data["community_id"] = "changed"

    bus.subscribe(_mutating)
    await bus.emit(EventType.COMMUNITY_UPDATED, original)
    assert original == {"community_id": "root"}


async def test_failing_listener_is_logged_and_skipped(caplog):
    bus = EventBus()
    calls = []

    async def _broken(event_type, data):
        raise RuntimeError("boom")

    async def _healthy(event_type, data):
        calls.append(event_type)

    bus.subscribe(_broken, {EventType.INVITE_CREATED})
    bus.subscribe(_healthy, {EventType.INVITE_CREATED})
    delivered = await bus.emit(EventType.INVITE_CREATED, {"community_id": "club"})
    assert delivered == 1
    assert calls == [EventType.INVITE_CREATED]
    assert "_broken failed on invite.created (community=club)" in caplog.text


async def test_cancellation_propagates():
    bus = EventBus()

    async def _cancelled(event_type, data):
        raise asyncio.CancelledError()

    bus.subscribe(_cancelled, {EventType.MEMBER_LEFT})
    with pytest.raises(asyncio.CancelledError):
        await bus.emit(EventType.MEMBER_LEFT)
