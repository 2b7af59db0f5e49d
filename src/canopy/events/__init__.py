"""Canopy event system."""

from canopy.events.bus import EventBus, Subscription
from canopy.events.types import EventType

__all__ = ["EventBus", "EventType", "Subscription"]
