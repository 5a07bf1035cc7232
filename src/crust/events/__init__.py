"""Realtime event production for crust.

The cache and aggregation layers are producers only: notable writes emit a
RealtimeEvent that a separate push gateway delivers to clients.
"""

from crust.events.publisher import InMemoryPublisher, RealtimePublisher, RedisPubSubPublisher
from crust.events.schemas import RealtimeEvent, RealtimeEventType

__all__ = [
    "InMemoryPublisher",
    "RealtimeEvent",
    "RealtimeEventType",
    "RealtimePublisher",
    "RedisPubSubPublisher",
]
