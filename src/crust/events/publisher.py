"""Realtime channel producers.

- RedisPubSubPublisher: PUBLISH to a Redis channel consumed by the push gateway
- InMemoryPublisher: keeps published events in a list (single process, tests)

Publishing is best-effort: a channel failure is logged and never fails the
write that produced the event.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from crust.events.schemas import RealtimeEvent
from crust.observability.metrics import record_realtime_event

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class RealtimePublisher(ABC):
    """Abstract realtime channel producer."""

    async def publish(self, event: RealtimeEvent) -> bool:
        """Publish an event; returns False if it could not be handed to the channel."""
        try:
            await self._send(event)
        except (RedisError, OSError, TimeoutError) as e:
            logger.warning(f"Realtime publish of {event.event_type.value} failed: {e}")
            record_realtime_event(event.event_type.value, "failed")
            return False
        record_realtime_event(event.event_type.value, "ok")
        return True

    @abstractmethod
    async def _send(self, event: RealtimeEvent) -> None:
        pass


class RedisPubSubPublisher(RealtimePublisher):
    def __init__(self, client: Redis, channel: str = "crust:realtime", timeout: float = 0.5):
        self.client = client
        self.channel = channel
        self.timeout = timeout

    async def _send(self, event: RealtimeEvent) -> None:
        await asyncio.wait_for(
            self.client.publish(self.channel, event.to_bytes()),
            timeout=self.timeout,
        )


class InMemoryPublisher(RealtimePublisher):
    def __init__(self) -> None:
        self.events: list[RealtimeEvent] = []

    async def _send(self, event: RealtimeEvent) -> None:
        self.events.append(event)
