"""Realtime event schemas for crust.

Events are produced on notable writes and pushed to clients through the
realtime channel. The channel's delivery guarantees are its own concern.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

import orjson


class RealtimeEventType(str, Enum):
    BUSINESS_STATUS_CHANGED = "business.status_changed"
    BUSINESS_UPDATED = "business.updated"
    ORDER_CREATED = "order.created"
    ORDER_STATUS_CHANGED = "order.status_changed"
    PRODUCT_CHANGED = "product.changed"
    COUPON_CHANGED = "coupon.changed"
    DASHBOARD_INVALIDATED = "dashboard.invalidated"


@dataclass(frozen=True, slots=True)
class RealtimeEvent:
    """A message for connected clients."""

    event_type: RealtimeEventType
    payload: dict[str, Any] = field(default_factory=dict)
    # Room/audience hint for the channel, e.g. "admin" or "customer:<id>"
    audience: str = "all"
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_bytes(self) -> bytes:
        data = asdict(self)
        data["event_type"] = self.event_type.value
        return orjson.dumps(data, default=str)

    @classmethod
    def from_bytes(cls, data: bytes) -> RealtimeEvent:
        parsed = orjson.loads(data)
        return cls(
            event_type=RealtimeEventType(parsed["event_type"]),
            payload=parsed.get("payload") or {},
            audience=parsed.get("audience", "all"),
            event_id=parsed["event_id"],
            timestamp=datetime.fromisoformat(parsed["timestamp"]),
        )
