"""Business singleton service.

The business record is read on nearly every request path, so it is cached
permanently and only invalidated when it is written.
"""

from __future__ import annotations

import logging

from pydantic import TypeAdapter

from crust.cache.policy import EntityClass
from crust.cache.read_through import ReadThroughStore
from crust.config import Settings
from crust.core.errors import AuthoritativeStoreError, NotFoundError
from crust.core.models import Business, BusinessUpdate
from crust.events.publisher import RealtimePublisher
from crust.events.schemas import RealtimeEvent, RealtimeEventType
from crust.persistence.repositories import BusinessRepository
from crust.services.activity import ActivityRecorder

logger = logging.getLogger(__name__)

_BUSINESS = TypeAdapter(Business)


def default_business(settings: Settings) -> Business:
    """Seed record used the first time the singleton is read."""
    return Business(
        name=settings.business_name,
        email=settings.business_email,
        phone=settings.business_phone,
        address=settings.business_address,
    )


class BusinessService:
    def __init__(
        self,
        store: ReadThroughStore,
        repo: BusinessRepository,
        defaults: Business,
        publisher: RealtimePublisher | None = None,
        activity: ActivityRecorder | None = None,
    ):
        self.store = store
        self.repo = repo
        self.defaults = defaults
        self.publisher = publisher
        self.activity = activity

    async def get(self) -> Business:
        business = await self.store.read(
            EntityClass.BUSINESS,
            "info",
            lambda: self.repo.get_or_create(self.defaults),
            _BUSINESS,
        )
        if business is None:
            raise AuthoritativeStoreError("Business profile could not be loaded")
        return business

    async def warm(self) -> Business:
        """Load the singleton from the store and seed the permanent cache entry."""
        business = await self.repo.get_or_create(self.defaults)
        await self.store.seed(EntityClass.BUSINESS, "info", business, _BUSINESS)
        return business

    async def update(self, changes: BusinessUpdate) -> Business:
        fields = changes.model_dump(exclude_unset=True)

        async def mutate() -> Business:
            await self.repo.get_or_create(self.defaults)
            updated = await self.repo.update(fields)
            if updated is None:
                raise NotFoundError("Business", "default")
            return updated

        business = await self.store.write(EntityClass.BUSINESS, None, mutate)
        await self._publish(RealtimeEventType.BUSINESS_UPDATED, business)
        if self.activity:
            await self.activity.record(
                "business_updated",
                "Business settings updated",
                fields=sorted(fields),
            )
        return business

    async def toggle_status(self) -> Business:
        """Flip open/closed based on the authoritative record, not the cache."""

        async def mutate() -> Business:
            current = await self.repo.get_or_create(self.defaults)
            updated = await self.repo.update({"is_open": not current.is_open})
            if updated is None:
                raise NotFoundError("Business", "default")
            return updated

        business = await self.store.write(EntityClass.BUSINESS, None, mutate)
        state = "open" if business.is_open else "closed"
        logger.info(f"Business is now {state}")
        await self._publish(RealtimeEventType.BUSINESS_STATUS_CHANGED, business)
        if self.activity:
            await self.activity.record("business_status", f"Business marked {state}", is_open=business.is_open)
        return business

    async def _publish(self, event_type: RealtimeEventType, business: Business) -> None:
        if self.publisher is None:
            return
        await self.publisher.publish(
            RealtimeEvent(
                event_type=event_type,
                payload={"is_open": business.is_open, "name": business.name},
            )
        )
