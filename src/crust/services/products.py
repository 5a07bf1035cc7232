"""Product catalogue service."""

from __future__ import annotations

from pydantic import TypeAdapter

from crust.cache.policy import EntityClass
from crust.cache.read_through import ReadThroughStore
from crust.core.errors import NotFoundError
from crust.core.models import Product, ProductCreate, ProductFilter, ProductUpdate
from crust.events.publisher import RealtimePublisher
from crust.events.schemas import RealtimeEvent, RealtimeEventType
from crust.persistence.repositories import ProductRepository
from crust.services.activity import ActivityRecorder

_PRODUCT = TypeAdapter(Product)
_PRODUCTS = TypeAdapter(list[Product])


class ProductService:
    def __init__(
        self,
        store: ReadThroughStore,
        repo: ProductRepository,
        publisher: RealtimePublisher | None = None,
        activity: ActivityRecorder | None = None,
    ):
        self.store = store
        self.repo = repo
        self.publisher = publisher
        self.activity = activity

    async def get(self, product_id: str) -> Product:
        product = await self.store.read(
            EntityClass.PRODUCT,
            "id",
            lambda: self.repo.get(product_id),
            _PRODUCT,
            product_id=product_id,
        )
        if product is None:
            raise NotFoundError("Product", product_id)
        return product

    async def list(self, product_filter: ProductFilter | None = None) -> list[Product]:
        product_filter = product_filter or ProductFilter()
        products = await self.store.read(
            EntityClass.PRODUCT,
            "list",
            lambda: self.repo.list(product_filter),
            _PRODUCTS,
            signature=product_filter.signature(),
        )
        return products or []

    async def create(self, data: ProductCreate) -> Product:
        product = Product(**data.model_dump())
        created = await self.store.write(
            EntityClass.PRODUCT, product.id, lambda: self.repo.create(product)
        )
        await self._changed(created, "created")
        return created

    async def update(self, product_id: str, changes: ProductUpdate) -> Product:
        fields = changes.model_dump(exclude_unset=True)

        async def mutate() -> Product:
            updated = await self.repo.update(product_id, fields)
            if updated is None:
                raise NotFoundError("Product", product_id)
            return updated

        product = await self.store.write(EntityClass.PRODUCT, product_id, mutate)
        await self._changed(product, "updated")
        return product

    async def delete(self, product_id: str) -> None:
        async def mutate() -> bool:
            if not await self.repo.delete(product_id):
                raise NotFoundError("Product", product_id)
            return True

        await self.store.write(EntityClass.PRODUCT, product_id, mutate)
        if self.publisher:
            await self.publisher.publish(
                RealtimeEvent(
                    event_type=RealtimeEventType.PRODUCT_CHANGED,
                    payload={"product_id": product_id, "change": "deleted"},
                )
            )
        if self.activity:
            await self.activity.record("product_deleted", f"Product {product_id} deleted")

    async def _changed(self, product: Product, change: str) -> None:
        if self.publisher:
            await self.publisher.publish(
                RealtimeEvent(
                    event_type=RealtimeEventType.PRODUCT_CHANGED,
                    payload={"product_id": product.id, "change": change},
                )
            )
        if self.activity:
            await self.activity.record(f"product_{change}", f"Product {product.name} {change}")
