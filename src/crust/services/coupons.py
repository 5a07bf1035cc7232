"""Coupon service: CRUD plus validation and redemption."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal

from pydantic import TypeAdapter

from crust.cache.policy import EntityClass
from crust.cache.read_through import ReadThroughStore
from crust.core.errors import BadRequestError, NotFoundError
from crust.core.models import AppliedCoupon, Coupon, CouponCreate, CouponUpdate
from crust.persistence.repositories import CouponRepository
from crust.services.activity import ActivityRecorder

logger = logging.getLogger(__name__)

_COUPON = TypeAdapter(Coupon)
_COUPONS = TypeAdapter(list[Coupon])


class CouponService:
    def __init__(
        self,
        store: ReadThroughStore,
        repo: CouponRepository,
        activity: ActivityRecorder | None = None,
    ):
        self.store = store
        self.repo = repo
        self.activity = activity

    async def get_by_code(self, code: str) -> Coupon:
        code = code.strip().upper()
        coupon = await self.store.read(
            EntityClass.COUPON,
            "code",
            lambda: self.repo.get_by_code(code),
            _COUPON,
            code=code,
        )
        if coupon is None:
            raise NotFoundError("Coupon", code)
        return coupon

    async def list(self, active_only: bool = False) -> list[Coupon]:
        coupons = await self.store.read(
            EntityClass.COUPON,
            "list",
            lambda: self.repo.list(active_only=active_only),
            _COUPONS,
            signature="active" if active_only else "all",
        )
        return coupons or []

    async def create(self, data: CouponCreate) -> Coupon:
        coupon = Coupon(**data.model_dump())
        created = await self.store.write(EntityClass.COUPON, coupon.code, lambda: self.repo.create(coupon))
        if self.activity:
            await self.activity.record("coupon_created", f"Coupon {created.code} created")
        return created

    async def update(self, coupon_id: str, changes: CouponUpdate) -> Coupon:
        fields = changes.model_dump(exclude_unset=True)

        async def mutate() -> tuple[Coupon, Coupon]:
            result = await self.repo.update(coupon_id, fields)
            if result is None:
                raise NotFoundError("Coupon", coupon_id)
            return result

        before, after = await self.store.write(EntityClass.COUPON, None, mutate)
        await self.store.invalidate_items(EntityClass.COUPON, sorted({before.code, after.code}))
        return after

    async def delete(self, coupon_id: str) -> None:
        async def mutate() -> Coupon:
            coupon = await self.repo.delete(coupon_id)
            if coupon is None:
                raise NotFoundError("Coupon", coupon_id)
            return coupon

        coupon = await self.store.write(EntityClass.COUPON, None, mutate)
        await self.store.invalidate_items(EntityClass.COUPON, [coupon.code])
        if self.activity:
            await self.activity.record("coupon_deleted", f"Coupon {coupon.code} deleted")

    async def validate(self, code: str, amount: Decimal, now: datetime | None = None) -> AppliedCoupon:
        """Check a coupon against an order amount without redeeming it."""
        return self._check(await self.get_by_code(code), amount, now)

    def _check(self, coupon: Coupon, amount: Decimal, now: datetime | None) -> AppliedCoupon:
        now = now or datetime.now(UTC)
        if not coupon.is_valid(now):
            raise BadRequestError(f"Coupon {coupon.code} is expired or inactive")
        if amount < coupon.min_order_amount:
            raise BadRequestError(
                f"Minimum order amount of {coupon.min_order_amount} required for coupon {coupon.code}"
            )
        if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
            raise BadRequestError(f"Coupon {coupon.code} usage limit reached")

        discount = coupon.calculate_discount(amount)
        return AppliedCoupon(
            code=coupon.code,
            coupon_id=coupon.id,
            discount_type=coupon.discount_type,
            discount_value=coupon.discount_value,
            discount=discount,
            final_amount=amount - discount,
        )

    async def validate_and_apply(
        self, code: str, amount: Decimal, now: datetime | None = None
    ) -> AppliedCoupon:
        """Validate a coupon and count one use.

        The usage check is repeated atomically in the store, so two concurrent
        redemptions cannot both take the last use.
        """
        coupon = await self.get_by_code(code)
        applied = self._check(coupon, amount, now)

        async def claim() -> int:
            used = await self.repo.claim_use(coupon.id)
            if used is None:
                raise BadRequestError(f"Coupon {coupon.code} usage limit reached")
            return used

        used = await self.store.write(EntityClass.COUPON, coupon.code, claim)
        logger.info(f"Coupon {coupon.code} redeemed ({used} uses)")
        return applied

    async def release(self, applied: AppliedCoupon) -> None:
        """Give back the use counted by validate_and_apply for an order that was never created."""
        if applied.coupon_id is None:
            return
        coupon_id = applied.coupon_id
        used = await self.store.write(EntityClass.COUPON, applied.code, lambda: self.repo.release_use(coupon_id))
        logger.info(f"Coupon {applied.code} released ({used} uses)")
