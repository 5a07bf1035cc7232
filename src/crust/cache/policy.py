"""Cache policies per entity class.

A CachePolicy names every key an entity class can occupy, the TTL class of
each, and therefore which keys a write has to invalidate. Keys come in three
scopes:

- ITEM: one key per instance (product by id, coupon by code)
- FIXED: a single parameterless key (business info, today's stats)
- INDEXED: parameterised views (product lists by filter, top-N products);
  every populated key is recorded in the entity's index set so invalidation
  can resolve exact keys without scanning the keyspace
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from crust.cache.keys import CacheKeys
from crust.config import settings


class EntityClass(str, Enum):
    """The fixed set of cacheable entity classes."""

    BUSINESS = "business"
    PRODUCT = "product"
    COUPON = "coupon"
    DASHBOARD = "dashboard"


class TtlClass(str, Enum):
    NONE = "none"  # never cached
    SHORT = "short"
    MEDIUM = "medium"
    PERMANENT = "permanent"  # until explicit invalidation


class KeyScope(str, Enum):
    ITEM = "item"
    FIXED = "fixed"
    INDEXED = "indexed"


@dataclass(frozen=True, slots=True)
class KeyTemplate:
    """One named view of an entity in the cache."""

    name: str
    build: Callable[..., str]
    ttl_class: TtlClass
    scope: KeyScope = KeyScope.FIXED
    # For combined views: TTL is the minimum of these templates' TTLs
    composite_of: tuple[str, ...] = ()

    def resolve(self, *args: Any, **params: Any) -> str:
        return self.build(*args, **params)


@dataclass(frozen=True)
class CachePolicy:
    entity: EntityClass
    templates: tuple[KeyTemplate, ...]
    _by_name: dict[str, KeyTemplate] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_name", {t.name: t for t in self.templates})

    def template(self, name: str) -> KeyTemplate:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"{self.entity.value} has no cache view named {name!r}") from None

    def key(self, name: str, **params: Any) -> str:
        return self.template(name).resolve(**params)

    @property
    def index_key(self) -> str:
        return CacheKeys.index(self.entity.value)

    def invalidation_keys(self, selector: str | None = None) -> list[str]:
        """Exact keys a write must delete, excluding indexed members.

        With a selector, ITEM templates resolve to that instance's key;
        without one, only FIXED keys are returned.
        """
        keys: list[str] = []
        for template in self.templates:
            if template.scope == KeyScope.ITEM:
                if selector is not None:
                    keys.append(template.resolve(selector))
            elif template.scope == KeyScope.FIXED:
                keys.append(template.resolve())
        return keys


@dataclass(frozen=True, slots=True)
class TtlSettings:
    short: int = 120
    medium: int = 300

    def seconds(self, ttl_class: TtlClass) -> int | None:
        """TTL in seconds; None for permanent, 0 for never cached."""
        if ttl_class == TtlClass.SHORT:
            return self.short
        if ttl_class == TtlClass.MEDIUM:
            return self.medium
        if ttl_class == TtlClass.PERMANENT:
            return None
        return 0


def business_policy() -> CachePolicy:
    return CachePolicy(
        entity=EntityClass.BUSINESS,
        templates=(KeyTemplate("info", CacheKeys.business_info, TtlClass.PERMANENT),),
    )


def product_policy() -> CachePolicy:
    return CachePolicy(
        entity=EntityClass.PRODUCT,
        templates=(
            KeyTemplate("id", CacheKeys.product_by_id, TtlClass.MEDIUM, KeyScope.ITEM),
            KeyTemplate("list", CacheKeys.product_list, TtlClass.MEDIUM, KeyScope.INDEXED),
        ),
    )


def coupon_policy() -> CachePolicy:
    return CachePolicy(
        entity=EntityClass.COUPON,
        templates=(
            KeyTemplate("code", CacheKeys.coupon_by_code, TtlClass.MEDIUM, KeyScope.ITEM),
            KeyTemplate("list", CacheKeys.coupon_list, TtlClass.MEDIUM, KeyScope.INDEXED),
        ),
    )


DASHBOARD_PARTS = ("stats", "revenue_chart", "hourly_sales", "top_products", "recent_activity")


def dashboard_policy() -> CachePolicy:
    return CachePolicy(
        entity=EntityClass.DASHBOARD,
        templates=(
            KeyTemplate("stats", CacheKeys.dashboard_stats_today, TtlClass.SHORT),
            KeyTemplate(
                "revenue_chart",
                CacheKeys.dashboard_revenue_chart,
                TtlClass.MEDIUM,
                KeyScope.INDEXED,
            ),
            KeyTemplate("hourly_sales", CacheKeys.dashboard_hourly_sales, TtlClass.MEDIUM),
            KeyTemplate(
                "top_products",
                CacheKeys.dashboard_top_products,
                TtlClass.MEDIUM,
                KeyScope.INDEXED,
            ),
            KeyTemplate(
                "recent_activity",
                CacheKeys.dashboard_recent_activity,
                TtlClass.SHORT,
                KeyScope.INDEXED,
            ),
            KeyTemplate(
                "overview",
                CacheKeys.dashboard_overview,
                TtlClass.SHORT,
                composite_of=DASHBOARD_PARTS,
            ),
        ),
    )


class PolicyRegistry:
    """Maps each entity class to its policy and resolves TTL classes."""

    def __init__(self, policies: Iterable[CachePolicy], ttls: TtlSettings):
        self._policies = {policy.entity: policy for policy in policies}
        self.ttls = ttls

    @classmethod
    def default(cls, short_ttl: int | None = None, medium_ttl: int | None = None) -> PolicyRegistry:
        ttls = TtlSettings(
            short=short_ttl if short_ttl is not None else settings.cache_ttl_short,
            medium=medium_ttl if medium_ttl is not None else settings.cache_ttl_medium,
        )
        return cls(
            [business_policy(), product_policy(), coupon_policy(), dashboard_policy()],
            ttls,
        )

    def policy(self, entity: EntityClass) -> CachePolicy:
        return self._policies[entity]

    def __iter__(self):
        return iter(self._policies.values())

    def ttl_for(self, entity: EntityClass, name: str) -> int | None:
        """Seconds to keep a view; composite views use their shortest part."""
        policy = self.policy(entity)
        template = policy.template(name)
        if not template.composite_of:
            return self.ttls.seconds(template.ttl_class)

        part_ttls = [self.ttls.seconds(policy.template(part).ttl_class) for part in template.composite_of]
        finite = [ttl for ttl in part_ttls if ttl is not None]
        if not finite:
            return None
        return min(finite)

    def index_ttl(self, entity: EntityClass) -> int | None:
        """Lifetime of the entity's index set: the longest TTL among its indexed views.

        An index that expires before a key it lists would hide that key from
        invalidation, so the index always outlives every member.
        """
        ttls = [
            self.ttl_for(entity, template.name)
            for template in self.policy(entity).templates
            if template.scope == KeyScope.INDEXED
        ]
        if not ttls or any(ttl is None for ttl in ttls):
            return None
        return max(ttls)
