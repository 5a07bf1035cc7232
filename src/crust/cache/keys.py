"""Cache key schema for crust.

Key format: {prefix}:{entity}:{selector...}

Where:
- prefix: "crust" by default (namespace for a shared Redis)
- entity: "business", "product", "products", "coupon", "coupons", "dashboard"
- selector: entity-specific, e.g. "id:<uuid>", "code:<CODE>", "stats:today"
"""

from __future__ import annotations

from crust.config import settings


class CacheKeys:
    """Cache key generator following consistent naming convention."""

    PREFIX = settings.cache_key_prefix

    # -------------------------------------------------------------------------
    # Business singleton
    # -------------------------------------------------------------------------

    @classmethod
    def business_info(cls) -> str:
        return f"{cls.PREFIX}:business:info"

    # -------------------------------------------------------------------------
    # Products
    # -------------------------------------------------------------------------

    @classmethod
    def product_by_id(cls, product_id: str) -> str:
        return f"{cls.PREFIX}:product:id:{product_id}"

    @classmethod
    def product_list(cls, signature: str = "all") -> str:
        """Key for a product listing, keyed by its filter signature."""
        return f"{cls.PREFIX}:products:{signature}"

    # -------------------------------------------------------------------------
    # Coupons
    # -------------------------------------------------------------------------

    @classmethod
    def coupon_by_code(cls, code: str) -> str:
        return f"{cls.PREFIX}:coupon:code:{code.upper()}"

    @classmethod
    def coupon_list(cls, signature: str = "all") -> str:
        """Key for a coupon listing ("active" or "all")."""
        return f"{cls.PREFIX}:coupons:{signature}"

    # -------------------------------------------------------------------------
    # Dashboard
    # -------------------------------------------------------------------------

    @classmethod
    def dashboard_stats_today(cls) -> str:
        return f"{cls.PREFIX}:dashboard:stats:today"

    @classmethod
    def dashboard_revenue_chart(cls, days: int) -> str:
        return f"{cls.PREFIX}:dashboard:revenue-chart:{days}"

    @classmethod
    def dashboard_hourly_sales(cls) -> str:
        return f"{cls.PREFIX}:dashboard:hourly-sales"

    @classmethod
    def dashboard_top_products(cls, limit: int) -> str:
        return f"{cls.PREFIX}:dashboard:top-products:{limit}"

    @classmethod
    def dashboard_recent_activity(cls, limit: int) -> str:
        return f"{cls.PREFIX}:dashboard:recent-activity:{limit}"

    @classmethod
    def dashboard_overview(cls) -> str:
        return f"{cls.PREFIX}:dashboard:overview"

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    @classmethod
    def index(cls, entity: str) -> str:
        """Set of parameterised keys populated for an entity class."""
        return f"{cls.PREFIX}:index:{entity}"

    @classmethod
    def aggregation_marker(cls, order_id: str, version: int = 1) -> str:
        """Idempotency marker claimed by post-order aggregation."""
        return f"{cls.PREFIX}:aggregated:v{version}:{order_id}"

    @classmethod
    def aggregation_failures(cls) -> str:
        """Dead-letter list of failed aggregation steps."""
        return f"{cls.PREFIX}:aggregation:failed"

    @classmethod
    def entity_pattern(cls, entity: str) -> str:
        """Glob matching every key of an entity class.

        Only used by operator tooling; normal invalidation resolves keys
        through the policy registry.
        """
        return f"{cls.PREFIX}:{entity}:*"
