"""Domain services for crust.

Each service reads through the cache and routes writes through
ReadThroughStore.write so invalidation always follows the store commit.
"""

from crust.services.aggregation import AggregatorConfig, PostOrderAggregator
from crust.services.business import BusinessService
from crust.services.coupons import CouponService
from crust.services.dashboard import DashboardComposer
from crust.services.orders import OrderService
from crust.services.products import ProductService

__all__ = [
    "AggregatorConfig",
    "BusinessService",
    "CouponService",
    "DashboardComposer",
    "OrderService",
    "PostOrderAggregator",
    "ProductService",
]
