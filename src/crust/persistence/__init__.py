"""Persistence layer for crust.

This module provides:
- The Database object (async engine + transactional session scope)
- SQLAlchemy tables with JSONB documents and extracted query columns
- Per-entity repositories and the dashboard aggregation queries
"""

from crust.persistence.db import Database
from crust.persistence.queries import DashboardQueries
from crust.persistence.repositories import (
    ActivityRepository,
    BusinessRepository,
    CouponRepository,
    CustomerRepository,
    OrderRepository,
    PaymentRepository,
    ProductRepository,
)

__all__ = [
    "Database",
    "DashboardQueries",
    "ActivityRepository",
    "BusinessRepository",
    "CouponRepository",
    "CustomerRepository",
    "OrderRepository",
    "PaymentRepository",
    "ProductRepository",
]
