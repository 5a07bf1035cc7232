"""Background work for crust.

Provides the bounded in-process pool that runs fire-and-forget tasks such as
post-order aggregation.
"""

from crust.jobs.pool import BackgroundTaskPool, PoolConfig

__all__ = ["BackgroundTaskPool", "PoolConfig"]
