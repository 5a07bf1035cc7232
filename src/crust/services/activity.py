"""Activity feed recording.

Entries feed the dashboard's recent-activity view. Recording happens after
the write it describes has committed, so a failure here is logged and does
not fail that write.
"""

from __future__ import annotations

import logging
from typing import Any

from crust.core.errors import AuthoritativeStoreError
from crust.core.models import ActivityEntry
from crust.persistence.repositories import ActivityRepository

logger = logging.getLogger(__name__)


class ActivityRecorder:
    def __init__(self, repo: ActivityRepository):
        self.repo = repo

    async def record(
        self,
        action: str,
        description: str,
        user_id: str | None = None,
        **metadata: Any,
    ) -> ActivityEntry | None:
        entry = ActivityEntry(
            action=action,
            description=description,
            user_id=user_id,
            metadata=metadata,
        )
        try:
            return await self.repo.record(entry)
        except AuthoritativeStoreError as e:
            logger.warning(f"Could not record activity {action}: {e.text}")
            return None
