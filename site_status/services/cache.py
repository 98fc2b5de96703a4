"""
Site Status — read-side cache of the sorted sites list.

Owned by whoever serves the list (the FastAPI app keeps one on ``app.state``).
Refreshed on read once older than ``ttl_secs``; mutations call ``invalidate()``.
"""

import asyncio
import logging
import time
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from site_status.services.sites import get_sites_with_latest_audit

logger = logging.getLogger(__name__)


class SitesCache:
    def __init__(self, ttl_secs: float, clock=time.monotonic):
        self.ttl_secs = ttl_secs
        self._clock = clock
        self._sites: Optional[list[dict]] = None
        self.refreshed_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def is_stale(self) -> bool:
        if self._sites is None or self.refreshed_at is None:
            return True
        return self._clock() - self.refreshed_at > self.ttl_secs

    async def get(self, session: AsyncSession) -> list[dict]:
        """Sorted sites with their latest audit, from memory unless stale."""
        async with self._lock:
            if self.is_stale:
                self._sites = await get_sites_with_latest_audit(session)
                self.refreshed_at = self._clock()
                logger.debug("Sites cache refreshed (%d sites)", len(self._sites))
            return self._sites

    def invalidate(self) -> None:
        self._sites = None
        self.refreshed_at = None
