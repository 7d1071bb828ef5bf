"""
Redis-backed read cache for the fire-proofing tracker.

Read endpoints (element lists, project/sub-project stats) cache their JSON
responses under these keys. Ingestion never reads them; every operation that
changes element counts or element sets invalidates the affected prefixes.

Key Format:
    fptracker:cache:{resource}

Usage:
    from fptracker.core.shared.cache_service import cache_service

    await cache_service.invalidate("projects:123:")
    await cache_service.invalidate_for_elements(project_id, sub_project_id)
"""

import asyncio
import logging
from typing import List, Optional
from uuid import UUID

import redis.asyncio as redis

from fptracker.config import settings

logger = logging.getLogger("fptracker.services.cache")


def element_cache_prefixes(project_id: UUID, sub_project_id: Optional[UUID] = None) -> List[str]:
    """Cache prefixes whose content depends on a project's element set."""
    prefixes = [
        f"structural-elements:project:{project_id}",
        f"projects:{project_id}:stats",
    ]
    if sub_project_id:
        prefixes.extend([
            f"structural-elements:subproject:{sub_project_id}",
            f"subprojects:{sub_project_id}:stats",
        ])
    return prefixes


class CacheService:
    """
    Cache layer over Redis.

    The client is created lazily and re-created when the running event loop
    changes (Celery tasks call ``asyncio.run()`` once per task).
    """

    def __init__(self, redis_url: Optional[str] = None, key_prefix: Optional[str] = None):
        self._redis_url = redis_url
        self._redis: Optional[redis.Redis] = None
        self._redis_loop: Optional[asyncio.AbstractEventLoop] = None
        self._key_prefix = key_prefix or settings.cache_key_prefix

    async def _get_redis(self) -> redis.Redis:
        loop = asyncio.get_running_loop()
        if self._redis is None or self._redis_loop is not loop:
            # A client bound to a closed loop cannot be closed; abandon it
            self._redis_loop = loop
            self._redis = redis.from_url(self._redis_url or settings.redis_url, decode_responses=True)
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def invalidate(self, prefix: str) -> int:
        """
        Delete every cached entry whose key starts with ``prefix``.

        Returns:
            Number of keys deleted
        """
        r = await self._get_redis()
        pattern = f"{self._key(prefix)}*"
        deleted = 0
        batch: List[str] = []
        async for key in r.scan_iter(match=pattern, count=500):
            batch.append(key)
            if len(batch) >= 500:
                deleted += await r.delete(*batch)
                batch = []
        if batch:
            deleted += await r.delete(*batch)

        logger.debug(f"Invalidated {deleted} cache entries for prefix {prefix}")
        return deleted

    async def invalidate_for_elements(
        self, project_id: UUID, sub_project_id: Optional[UUID] = None
    ) -> int:
        """
        Invalidate every cached read that depends on a project's elements.

        Cache failures are logged and swallowed: a stale cache must never undo
        a committed ingestion or recovery operation.
        """
        total = 0
        for prefix in element_cache_prefixes(project_id, sub_project_id):
            try:
                total += await self.invalidate(prefix)
            except Exception as e:
                logger.warning(f"Cache invalidation failed for {prefix}: {e}")
        return total

    async def close(self) -> None:
        if self._redis:
            await self._redis.close()
            self._redis = None
            self._redis_loop = None


# Global singleton instance
cache_service = CacheService()
