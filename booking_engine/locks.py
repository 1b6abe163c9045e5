"""
Job Locks
=========

Single-flight guards for scheduled jobs. A run that cannot take the lock
immediately is skipped; it never waits for the previous run.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

logger = structlog.get_logger(__name__)


class JobLock(ABC):
    @abstractmethod
    async def acquire(self, name: str) -> bool:
        """Take the lock for job name without blocking; False if held."""
        pass

    @abstractmethod
    async def release(self, name: str) -> None:
        pass

    @abstractmethod
    async def is_locked(self, name: str) -> bool:
        pass


class LocalJobLock(JobLock):
    """In-process lock, for a single worker or tests."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    async def acquire(self, name: str) -> bool:
        lock = self._lock(name)
        if lock.locked():
            return False
        await lock.acquire()
        return True

    async def release(self, name: str) -> None:
        lock = self._lock(name)
        if lock.locked():
            lock.release()

    async def is_locked(self, name: str) -> bool:
        return self._lock(name).locked()


class RedisJobLock(JobLock):
    """
    Cross-process lock backed by Redis.

    The TTL bounds how long a crashed worker can hold a job.
    """

    def __init__(self, redis_url: str, ttl: int = 3600, prefix: str = "booking:job-lock"):
        self.redis_url = redis_url
        self.ttl = ttl
        self.prefix = prefix
        self._redis: Optional[aioredis.Redis] = None
        self._held: Dict[str, Lock] = {}

    async def get_redis(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(self.redis_url)
        return self._redis

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    async def acquire(self, name: str) -> bool:
        redis = await self.get_redis()
        lock = redis.lock(self._key(name), timeout=self.ttl)
        if not await lock.acquire(blocking=False):
            return False
        self._held[name] = lock
        return True

    async def release(self, name: str) -> None:
        lock = self._held.pop(name, None)
        if lock is None:
            return
        try:
            await lock.release()
        except LockError as e:
            # Expired under the TTL; someone else may hold it now
            logger.warning("Job lock already released", job=name, error=str(e))

    async def is_locked(self, name: str) -> bool:
        redis = await self.get_redis()
        return bool(await redis.exists(self._key(name)))

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
