"""
Lead Locks
Serializes mutation of a single lead's conversations.

In-process asyncio locks always apply. When a Redis client is given,
a Redis lock is also taken so workers in separate processes serialize
on the same lead.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from redis.exceptions import LockError

from leadflow.core.exceptions import ConversationConflictError

logger = logging.getLogger(__name__)


class LeadLockManager:

    LOCK_KEY = "leadflow:lock:lead:{lead_id}"

    def __init__(
        self,
        redis_client=None,
        lock_timeout: float = 60.0,
        blocking_timeout: float = 15.0
    ):
        self._redis = redis_client
        self._lock_timeout = lock_timeout
        self._blocking_timeout = blocking_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, lead_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(lead_id, asyncio.Lock())
        self._waiters[lead_id] = self._waiters.get(lead_id, 0) + 1
        try:
            async with lock:
                if self._redis is None:
                    yield
                else:
                    async with self._distributed(lead_id):
                        yield
        finally:
            self._waiters[lead_id] -= 1
            if self._waiters[lead_id] == 0:
                del self._waiters[lead_id]
                self._locks.pop(lead_id, None)

    @asynccontextmanager
    async def _distributed(self, lead_id: str) -> AsyncIterator[None]:
        redis_lock = self._redis.lock(
            self.LOCK_KEY.format(lead_id=lead_id),
            timeout=self._lock_timeout,
            blocking_timeout=self._blocking_timeout,
        )
        acquired = await redis_lock.acquire()
        if not acquired:
            raise ConversationConflictError(
                f"Could not lock lead {lead_id} within {self._blocking_timeout}s",
                {"lead_id": lead_id},
            )
        try:
            yield
        finally:
            try:
                await redis_lock.release()
            except LockError as e:
                logger.warning(f"Lead lock for {lead_id} expired before release: {e}")
