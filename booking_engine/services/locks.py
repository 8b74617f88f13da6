from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import date as date_type
from typing import AsyncContextManager, AsyncIterator, Iterable, Optional, Protocol
import asyncio
import logging
import uuid

from booking_engine.core.config import settings
from booking_engine.core.exceptions import ConcurrencyError
from booking_engine.core.redis import RedisClient, redis_client


logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "slot_lock"


def appointment_lock_key(appointment_id: str) -> str:
    """Key serializing status changes and moves of one appointment."""
    return f"appointment:{appointment_id}"


def slot_lock_keys(
    date: date_type,
    staff_id: Optional[str] = None,
    resource_id: Optional[str] = None,
    client_id: Optional[str] = None,
) -> list[str]:
    """Per-day serialization keys for every entity a booking touches, sorted."""
    keys = []
    if staff_id:
        keys.append(f"staff:{staff_id}:{date.isoformat()}")
    if resource_id:
        keys.append(f"resource:{resource_id}:{date.isoformat()}")
    if client_id:
        keys.append(f"client:{client_id}:{date.isoformat()}")
    return sorted(keys)


class SlotLockManager(Protocol):
    def hold(self, keys: Iterable[str]) -> AsyncContextManager[None]:
        """Hold every key for the duration of the block. Raises ConcurrencyError on timeout."""
        ...


class LocalSlotLockManager:
    """In-process serialization with one asyncio.Lock per key."""

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else settings.SLOT_LOCK_TIMEOUT_SECONDS
        )
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, keys: Iterable[str]) -> AsyncIterator[None]:
        acquired = []
        try:
            # Sorted acquisition order keeps two multi-key holders from deadlocking
            for key in sorted(set(keys)):
                lock = self._locks[key]
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=self.timeout_seconds)
                except asyncio.TimeoutError:
                    logger.warning(f"Timed out waiting for slot lock {key}")
                    raise ConcurrencyError(f"Could not acquire slot lock {key}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class RedisSlotLockManager:
    """Cross-process serialization with Redis token locks (SET NX PX)."""

    def __init__(
        self,
        client: Optional[RedisClient] = None,
        ttl_seconds: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        retry_interval_ms: Optional[int] = None,
    ):
        self.client = client or redis_client
        self.ttl_ms = int((ttl_seconds or settings.SLOT_LOCK_TTL_SECONDS) * 1000)
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else settings.SLOT_LOCK_TIMEOUT_SECONDS
        )
        self.retry_interval = (
            retry_interval_ms or settings.SLOT_LOCK_RETRY_INTERVAL_MS
        ) / 1000

    @asynccontextmanager
    async def hold(self, keys: Iterable[str]) -> AsyncIterator[None]:
        token = str(uuid.uuid4())
        acquired = []
        try:
            for key in sorted(set(keys)):
                redis_key = f"{LOCK_KEY_PREFIX}:{key}"
                await self._acquire(redis_key, token)
                acquired.append(redis_key)
            yield
        finally:
            for redis_key in reversed(acquired):
                released = await self.client.release_lock(redis_key, token)
                if not released:
                    logger.warning(f"Slot lock {redis_key} expired before release")

    async def _acquire(self, redis_key: str, token: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        while True:
            if await self.client.acquire_lock(redis_key, token, self.ttl_ms):
                logger.debug(f"Acquired slot lock {redis_key}")
                return
            if loop.time() >= deadline:
                logger.warning(f"Timed out waiting for slot lock {redis_key}")
                raise ConcurrencyError(f"Could not acquire slot lock {redis_key}")
            await asyncio.sleep(self.retry_interval)
