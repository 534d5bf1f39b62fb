import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from redis.exceptions import RedisError
from ulid import ULID

from commission_service.infrastructure.redis_client import RedisClient


logger = structlog.get_logger()

# Deletes the key only if this holder still owns it.
RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class SweepLock:
    """
    Single-flight guard for the escrow sweep.

    The in-process flag stops overlapping ticks in one process. When a Redis
    client is given, a ``SET NX PX`` key extends the guard to every process
    sharing that Redis. A Redis outage makes the distributed part fail closed:
    the tick is skipped rather than run unguarded.
    """

    def __init__(
        self,
        redis_client: RedisClient | None = None,
        key: str = "commission:escrow_sweep_lock",
        ttl_ms: int = 30 * 60 * 1000,
    ) -> None:
        self._redis = redis_client
        self._key = key
        self._ttl_ms = ttl_ms
        self._local = asyncio.Lock()

    @property
    def locked(self) -> bool:
        return self._local.locked()

    async def wait_idle(self) -> None:
        """Wait for the sweep currently holding the local guard, if any, to finish."""
        async with self._local:
            pass

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[bool]:
        """Yield True if this caller holds the lock, False if the tick should be skipped."""
        if self._local.locked():
            yield False
            return

        async with self._local:
            token = await self._acquire_distributed()
            if token is None:
                yield False
                return
            try:
                yield True
            finally:
                await self._release_distributed(token)

    async def _acquire_distributed(self) -> str | None:
        token = str(ULID())
        if self._redis is None:
            return token
        try:
            acquired = await self._redis.client.set(self._key, token, nx=True, px=self._ttl_ms)
        except RedisError as e:
            logger.warning("sweep_lock_unavailable", error=str(e))
            return None
        if not acquired:
            logger.info("sweep_lock_held_elsewhere", key=self._key)
            return None
        return token

    async def _release_distributed(self, token: str) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.client.eval(RELEASE_SCRIPT, 1, self._key, token)
        except RedisError as e:
            # The key expires on its own after ttl_ms.
            logger.warning("sweep_lock_release_failed", error=str(e))
