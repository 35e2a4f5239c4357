"""
Durable key/value store abstraction.

QuotaTracker, ResultCache and HistoryStore each own one record in a durable
store and talk to it only through this protocol. Concrete adapters:

- ``MemoryStore``: process-local dict, for tests and ephemeral runs
- ``DatabaseEngine`` (``sara.database``): SQLite through SQLModel
- ``RedisStore``: shared Redis server through redis-py asyncio

Adapters raise ``StorageError`` for any failure; callers decide whether a
failure is fatal (writes) or degrades to an empty state (reads).
"""

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sara.errors import StorageError

if TYPE_CHECKING:
    import redis.asyncio as redis

logger = logging.getLogger(__name__)


@runtime_checkable
class DurableStore(Protocol):
    """Protocol for durable record storage."""

    async def read(self, key: str) -> bytes | None: ...
    async def write(self, key: str, data: bytes) -> None: ...


class MemoryStore:
    """Dict-backed store. Survives component re-construction, not process restarts."""

    def __init__(self, initial: dict[str, bytes] | None = None):
        self._records: dict[str, bytes] = dict(initial or {})

    async def read(self, key: str) -> bytes | None:
        return self._records.get(key)

    async def write(self, key: str, data: bytes) -> None:
        if not isinstance(data, bytes):
            raise StorageError(f"Record payload must be bytes, got {type(data).__name__}", key=key)
        self._records[key] = data

    def keys(self) -> list[str]:
        return list(self._records)


# Shared across all RedisStore instances in the process
_redis_pool: "redis.ConnectionPool | None" = None


def _get_redis_pool(redis_url: str) -> "redis.ConnectionPool":
    """Get or create the process-wide Redis connection pool."""
    global _redis_pool
    if _redis_pool is None:
        import redis.asyncio as redis

        _redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
        logger.info("Created Redis connection pool for %s", redis_url)
    return _redis_pool


class RedisStore:
    """
    Redis-backed store for deployments where the state file can't live on disk.

    Records are stored under ``sara:state:<key>`` so clearing or scanning
    SARA's keys never touches other data in the same Redis database.
    """

    KEY_PREFIX = "sara:state:"

    def __init__(self, redis_url: str | None = None, client: "redis.Redis | None" = None):
        self._redis_url = redis_url
        self._client = client

    async def connect(self) -> None:
        """Attach a client from the shared connection pool."""
        if self._client is not None:
            return
        if not self._redis_url:
            raise StorageError("Redis storage selected but no redis_url configured")

        import redis.asyncio as redis

        self._client = redis.Redis(connection_pool=_get_redis_pool(self._redis_url))
        logger.info("Connected to Redis using connection pool")

    async def disconnect(self) -> None:
        """Close the client; its connection returns to the pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Disconnected from Redis")

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    async def read(self, key: str) -> bytes | None:
        if self._client is None:
            raise StorageError("Redis store is not connected", key=key)
        try:
            data = await self._client.get(self._key(key))
        except Exception as e:
            raise StorageError(f"Redis read failed: {e}", key=key) from e
        if isinstance(data, str):
            data = data.encode("utf-8")
        return data

    async def write(self, key: str, data: bytes) -> None:
        if self._client is None:
            raise StorageError("Redis store is not connected", key=key)
        try:
            await self._client.set(self._key(key), data)
        except Exception as e:
            raise StorageError(f"Redis write failed: {e}", key=key) from e

    async def health_check(self) -> dict[str, str]:
        try:
            if self._client is None:
                raise StorageError("not connected")
            await self._client.ping()
            return {"status": "healthy", "backend": "redis"}
        except Exception as e:
            logger.error("Redis health check failed: %s", e)
            return {"status": "unhealthy", "backend": "redis", "error": str(e)}
