"""Tests for durable store adapters in sara/storage.py."""

from unittest.mock import AsyncMock

import pytest

from sara.errors import StorageError
from sara.storage import DurableStore, MemoryStore, RedisStore


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_read_missing_returns_none(self):
        assert await MemoryStore().read("sara_cache") is None

    @pytest.mark.asyncio
    async def test_write_then_read(self):
        store = MemoryStore()
        await store.write("sara_cache", b"{}")
        assert await store.read("sara_cache") == b"{}"
        assert store.keys() == ["sara_cache"]

    @pytest.mark.asyncio
    async def test_write_rejects_non_bytes(self):
        with pytest.raises(StorageError):
            await MemoryStore().write("sara_cache", "{}")

    def test_implements_protocol(self):
        assert isinstance(MemoryStore(), DurableStore)


class TestRedisStore:
    """RedisStore against a mocked redis.asyncio client."""

    @pytest.fixture
    def redis_client(self):
        client = AsyncMock()
        client.get = AsyncMock(return_value=None)
        client.set = AsyncMock(return_value=True)
        client.ping = AsyncMock(return_value=True)
        return client

    @pytest.mark.asyncio
    async def test_keys_are_prefixed(self, redis_client):
        store = RedisStore(client=redis_client)
        await store.write("sara_cache", b"{}")
        redis_client.set.assert_awaited_once_with("sara:state:sara_cache", b"{}")

        redis_client.get.return_value = b"{}"
        assert await store.read("sara_cache") == b"{}"
        redis_client.get.assert_awaited_with("sara:state:sara_cache")

    @pytest.mark.asyncio
    async def test_string_replies_are_encoded(self, redis_client):
        redis_client.get.return_value = '{"a": 1}'
        store = RedisStore(client=redis_client)
        assert await store.read("sara_cache") == b'{"a": 1}'

    @pytest.mark.asyncio
    async def test_client_errors_become_storage_errors(self, redis_client):
        redis_client.get.side_effect = ConnectionError("refused")
        redis_client.set.side_effect = ConnectionError("refused")
        store = RedisStore(client=redis_client)

        with pytest.raises(StorageError):
            await store.read("sara_cache")
        with pytest.raises(StorageError):
            await store.write("sara_cache", b"{}")

    @pytest.mark.asyncio
    async def test_not_connected(self):
        store = RedisStore(redis_url="redis://localhost:6379/0")
        with pytest.raises(StorageError):
            await store.read("sara_cache")

    @pytest.mark.asyncio
    async def test_connect_without_url(self):
        with pytest.raises(StorageError):
            await RedisStore().connect()

    @pytest.mark.asyncio
    async def test_disconnect_closes_client(self, redis_client):
        store = RedisStore(client=redis_client)
        await store.disconnect()
        redis_client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_health_check(self, redis_client):
        store = RedisStore(client=redis_client)
        assert await store.health_check() == {"status": "healthy", "backend": "redis"}

        redis_client.ping.side_effect = ConnectionError("down")
        health = await store.health_check()
        assert health["status"] == "unhealthy"
