"""Tests for the Redis key-value adapter against a mocked client."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ResponseError

from authgate.storage.redis_cache import _GETDEL_SCRIPT, RedisKeyValueStore


@pytest.fixture
def store():
    kv = RedisKeyValueStore("redis://127.0.0.1:6379/0")
    kv.client = AsyncMock()
    return kv


class TestGetdel:
    async def test_uses_native_command(self, store):
        store.client.getdel.return_value = "value"

        assert await store.getdel("k") == "value"
        store.client.eval.assert_not_awaited()

    async def test_falls_back_to_script_on_old_servers(self, store):
        store.client.getdel.side_effect = ResponseError("unknown command 'GETDEL'")
        store.client.eval.return_value = "value"

        assert await store.getdel("k") == "value"
        store.client.eval.assert_awaited_once_with(_GETDEL_SCRIPT, 1, "k")

    async def test_other_errors_propagate(self, store):
        store.client.getdel.side_effect = ResponseError(
            "WRONGTYPE Operation against a key holding the wrong kind of value"
        )

        with pytest.raises(ResponseError):
            await store.getdel("k")
        store.client.eval.assert_not_awaited()


class TestCoercion:
    async def test_set_clamps_ttl(self, store):
        store.client.set.return_value = True

        assert await store.set("k", "v", ex=0) is True
        store.client.set.assert_awaited_once_with("k", "v", ex=1)

    async def test_hgetall_missing_key(self, store):
        store.client.hgetall.return_value = None

        assert await store.hgetall("k") == {}
