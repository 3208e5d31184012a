"""Tests for the in-memory key-value store and the JSON-backed user store."""

import pytest

from authgate.storage.errors import ConstraintViolation
from authgate.storage.memory import MemoryStore
from authgate.storage.models import AllowRecord


class TestMemoryKeyValueStore:
    """Redis-compatible semantics the auth core relies on."""

    async def test_set_with_expiry(self, kv, clock):
        await kv.set("k", "v", ex=10)

        assert await kv.get("k") == "v"
        assert await kv.ttl("k") == 10
        clock.advance(10)
        assert await kv.get("k") is None
        assert await kv.ttl("k") == -2

    async def test_ttl_without_expiry(self, kv):
        await kv.set("k", "v")

        assert await kv.ttl("k") == -1

    async def test_set_without_ex_clears_expiry(self, kv):
        await kv.set("k", "v", ex=10)
        await kv.set("k", "w")

        assert await kv.ttl("k") == -1

    async def test_getdel_is_single_shot(self, kv):
        await kv.set("k", "v")

        assert await kv.getdel("k") == "v"
        assert await kv.getdel("k") is None

    async def test_delete_counts_existing(self, kv):
        await kv.set("a", "1")
        await kv.set("b", "1")

        assert await kv.delete("a", "b", "c") == 2

    async def test_incr_and_expire(self, kv):
        assert await kv.incr("n") == 1
        assert await kv.incr("n") == 2
        assert await kv.expire("n", 5) is True
        assert await kv.expire("missing", 5) is False

    async def test_hash_operations(self, kv):
        assert await kv.hset("h", {"a": "1", "b": "2"}) == 2
        assert await kv.hset("h", {"b": "3", "c": "4"}) == 1
        assert await kv.hincrby("h", "a", 5) == 6

        assert await kv.hgetall("h") == {"a": "6", "b": "3", "c": "4"}
        assert await kv.hgetall("missing") == {}

    async def test_set_operations(self, kv):
        assert await kv.sadd("s", "a", "b") == 2
        assert await kv.sadd("s", "b") == 0
        assert await kv.srem("s", "a") == 1
        assert await kv.smembers("s") == {"b"}

        await kv.srem("s", "b")
        # Empty sets disappear like in Redis
        assert not await kv.exists("s")

    async def test_wrong_type_raises(self, kv):
        await kv.hset("h", {"a": "1"})

        with pytest.raises(TypeError):
            await kv.get("h")

    async def test_ping(self, kv):
        assert await kv.ping() is True


class TestMemoryStore:
    """User directory persistence."""

    def test_create_and_lookup(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))

        user = store.create_user("user@example.com", email="user@example.com")

        assert store.get_user(user.id) == user
        assert store.get_user_by_identifier("user@example.com") == user
        assert user.roles == ["user"]

    def test_duplicate_identifier(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.create_user("user@example.com")

        with pytest.raises(ConstraintViolation):
            store.create_user("user@example.com")

    def test_password_for_unknown_user(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))

        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")

    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("+15550001111", phone="+15550001111", roles=["user", "admin"])
        store.save_password(user.id, "hash", "argon2id")

        reloaded = MemoryStore(fs_root=str(tmp_path))

        loaded = reloaded.get_user(user.id)
        assert loaded.identifier == "+15550001111"
        assert loaded.roles == ["user", "admin"]
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")

    def test_corrupt_state_file_fails_loudly(self, tmp_path):
        state = tmp_path / "state"
        state.mkdir()
        (state / "users.json").write_text("{not json")

        with pytest.raises(RuntimeError):
            MemoryStore(fs_root=str(tmp_path))

    def test_without_persistence(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path / "unused"), persist=False)
        store.create_user("user@example.com")

        assert not (tmp_path / "unused").exists()


class TestAllowRecord:
    def test_json_round_trip(self):
        record = AllowRecord(user_id="u", session_id="s")

        assert AllowRecord.loads(record.dumps(), subject="x", session_id="y") == record

    def test_legacy_marker(self):
        assert AllowRecord.loads("1", subject="u", session_id="s") == AllowRecord("u", "s")

    @pytest.mark.parametrize("raw", ["", "{", "[]", '{"userId": 5}', '{"userId": "u", "sessionId": 3}'])
    def test_malformed(self, raw):
        assert AllowRecord.loads(raw, subject="u", session_id="s") is None
