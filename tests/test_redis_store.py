"""RedisKVStore tests that need no running server."""

import pytest

from sessionguard.config import Settings
from sessionguard.service.runtime import Runtime
from sessionguard.storage.errors import StorageError
from sessionguard.storage.memory import MemoryKVStore
from sessionguard.storage.redis_kv import RedisKVStore

UNREACHABLE = "redis://127.0.0.1:1/0"


@pytest.fixture
def redis_store():
    return RedisKVStore(UNREACHABLE, socket_timeout=0.5)


def test_keys_are_namespaced_and_escaped(redis_store):
    raw = redis_store._redis_key(("refresh_tokens", "user:1", "a*b"))
    assert raw == "sessionguard:refresh_tokens:user%3A1:a%2Ab"
    assert redis_store._decode_key(raw) == ("refresh_tokens", "user:1", "a*b")


def test_value_envelope(redis_store):
    raw = redis_store._encode({"count": 1}, "v1")
    assert redis_store._decode(raw) == ({"count": 1}, "v1")
    assert redis_store._decode(None) == (None, None)
    assert redis_store._decode("not json") == (None, None)


def test_verify_connection_wraps_redis_errors(redis_store):
    with pytest.raises(StorageError) as excinfo:
        redis_store.verify_connection()
    assert excinfo.value.message == "redis unavailable"


async def test_operations_raise_storage_error(redis_store):
    with pytest.raises(StorageError):
        await redis_store.get(("k",))
    with pytest.raises(StorageError):
        await redis_store.atomic().check(("k",), None).set(("k",), {"v": 1}).commit()


def test_runtime_falls_back_to_memory_in_test_mode():
    settings = Settings(jwt_secret="s" * 32, redis_url=UNREACHABLE, test_mode=True)
    runtime = Runtime(settings)
    assert isinstance(runtime.store, MemoryKVStore)


def test_runtime_refuses_unreachable_redis_outside_test_mode():
    settings = Settings(jwt_secret="s" * 32, redis_url=UNREACHABLE)
    with pytest.raises(RuntimeError):
        Runtime(settings)
