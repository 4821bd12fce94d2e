from __future__ import annotations

import json
import uuid
from typing import Any, AsyncIterator, Optional, Tuple
from urllib.parse import quote, unquote

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError, WatchError

from sessionguard.logging import get_logger
from sessionguard.storage.errors import StorageError
from sessionguard.storage.kv import AtomicOperation, Key, KVEntry, validate_key

logger = get_logger(__name__)


class _RedisAtomicOperation(AtomicOperation):
    def __init__(self, store: "RedisKVStore") -> None:
        super().__init__()
        self._store = store

    async def commit(self) -> bool:
        return await self._store._commit(self)


class RedisKVStore:
    """KeyValueStore backed by Redis.

    Values are stored as JSON envelopes ``{"v": value, "ver": versionstamp}``.
    TTLs map to ``PX``; atomic operations use WATCH/MULTI/EXEC so a concurrent
    writer on any checked key aborts the commit.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "sessionguard",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the runtime starts serving."""

        # Short-lived sync client so the async pool is not bound to a temporary loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        except RedisError as exc:
            raise StorageError("redis unavailable", {"error": str(exc)}) from exc
        finally:
            sync_client.close()

    def _redis_key(self, key: Key) -> str:
        # Parts are percent-encoded so ":" and glob characters cannot collide.
        return ":".join([self.namespace, *(quote(part, safe="") for part in key)])

    def _decode_key(self, raw: str) -> Key:
        parts = raw.split(":")[1:]
        return tuple(unquote(part) for part in parts)

    @staticmethod
    def _encode(value: Any, versionstamp: str) -> str:
        return json.dumps({"v": value, "ver": versionstamp}, separators=(",", ":"))

    @staticmethod
    def _decode(raw: Optional[str]) -> Tuple[Optional[Any], Optional[str]]:
        if raw is None:
            return None, None
        try:
            envelope = json.loads(raw)
            return envelope["v"], envelope["ver"]
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("redis_kv_decode_failed", error=str(exc))
            return None, None

    async def get(self, key: Key) -> KVEntry:
        key = validate_key(key)
        try:
            raw = await self.client.get(self._redis_key(key))
        except RedisError as exc:
            raise StorageError("redis get failed", {"error": str(exc)}) from exc
        value, versionstamp = self._decode(raw)
        return KVEntry(key=key, value=value, versionstamp=versionstamp)

    async def set(self, key: Key, value: Any, *, ttl_ms: Optional[int] = None) -> None:
        key = validate_key(key)
        if value is None:
            raise ValueError("None cannot be stored; use delete()")
        redis_key = self._redis_key(key)
        try:
            if ttl_ms is not None and ttl_ms <= 0:
                await self.client.delete(redis_key)
                return
            await self.client.set(
                redis_key, self._encode(value, uuid.uuid4().hex), px=ttl_ms
            )
        except RedisError as exc:
            raise StorageError("redis set failed", {"error": str(exc)}) from exc

    async def delete(self, key: Key) -> None:
        key = validate_key(key)
        try:
            await self.client.delete(self._redis_key(key))
        except RedisError as exc:
            raise StorageError("redis delete failed", {"error": str(exc)}) from exc

    async def list(self, *, prefix: Key) -> AsyncIterator[KVEntry]:
        prefix = validate_key(prefix)
        pattern = f"{self._redis_key(prefix)}:*"
        try:
            raw_keys = sorted(
                [raw async for raw in self.client.scan_iter(match=pattern, count=200)]
            )
        except RedisError as exc:
            raise StorageError("redis scan failed", {"error": str(exc)}) from exc
        for raw_key in raw_keys:
            entry = await self.get(self._decode_key(raw_key))
            # Entries may expire between SCAN and GET.
            if entry.exists:
                yield entry

    def atomic(self) -> AtomicOperation:
        return _RedisAtomicOperation(self)

    async def _commit(self, op: AtomicOperation) -> bool:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                watched = [self._redis_key(check.key) for check in op.checks]
                if watched:
                    await pipe.watch(*watched)
                for check, redis_key in zip(op.checks, watched):
                    _, current = self._decode(await pipe.get(redis_key))
                    if current != check.versionstamp:
                        await pipe.reset()
                        return False
                pipe.multi()
                for mutation in op.mutations:
                    redis_key = self._redis_key(mutation.key)
                    if mutation.op == "delete" or (
                        mutation.ttl_ms is not None and mutation.ttl_ms <= 0
                    ):
                        pipe.delete(redis_key)
                    else:
                        pipe.set(
                            redis_key,
                            self._encode(mutation.value, uuid.uuid4().hex),
                            px=mutation.ttl_ms,
                        )
                await pipe.execute()
        except WatchError:
            logger.debug("redis_kv_atomic_conflict", keys=len(op.checks))
            return False
        except RedisError as exc:
            raise StorageError("redis transaction failed", {"error": str(exc)}) from exc
        return True

    async def close(self) -> None:
        await self.client.close()


__all__ = ["RedisKVStore"]
