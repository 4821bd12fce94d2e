from __future__ import annotations

import copy
import itertools
import threading
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.kv import (
    AtomicOperation,
    Key,
    KVEntry,
    key_has_prefix,
    validate_key,
)


@dataclass
class _Record:
    value: Any
    versionstamp: str
    expires_at: Optional[float]  # seconds since epoch


class _MemoryAtomicOperation(AtomicOperation):
    def __init__(self, store: "MemoryKVStore") -> None:
        super().__init__()
        self._store = store

    async def commit(self) -> bool:
        return self._store._commit(self)


class MemoryKVStore:
    """In-process key-value store with per-entry TTL and versionstamps.

    Expiry is evaluated lazily against ``clock`` so tests can drive time with a
    fake clock instead of sleeping. Every ``purge_interval`` writes the whole
    map is swept so keys that are never read again do not accumulate. All
    mutations happen under a thread lock because the FastAPI test client runs
    the app on a separate thread.
    """

    def __init__(
        self, *, clock: Callable[[], float] = time.time, purge_interval: int = 256
    ) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._data: Dict[Key, _Record] = {}
        self._lock = threading.Lock()
        self._versions = itertools.count(1)
        self._writes = 0
        self.purge_interval = max(1, purge_interval)

    def _next_versionstamp(self) -> str:
        return f"{next(self._versions):020d}"

    def _expires_at(self, ttl_ms: Optional[int]) -> Optional[float]:
        if ttl_ms is None:
            return None
        return self._clock() + ttl_ms / 1000.0

    def _live_record(self, key: Key) -> Optional[_Record]:
        record = self._data.get(key)
        if record is None:
            return None
        if record.expires_at is not None and record.expires_at <= self._clock():
            del self._data[key]
            return None
        return record

    def _entry(self, key: Key, record: Optional[_Record]) -> KVEntry:
        if record is None:
            return KVEntry(key=key, value=None, versionstamp=None)
        return KVEntry(
            key=key,
            value=copy.deepcopy(record.value),
            versionstamp=record.versionstamp,
        )

    def _purge_expired(self) -> int:
        now = self._clock()
        expired = [
            key
            for key, record in self._data.items()
            if record.expires_at is not None and record.expires_at <= now
        ]
        for key in expired:
            del self._data[key]
        return len(expired)

    def _write(self, key: Key, value: Any, ttl_ms: Optional[int]) -> None:
        self._writes += 1
        if self._writes % self.purge_interval == 0:
            purged = self._purge_expired()
            if purged:
                self.logger.debug("memory_kv_purged_expired", count=purged)
        if ttl_ms is not None and ttl_ms <= 0:
            self._data.pop(key, None)
            return
        self._data[key] = _Record(
            value=copy.deepcopy(value),
            versionstamp=self._next_versionstamp(),
            expires_at=self._expires_at(ttl_ms),
        )

    async def get(self, key: Key) -> KVEntry:
        key = validate_key(key)
        with self._lock:
            return self._entry(key, self._live_record(key))

    async def set(self, key: Key, value: Any, *, ttl_ms: Optional[int] = None) -> None:
        key = validate_key(key)
        if value is None:
            raise ValueError("None cannot be stored; use delete()")
        with self._lock:
            self._write(key, value, ttl_ms)

    async def delete(self, key: Key) -> None:
        key = validate_key(key)
        with self._lock:
            self._data.pop(key, None)

    async def list(self, *, prefix: Key) -> AsyncIterator[KVEntry]:
        prefix = validate_key(prefix)
        with self._lock:
            self._purge_expired()
            matches: List[KVEntry] = []
            for key in sorted(self._data):
                if not key_has_prefix(key, prefix):
                    continue
                record = self._live_record(key)
                if record is not None:
                    matches.append(self._entry(key, record))
        for entry in matches:
            yield entry

    def atomic(self) -> AtomicOperation:
        return _MemoryAtomicOperation(self)

    def _commit(self, op: AtomicOperation) -> bool:
        with self._lock:
            for check in op.checks:
                record = self._live_record(check.key)
                current = record.versionstamp if record else None
                if current != check.versionstamp:
                    self.logger.debug(
                        "memory_kv_atomic_check_failed", key=":".join(check.key)
                    )
                    return False
            for mutation in op.mutations:
                if mutation.op == "set":
                    self._write(mutation.key, mutation.value, mutation.ttl_ms)
                else:
                    self._data.pop(mutation.key, None)
        return True

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for key in list(self._data) if self._live_record(key))

    async def close(self) -> None:
        with self._lock:
            self._data.clear()


__all__ = ["MemoryKVStore"]
