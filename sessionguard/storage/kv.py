from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional, Protocol, Tuple

Key = Tuple[str, ...]


def validate_key(key: Key) -> Key:
    """Normalize a key to a tuple of non-empty strings."""

    if isinstance(key, str) or not key:
        raise ValueError("store keys must be a non-empty tuple of strings")
    parts = tuple(key)
    for part in parts:
        if not isinstance(part, str) or not part:
            raise ValueError(f"invalid key part {part!r} in {parts!r}")
    return parts


def key_has_prefix(key: Key, prefix: Key) -> bool:
    return key[: len(prefix)] == prefix


@dataclass(frozen=True)
class KVEntry:
    key: Key
    value: Optional[Any]
    versionstamp: Optional[str]

    @property
    def exists(self) -> bool:
        return self.value is not None


@dataclass(frozen=True)
class _Check:
    key: Key
    versionstamp: Optional[str]


@dataclass(frozen=True)
class _Mutation:
    op: str  # "set" | "delete"
    key: Key
    value: Any = None
    ttl_ms: Optional[int] = None


class AtomicOperation:
    """Collects checks and mutations that a backend commits all-or-nothing.

    A check with ``versionstamp=None`` asserts that the key is absent. ``commit``
    returns ``False`` without applying anything if any check fails.
    """

    def __init__(self) -> None:
        self.checks: List[_Check] = []
        self.mutations: List[_Mutation] = []

    def check(self, key: Key, versionstamp: Optional[str]) -> "AtomicOperation":
        self.checks.append(_Check(validate_key(key), versionstamp))
        return self

    def set(
        self, key: Key, value: Any, *, ttl_ms: Optional[int] = None
    ) -> "AtomicOperation":
        if value is None:
            raise ValueError("None cannot be stored; use delete()")
        self.mutations.append(_Mutation("set", validate_key(key), value, ttl_ms))
        return self

    def delete(self, key: Key) -> "AtomicOperation":
        self.mutations.append(_Mutation("delete", validate_key(key)))
        return self

    async def commit(self) -> bool:  # pragma: no cover - implemented by backends
        raise NotImplementedError


class KeyValueStore(Protocol):
    """Async key-value contract consumed by the auth services.

    ``ttl_ms=None`` stores without expiry; ``ttl_ms <= 0`` stores an entry that
    is already expired and therefore never observable.
    """

    async def get(self, key: Key) -> KVEntry: ...

    async def set(self, key: Key, value: Any, *, ttl_ms: Optional[int] = None) -> None: ...

    async def delete(self, key: Key) -> None: ...

    def list(self, *, prefix: Key) -> AsyncIterator[KVEntry]: ...

    def atomic(self) -> AtomicOperation: ...

    async def close(self) -> None: ...


__all__ = [
    "AtomicOperation",
    "KVEntry",
    "Key",
    "KeyValueStore",
    "key_has_prefix",
    "validate_key",
]
