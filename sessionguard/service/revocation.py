from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.kv import AtomicOperation, Key, KeyValueStore

logger = get_logger(__name__)

BLACKLIST_PREFIX = "token_blacklist"
REFRESH_PREFIX = "refresh_tokens"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class BlacklistEntry:
    token_id: str
    blacklisted_at: datetime
    expires_at: datetime

    @classmethod
    def from_record(cls, token_id: str, record: dict[str, Any]) -> "BlacklistEntry":
        return cls(
            token_id=token_id,
            blacklisted_at=_parse_iso(record["blacklistedAt"]),
            expires_at=_parse_iso(record["expiresAt"]),
        )


@dataclass(frozen=True)
class RefreshTokenRecord:
    token_id: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "RefreshTokenRecord":
        return cls(
            token_id=record["tokenId"],
            user_id=record["userId"],
            created_at=_parse_iso(record["createdAt"]),
            expires_at=_parse_iso(record["expiresAt"]),
        )


@dataclass(frozen=True)
class RevocationReport:
    """Outcome of a bulk revocation; ``failed > 0`` means some sessions survived."""

    user_id: str
    revoked: int
    failed: int

    @property
    def complete(self) -> bool:
        return self.failed == 0


class RevocationStore:
    """Blacklist entries and refresh-token records kept in the key-value store.

    Every entry carries a TTL equal to the remaining lifetime of the token it
    describes, so nothing here ever needs manual pruning.
    """

    def __init__(
        self, store: KeyValueStore, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.store = store
        self._clock = clock

    @staticmethod
    def blacklist_key(token_id: str) -> Key:
        return (BLACKLIST_PREFIX, token_id)

    @staticmethod
    def refresh_key(user_id: str, token_id: str) -> Key:
        return (REFRESH_PREFIX, user_id, token_id)

    def _ttl_ms(self, expires_at: float) -> int:
        """Milliseconds until ``expires_at`` (epoch seconds), floored at zero."""
        return max(0, int(expires_at * 1000 - self._clock() * 1000))

    def _blacklist_record(self, expires_at: float) -> dict[str, str]:
        return {
            "blacklistedAt": _iso(self._clock()),
            "expiresAt": _iso(expires_at),
        }

    def _refresh_record(
        self, user_id: str, token_id: str, expires_at: float
    ) -> dict[str, str]:
        return {
            "tokenId": token_id,
            "userId": user_id,
            "createdAt": _iso(self._clock()),
            "expiresAt": _iso(expires_at),
        }

    async def blacklist_token(self, token_id: str, expires_at: float) -> None:
        await self.store.set(
            self.blacklist_key(token_id),
            self._blacklist_record(expires_at),
            ttl_ms=self._ttl_ms(expires_at),
        )
        logger.info("token_blacklisted", token_id=token_id)

    async def is_token_blacklisted(self, token_id: str) -> bool:
        entry = await self.store.get(self.blacklist_key(token_id))
        return entry.exists

    async def get_blacklist_entry(self, token_id: str) -> Optional[BlacklistEntry]:
        entry = await self.store.get(self.blacklist_key(token_id))
        if not entry.exists:
            return None
        return BlacklistEntry.from_record(token_id, entry.value)

    async def store_refresh_token(
        self, user_id: str, token_id: str, expires_at: float
    ) -> None:
        await self.store.set(
            self.refresh_key(user_id, token_id),
            self._refresh_record(user_id, token_id, expires_at),
            ttl_ms=self._ttl_ms(expires_at),
        )
        logger.info("refresh_token_stored", user_id=user_id, token_id=token_id)

    def stage_refresh_token(
        self, op: AtomicOperation, user_id: str, token_id: str, expires_at: float
    ) -> AtomicOperation:
        """Add a new RefreshTokenRecord (asserting the key is unused) to ``op``."""

        key = self.refresh_key(user_id, token_id)
        return op.check(key, None).set(
            key,
            self._refresh_record(user_id, token_id, expires_at),
            ttl_ms=self._ttl_ms(expires_at),
        )

    async def verify_refresh_token(self, user_id: str, token_id: str) -> bool:
        entry = await self.store.get(self.refresh_key(user_id, token_id))
        return entry.exists

    async def get_refresh_token(
        self, user_id: str, token_id: str
    ) -> Optional[RefreshTokenRecord]:
        entry = await self.store.get(self.refresh_key(user_id, token_id))
        if not entry.exists:
            return None
        return RefreshTokenRecord.from_record(entry.value)

    async def list_user_tokens(self, user_id: str) -> List[RefreshTokenRecord]:
        return [
            RefreshTokenRecord.from_record(entry.value)
            async for entry in self.store.list(prefix=(REFRESH_PREFIX, user_id))
        ]

    async def revoke_refresh_token(self, user_id: str, token_id: str) -> None:
        await self.store.delete(self.refresh_key(user_id, token_id))
        logger.info("refresh_token_revoked", user_id=user_id, token_id=token_id)

    async def consume_refresh_token(
        self,
        user_id: str,
        token_id: str,
        *,
        expires_at: float,
        replacement_id: Optional[str] = None,
        replacement_expires_at: Optional[float] = None,
    ) -> bool:
        """Atomically retire a refresh token, optionally storing its successor.

        The old record is deleted and its id blacklisted in the same commit
        that writes the replacement, guarded by the old record's versionstamp.
        Returns ``False`` when the record is gone or a concurrent refresh won.
        """

        key = self.refresh_key(user_id, token_id)
        entry = await self.store.get(key)
        if not entry.exists:
            return False
        op = (
            self.store.atomic()
            .check(key, entry.versionstamp)
            .delete(key)
            .set(
                self.blacklist_key(token_id),
                self._blacklist_record(expires_at),
                ttl_ms=self._ttl_ms(expires_at),
            )
        )
        if replacement_id is not None and replacement_expires_at is not None:
            self.stage_refresh_token(op, user_id, replacement_id, replacement_expires_at)
        committed = await op.commit()
        if not committed:
            logger.warning(
                "refresh_token_consume_conflict", user_id=user_id, token_id=token_id
            )
        return committed

    async def revoke_all_user_tokens(self, user_id: str) -> RevocationReport:
        """Delete every refresh record under the user's prefix.

        Deletes run concurrently and are not transactional: a failure partway
        leaves the remaining sessions valid. Failures are logged and reported,
        not raised.
        """

        keys = [
            entry.key
            async for entry in self.store.list(prefix=(REFRESH_PREFIX, user_id))
        ]
        results = await asyncio.gather(
            *(self.store.delete(key) for key in keys), return_exceptions=True
        )
        failures = [result for result in results if isinstance(result, Exception)]
        report = RevocationReport(
            user_id=user_id, revoked=len(keys) - len(failures), failed=len(failures)
        )
        if failures:
            logger.warning(
                "revoke_all_partial_failure",
                user_id=user_id,
                revoked=report.revoked,
                failed=report.failed,
                error=str(failures[0]),
            )
        else:
            logger.info("revoke_all_complete", user_id=user_id, revoked=report.revoked)
        return report
