from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional

from sessionguard.logging import get_logger
from sessionguard.service.errors import ErrorKind, RateLimitExceededError
from sessionguard.storage.kv import Key, KeyValueStore

logger = get_logger(__name__)

RATE_LIMIT_PREFIX = "ratelimit"
UNKNOWN_CLIENT = "unknown"
# Counters outlive their window so the reset is decided by ``now > resetAt``.
COUNTER_GRACE_MS = 1000
DEFAULT_MAX_RETRIES = 5


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    max_requests: int
    window_ms: int
    message: str = "Too many requests, please try again later"


PRESET_POLICIES: Dict[str, RateLimitPolicy] = {
    policy.name: policy
    for policy in (
        RateLimitPolicy(
            "auth",
            5,
            15 * 60 * 1000,
            "Too many login attempts. Please try again in 15 minutes.",
        ),
        RateLimitPolicy(
            "signup",
            3,
            60 * 60 * 1000,
            "Too many signup attempts. Please try again later.",
        ),
        RateLimitPolicy(
            "api",
            100,
            15 * 60 * 1000,
            "API rate limit exceeded. Please slow down your requests.",
        ),
        RateLimitPolicy(
            "email_verification",
            3,
            60 * 60 * 1000,
            "Too many verification email requests. Please try again later.",
        ),
        RateLimitPolicy(
            "password_reset",
            3,
            60 * 60 * 1000,
            "Too many password reset requests. Please try again later.",
        ),
    )
}


def get_policy(name: str) -> RateLimitPolicy:
    try:
        return PRESET_POLICIES[name]
    except KeyError:
        raise ValueError(f"unknown rate limit policy {name!r}") from None


def resolve_client_identifier(headers: Mapping[str, str]) -> str:
    """First ``X-Forwarded-For`` hop, then ``X-Real-IP``, then ``"unknown"``.

    Neither header is authenticated here; deployments behind an untrusted
    edge must strip or overwrite them before requests reach the app.
    """

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return UNKNOWN_CLIENT


def _iso_from_ms(ms: int) -> str:
    stamp = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after: Optional[int] = None

    @property
    def kind(self) -> Optional[ErrorKind]:
        return None if self.allowed else ErrorKind.RATE_LIMITED

    @property
    def reset_at(self) -> str:
        return _iso_from_ms(self.reset_at_ms)

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": self.reset_at,
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """Fixed-window counters stored as ``{count, resetAt}`` per (scope, client).

    Each increment is a compare-and-set on the counter's versionstamp, so
    concurrent instances sharing one store cannot undercount. When contention
    outlasts ``max_retries`` the request is refused rather than let through.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        clock: Callable[[], float] = time.time,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self.store = store
        self._clock = clock
        self.max_retries = max_retries

    @staticmethod
    def key_for(scope: str, identifier: str) -> Key:
        return (RATE_LIMIT_PREFIX, scope, identifier or UNKNOWN_CLIENT)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _denied(policy: RateLimitPolicy, reset_at_ms: int, now_ms: int) -> RateLimitDecision:
        retry_after = max(1, math.ceil((reset_at_ms - now_ms) / 1000))
        return RateLimitDecision(
            allowed=False,
            limit=policy.max_requests,
            remaining=0,
            reset_at_ms=reset_at_ms,
            retry_after=retry_after,
        )

    async def hit(self, policy: RateLimitPolicy, identifier: str) -> RateLimitDecision:
        """Count one request against ``policy`` for ``identifier``."""

        key = self.key_for(policy.name, identifier)
        for _ in range(self.max_retries):
            now_ms = self._now_ms()
            entry = await self.store.get(key)
            record = entry.value if entry.exists else None
            if record is None or now_ms > record["resetAt"]:
                count = 1
                reset_at_ms = now_ms + policy.window_ms
            elif record["count"] >= policy.max_requests:
                return self._denied(policy, record["resetAt"], now_ms)
            else:
                count = record["count"] + 1
                reset_at_ms = record["resetAt"]
            ttl_ms = math.ceil((reset_at_ms - now_ms) / 1000) * 1000 + COUNTER_GRACE_MS
            committed = await (
                self.store.atomic()
                .check(key, entry.versionstamp)
                .set(key, {"count": count, "resetAt": reset_at_ms}, ttl_ms=ttl_ms)
                .commit()
            )
            if committed:
                return RateLimitDecision(
                    allowed=True,
                    limit=policy.max_requests,
                    remaining=policy.max_requests - count,
                    reset_at_ms=reset_at_ms,
                )
        logger.warning(
            "rate_limit_contention",
            policy=policy.name,
            client=identifier,
            attempts=self.max_retries,
        )
        now_ms = self._now_ms()
        return self._denied(policy, now_ms + 1000, now_ms)

    async def enforce(self, policy: RateLimitPolicy, identifier: str) -> RateLimitDecision:
        decision = await self.hit(policy, identifier)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                policy=policy.name,
                client=identifier,
                retry_after=decision.retry_after,
            )
            raise RateLimitExceededError(
                policy.message,
                retry_after=decision.retry_after,
                headers=decision.headers(),
            )
        return decision

    async def reset(self, policy: RateLimitPolicy, identifier: str) -> None:
        await self.store.delete(self.key_for(policy.name, identifier))
