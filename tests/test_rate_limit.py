"""Tests for fixed-window rate limiting."""

import pytest

from sessionguard.service.errors import RateLimitExceededError
from sessionguard.service.rate_limit import (
    PRESET_POLICIES,
    RateLimiter,
    RateLimitPolicy,
    get_policy,
    resolve_client_identifier,
)
from sessionguard.storage.memory import MemoryKVStore

POLICY = RateLimitPolicy("test", max_requests=3, window_ms=60_000, message="slow down")


class ContendedStore(MemoryKVStore):
    """Store whose atomic commits always lose the race."""

    def _commit(self, op):
        return False


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(store, clock=clock)


class TestHit:
    async def test_allows_exactly_max_requests(self, limiter):
        decisions = [await limiter.hit(POLICY, "1.2.3.4") for _ in range(3)]
        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]

    async def test_denies_after_max(self, limiter, clock):
        for _ in range(3):
            await limiter.hit(POLICY, "1.2.3.4")
        clock.advance(10)
        decision = await limiter.hit(POLICY, "1.2.3.4")
        assert not decision.allowed
        assert decision.remaining == 0
        assert decision.retry_after == 50
        assert decision.kind is not None

    async def test_denied_requests_do_not_extend_window(self, limiter, clock):
        first = await limiter.hit(POLICY, "c")
        for _ in range(5):
            await limiter.hit(POLICY, "c")
        denied = await limiter.hit(POLICY, "c")
        assert denied.reset_at_ms == first.reset_at_ms

    async def test_window_resets(self, limiter, clock):
        for _ in range(4):
            await limiter.hit(POLICY, "c")
        clock.advance(61)
        decision = await limiter.hit(POLICY, "c")
        assert decision.allowed
        assert decision.remaining == 2

    async def test_full_window_still_denies_at_reset_instant(self, limiter, clock):
        policy = RateLimitPolicy("edge", max_requests=2, window_ms=10_000, message="wait")
        await limiter.hit(policy, "c")
        await limiter.hit(policy, "c")
        clock.advance(10.0)
        decision = await limiter.hit(policy, "c")
        assert not decision.allowed
        assert decision.retry_after == 1
        clock.advance(0.01)
        assert (await limiter.hit(policy, "c")).allowed

    async def test_clients_are_counted_separately(self, limiter):
        for _ in range(3):
            await limiter.hit(POLICY, "a")
        assert (await limiter.hit(POLICY, "b")).allowed

    async def test_policies_are_counted_separately(self, limiter):
        other = RateLimitPolicy("other", max_requests=1, window_ms=60_000)
        for _ in range(3):
            await limiter.hit(POLICY, "a")
        assert (await limiter.hit(other, "a")).allowed

    async def test_counter_record_format(self, limiter, store, clock):
        await limiter.hit(POLICY, "a")
        await limiter.hit(POLICY, "a")
        record = (await store.get(("ratelimit", "test", "a"))).value
        assert record == {"count": 2, "resetAt": int(clock.now * 1000) + 60_000}

    async def test_reset_clears_counter(self, limiter):
        for _ in range(3):
            await limiter.hit(POLICY, "a")
        await limiter.reset(POLICY, "a")
        assert (await limiter.hit(POLICY, "a")).remaining == 2

    async def test_contention_fails_closed(self, clock):
        limiter = RateLimiter(ContendedStore(clock=clock), clock=clock, max_retries=2)
        decision = await limiter.hit(POLICY, "a")
        assert not decision.allowed
        assert decision.retry_after >= 1


class TestDecisionHeaders:
    async def test_allowed_headers(self, limiter):
        headers = (await limiter.hit(POLICY, "a")).headers()
        assert headers == {
            "X-RateLimit-Limit": "3",
            "X-RateLimit-Remaining": "2",
            "X-RateLimit-Reset": "2023-11-14T22:14:20.000Z",
        }

    async def test_denied_headers_include_retry_after(self, limiter):
        for _ in range(3):
            await limiter.hit(POLICY, "a")
        headers = (await limiter.hit(POLICY, "a")).headers()
        assert headers["X-RateLimit-Remaining"] == "0"
        assert headers["Retry-After"] == "60"


class TestEnforce:
    async def test_raises_with_policy_message(self, limiter):
        for _ in range(3):
            await limiter.enforce(POLICY, "a")
        with pytest.raises(RateLimitExceededError) as excinfo:
            await limiter.enforce(POLICY, "a")
        error = excinfo.value
        assert error.status_code == 429
        assert error.message == "slow down"
        assert error.retry_after == 60
        assert error.headers["Retry-After"] == "60"


class TestPolicies:
    @pytest.mark.parametrize(
        "name,max_requests,window_ms",
        [
            ("auth", 5, 15 * 60 * 1000),
            ("signup", 3, 60 * 60 * 1000),
            ("api", 100, 15 * 60 * 1000),
            ("email_verification", 3, 60 * 60 * 1000),
            ("password_reset", 3, 60 * 60 * 1000),
        ],
    )
    def test_presets(self, name, max_requests, window_ms):
        policy = get_policy(name)
        assert (policy.max_requests, policy.window_ms) == (max_requests, window_ms)
        assert policy.message

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            get_policy("nope")

    def test_preset_names(self):
        assert set(PRESET_POLICIES) == {
            "auth",
            "signup",
            "api",
            "email_verification",
            "password_reset",
        }


class TestClientIdentifier:
    def test_first_forwarded_hop(self):
        headers = {"x-forwarded-for": " 203.0.113.7 , 10.0.0.1", "x-real-ip": "10.0.0.2"}
        assert resolve_client_identifier(headers) == "203.0.113.7"

    def test_real_ip_fallback(self):
        assert resolve_client_identifier({"x-real-ip": "10.0.0.2"}) == "10.0.0.2"

    def test_empty_forwarded_falls_through(self):
        headers = {"x-forwarded-for": " , 10.0.0.1", "x-real-ip": "10.0.0.2"}
        assert resolve_client_identifier(headers) == "10.0.0.2"

    def test_unknown(self):
        assert resolve_client_identifier({}) == "unknown"
