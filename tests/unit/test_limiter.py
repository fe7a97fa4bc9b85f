"""
Unit tests for the RateLimiter admission pipeline.

Test categories:
- Allow/deny lists and global bypasses
- End-to-end window scenario
- Throttling
- Exponential backoff (with a fake sleep) and cancellation
- Configuration and lifecycle
"""

import asyncio
import dataclasses
from unittest.mock import AsyncMock, Mock

import pytest

from turnstile.core.backoff import BackoffConfig
from turnstile.core.errors import ConfigurationError
from turnstile.core.limiter import LimiterConfig, RateLimiter
from turnstile.core.storage.memory import MemoryStore
from turnstile.core.strategies.base import DecisionReason, RateLimitStatus
from turnstile.core.strategies.registry import StrategyType
from turnstile.core.strategies.token_bucket import TokenBucketStrategy


@pytest.fixture
def clock() -> Mock:
    return Mock(return_value=10_000.0)


@pytest.fixture
def limiter(clock: Mock) -> RateLimiter:
    return RateLimiter(
        LimiterConfig(window_ms=60_000, limit=5),
        store=MemoryStore(60_000, clock=clock),
    )


# =============================================================================
# Lists and Bypasses
# =============================================================================


class TestShortCircuits:

    @pytest.mark.asyncio
    async def test_whitelisted_identifier_is_never_limited(self, limiter: RateLimiter) -> None:
        limiter.whitelist.add("::1")

        for _ in range(10):
            result = await limiter.check("::1")
            assert result.status == RateLimitStatus.ALLOWED
            assert result.reason == DecisionReason.ALLOWLISTED

        assert limiter.store.keys() == []

    @pytest.mark.asyncio
    async def test_blacklisted_identifier_is_denied_on_first_request(
        self, limiter: RateLimiter
    ) -> None:
        limiter.blacklist.add("198.51.100.9")

        result = await limiter.check("198.51.100.9")

        assert result.status == RateLimitStatus.DENIED
        assert result.reason == DecisionReason.DENYLISTED
        assert limiter.store.keys() == []

    @pytest.mark.asyncio
    async def test_whitelist_beats_blacklist(self, limiter: RateLimiter) -> None:
        limiter.whitelist.add("both")
        limiter.blacklist.add("both")

        assert (await limiter.check("both")).reason == DecisionReason.ALLOWLISTED

    @pytest.mark.asyncio
    async def test_zero_limit_admits_unboundedly(self) -> None:
        limiter = RateLimiter(LimiterConfig(limit=0))

        results = [await limiter.check("client") for _ in range(50)]

        assert all(r.is_allowed for r in results)
        assert {r.reason for r in results} == {DecisionReason.DISABLED}
        assert await limiter.store.get("client") == 0

    @pytest.mark.asyncio
    async def test_tiny_window_denies_every_request(self) -> None:
        limiter = RateLimiter(LimiterConfig(window_ms=1, limit=5))

        results = [await limiter.check("client") for _ in range(3)]

        assert [r.status for r in results] == [RateLimitStatus.DENIED] * 3
        assert {r.reason for r in results} == {DecisionReason.INSTANT_REJECT}

    @pytest.mark.asyncio
    async def test_lists_passed_at_construction(self) -> None:
        limiter = RateLimiter(whitelist=["a"], blacklist=["b"])

        assert (await limiter.check("a")).is_allowed
        assert not (await limiter.check("b")).is_allowed


# =============================================================================
# Window Scenario
# =============================================================================


class TestScenario:

    @pytest.mark.asyncio
    async def test_five_admitted_sixth_denied_then_new_window(
        self, limiter: RateLimiter, clock: Mock
    ) -> None:
        for i in range(5):
            result = await limiter.check("203.0.113.7")
            assert result.is_allowed, f"Request {i + 1} should be allowed"

        denied = await limiter.check("203.0.113.7")
        assert denied.status == RateLimitStatus.DENIED
        assert denied.retry_after == pytest.approx(60)

        clock.return_value += 60.001

        assert (await limiter.check("203.0.113.7")).is_allowed

    @pytest.mark.asyncio
    async def test_reset_restores_capacity(self, limiter: RateLimiter) -> None:
        for _ in range(6):
            await limiter.check("client")

        await limiter.reset("client")

        result = await limiter.check("client")
        assert result.is_allowed
        assert result.remaining == 4

    @pytest.mark.asyncio
    async def test_usage_headers(self, limiter: RateLimiter) -> None:
        await limiter.check("client")
        result = await limiter.check("client")

        assert result.headers() == {
            "X-RateLimit-Limit": "5",
            "X-RateLimit-Remaining": "3",
            "X-RateLimit-Reset": "60",
        }

    @pytest.mark.asyncio
    async def test_bypass_results_have_no_usage_headers(self, limiter: RateLimiter) -> None:
        limiter.whitelist.add("vip")

        assert (await limiter.check("vip")).headers() == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy", list(StrategyType))
    async def test_concurrent_requests_admit_exactly_limit(self, strategy: StrategyType) -> None:
        limiter = RateLimiter(LimiterConfig(limit=5, strategy=strategy))

        results = await asyncio.gather(*(limiter.check("burst") for _ in range(30)))

        assert sum(r.is_allowed for r in results) == 5
        assert sum(not r.is_allowed for r in results) == 25

    @pytest.mark.asyncio
    async def test_usage_follows_strategy(self) -> None:
        fixed = RateLimiter(LimiterConfig(limit=5))
        sliding = RateLimiter(LimiterConfig(limit=5, strategy=StrategyType.SLIDING_WINDOW_LOG))

        for limiter in (fixed, sliding):
            await limiter.check("client")
            await limiter.check("client")

        assert await fixed.usage("client") == 2
        assert await sliding.usage("client") == 2


# =============================================================================
# Throttling
# =============================================================================


class TestThrottling:

    @pytest.mark.asyncio
    async def test_burst_over_throttle_max_is_denied(self) -> None:
        limiter = RateLimiter(
            LimiterConfig(limit=100, enable_throttling=True, throttle_max=3, throttle_window_ms=1000)
        )

        results = [await limiter.check("client") for _ in range(4)]

        assert [r.is_allowed for r in results] == [True, True, True, False]
        assert results[-1].reason == DecisionReason.THROTTLED
        assert results[-1].limit == 3

    @pytest.mark.asyncio
    async def test_throttle_window_rolls_over(self) -> None:
        clock = Mock(return_value=0.0)
        limiter = RateLimiter(
            LimiterConfig(limit=100, enable_throttling=True, throttle_max=1, throttle_window_ms=1000),
            throttle_store=MemoryStore(1000, clock=clock),
        )

        assert (await limiter.check("client")).is_allowed
        assert not (await limiter.check("client")).is_allowed

        clock.return_value = 1.0

        assert (await limiter.check("client")).is_allowed

    @pytest.mark.asyncio
    async def test_throttle_window_comes_from_config(self) -> None:
        clock = Mock(return_value=0.0)
        limiter = RateLimiter(
            LimiterConfig(limit=100, enable_throttling=True, throttle_max=1, throttle_window_ms=1000),
            throttle_store=MemoryStore(60_000, clock=clock),
        )

        assert (await limiter.check("client")).is_allowed
        throttled = await limiter.check("client")
        assert throttled.reason == DecisionReason.THROTTLED
        assert throttled.retry_after == pytest.approx(1.0)

        clock.return_value = 1.0

        assert (await limiter.check("client")).is_allowed

    @pytest.mark.asyncio
    async def test_throttling_disabled_by_default(self) -> None:
        limiter = RateLimiter(LimiterConfig(limit=50))

        results = [await limiter.check("client") for _ in range(20)]

        assert all(r.is_allowed for r in results)
        assert limiter.throttle_store.keys() == []


# =============================================================================
# Backoff
# =============================================================================


class TestBackoff:

    @pytest.mark.asyncio
    async def test_over_limit_requests_are_delayed_then_admitted(self) -> None:
        sleep = AsyncMock()
        limiter = RateLimiter(
            LimiterConfig(
                limit=5,
                enable_exponential_backoff=True,
                backoff=BackoffConfig(base_delay_ms=1000, max_delay_ms=60_000, multiplier=2),
            ),
            sleep=sleep,
        )

        for _ in range(5):
            assert (await limiter.check("client")).status == RateLimitStatus.ALLOWED

        delayed = [await limiter.check("client") for _ in range(3)]

        assert [r.status for r in delayed] == [RateLimitStatus.DELAYED] * 3
        assert all(r.is_allowed for r in delayed)
        assert [r.delay_ms for r in delayed] == [1000, 2000, 3000]
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_delay_is_capped(self) -> None:
        sleep = AsyncMock()
        limiter = RateLimiter(
            LimiterConfig(
                limit=1,
                enable_exponential_backoff=True,
                backoff=BackoffConfig(base_delay_ms=1000, max_delay_ms=2500, multiplier=3),
            ),
            sleep=sleep,
        )

        results = [await limiter.check("client") for _ in range(6)]

        delays = [r.delay_ms for r in results[1:]]
        assert delays == sorted(delays)
        assert max(delays) == 2500

    @pytest.mark.asyncio
    async def test_token_bucket_denies_without_delay(self) -> None:
        """Token bucket never counts past the limit, so there is no excess."""
        sleep = AsyncMock()
        limiter = RateLimiter(
            LimiterConfig(limit=1, strategy=StrategyType.TOKEN_BUCKET, enable_exponential_backoff=True),
            sleep=sleep,
        )

        await limiter.check("client")
        result = await limiter.check("client")

        assert result.status == RateLimitStatus.DENIED
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancelled_delay_releases_slot(self) -> None:
        limiter = RateLimiter(
            LimiterConfig(
                limit=1,
                enable_exponential_backoff=True,
                backoff=BackoffConfig(base_delay_ms=10_000),
            )
        )
        await limiter.check("client")

        task = asyncio.create_task(limiter.check("client"))
        await asyncio.sleep(0.05)
        assert await limiter.store.get("client") == 2

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await limiter.store.get("client") == 1


# =============================================================================
# Configuration and Lifecycle
# =============================================================================


class TestConfiguration:

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"window_ms": 0},
            {"window_ms": -100},
            {"limit": -1},
            {"strategy": "leaky_bucket"},
            {"throttle_max": -1},
            {"throttle_max": 0},
            {"throttle_window_ms": 0},
        ],
    )
    def test_invalid_config_is_rejected(self, kwargs) -> None:
        with pytest.raises(ConfigurationError):
            LimiterConfig(**kwargs)

    def test_defaults(self) -> None:
        config = LimiterConfig()

        assert config.window_ms == 60_000
        assert config.limit == 5
        assert config.strategy == StrategyType.FIXED_WINDOW
        assert config.fail_open is True

    def test_strategy_string_is_coerced(self) -> None:
        assert LimiterConfig(strategy="token_bucket").strategy is StrategyType.TOKEN_BUCKET

    @pytest.mark.asyncio
    async def test_swapping_config_rebuilds_strategy(self, limiter: RateLimiter) -> None:
        limiter.config = dataclasses.replace(limiter.config, strategy=StrategyType.TOKEN_BUCKET)

        assert isinstance(limiter.strategy, TokenBucketStrategy)
        assert limiter.strategy.store is limiter.store

    @pytest.mark.asyncio
    async def test_runtime_limit_change(self, limiter: RateLimiter) -> None:
        for _ in range(6):
            await limiter.check("client")

        limiter.config = dataclasses.replace(limiter.config, limit=0)

        assert (await limiter.check("client")).reason == DecisionReason.DISABLED

    @pytest.mark.asyncio
    async def test_runtime_window_change_applies_to_next_request(
        self, limiter: RateLimiter, clock: Mock
    ) -> None:
        limiter.config = dataclasses.replace(limiter.config, window_ms=1000, limit=1)

        assert (await limiter.check("client")).is_allowed
        denied = await limiter.check("client")
        assert not denied.is_allowed
        assert denied.headers()["X-RateLimit-Reset"] == "1"

        clock.return_value += 2

        assert (await limiter.check("client")).is_allowed

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy", list(StrategyType))
    async def test_config_window_wins_over_store_default(
        self, clock: Mock, strategy: StrategyType
    ) -> None:
        limiter = RateLimiter(
            LimiterConfig(window_ms=1000, limit=1, strategy=strategy),
            store=MemoryStore(60_000, clock=clock),
        )

        assert (await limiter.check("client")).is_allowed
        assert not (await limiter.check("client")).is_allowed

        clock.return_value += 2

        assert await limiter.usage("client") == 0
        assert (await limiter.check("client")).is_allowed

    @pytest.mark.asyncio
    async def test_close_closes_both_stores_once(self) -> None:
        store = MemoryStore(60_000)
        throttle_store = MemoryStore(1000)
        store.close = AsyncMock(wraps=store.close)

        async with RateLimiter(store=store, throttle_store=throttle_store) as limiter:
            pass
        await limiter.close()

        store.close.assert_awaited_once()
        assert throttle_store.closed
