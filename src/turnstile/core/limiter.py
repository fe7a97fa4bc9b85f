"""
Admission pipeline.

RateLimiter composes the allow/deny lists, the global bypass, the
instant-reject edge case, the optional burst throttle, the selected strategy
and the optional backoff delay into a single ``check`` call. Stages run in a
fixed order and the first one that decides wins:

1. identifier in whitelist  -> ALLOWED
2. identifier in blacklist  -> DENIED
3. limit == 0               -> ALLOWED
4. window_ms <= 50          -> DENIED
5. throttle burst exceeded  -> DENIED
6. strategy                 -> ALLOWED / DENIED / DELAYED (backoff)

Stages 1-4 never touch a store.
"""

import asyncio
import dataclasses
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable

import structlog

from turnstile.core.backoff import BackoffConfig, compute_delay_ms
from turnstile.core.errors import ConfigurationError, StoreUnavailable
from turnstile.core.storage.base import CounterStore
from turnstile.core.storage.memory import MemoryStore
from turnstile.core.strategies.base import (
    DecisionReason,
    RateLimitResult,
    RateLimitStatus,
    WindowConfig,
    preflight,
)
from turnstile.core.strategies.registry import StrategyType, build_strategy

logger = structlog.get_logger()


@dataclass(frozen=True)
class LimiterConfig:
    """
    Everything the admission pipeline needs besides the stores.

    Raises:
        ConfigurationError: On construction, for any invalid value.
    """

    window_ms: int = 60_000
    limit: int = 5
    strategy: StrategyType = StrategyType.FIXED_WINDOW
    enable_exponential_backoff: bool = False
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    enable_throttling: bool = False
    throttle_max: int = 10
    throttle_window_ms: int = 1000
    fail_open: bool = True

    def __post_init__(self) -> None:
        # Validates window_ms and limit
        WindowConfig(window_ms=self.window_ms, limit=self.limit)

        try:
            object.__setattr__(self, "strategy", StrategyType(self.strategy))
        except ValueError as exc:
            raise ConfigurationError(f"unknown rate limit strategy: {self.strategy!r}") from exc

        if self.throttle_max < 1:
            raise ConfigurationError("throttle_max must be >= 1")
        if self.throttle_window_ms <= 0:
            raise ConfigurationError("throttle_window_ms must be > 0")

    @property
    def window(self) -> WindowConfig:
        return WindowConfig(window_ms=self.window_ms, limit=self.limit)


class RateLimiter:
    """
    Decides whether a request identified by an opaque string may proceed.

    The allow and deny lists are plain mutable sets and may be edited at any
    time. The config can be swapped with ``limiter.config = ...``; the
    strategy is rebuilt when its type changes. Every store call carries the
    current ``window_ms``, so a new window applies from the next request on.
    A store's own ``window_ms`` is only a default for callers that omit it.

    Example:
        >>> async with RateLimiter(LimiterConfig(limit=5)) as limiter:
        ...     result = await limiter.check("203.0.113.7")
        ...     result.is_allowed
        True
    """

    def __init__(
        self,
        config: LimiterConfig | None = None,
        *,
        store: CounterStore | None = None,
        throttle_store: CounterStore | None = None,
        whitelist: Iterable[str] | None = None,
        blacklist: Iterable[str] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config or LimiterConfig()
        self.store = store or MemoryStore(window_ms=self._config.window_ms)
        self.throttle_store = throttle_store or MemoryStore(
            window_ms=self._config.throttle_window_ms
        )
        self.strategy = build_strategy(self._config.strategy, self.store)
        self.whitelist: set[str] = set(whitelist or ())
        self.blacklist: set[str] = set(blacklist or ())
        self._sleep = sleep
        self._closed = False

    @property
    def config(self) -> LimiterConfig:
        return self._config

    @config.setter
    def config(self, value: LimiterConfig) -> None:
        if value.strategy != self._config.strategy:
            self.strategy = build_strategy(value.strategy, self.store)
        self._config = value

    async def check(self, identifier: str) -> RateLimitResult:
        """
        Run the admission pipeline for one request.

        Store failures never propagate: depending on ``fail_open`` the
        request is admitted or denied with reason STORE_UNAVAILABLE. A
        backoff delay is awaited here, so cancelling the caller cancels it.
        """
        config = self._config
        window = config.window

        if identifier in self.whitelist:
            return self._bypass(identifier, RateLimitStatus.ALLOWED, DecisionReason.ALLOWLISTED)
        if identifier in self.blacklist:
            return self._bypass(identifier, RateLimitStatus.DENIED, DecisionReason.DENYLISTED)

        early = preflight(window)
        if early is not None:
            self._log(identifier, early)
            return early

        try:
            if config.enable_throttling:
                throttled = await self._check_throttle(identifier, config)
                if throttled is not None:
                    self._log(identifier, throttled)
                    return throttled

            result = await self.strategy.check(identifier, window)
        except StoreUnavailable as exc:
            return self._store_unavailable(identifier, window, exc)

        if not result.is_allowed and config.enable_exponential_backoff:
            delay_ms = compute_delay_ms(result.count, window.limit, config.backoff)
            if delay_ms > 0:
                result = await self._delay(identifier, result, delay_ms)

        self._log(identifier, result)
        return result

    async def _check_throttle(
        self, identifier: str, config: LimiterConfig
    ) -> RateLimitResult | None:
        count = await self.throttle_store.increment(
            identifier, window_ms=config.throttle_window_ms
        )
        if count <= config.throttle_max:
            return None

        reset_after = await self.throttle_store.reset_after(
            identifier, config.throttle_window_ms
        )
        return RateLimitResult(
            status=RateLimitStatus.DENIED,
            limit=config.throttle_max,
            remaining=0,
            reset_after=reset_after,
            count=count,
            reason=DecisionReason.THROTTLED,
            retry_after=reset_after,
        )

    async def _delay(
        self, identifier: str, result: RateLimitResult, delay_ms: float
    ) -> RateLimitResult:
        logger.info("rate_limit_backoff", identifier=identifier, delay_ms=delay_ms, count=result.count)
        try:
            await self._sleep(delay_ms / 1000)
        except asyncio.CancelledError:
            # The request never proceeded; give its slot back.
            try:
                await self.store.decrement(identifier)
            except StoreUnavailable as exc:
                logger.warning("backoff_release_failed", identifier=identifier, error=str(exc))
            raise

        return dataclasses.replace(
            result,
            status=RateLimitStatus.DELAYED,
            delay_ms=delay_ms,
            retry_after=None,
        )

    def _bypass(
        self, identifier: str, status: RateLimitStatus, reason: DecisionReason
    ) -> RateLimitResult:
        result = RateLimitResult(
            status=status,
            limit=self._config.limit,
            remaining=self._config.limit,
            reset_after=0.0,
            reason=reason,
        )
        self._log(identifier, result)
        return result

    def _store_unavailable(
        self, identifier: str, window: WindowConfig, exc: StoreUnavailable
    ) -> RateLimitResult:
        window_seconds = window.window_ms / 1000

        if self._config.fail_open:
            logger.warning(
                "store_unavailable",
                identifier=identifier,
                operation=exc.operation,
                error=str(exc),
                fail_open=True,
            )
            return RateLimitResult(
                status=RateLimitStatus.ALLOWED,
                limit=window.limit,
                remaining=window.limit,
                reset_after=window_seconds,
                reason=DecisionReason.STORE_UNAVAILABLE,
            )

        logger.error(
            "store_unavailable",
            identifier=identifier,
            operation=exc.operation,
            error=str(exc),
            fail_open=False,
        )
        return RateLimitResult(
            status=RateLimitStatus.DENIED,
            limit=window.limit,
            remaining=0,
            reset_after=window_seconds,
            reason=DecisionReason.STORE_UNAVAILABLE,
            retry_after=window_seconds,
        )

    def _log(self, identifier: str, result: RateLimitResult) -> None:
        if result.is_allowed:
            logger.info(
                "rate_limit_check",
                identifier=identifier,
                status=result.status,
                reason=result.reason,
                remaining=result.remaining,
                limit=result.limit,
            )
        else:
            logger.warning(
                "rate_limit_exceeded",
                identifier=identifier,
                status=result.status,
                reason=result.reason,
                count=result.count,
                limit=result.limit,
                retry_after=result.retry_after,
            )

    async def usage(self, identifier: str) -> int:
        """Current usage of ``identifier`` as seen by the selected strategy."""
        if self._config.strategy in (
            StrategyType.SLIDING_WINDOW_LOG,
            StrategyType.SLIDING_WINDOW_COUNTER,
        ):
            return len(
                await self.store.get_timestamps(identifier, self._config.window_ms)
            )
        return await self.store.get(identifier)

    async def reset(self, identifier: str) -> None:
        """Forget all usage of ``identifier`` (primary and throttle state)."""
        await self.store.reset_key(identifier)
        await self.throttle_store.reset_key(identifier)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.store.close()
        await self.throttle_store.close()

    async def __aenter__(self) -> "RateLimiter":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
