"""
Abstract base classes for rate limiting strategies.

This module defines the contract that all rate limiting algorithms must follow.
Using the Strategy Pattern allows swapping algorithms at configuration time
without changing the client code.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum

from turnstile.core.errors import ConfigurationError
from turnstile.core.storage.base import CounterStore

# Windows this short cannot be enforced meaningfully; every request is denied.
INSTANT_REJECT_THRESHOLD_MS = 50


class RateLimitStatus(StrEnum):
    """
    Possible outcomes of a rate limit check.

    ALLOWED: Request is within limits and should proceed.
    DENIED: Request exceeds limits and should be rejected (HTTP 429).
    DELAYED: Request was over the limit, has been held back by the backoff
        delay and may now proceed.
    """

    ALLOWED = "allowed"
    DENIED = "denied"
    DELAYED = "delayed"


class DecisionReason(StrEnum):
    """Which stage of the admission pipeline produced the decision."""

    ALLOWLISTED = "allowlisted"
    DENYLISTED = "denylisted"
    DISABLED = "disabled"
    INSTANT_REJECT = "instant_reject"
    THROTTLED = "throttled"
    STRATEGY = "strategy"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class WindowConfig:
    """
    Limit shared by all strategies.

    Attributes:
        window_ms: Window length in milliseconds (> 0).
        limit: Requests allowed per window. 0 disables limiting.
    """

    window_ms: int = 60_000
    limit: int = 5

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            raise ConfigurationError(f"window_ms must be > 0, got {self.window_ms}")
        if self.limit < 0:
            raise ConfigurationError(f"limit must be >= 0, got {self.limit}")

    @property
    def disabled(self) -> bool:
        return self.limit == 0

    @property
    def instant_reject(self) -> bool:
        return self.window_ms <= INSTANT_REJECT_THRESHOLD_MS


@dataclass(frozen=True)
class RateLimitResult:
    """
    Immutable response from a rate limit check.

    This object contains all information needed to:
    1. Decide whether to allow/deny the request
    2. Populate rate limit headers in the HTTP response
    3. Tell the client when they can retry (if denied)

    Attributes:
        status: ALLOWED, DENIED or DELAYED.
        limit: Maximum number of requests allowed in the window.
        remaining: Number of requests remaining in current window.
        reset_after: Seconds until the identifier's usage resets.
        count: Usage observed by the strategy (may exceed limit).
        reason: Pipeline stage that produced the decision.
        retry_after: Seconds until the client can retry (only if denied).
        delay_ms: Backoff delay applied before admitting (only if delayed).

    Example headers this maps to:
        X-RateLimit-Limit: {limit}
        X-RateLimit-Remaining: {remaining}
        X-RateLimit-Reset: {ceil(reset_after)}
        Retry-After: {retry_after}  (only on 429 responses)
    """

    status: RateLimitStatus
    limit: int
    remaining: int
    reset_after: float
    count: int = 0
    reason: DecisionReason = DecisionReason.STRATEGY
    retry_after: float | None = None
    delay_ms: float = 0.0

    @property
    def is_allowed(self) -> bool:
        """Convenience property to check if request should proceed."""
        return self.status != RateLimitStatus.DENIED

    @property
    def has_usage(self) -> bool:
        """True when the result reflects counter state (not a bypass)."""
        return self.reason in (DecisionReason.STRATEGY, DecisionReason.THROTTLED)

    def headers(self) -> dict[str, str]:
        if not self.has_usage:
            return {}
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_after)),
        }


def preflight(window: WindowConfig) -> RateLimitResult | None:
    """
    Apply the edge policy shared by every strategy.

    Returns a decision without touching any store, or None when the strategy
    has to run.
    """
    if window.disabled:
        return RateLimitResult(
            status=RateLimitStatus.ALLOWED,
            limit=0,
            remaining=0,
            reset_after=0.0,
            reason=DecisionReason.DISABLED,
        )
    if window.instant_reject:
        return RateLimitResult(
            status=RateLimitStatus.DENIED,
            limit=window.limit,
            remaining=0,
            reset_after=window.window_ms / 1000,
            reason=DecisionReason.INSTANT_REJECT,
            retry_after=window.window_ms / 1000,
        )
    return None


class RateLimitStrategy(ABC):
    """
    Abstract base class for rate limiting algorithms.

    All rate limiting strategies implement `_evaluate`. The public `check`
    applies the shared edge policy first. This allows different algorithms
    (fixed window, sliding window, token bucket) to be used interchangeably.
    """

    name: str = "abstract"

    def __init__(self, store: CounterStore) -> None:
        self.store = store

    async def check(self, key: str, window: WindowConfig) -> RateLimitResult:
        """
        Check if a request should be allowed.

        This method is called for every incoming request that needs
        rate limiting. It must be fast and handle concurrent calls.

        Args:
            key: Unique identifier for the rate limit bucket.
                 Examples: "192.168.1.1", "user:123"
            window: Window length and limit to enforce.

        Returns:
            RateLimitResult with the decision and metadata.

        Raises:
            StoreUnavailable: The store could not be reached.
        """
        early = preflight(window)
        if early is not None:
            return early
        return await self._evaluate(key, window)

    @abstractmethod
    async def _evaluate(self, key: str, window: WindowConfig) -> RateLimitResult:
        pass

    async def _build_result(
        self, key: str, window: WindowConfig, admitted: bool, count: int
    ) -> RateLimitResult:
        reset_after = await self.store.reset_after(key, window.window_ms)
        return RateLimitResult(
            status=RateLimitStatus.ALLOWED if admitted else RateLimitStatus.DENIED,
            limit=window.limit,
            remaining=max(0, window.limit - count),
            reset_after=reset_after,
            count=count,
            retry_after=None if admitted else reset_after,
        )

    async def reset(self, key: str) -> None:
        """
        Reset rate limit state for a specific key.

        Args:
            key: The rate limit key to reset.
        """
        await self.store.reset_key(key)
