"""
Backoff delay for callers that are over the limit.

The delay grows with how far the caller is over the limit, not with elapsed
time: the k-th request past the limit waits ``base_delay_ms * k ** (multiplier - 1)``
milliseconds, capped at ``max_delay_ms``.
"""

from dataclasses import dataclass

from turnstile.core.errors import ConfigurationError


@dataclass(frozen=True)
class BackoffConfig:
    base_delay_ms: float = 1000
    max_delay_ms: float = 60_000
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.base_delay_ms < 0:
            raise ConfigurationError("base_delay_ms must be >= 0")
        if self.max_delay_ms < 0:
            raise ConfigurationError("max_delay_ms must be >= 0")
        if self.multiplier < 1:
            raise ConfigurationError("multiplier must be >= 1")


def compute_delay_ms(count: int, limit: int, config: BackoffConfig) -> float:
    """
    Delay in milliseconds for a caller at ``count`` against ``limit``.

    Returns 0 when the caller is not over the limit.

    Example:
        >>> compute_delay_ms(7, 5, BackoffConfig(base_delay_ms=1000, multiplier=2))
        2000.0
    """
    excess = count - limit
    if excess <= 0:
        return 0.0

    try:
        delay = config.base_delay_ms * excess ** (config.multiplier - 1)
    except OverflowError:
        return float(config.max_delay_ms)
    return float(min(max(delay, 0.0), config.max_delay_ms))
