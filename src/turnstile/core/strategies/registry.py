from enum import StrEnum

from turnstile.core.errors import ConfigurationError
from turnstile.core.storage.base import CounterStore
from turnstile.core.strategies.base import RateLimitStrategy
from turnstile.core.strategies.fixed_window import FixedWindowStrategy
from turnstile.core.strategies.sliding_window import SlidingWindowStrategy
from turnstile.core.strategies.token_bucket import TokenBucketStrategy


class StrategyType(StrEnum):
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW_LOG = "sliding_window_log"
    SLIDING_WINDOW_COUNTER = "sliding_window_counter"
    TOKEN_BUCKET = "token_bucket"


STRATEGIES: dict[StrategyType, type[RateLimitStrategy]] = {
    StrategyType.FIXED_WINDOW: FixedWindowStrategy,
    StrategyType.SLIDING_WINDOW_LOG: SlidingWindowStrategy,
    StrategyType.SLIDING_WINDOW_COUNTER: SlidingWindowStrategy,
    StrategyType.TOKEN_BUCKET: TokenBucketStrategy,
}


def build_strategy(strategy: StrategyType | str, store: CounterStore) -> RateLimitStrategy:
    """Instantiate the strategy selected in configuration, bound to ``store``."""
    try:
        strategy_type = StrategyType(strategy)
    except ValueError as exc:
        raise ConfigurationError(f"unknown rate limit strategy: {strategy!r}") from exc
    return STRATEGIES[strategy_type](store)
