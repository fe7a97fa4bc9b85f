from enum import StrEnum
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from turnstile.core.backoff import BackoffConfig
from turnstile.core.limiter import LimiterConfig
from turnstile.core.strategies.registry import StrategyType


class StoreType(StrEnum):
    MEMORY = "memory"
    REDIS = "redis"


class Settings(BaseSettings):
    app_name: str = "Turnstile API"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    store_backend: StoreType = StoreType.MEMORY
    redis_url: str | None = None
    redis_prefix: str = "turnstile"

    rate_limit_strategy: StrategyType = StrategyType.FIXED_WINDOW
    rate_limit_max: int = 5
    rate_limit_window_ms: int = 60_000
    rate_limit_whitelist: list[str] = []
    rate_limit_blacklist: list[str] = []
    rate_limit_fail_open: bool = True

    enable_exponential_backoff: bool = False
    base_delay_ms: float = 1000
    max_delay_ms: float = 60_000
    delay_multiplier: float = 2.0

    enable_throttling: bool = False
    throttle_max: int = 10
    throttle_window_ms: int = 1000

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def limiter_config(self) -> LimiterConfig:
        return LimiterConfig(
            window_ms=self.rate_limit_window_ms,
            limit=self.rate_limit_max,
            strategy=self.rate_limit_strategy,
            enable_exponential_backoff=self.enable_exponential_backoff,
            backoff=BackoffConfig(
                base_delay_ms=self.base_delay_ms,
                max_delay_ms=self.max_delay_ms,
                multiplier=self.delay_multiplier,
            ),
            enable_throttling=self.enable_throttling,
            throttle_max=self.throttle_max,
            throttle_window_ms=self.throttle_window_ms,
            fail_open=self.rate_limit_fail_open,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
