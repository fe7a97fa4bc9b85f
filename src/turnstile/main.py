from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from redis.asyncio import from_url
import structlog

from turnstile.config import Settings, StoreType, get_settings
from turnstile.api.middleware import ExceededHandler, KeyFunc, RateLimitMiddleware, client_address
from turnstile.api.routes import router
from turnstile.core.errors import ConfigurationError
from turnstile.core.limiter import RateLimiter
from turnstile.core.logging import setup_logging
from turnstile.core.storage.memory import MemoryStore
from turnstile.core.storage.redis import RedisStore

logger = structlog.get_logger()


def create_limiter(settings: Settings) -> RateLimiter:
    """Build the stores and the RateLimiter described by ``settings``."""
    config = settings.limiter_config()

    if settings.store_backend == StoreType.REDIS:
        if not settings.redis_url:
            raise ConfigurationError("redis_url is required when store_backend is 'redis'")

        redis_client = from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True
        )
        store = RedisStore(redis_client, config.window_ms, prefix=settings.redis_prefix)
        # Shares the client; the primary store closes it
        throttle_store = RedisStore(
            redis_client,
            config.throttle_window_ms,
            prefix=f"{settings.redis_prefix}-throttle",
            close_client=False,
        )
    else:
        store = MemoryStore(config.window_ms)
        throttle_store = MemoryStore(config.throttle_window_ms)

    return RateLimiter(
        config,
        store=store,
        throttle_store=throttle_store,
        whitelist=settings.rate_limit_whitelist,
        blacklist=settings.rate_limit_blacklist,
    )


def create_app(
    settings: Settings | None = None,
    limiter: RateLimiter | None = None,
    key_func: KeyFunc = client_address,
    on_exceeded: ExceededHandler | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    An injected ``limiter`` is used as is and left open on shutdown (the
    caller owns it). Otherwise one is built from settings at startup and
    closed on shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifecycle manager.
        Handles store startup and graceful shutdown.
        """
        owned = limiter is None
        if owned:
            app.state.limiter = create_limiter(settings)

        logger.info(
            "turnstile_started",
            strategy=app.state.limiter.config.strategy.value,
            store=settings.store_backend.value,
        )
        yield

        if owned:
            await app.state.limiter.close()
        logger.info("turnstile_stopped")

    setup_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        lifespan=lifespan
    )
    if limiter is not None:
        app.state.limiter = limiter

    app.add_middleware(RateLimitMiddleware, key_func=key_func, on_exceeded=on_exceeded)
    app.include_router(router)
    return app


app = create_app()
