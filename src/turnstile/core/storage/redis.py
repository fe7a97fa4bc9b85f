import time
from contextlib import contextmanager
from typing import Callable, Iterator

import structlog
from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from turnstile.core.errors import ConfigurationError, StoreUnavailable
from turnstile.core.storage.base import CounterStore

logger = structlog.get_logger()


class RedisStore(CounterStore):
    """
    Redis-backed counter store.

    Each identifier gets an independent rolling window through native key
    TTLs, so no global reset timer is needed. All read-modify-write paths run
    as Lua scripts and are atomic across processes.

    Keys:
        {prefix}:cnt:{key}   counter (string, PEXPIRE window_ms)
        {prefix}:log:{key}   timestamp log (sorted set, score = ms)
        {prefix}:seq:{key}   member sequence for the log
    """

    # Set the TTL only when the key has none, so the window starts at the
    # first hit and is not extended by later hits.
    _INCREMENT_SCRIPT = """
    local key = KEYS[1]
    local amount = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])

    local count = redis.call('INCRBY', key, amount)
    if redis.call('PTTL', key) < 0 then
        redis.call('PEXPIRE', key, window_ms)
    end
    return count
    """

    _INCREMENT_IF_BELOW_SCRIPT = """
    local key = KEYS[1]
    local limit = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])

    local count = tonumber(redis.call('GET', key) or '0')
    if count >= limit then
        return {0, count}
    end

    count = redis.call('INCR', key)
    if redis.call('PTTL', key) < 0 then
        redis.call('PEXPIRE', key, window_ms)
    end
    return {1, count}
    """

    _DECREMENT_SCRIPT = """
    local key = KEYS[1]
    local count = tonumber(redis.call('GET', key) or '0')
    if count > 0 then
        return redis.call('DECR', key)
    end
    return count
    """

    # 1. Remove timestamps at or before (now - window)
    # 2. Count remaining timestamps (current usage)
    # 3. If count < limit: add now with a unique member, allow
    # 4. Else: deny
    _RECORD_TIMESTAMP_SCRIPT = """
    local key = KEYS[1]
    local seq_key = KEYS[2]
    local limit = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, '-inf', now_ms - window_ms)
    local current = redis.call('ZCARD', key)
    if current >= limit then
        return {0, current}
    end

    local seq = redis.call('INCR', seq_key)
    redis.call('PEXPIRE', seq_key, window_ms)
    redis.call('ZADD', key, now_ms, tostring(now_ms) .. ':' .. tostring(seq))
    redis.call('PEXPIRE', key, window_ms)
    return {1, current + 1}
    """

    def __init__(
        self,
        redis: Redis,
        window_ms: int = 60_000,
        *,
        prefix: str = "turnstile",
        clock: Callable[[], float] = time.time,
        close_client: bool = True,
    ) -> None:
        if window_ms <= 0:
            raise ConfigurationError("window_ms must be > 0")
        super().__init__(window_ms)

        self._redis = redis
        self._prefix = prefix
        self._clock = clock
        self._close_client = close_client

        self._increment = redis.register_script(self._INCREMENT_SCRIPT)
        self._increment_if_below = redis.register_script(self._INCREMENT_IF_BELOW_SCRIPT)
        self._decrement = redis.register_script(self._DECREMENT_SCRIPT)
        self._record_timestamp = redis.register_script(self._RECORD_TIMESTAMP_SCRIPT)

    @classmethod
    def from_url(cls, url: str, window_ms: int = 60_000, **kwargs) -> "RedisStore":
        client = from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, window_ms, **kwargs)

    def _counter_key(self, key: str) -> str:
        return f"{self._prefix}:cnt:{key}"

    def _log_key(self, key: str) -> str:
        return f"{self._prefix}:log:{key}"

    def _seq_key(self, key: str) -> str:
        return f"{self._prefix}:seq:{key}"

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        self._ensure_open(operation)
        try:
            yield
        except RedisError as exc:
            logger.warning("redis_store_error", operation=operation, error=str(exc))
            raise StoreUnavailable(operation, str(exc)) from exc

    # =========================================================================
    # Counter Operations
    # =========================================================================

    async def increment(
        self, key: str, amount: int = 1, window_ms: int | None = None
    ) -> int:
        with self._guard("increment"):
            result = await self._increment(
                keys=[self._counter_key(key)],
                args=[amount, self._window_ms(window_ms)],
            )
        return int(result)

    async def increment_if_below(
        self, key: str, limit: int, window_ms: int | None = None
    ) -> tuple[bool, int]:
        with self._guard("increment_if_below"):
            result = await self._increment_if_below(
                keys=[self._counter_key(key)],
                args=[limit, self._window_ms(window_ms)],
            )
        return bool(int(result[0])), int(result[1])

    async def get(self, key: str) -> int:
        with self._guard("get"):
            value = await self._redis.get(self._counter_key(key))
        return int(value) if value else 0

    async def decrement(self, key: str) -> None:
        with self._guard("decrement"):
            await self._decrement(keys=[self._counter_key(key)])

    # =========================================================================
    # Timestamp Log Operations
    # =========================================================================

    async def _live_entries(
        self, key: str, now_ms: float, window_ms: int, operation: str, **kwargs
    ) -> list[tuple[str, float]]:
        # "(" makes the lower bound exclusive
        with self._guard(operation):
            return await self._redis.zrangebyscore(
                self._log_key(key),
                f"({now_ms - window_ms}",
                "+inf",
                withscores=True,
                **kwargs,
            )

    async def get_timestamps(self, key: str, window_ms: int | None = None) -> list[float]:
        now_ms = self._clock() * 1000
        entries = await self._live_entries(
            key, now_ms, self._window_ms(window_ms), "get_timestamps"
        )
        return [float(score) / 1000 for _, score in entries]

    async def record_timestamp(
        self, key: str, limit: int, window_ms: int | None = None
    ) -> tuple[bool, int]:
        now_ms = self._clock() * 1000
        with self._guard("record_timestamp"):
            result = await self._record_timestamp(
                keys=[self._log_key(key), self._seq_key(key)],
                args=[limit, self._window_ms(window_ms), now_ms],
            )
        return bool(int(result[0])), int(result[1])

    async def next_slot_after(self, key: str, window_ms: int | None = None) -> float:
        now_ms = self._clock() * 1000
        window_ms = self._window_ms(window_ms)
        oldest = await self._live_entries(
            key, now_ms, window_ms, "next_slot_after", start=0, num=1
        )
        if not oldest:
            return 0.0
        return max(0.0, (float(oldest[0][1]) + window_ms - now_ms) / 1000)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def reset_after(self, key: str, window_ms: int | None = None) -> float:
        with self._guard("reset_after"):
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.pttl(self._counter_key(key))
                pipe.pttl(self._log_key(key))
                counter_ttl, log_ttl = await pipe.execute()

        for ttl in (counter_ttl, log_ttl):
            if ttl is not None and int(ttl) >= 0:
                return int(ttl) / 1000
        return self._window_ms(window_ms) / 1000

    async def reset_key(self, key: str) -> None:
        with self._guard("reset_key"):
            await self._redis.delete(
                self._counter_key(key), self._log_key(key), self._seq_key(key)
            )

    async def reset_all(self) -> None:
        # Only this store's namespace, never the whole database
        with self._guard("reset_all"):
            batch = []
            async for redis_key in self._redis.scan_iter(match=f"{self._prefix}:*"):
                batch.append(redis_key)
                if len(batch) >= 500:
                    await self._redis.delete(*batch)
                    batch = []
            if batch:
                await self._redis.delete(*batch)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._close_client:
            await self._redis.aclose()
