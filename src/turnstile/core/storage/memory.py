"""
In-memory counter store for single-process deployments and tests.

This store keeps all state in Python dictionaries owned by the instance:
- Fast: No network calls, no serialization
- Simple: No external dependencies
- Isolated: Each instance is independent

Expired state is dropped on access and by a periodic sweep, so identifiers
that never come back do not accumulate.

WARNING: counters are per process. Running several workers multiplies the
effective limit; use RedisStore when limits must be shared.
"""

import asyncio
import time
import weakref
from dataclasses import dataclass
from typing import Callable

import structlog

from turnstile.core.errors import ConfigurationError
from turnstile.core.storage.base import CounterStore

logger = structlog.get_logger()


@dataclass
class _Counter:
    count: int
    expires_at: float


@dataclass
class _Log:
    timestamps: list[float]
    # Window of the last write, in seconds; the log is dead once its newest
    # entry is older than this.
    window: float

    @property
    def expires_at(self) -> float:
        return self.timestamps[-1] + self.window if self.timestamps else 0.0


class MemoryStore(CounterStore):
    """
    In-memory implementation of CounterStore.

    Two window modes are supported:

    - Per-key (default): every identifier's window starts at its own first
      hit and expiry is checked on access.
    - Shared (``shared_window=True``): a background task clears every
      identifier each ``window_ms`` and all identifiers roll over together.
      The task starts with the store, so the store must be created inside a
      running event loop, and it is cancelled by ``close()``.

    Every ``sweep_every`` writes, all expired counters and logs are removed.

    Synchronization is per key: each identifier gets its own asyncio.Lock,
    so a slow caller never blocks unrelated identifiers.

    Example:
        >>> store = MemoryStore(window_ms=60_000)
        >>> await store.increment("203.0.113.7")
        1
        >>> await store.get("203.0.113.7")
        1
    """

    def __init__(
        self,
        window_ms: int = 60_000,
        *,
        shared_window: bool = False,
        sweep_every: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window_ms <= 0:
            raise ConfigurationError("window_ms must be > 0")
        if sweep_every < 1:
            raise ConfigurationError("sweep_every must be >= 1")
        super().__init__(window_ms)

        self._clock = clock
        self._counters: dict[str, _Counter] = {}
        self._logs: dict[str, _Log] = {}
        self._sweep_every = sweep_every
        self._writes = 0

        # A lock lives only while some coroutine holds a reference to it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

        self.shared_window = shared_window
        self.reset_at = self._clock() + self.window_seconds
        self._timer: asyncio.Task | None = None

        if shared_window:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError as exc:
                raise ConfigurationError(
                    "shared_window requires a running event loop"
                ) from exc
            self._timer = loop.create_task(self._rollover_forever())

    async def _rollover_forever(self) -> None:
        while True:
            await asyncio.sleep(self.window_seconds)
            await self.reset_all()
            logger.debug("memory_store_rollover", reset_at=self.reset_at)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _seconds(self, window_ms: int | None) -> float:
        return self._window_ms(window_ms) / 1000

    def _live_counter(self, key: str, now: float) -> _Counter | None:
        counter = self._counters.get(key)
        if counter is not None and now >= counter.expires_at:
            del self._counters[key]
            return None
        return counter

    def _new_expiry(self, now: float, window_ms: int | None) -> float:
        if self.shared_window:
            return self.reset_at
        return now + self._seconds(window_ms)

    def _live_log(self, key: str, now: float, window: float) -> list[float]:
        log = self._logs.get(key)
        if log is None:
            return []
        cutoff = now - window
        return [ts for ts in log.timestamps if ts > cutoff]

    def _note_write(self, now: float) -> None:
        self._writes += 1
        if self._writes >= self._sweep_every:
            self._writes = 0
            self.sweep(now)

    def sweep(self, now: float | None = None) -> int:
        """
        Drop every expired counter and log.

        Runs without awaiting, so no other coroutine observes a partial
        sweep.

        Returns:
            Number of identifiers removed.
        """
        if now is None:
            now = self._clock()
        dead_counters = [k for k, c in self._counters.items() if now >= c.expires_at]
        dead_logs = [k for k, log in self._logs.items() if now >= log.expires_at]
        for key in dead_counters:
            del self._counters[key]
        for key in dead_logs:
            del self._logs[key]

        removed = len(dead_counters) + len(dead_logs)
        if removed:
            logger.debug("memory_store_sweep", removed=removed)
        return removed

    # =========================================================================
    # Counter Operations
    # =========================================================================

    async def increment(
        self, key: str, amount: int = 1, window_ms: int | None = None
    ) -> int:
        self._ensure_open("increment")
        async with self._lock_for(key):
            now = self._clock()
            self._note_write(now)
            counter = self._live_counter(key, now)
            if counter is None:
                counter = _Counter(count=0, expires_at=self._new_expiry(now, window_ms))
                self._counters[key] = counter
            counter.count += amount
            return counter.count

    async def increment_if_below(
        self, key: str, limit: int, window_ms: int | None = None
    ) -> tuple[bool, int]:
        self._ensure_open("increment_if_below")
        async with self._lock_for(key):
            now = self._clock()
            self._note_write(now)
            counter = self._live_counter(key, now)
            current = counter.count if counter else 0
            if current >= limit:
                return False, current

            if counter is None:
                counter = _Counter(count=0, expires_at=self._new_expiry(now, window_ms))
                self._counters[key] = counter
            counter.count += 1
            return True, counter.count

    async def get(self, key: str) -> int:
        self._ensure_open("get")
        counter = self._counters.get(key)
        if counter is None or self._clock() >= counter.expires_at:
            return 0
        return counter.count

    async def decrement(self, key: str) -> None:
        self._ensure_open("decrement")
        async with self._lock_for(key):
            counter = self._live_counter(key, self._clock())
            if counter is not None and counter.count > 0:
                counter.count -= 1

    # =========================================================================
    # Timestamp Log Operations
    # =========================================================================

    async def get_timestamps(self, key: str, window_ms: int | None = None) -> list[float]:
        self._ensure_open("get_timestamps")
        return self._live_log(key, self._clock(), self._seconds(window_ms))

    async def record_timestamp(
        self, key: str, limit: int, window_ms: int | None = None
    ) -> tuple[bool, int]:
        self._ensure_open("record_timestamp")
        window = self._seconds(window_ms)
        async with self._lock_for(key):
            now = self._clock()
            self._note_write(now)
            timestamps = self._live_log(key, now, window)

            if len(timestamps) < limit:
                timestamps.append(now)
                admitted = True
            else:
                admitted = False

            if timestamps:
                self._logs[key] = _Log(timestamps, window)
            else:
                self._logs.pop(key, None)
            return admitted, len(timestamps)

    async def next_slot_after(self, key: str, window_ms: int | None = None) -> float:
        self._ensure_open("next_slot_after")
        now = self._clock()
        window = self._seconds(window_ms)
        timestamps = self._live_log(key, now, window)
        if not timestamps:
            return 0.0
        return max(0.0, timestamps[0] + window - now)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def reset_after(self, key: str, window_ms: int | None = None) -> float:
        self._ensure_open("reset_after")
        now = self._clock()
        window = self._seconds(window_ms)

        if self.shared_window:
            return max(0.0, self.reset_at - now)

        counter = self._live_counter(key, now)
        if counter is not None:
            return max(0.0, counter.expires_at - now)

        timestamps = self._live_log(key, now, window)
        if timestamps:
            return max(0.0, timestamps[-1] + window - now)

        return window

    async def reset_key(self, key: str) -> None:
        self._ensure_open("reset_key")
        async with self._lock_for(key):
            self._counters.pop(key, None)
            self._logs.pop(key, None)

    async def reset_all(self) -> None:
        self._ensure_open("reset_all")
        self._counters.clear()
        self._logs.clear()
        self.reset_at = self._clock() + self.window_seconds

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

    # =========================================================================
    # Utility Methods (not part of interface, useful for testing)
    # =========================================================================

    def keys(self) -> list[str]:
        """
        Get all identifiers with live state.

        Returns:
            Sorted identifiers that still have a counter or log entries.
        """
        now = self._clock()
        live = {k for k, c in self._counters.items() if now < c.expires_at}
        live |= {k for k, log in self._logs.items() if now < log.expires_at}
        return sorted(live)
