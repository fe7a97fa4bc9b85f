"""
Abstract base class for counter stores.

This module defines the contract that all counter stores must follow.
Separating storage from algorithms allows:
- Testing with the in-memory store (no Redis needed)
- Sharing counters across processes with Redis
- Running locally without external dependencies

The interface includes counter operations (for Fixed Window and Token Bucket)
and timestamp-log operations (for the Sliding Window algorithm). Every
mutating operation is a single atomic primitive: strategies never read a
value and write it back in two steps.

Windowed operations take an optional ``window_ms``. Callers pass the window
they are enforcing; when omitted, the store's own ``window_ms`` is used.
"""

from abc import ABC, abstractmethod

from turnstile.core.errors import StoreUnavailable


class CounterStore(ABC):
    """
    Abstract base class for per-identifier usage state.

    Implementations must handle:
    - Counters that expire ``window_ms`` after the identifier's first hit
    - Timestamp logs pruned to the trailing ``window_ms`` interval
    - Concurrent access for the same identifier without lost updates

    Available implementations:
    - MemoryStore: single process, per-key locks
    - RedisStore: shared between processes, native atomic ops and TTLs

    Example:
        >>> store = MemoryStore(window_ms=60_000)
        >>> strategy = FixedWindowStrategy(store)

        >>> store = RedisStore.from_url("redis://localhost:6379/0", window_ms=60_000)
        >>> strategy = FixedWindowStrategy(store)
    """

    def __init__(self, window_ms: int) -> None:
        self.window_ms = window_ms
        self._closed = False

    @property
    def window_seconds(self) -> float:
        return self.window_ms / 1000

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise StoreUnavailable(operation, f"store is closed (during {operation})")

    def _window_ms(self, window_ms: int | None) -> int:
        return self.window_ms if window_ms is None else window_ms

    # =========================================================================
    # Counter Operations (used by Fixed Window, Token Bucket and throttling)
    # =========================================================================

    @abstractmethod
    async def increment(
        self, key: str, amount: int = 1, window_ms: int | None = None
    ) -> int:
        """
        Atomically add ``amount`` to the counter and return the new value.

        Creates the counter if absent; the first increment starts the
        identifier's window of ``window_ms``.

        Example:
            >>> await store.increment("203.0.113.7")
            1
        """
        pass

    @abstractmethod
    async def increment_if_below(
        self, key: str, limit: int, window_ms: int | None = None
    ) -> tuple[bool, int]:
        """
        Atomically increment the counter only if it is below ``limit``.

        Returns:
            ``(admitted, count)`` where ``count`` is the value after the
            operation (unchanged when not admitted).
        """
        pass

    @abstractmethod
    async def get(self, key: str) -> int:
        """
        Read the current count without mutating it.

        Returns:
            The count, or 0 if the key doesn't exist or its window elapsed.
        """
        pass

    @abstractmethod
    async def decrement(self, key: str) -> None:
        """
        Decrease a live counter by one. Never goes below zero and never
        creates a key.
        """
        pass

    # =========================================================================
    # Timestamp Log Operations (used by Sliding Window)
    # =========================================================================

    @abstractmethod
    async def get_timestamps(self, key: str, window_ms: int | None = None) -> list[float]:
        """
        Read the timestamps (unix seconds) newer than ``now - window``.

        Expired entries are never returned. Sorted ascending.
        """
        pass

    @abstractmethod
    async def record_timestamp(
        self, key: str, limit: int, window_ms: int | None = None
    ) -> tuple[bool, int]:
        """
        Atomically prune, compare and append.

        Drops timestamps older than ``now - window``. If fewer than ``limit``
        remain, appends ``now``.

        Returns:
            ``(admitted, count)`` where ``count`` is the number of timestamps
            in the window after the operation.
        """
        pass

    @abstractmethod
    async def next_slot_after(self, key: str, window_ms: int | None = None) -> float:
        """
        Seconds until the oldest live timestamp leaves the window.

        This is when a full log next has room. Returns 0.0 for an empty log.
        """
        pass

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @abstractmethod
    async def reset_after(self, key: str, window_ms: int | None = None) -> float:
        """
        Seconds until all usage recorded for ``key`` has expired.

        Returns the full window length when nothing is stored.
        """
        pass

    @abstractmethod
    async def reset_key(self, key: str) -> None:
        """Delete all state for one identifier. No error if absent."""
        pass

    @abstractmethod
    async def reset_all(self) -> None:
        """Delete the state of every identifier held by this store."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release timers and connections. Safe to call more than once."""
        pass
