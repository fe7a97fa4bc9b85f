from turnstile.core.strategies.base import RateLimitResult, RateLimitStrategy, WindowConfig


class FixedWindowStrategy(RateLimitStrategy):
    """
    Fixed Window counter.

    Increments first, then denies if the new count is above the limit.
    O(1) per request. A client can get up to 2x limit requests through
    around a window boundary (end of one window plus start of the next);
    that burst is an accepted tradeoff of the algorithm.

    Denied requests still count, so the result's ``count`` tells the
    backoff calculator how far over the limit the caller is.
    """

    name = "fixed_window"

    async def _evaluate(self, key: str, window: WindowConfig) -> RateLimitResult:
        count = await self.store.increment(key, window_ms=window.window_ms)
        return await self._build_result(key, window, count <= window.limit, count)
