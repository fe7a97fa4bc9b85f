from turnstile.core.strategies.base import RateLimitResult, RateLimitStrategy, WindowConfig


class TokenBucketStrategy(RateLimitStrategy):
    """
    Simplified Token Bucket.

    The bucket holds ``limit`` tokens per window and is refilled all at once
    when the window rolls over; there is no separate refill rate. A request
    takes a token only if one is left, so denied requests never grow the
    counter past the limit. The check and the take happen in one atomic
    store call.
    """

    name = "token_bucket"

    async def _evaluate(self, key: str, window: WindowConfig) -> RateLimitResult:
        admitted, count = await self.store.increment_if_below(
            key, window.limit, window.window_ms
        )
        return await self._build_result(key, window, admitted, count)
