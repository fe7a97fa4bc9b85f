import dataclasses

from turnstile.core.strategies.base import RateLimitResult, RateLimitStrategy, WindowConfig


class SlidingWindowStrategy(RateLimitStrategy):
    """
    Sliding Window Log algorithm.

    Precise but more expensive than Fixed Window (stores one entry per
    admitted request). Only timestamps newer than ``now - window`` count;
    older ones are pruned on every access.

    A denied caller may retry as soon as the oldest logged request leaves
    the window, which is usually well before the whole log expires.

    Also serves the "sliding window counter" setting: both names select
    this exact log.
    """

    name = "sliding_window"

    async def _evaluate(self, key: str, window: WindowConfig) -> RateLimitResult:
        admitted, count = await self.store.record_timestamp(
            key, window.limit, window.window_ms
        )
        result = await self._build_result(key, window, admitted, count)
        if admitted:
            return result

        next_slot = await self.store.next_slot_after(key, window.window_ms)
        return dataclasses.replace(result, reset_after=next_slot, retry_after=next_slot)
