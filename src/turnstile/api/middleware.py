import inspect
import math
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp
import structlog

from turnstile.core.strategies.base import RateLimitResult

logger = structlog.get_logger()

KeyFunc = Callable[[Request], str]
ExceededHandler = Callable[[Request, RateLimitResult], Response | Awaitable[Response]]


def client_address(request: Request) -> str:
    """Default identifier: the caller's network address."""
    return request.client.host if request.client else "unknown"


def too_many_requests(request: Request, result: RateLimitResult) -> Response:
    headers = result.headers()
    # Whole seconds, rounded up, never below 1
    headers["Retry-After"] = str(max(1, math.ceil(result.retry_after or 0)))
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "reason": result.reason,
            "retry_after": result.retry_after,
        },
        headers=headers,
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Runs every request through the RateLimiter stored on ``app.state.limiter``.

    Args:
        key_func: Derives the identifier from the request.
        on_exceeded: Builds the response for denied requests (sync or async).
            Defaults to a JSON 429 with Retry-After and rate limit headers.
    """

    def __init__(
        self,
        app: ASGIApp,
        key_func: KeyFunc = client_address,
        on_exceeded: ExceededHandler | None = None,
    ):
        super().__init__(app)
        self.key_func = key_func
        self.on_exceeded = on_exceeded or too_many_requests

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:

        limiter = getattr(request.app.state, "limiter", None)

        if limiter is None:
            logger.warning("middleware_uninitialized_skipping")
            return await call_next(request)

        client_id = self.key_func(request)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            client_id=client_id,
            path=request.url.path,
            method=request.method
        )

        result = await limiter.check(client_id)

        if not result.is_allowed:
            response = self.on_exceeded(request, result)
            if inspect.isawaitable(response):
                response = await response
            return response

        response = await call_next(request)

        for key, value in result.headers().items():
            response.headers[key] = value

        return response
