"""
Error taxonomy for the admission engine.

ConfigurationError is raised at construction time for invalid settings.
StoreUnavailable is raised by counter stores when their backend cannot be
reached or has been closed; the RateLimiter decides whether to fail open or
closed. Race conditions have no exception type: every strategy relies on a
single atomic store primitive instead of a read-then-write pair.
"""


class TurnstileError(Exception):
    """Base class for all errors raised by turnstile."""


class ConfigurationError(TurnstileError, ValueError):
    """Invalid limiter, store or backoff configuration."""


class StoreUnavailable(TurnstileError):
    """
    The counter store could not complete an operation.

    Attributes:
        operation: Name of the store method that failed (e.g. "increment").
    """

    def __init__(self, operation: str, message: str | None = None) -> None:
        self.operation = operation
        super().__init__(message or f"counter store unavailable during {operation}")
