import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .errors import FetchFailedError, is_transient
from .metrics import FetchAttempt, FetchState
from .settings import ScrapeConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Fixed-backoff, bounded-attempt retry around one logical operation.

    Only errors classified as transient are retried; anything else escapes on
    first occurrence. Running out of attempts raises FetchFailedError with the
    last cause attached.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_s: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.backoff_s = backoff_s
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: ScrapeConfig, **kwargs) -> "RetryPolicy":
        return cls(config.retry_max_attempts, config.retry_backoff_s, **kwargs)

    async def run(self, operation: Callable[[], Awaitable[T]], attempt: FetchAttempt) -> T:
        for n in range(1, self.max_attempts + 1):
            attempt.attempts = n
            if n > 1:
                attempt.transition(FetchState.RETRY)
            try:
                return await operation()
            except Exception as exc:
                if not is_transient(exc):
                    raise
                attempt.last_error = type(exc).__name__
                attempt.transition(FetchState.TRANSIENT_ERROR)
                if n == self.max_attempts:
                    attempt.transition(FetchState.FATAL)
                    raise FetchFailedError(attempt.url, n, exc) from exc
                logger.warning(
                    "Page not responded as expected (%s: %s). Retrying %s in %.0fs (%d/%d)",
                    type(exc).__name__, exc, attempt.url, self.backoff_s, n, self.max_attempts,
                )
                await self._sleep(self.backoff_s)

        raise AssertionError("unreachable")
