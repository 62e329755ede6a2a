"""
Typed errors raised by the page acquisition layer.

Fetchers translate aiohttp / Playwright exceptions into these classes at the
boundary, so the retry policy and the run loop only reason about this
hierarchy.
"""

import asyncio

import aiohttp


class FetchError(Exception):
    """Base class for every error surfaced by the fetch layer."""


# Transient: expected to go away on retry

class TransientFetchError(FetchError):
    pass


class PageResponseError(TransientFetchError):
    """Empty document, unexpected status or a generic driver failure."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class NavigationTimeoutError(TransientFetchError):
    pass


class SessionCrashedError(TransientFetchError):
    """The browser window or process went away while in use."""


class SessionCreateError(TransientFetchError):
    pass


# Permanent: surfaced on first occurrence

class PermanentFetchError(FetchError):
    pass


class MalformedUrlError(PermanentFetchError):
    pass


class UnknownCountryError(PermanentFetchError):
    pass


class HttpStatusError(PermanentFetchError):
    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.status = status


# Resource exhaustion, retryable by the caller

class PoolExhaustedError(FetchError):
    pass


class PoolClosedError(FetchError):
    pass


class AntiBotBlockedError(FetchError):
    """Captcha or error page persisted after the direct-connection retry."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Anti-bot page for {url}: {reason}")
        self.url = url
        self.reason = reason


class FetchFailedError(FetchError):
    """All retry attempts failed with transient errors."""

    def __init__(self, url: str, attempts: int, last_cause: BaseException):
        super().__init__(
            f"Fetching {url} failed after {attempts} attempts: "
            f"{type(last_cause).__name__}: {last_cause}"
        )
        self.url = url
        self.attempts = attempts
        self.last_cause = last_cause


# Low-level exceptions that count as transient when they escape a fetcher.
TRANSIENT_EXCEPTIONS = (
    TransientFetchError,
    asyncio.TimeoutError,
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TRANSIENT_EXCEPTIONS)
