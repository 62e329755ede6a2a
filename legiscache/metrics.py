import logging
from dataclasses import dataclass, field
from enum import Enum

import pandas as pd

logger = logging.getLogger(__name__)


@dataclass
class PageSnapshot:
    """
    Normalized per-URL result produced by both the HTTP and browser fetchers.

    Fields:
        url         : The URL that was requested.
        html        : Response body (HTTP) or rendered DOM (browser).
        status      : HTTP status of the main document, if known.
        title       : Page title when the fetcher can read it cheaply;
                      otherwise derived from `html` by the anti-bot guard.
        scraper     : Name of the fetcher, "http" or "browser".
        proxy_hint  : "proxy" vs "direct" - how this request was routed.
    """
    url: str
    html: str
    status: int | None = 200
    title: str | None = None
    scraper: str = "http"
    proxy_hint: str = "direct"


class FetchState(str, Enum):
    INIT = "init"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    FETCHING = "fetching"
    ANTI_BOT_DETECTED = "anti_bot_detected"
    RETRY_NO_PROXY = "retry_no_proxy"
    TRANSIENT_ERROR = "transient_error"
    RETRY = "retry"
    SUCCESS = "success"
    STORED = "stored"
    FATAL = "fatal"


@dataclass
class FetchAttempt:
    """Ephemeral bookkeeping for one logical fetch call."""
    url: str
    page_type: str
    attempts: int = 0
    last_error: str | None = None
    used_proxy: bool = False
    state: FetchState = FetchState.INIT
    history: list[FetchState] = field(default_factory=list)

    def transition(self, state: FetchState) -> None:
        logger.debug("%s [%s]: %s -> %s", self.url, self.page_type, self.state.value, state.value)
        self.history.append(state)
        self.state = state


@dataclass
class FetchStats:
    """
    Cache effectiveness counters for one coordinator.

    Logged every `log_every` loads so a long run shows how much of it was
    served from the page store.
    """
    log_every: int = 50
    total_loads: int = 0
    cache_hits: int = 0
    network_loads: int = 0
    http_fetches: int = 0
    browser_fetches: int = 0
    anti_bot_detections: int = 0
    retries: int = 0
    failures: int = 0

    def record_load(self, from_cache: bool) -> None:
        self.total_loads += 1
        if from_cache:
            self.cache_hits += 1
        else:
            self.network_loads += 1
        if self.log_every and self.total_loads % self.log_every == 0:
            self.log()

    @property
    def network_ratio(self) -> float:
        if self.total_loads == 0:
            return 0.0
        return self.network_loads / self.total_loads

    def log(self) -> None:
        logger.info(
            "Page loads: %d total, %d from web (%.1f%%), %d http / %d browser, "
            "%d anti-bot detections, %d retries, %d failures",
            self.total_loads, self.network_loads, self.network_ratio * 100,
            self.http_fetches, self.browser_fetches,
            self.anti_bot_detections, self.retries, self.failures,
        )

    def to_frame(self) -> pd.DataFrame:
        row = {
            "total_loads": self.total_loads,
            "cache_hits": self.cache_hits,
            "network_loads": self.network_loads,
            "network_ratio": self.network_ratio,
            "http_fetches": self.http_fetches,
            "browser_fetches": self.browser_fetches,
            "anti_bot_detections": self.anti_bot_detections,
            "retries": self.retries,
            "failures": self.failures,
        }
        return pd.DataFrame([row])
