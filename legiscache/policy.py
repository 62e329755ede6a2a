"""
Policy module: decides whether a cache miss is served by a plain HTTP GET or
by a rendered browser session.

The logic is:
- explicit
- configurable
- easily auditable
"""

from enum import Enum
from urllib.parse import urlparse

from .settings import ScrapeConfig


class FetchStrategy(str, Enum):
    HTTP = "http"
    BROWSER = "browser"


def looks_like_api(url: str) -> bool:
    path = urlparse(url).path.lower()
    return path.endswith(".json") or "/api/" in f"{path}/"


def select_strategy(
    url: str,
    page_type: str,
    config: ScrapeConfig,
    wait_for_selector: str | None = None,
    override: FetchStrategy | None = None,
) -> FetchStrategy:
    if override is not None:
        return override

    # Waiting for an element only makes sense on a rendered page
    if wait_for_selector:
        return FetchStrategy.BROWSER

    http_types = {t.upper() for t in config.http_page_types}
    if page_type.upper() in http_types:
        return FetchStrategy.HTTP

    if looks_like_api(url):
        return FetchStrategy.HTTP

    return FetchStrategy.BROWSER
