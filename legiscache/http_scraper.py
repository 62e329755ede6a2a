import asyncio
import logging

import aiohttp

from .errors import HttpStatusError, NavigationTimeoutError, PageResponseError
from .metrics import PageSnapshot
from .settings import ProxySettings, ScrapeConfig

logger = logging.getLogger(__name__)

DEFAULT_HTTP_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,application/json;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
}

# Statuses that will not change on retry
PERMANENT_STATUSES = {404, 410}


class HttpFetcher:
    """
    Lightweight single-GET fetcher built on aiohttp.

    - Used for JSON/API endpoints and static HTML
    - Proxy is chosen per request by the caller (None = direct)
    - Retries are handled outside
    - Translates aiohttp failures into the typed fetch errors
    """
    name = "http"

    def __init__(self, session: aiohttp.ClientSession, config: ScrapeConfig):
        self.session = session
        self.config = config
        self.timeout = aiohttp.ClientTimeout(
            total=config.http_total_timeout_s,
            connect=config.http_connect_timeout_s,
        )

    async def get(self, url: str, proxy: ProxySettings | None = None) -> PageSnapshot:
        """
        Fetch a URL with a single GET.

        Returns:
            PageSnapshot with body and status.
        Raises:
            NavigationTimeoutError, PageResponseError (transient),
            HttpStatusError (permanent).
        """
        headers = {**DEFAULT_HTTP_HEADERS, "User-Agent": self.config.user_agent}
        proxy_url = proxy.url if proxy else None

        try:
            async with self.session.get(
                url, proxy=proxy_url, headers=headers,
                timeout=self.timeout, allow_redirects=True,
            ) as resp:
                body = await resp.text(errors="replace")
                status = resp.status
        except asyncio.TimeoutError as e:
            raise NavigationTimeoutError(f"Page not responding: {url}") from e
        except aiohttp.ClientError as e:
            raise PageResponseError(f"HTTP request failed for {url}: {type(e).__name__}: {e}") from e

        if status in PERMANENT_STATUSES:
            raise HttpStatusError(f"{status} HTTP response received for URL: {url}", status)
        if status in self.config.blocking_statuses:
            # Left for the anti-bot guard to judge
            logger.warning("%s HTTP response received for URL: %s", status, url)
        elif not 200 <= status < 300:
            raise PageResponseError(f"Wrong response status {status} for URL: {url}", status)
        elif not body.strip():
            raise PageResponseError(f"Empty response body for URL: {url}", status)

        return PageSnapshot(
            url=url,
            html=body,
            status=status,
            scraper=self.name,
            proxy_hint="proxy" if proxy else "direct",
        )
