"""
FetchCoordinator: the single entry point country modules use to get a page.

For each request it:
- derives the country from the URL (unknown domains fail immediately)
- serves the page from the store when it was collected before
- otherwise picks HTTP or browser, fetches, screens the result for
  captcha / error pages, and stores the new PageRecord
- wraps each network attempt in the retry policy
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiohttp

from .antibot import AntiBotGuard
from .browser_session import PlaywrightSessionFactory
from .errors import AntiBotBlockedError
from .http_scraper import HttpFetcher
from .metrics import FetchAttempt, FetchState, FetchStats, PageSnapshot
from .policy import FetchStrategy, select_strategy
from .pool import BrowserPool
from .proxies import ProxySelector
from .records import PageRecord
from .retry import RetryPolicy
from .runner import FetchRequest, Outcome, outcome_for
from .settings import ScrapeConfig, setup_logger
from .storage import JsonlPageStore, PageStore, save_df
from .utils import country_from_url

logger = logging.getLogger(__name__)


class FetchCoordinator:

    def __init__(
        self,
        config: ScrapeConfig,
        store: PageStore,
        pool: BrowserPool,
        http: HttpFetcher,
        proxies: ProxySelector | None = None,
        retry: RetryPolicy | None = None,
        guard: AntiBotGuard | None = None,
    ):
        self.config = config
        self.store = store
        self.pool = pool
        self.http = http
        self.proxies = proxies or pool.proxies
        self.retry = retry or RetryPolicy.from_config(config)
        self.guard = guard or AntiBotGuard(config)
        self.stats = FetchStats(log_every=config.stats_log_every)

    async def fetch(
        self,
        url: str,
        page_type: str,
        wait_for_selector: str | None = None,
        strategy: FetchStrategy | None = None,
        metadata: str | None = None,
    ) -> PageRecord:
        """
        Return the PageRecord for `url`, from the store if collected before.

        `metadata` is a free-form note kept on a newly stored record, e.g. the
        bill id a listing page linked from. A cached record keeps its own.

        Raises:
            MalformedUrlError, UnknownCountryError, HttpStatusError: not retried.
            PoolExhaustedError: no browser session within the borrow timeout.
            AntiBotBlockedError: captcha persisted without proxy; abort the run.
            FetchFailedError: transient errors exhausted the retry budget.
        """
        country = country_from_url(url, self.config.country_domains)
        attempt = FetchAttempt(url=url, page_type=page_type)

        cached = self.store.lookup(url, page_type)
        self.stats.record_load(from_cache=cached is not None)
        if cached is not None:
            attempt.transition(FetchState.CACHE_HIT)
            return cached

        attempt.transition(FetchState.CACHE_MISS)
        snapshot = await self._fetch_with_retry(url, page_type, wait_for_selector, strategy, attempt)
        record = PageRecord.build(url, page_type, snapshot.html, country, metadata)
        stored = self.store.store(record)
        attempt.transition(FetchState.STORED)
        return stored

    async def refetch(
        self,
        url: str,
        page_type: str,
        wait_for_selector: str | None = None,
        strategy: FetchStrategy | None = None,
        metadata: str | None = None,
    ) -> PageRecord:
        """Fetch from the source even if stored, replacing the stored record."""
        country = country_from_url(url, self.config.country_domains)
        attempt = FetchAttempt(url=url, page_type=page_type)
        self.stats.record_load(from_cache=False)

        snapshot = await self._fetch_with_retry(url, page_type, wait_for_selector, strategy, attempt)
        record = PageRecord.build(url, page_type, snapshot.html, country, metadata)
        replaced = self.store.replace(record)
        attempt.transition(FetchState.STORED)
        return replaced

    async def try_fetch(self, url: str, page_type: str, wait_for_selector: str | None = None) -> Outcome:
        """Like fetch, but returns an Outcome instead of raising fetch errors."""
        request = FetchRequest(url, page_type, wait_for_selector)
        return await outcome_for(self, request)

    async def shutdown(self) -> None:
        self.stats.log()
        if self.config.stats_csv_name:
            save_df(self.stats.to_frame(), self.config.stats_csv_name, self.config.results_dir)
        await self.pool.shutdown()

    async def _fetch_with_retry(
        self,
        url: str,
        page_type: str,
        wait_for_selector: str | None,
        strategy: FetchStrategy | None,
        attempt: FetchAttempt,
    ) -> PageSnapshot:
        chosen = select_strategy(url, page_type, self.config, wait_for_selector, strategy)

        async def operation() -> PageSnapshot:
            attempt.transition(FetchState.FETCHING)
            if attempt.attempts > 1:
                self.stats.retries += 1
            if chosen is FetchStrategy.HTTP:
                self.stats.http_fetches += 1
                return await self._fetch_http(url, attempt)
            self.stats.browser_fetches += 1
            return await self._fetch_browser(url, wait_for_selector, attempt)

        try:
            snapshot = await self.retry.run(operation, attempt)
        except Exception:
            self.stats.failures += 1
            raise
        attempt.transition(FetchState.SUCCESS)
        return snapshot

    async def _fetch_http(self, url: str, attempt: FetchAttempt) -> PageSnapshot:
        proxy = self.proxies.next()
        attempt.used_proxy = proxy is not None
        snapshot = await self.http.get(url, proxy)

        verdict = self.guard.inspect(snapshot)
        if verdict is None:
            return snapshot

        self._anti_bot_detected(attempt)
        snapshot = await self.http.get(url, None)
        self._check_still_blocked(url, snapshot, attempt)
        return snapshot

    async def _fetch_browser(self, url: str, wait_for_selector: str | None, attempt: FetchAttempt) -> PageSnapshot:
        async with self.pool.lease() as lease:
            attempt.used_proxy = lease.uses_proxy
            snapshot = await lease.load(url)

            if self.guard.inspect(snapshot) is not None:
                self._anti_bot_detected(attempt)
                await lease.replace(direct=True)
                snapshot = await lease.load(url)
                self._check_still_blocked(url, snapshot, attempt)

            if wait_for_selector:
                snapshot = await lease.wait_for(wait_for_selector, self.config.wait_for_selector_timeout_ms)
            return snapshot

    def _anti_bot_detected(self, attempt: FetchAttempt) -> None:
        self.stats.anti_bot_detections += 1
        attempt.transition(FetchState.ANTI_BOT_DETECTED)
        attempt.used_proxy = False
        attempt.transition(FetchState.RETRY_NO_PROXY)

    def _check_still_blocked(self, url: str, snapshot: PageSnapshot, attempt: FetchAttempt) -> None:
        verdict = self.guard.inspect(snapshot)
        if verdict is not None:
            attempt.transition(FetchState.FATAL)
            logger.error("Captcha or error page encountered without proxy: %s", url)
            raise AntiBotBlockedError(url, verdict.reason)


@asynccontextmanager
async def open_coordinator(
    config: ScrapeConfig,
    store: PageStore | None = None,
) -> AsyncIterator[FetchCoordinator]:
    """
    Build a coordinator with its own proxy list, browser pool, HTTP session
    and page store, and tear everything down on exit.
    """
    setup_logger(level=config.log_level, log_file=config.log_file)
    proxies = ProxySelector.from_file(config.proxy_file_path)
    factory = PlaywrightSessionFactory(config)
    pool = BrowserPool.from_config(factory, proxies, config)
    store = store if store is not None else JsonlPageStore.from_config(config)

    async with aiohttp.ClientSession() as session:
        coordinator = FetchCoordinator(
            config=config,
            store=store,
            pool=pool,
            http=HttpFetcher(session, config),
            proxies=proxies,
        )
        try:
            yield coordinator
        finally:
            await coordinator.shutdown()
            await factory.close()
