import asyncio
import itertools
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    Response,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .errors import (
    NavigationTimeoutError,
    PageResponseError,
    SessionCrashedError,
    SessionCreateError,
)
from .metrics import FetchAttempt, PageSnapshot
from .retry import RetryPolicy
from .settings import PROJECT_ROOT, ProxySettings, ScrapeConfig

logger = logging.getLogger(__name__)

# Messages Playwright uses when the window/process behind a page is gone
SESSION_LOST_MARKERS = (
    "target page, context or browser has been closed",
    "target closed",
    "browser has been closed",
    "page crashed",
    "connection closed",
)


class BrowserSession(Protocol):
    """What the pool and the coordinator need from one browser handle."""

    session_id: int
    proxy: ProxySettings | None

    async def load(self, url: str) -> PageSnapshot: ...

    async def wait_for(self, selector: str, timeout_ms: int) -> PageSnapshot: ...


class SessionFactory(Protocol):
    async def create(self, proxy: ProxySettings | None) -> BrowserSession: ...

    async def destroy(self, session: BrowserSession) -> None: ...

    async def health_check(self, session: BrowserSession) -> bool: ...


@dataclass
class RecordedResponse:
    url: str
    status: int
    mime_type: str


def _is_session_lost(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return any(marker in msg for marker in SESSION_LOST_MARKERS)


class PlaywrightSession:
    """
    One Playwright browser + context + page bound to its own download dir.

    A response listener records main-document responses so navigation can be
    checked against the real status the server sent.
    """

    name = "browser"

    def __init__(
        self,
        session_id: int,
        browser: Browser,
        context: BrowserContext,
        page: Page,
        download_dir: Path,
        proxy: ProxySettings | None,
        config: ScrapeConfig,
    ):
        self.session_id = session_id
        self.browser = browser
        self.context = context
        self.page = page
        self.download_dir = download_dir
        self.proxy = proxy
        self.config = config
        self.crashed = False
        self.recorded: list[RecordedResponse] = []

        page.on("response", self._on_response)
        page.on("crash", self._on_crash)

    def __repr__(self) -> str:
        return f"<PlaywrightSession #{self.session_id} proxy={self.proxy.server if self.proxy else None}>"

    def _on_response(self, response: Response) -> None:
        if response.request.resource_type != "document" or response.frame != self.page.main_frame:
            return
        if 300 <= response.status < 400:
            return
        mime_type = (response.headers.get("content-type") or "").split(";")[0].strip()
        if mime_type and mime_type != "text/html":
            return
        self.recorded.append(RecordedResponse(response.url, response.status, mime_type))

    def _on_crash(self, _page: Page) -> None:
        logger.error("Browser page crashed in session #%d", self.session_id)
        self.crashed = True

    def start_recording(self) -> None:
        self.recorded.clear()

    async def load(self, url: str) -> PageSnapshot:
        self.start_recording()
        try:
            await self.page.goto(url, timeout=self.config.browser_timeout_ms, wait_until="domcontentloaded")
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(f"Page not responding: {url}") from e
        except PlaywrightError as e:
            raise self._translate(e, url) from e

        if not self.recorded:
            raise PageResponseError(f"No HTML document received for {url}")

        status = self.recorded[-1].status
        if status != 200 and status not in self.config.blocking_statuses:
            raise PageResponseError(f"Wrong response status {status} for {url}", status)

        snapshot = await self._capture(url)
        snapshot.status = status
        return snapshot

    async def wait_for(self, selector: str, timeout_ms: int) -> PageSnapshot:
        url = self.page.url
        try:
            await self.page.wait_for_selector(selector, timeout=timeout_ms, state="attached")
        except PlaywrightTimeoutError as e:
            raise NavigationTimeoutError(f"Element {selector!r} did not appear on {url}") from e
        except PlaywrightError as e:
            raise self._translate(e, url) from e

        snapshot = await self._capture(url)
        if self.recorded:
            snapshot.status = self.recorded[-1].status
        return snapshot

    async def _capture(self, url: str) -> PageSnapshot:
        try:
            html = await self.page.content()
            title = await self.page.title()
        except PlaywrightError as e:
            raise self._translate(e, url) from e

        return PageSnapshot(
            url=url,
            html=html,
            title=title,
            scraper=self.name,
            proxy_hint="proxy" if self.proxy else "direct",
        )

    def _translate(self, exc: PlaywrightError, url: str) -> Exception:
        if self.crashed or _is_session_lost(exc):
            return SessionCrashedError(f"Browser session #{self.session_id} lost while loading {url}: {exc}")
        return PageResponseError(f"Driver error while loading {url}: {exc}")


class PlaywrightSessionFactory:
    """
    Creates and destroys PlaywrightSessions.

    - One Playwright driver shared by every session, started lazily
    - One browser process per session so each can carry its own proxy
    - Each session downloads into <download_dir>/browser<N>
    - Session creation is retried a few times before giving up
    """

    def __init__(self, config: ScrapeConfig):
        self.config = config
        self.download_root = Path(config.download_dir)
        if not self.download_root.is_absolute():
            self.download_root = PROJECT_ROOT / self.download_root
        self._playwright: Playwright | None = None
        self._lock = asyncio.Lock()
        self._counter = itertools.count(1)
        self._create_retry = RetryPolicy(
            max_attempts=config.session_create_attempts,
            backoff_s=config.session_create_backoff_s,
        )

    async def start(self) -> None:
        if self._playwright:
            return
        async with self._lock:
            if self._playwright:
                return
            logger.debug("Starting async Playwright")
            self._playwright = await async_playwright().start()

    async def close(self) -> None:
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
        self.flush_download_root()

    async def create(self, proxy: ProxySettings | None) -> PlaywrightSession:
        await self.start()
        session_id = next(self._counter)
        download_dir = self.download_root / f"browser{session_id}"
        download_dir.mkdir(parents=True, exist_ok=True)

        attempt = FetchAttempt(url=f"session #{session_id}", page_type="SESSION", used_proxy=proxy is not None)
        session = await self._create_retry.run(
            lambda: self._launch(session_id, download_dir, proxy), attempt
        )
        logger.info("Driver created successfully: %r", session)
        return session

    async def _launch(self, session_id: int, download_dir: Path, proxy: ProxySettings | None) -> PlaywrightSession:
        launch_kwargs = {
            "headless": self.config.browser_headless,
            "downloads_path": str(download_dir),
        }
        if self.config.browser_binary_path:
            launch_kwargs["executable_path"] = self.config.browser_binary_path
        if proxy and proxy.playwright:
            launch_kwargs["proxy"] = proxy.playwright

        try:
            browser = await self._playwright.chromium.launch(**launch_kwargs)
        except PlaywrightError as e:
            logger.error("Session not created for chromium: %s", e)
            raise SessionCreateError(str(e)) from e

        try:
            context = await browser.new_context(
                user_agent=self.config.user_agent,
                locale=self.config.browser_locale,
                accept_downloads=True,
            )
            if self.config.browser_block_heavy:
                async def route_handler(route):
                    if route.request.resource_type in {"image", "media", "font"}:
                        await route.abort()
                    else:
                        await route.continue_()
                await context.route("**/*", route_handler)

            page = await context.new_page()
            page.set_default_timeout(self.config.browser_implicit_wait_ms)
        except PlaywrightError as e:
            await browser.close()
            raise SessionCreateError(str(e)) from e

        return PlaywrightSession(session_id, browser, context, page, download_dir, proxy, self.config)

    async def destroy(self, session: PlaywrightSession) -> None:
        try:
            await session.context.close()
        except PlaywrightError as e:
            logger.debug("Context of %r already gone: %s", session, e)
        try:
            await session.browser.close()
        except PlaywrightError as e:
            logger.debug("Browser of %r already gone: %s", session, e)
        shutil.rmtree(session.download_dir, ignore_errors=True)

    async def health_check(self, session: PlaywrightSession) -> bool:
        return (
            not session.crashed
            and session.browser.is_connected()
            and not session.page.is_closed()
        )

    def flush_download_root(self) -> None:
        shutil.rmtree(self.download_root, ignore_errors=True)
