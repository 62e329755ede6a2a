import asyncio
from typing import Callable

import pytest

from legiscache.coordinator import FetchCoordinator
from legiscache.metrics import PageSnapshot
from legiscache.pool import BrowserPool
from legiscache.proxies import ProxySelector
from legiscache.retry import RetryPolicy
from legiscache.settings import ProxySettings, ScrapeConfig
from legiscache.storage import MemoryPageStore

CLEAN_HTML = "<html><head><title>Bill 42</title></head><body><div class='bill'>Bill text</div></body></html>"
CAPTCHA_HTML = "<html><head><title>Just a moment</title></head><body><img src='/captcha.gif'></body></html>"


class FakeSession:
    def __init__(self, session_id: int, proxy: ProxySettings | None, factory: "FakeSessionFactory"):
        self.session_id = session_id
        self.proxy = proxy
        self.factory = factory
        self.crashed = False
        self.url: str | None = None

    def __repr__(self) -> str:
        return f"<FakeSession #{self.session_id}>"

    async def load(self, url: str) -> PageSnapshot:
        self.url = url
        self.factory.navigations.append((self.session_id, url))
        if self.factory.gate is not None:
            await self.factory.gate.wait()
        html = self.factory.render(self, url)
        return PageSnapshot(
            url=url, html=html, status=200, scraper="browser",
            proxy_hint="proxy" if self.proxy else "direct",
        )

    async def wait_for(self, selector: str, timeout_ms: int) -> PageSnapshot:
        self.factory.waits.append((self.session_id, selector))
        return PageSnapshot(url=self.url, html=self.factory.render(self, self.url), status=200, scraper="browser")


class FakeSessionFactory:
    """Stands in for Playwright; `render(session, url)` returns html or raises."""

    def __init__(self, render: Callable[[FakeSession, str], str] | None = None):
        self.render = render or (lambda session, url: CLEAN_HTML)
        self.created: list[FakeSession] = []
        self.destroyed: list[FakeSession] = []
        self.navigations: list[tuple[int, str]] = []
        self.waits: list[tuple[int, str]] = []
        self.gate: asyncio.Event | None = None
        self.live = 0
        self.max_live = 0

    async def create(self, proxy: ProxySettings | None) -> FakeSession:
        session = FakeSession(len(self.created) + 1, proxy, self)
        self.created.append(session)
        self.live += 1
        self.max_live = max(self.max_live, self.live)
        return session

    async def destroy(self, session: FakeSession) -> None:
        self.destroyed.append(session)
        self.live -= 1

    async def health_check(self, session: FakeSession) -> bool:
        return not session.crashed


class FakeHttpFetcher:
    def __init__(self, html: str = '{"bill": 42}', status: int = 200):
        self.html = html
        self.status = status
        self.calls: list[tuple[str, ProxySettings | None]] = []
        self.respond: Callable[[str, ProxySettings | None], PageSnapshot] | None = None

    async def get(self, url: str, proxy: ProxySettings | None = None) -> PageSnapshot:
        self.calls.append((url, proxy))
        if self.respond is not None:
            return self.respond(url, proxy)
        return PageSnapshot(url=url, html=self.html, status=self.status, proxy_hint="proxy" if proxy else "direct")


class FakeStore(MemoryPageStore):
    def __init__(self):
        super().__init__(["parlament.hu"])
        self.stored = []

    def store(self, record):
        self.stored.append(record)
        return super().store(record)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
    return _sleep


@pytest.fixture
def proxies() -> ProxySelector:
    return ProxySelector([
        ProxySettings(server="http://10.0.0.1:1201"),
        ProxySettings(server="http://10.0.0.2:1202"),
    ])


@pytest.fixture
def make_coordinator(fake_sleep, proxies):
    """Build a coordinator wired to fakes; returns (coordinator, factory, http, store)."""

    def _make(factory=None, http=None, max_sessions=2, borrow_timeout_s=5.0, **config_overrides):
        config_values = {
            "country_domains": {"parliament.example": "HUNGARY"},
            "retry_max_attempts": 3,
            "retry_backoff_s": 30.0,
        }
        config_values.update(config_overrides)
        config = ScrapeConfig(**config_values)

        factory = factory or FakeSessionFactory()
        http = http or FakeHttpFetcher()
        store = FakeStore()
        pool = BrowserPool(factory, proxies, max_sessions=max_sessions, borrow_timeout_s=borrow_timeout_s)
        coordinator = FetchCoordinator(
            config=config,
            store=store,
            pool=pool,
            http=http,
            proxies=proxies,
            retry=RetryPolicy.from_config(config, sleep=fake_sleep),
        )
        return coordinator, factory, http, store

    return _make
