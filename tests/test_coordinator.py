import asyncio

import pytest

from legiscache.errors import (
    AntiBotBlockedError,
    FetchFailedError,
    HttpStatusError,
    MalformedUrlError,
    NavigationTimeoutError,
    PoolExhaustedError,
    SessionCrashedError,
    UnknownCountryError,
)
from legiscache.coordinator import open_coordinator
from legiscache.metrics import PageSnapshot
from legiscache.policy import FetchStrategy
from legiscache.settings import ScrapeConfig
from legiscache.storage import JsonlPageStore
from legiscache.utils import Country

from conftest import CAPTCHA_HTML, CLEAN_HTML, FakeHttpFetcher, FakeSessionFactory

BILL_URL = "https://parliament.example/bill/42"


@pytest.mark.asyncio
async def test_first_fetch_renders_and_stores_then_cache_serves(make_coordinator):
    coordinator, factory, http, store = make_coordinator()

    record = await coordinator.fetch(BILL_URL, "BILL_PAGE")

    assert record.url == BILL_URL
    assert record.page_type == "BILL_PAGE"
    assert record.country is Country.HUNGARY
    assert record.raw_source == CLEAN_HTML
    assert record.size == len(CLEAN_HTML)
    assert coordinator.pool.counters.borrows == 1
    assert coordinator.pool.counters.releases == 1
    assert len(factory.navigations) == 1
    assert len(store.stored) == 1

    again = await coordinator.fetch(BILL_URL, "BILL_PAGE")

    assert again is record
    assert coordinator.pool.counters.borrows == 1
    assert len(factory.navigations) == 1
    assert len(store.stored) == 1
    assert http.calls == []
    assert coordinator.stats.cache_hits == 1
    assert coordinator.stats.network_loads == 1


@pytest.mark.asyncio
async def test_api_endpoint_uses_single_http_get(make_coordinator):
    coordinator, factory, http, store = make_coordinator()

    record = await coordinator.fetch("https://parliament.example/api/bills/42", "BILL_JSON")

    assert record.raw_source == '{"bill": 42}'
    assert len(http.calls) == 1
    assert coordinator.pool.counters.borrows == 0
    assert factory.created == []

    await coordinator.fetch("https://parliament.example/api/bills/42", "BILL_JSON")
    assert len(http.calls) == 1


@pytest.mark.asyncio
async def test_unknown_country_fails_before_any_io(make_coordinator):
    coordinator, factory, http, store = make_coordinator()

    with pytest.raises(UnknownCountryError):
        await coordinator.fetch("https://parliament.nowhere/bill/1", "BILL_PAGE")
    with pytest.raises(MalformedUrlError):
        await coordinator.fetch("bill/1", "BILL_PAGE")

    assert factory.navigations == []
    assert http.calls == []
    assert coordinator.stats.total_loads == 0


@pytest.mark.asyncio
async def test_wait_for_selector_waits_on_rendered_page(make_coordinator):
    coordinator, factory, http, store = make_coordinator()

    await coordinator.fetch(BILL_URL, "BILL_PAGE", wait_for_selector="div.bill")

    assert factory.waits == [(1, "div.bill")]


@pytest.mark.asyncio
async def test_captcha_then_clean_retries_once_without_proxy(make_coordinator):
    def render(session, url):
        return CAPTCHA_HTML if session.proxy is not None else CLEAN_HTML

    coordinator, factory, http, store = make_coordinator(factory=FakeSessionFactory(render))

    record = await coordinator.fetch(BILL_URL, "BILL_PAGE")

    assert record.raw_source == CLEAN_HTML
    assert len(factory.navigations) == 2
    assert factory.created[0].proxy is not None
    assert factory.created[1].proxy is None
    assert factory.destroyed == factory.created
    assert coordinator.pool.size == 0
    assert coordinator.stats.anti_bot_detections == 1
    assert coordinator.pool.in_use_count == 0


@pytest.mark.asyncio
async def test_crash_of_direct_session_is_recovered_without_proxy(make_coordinator, sleeps):
    crashed = []

    def render(session, url):
        if session.proxy is not None:
            return CAPTCHA_HTML
        if not crashed:
            crashed.append(session.session_id)
            raise SessionCrashedError("NoSuchWindow")
        return CLEAN_HTML

    coordinator, factory, http, store = make_coordinator(factory=FakeSessionFactory(render))

    record = await coordinator.fetch(BILL_URL, "BILL_PAGE")

    assert record.raw_source == CLEAN_HTML
    assert [s.proxy is None for s in factory.created] == [False, True, True]
    assert sleeps == []


@pytest.mark.asyncio
async def test_proxy_rotation_resumes_after_direct_recovery(make_coordinator):
    def render(session, url):
        if session.proxy is not None and url.endswith("/1"):
            return CAPTCHA_HTML
        return CLEAN_HTML

    coordinator, factory, http, store = make_coordinator(factory=FakeSessionFactory(render), max_sessions=1)

    await coordinator.fetch("https://parliament.example/bill/1", "BILL_PAGE")
    await coordinator.fetch("https://parliament.example/bill/2", "BILL_PAGE")

    assert factory.navigations == [
        (1, "https://parliament.example/bill/1"),
        (2, "https://parliament.example/bill/1"),
        (3, "https://parliament.example/bill/2"),
    ]
    assert factory.created[1].proxy is None
    assert factory.created[2].proxy is not None


@pytest.mark.asyncio
async def test_persistent_captcha_is_fatal_and_never_stored(make_coordinator, sleeps):
    coordinator, factory, http, store = make_coordinator(
        factory=FakeSessionFactory(lambda session, url: CAPTCHA_HTML)
    )

    with pytest.raises(AntiBotBlockedError):
        await coordinator.fetch(BILL_URL, "BILL_PAGE")

    assert len(factory.navigations) == 2
    assert store.stored == []
    assert sleeps == []
    assert coordinator.pool.in_use_count == 0
    assert coordinator.pool.size == 0
    assert factory.live == 0


@pytest.mark.asyncio
async def test_http_captcha_retries_directly_then_aborts(make_coordinator):
    http = FakeHttpFetcher(html=CAPTCHA_HTML)
    coordinator, factory, http, store = make_coordinator(http=http)

    with pytest.raises(AntiBotBlockedError):
        await coordinator.fetch("https://parliament.example/api/bills/42", "BILL_JSON")

    assert len(http.calls) == 2
    assert http.calls[0][1] is not None
    assert http.calls[1][1] is None
    assert store.stored == []


@pytest.mark.asyncio
async def test_always_transient_fetch_is_attempted_n_times(make_coordinator, sleeps):
    def render(session, url):
        raise NavigationTimeoutError("Page not responding")

    coordinator, factory, http, store = make_coordinator(factory=FakeSessionFactory(render))

    with pytest.raises(FetchFailedError) as exc_info:
        await coordinator.fetch(BILL_URL, "BILL_PAGE")

    assert len(factory.navigations) == 3
    assert sleeps == [30.0, 30.0]
    assert isinstance(exc_info.value.last_cause, NavigationTimeoutError)
    counters = coordinator.pool.counters
    assert counters.borrows == 3
    assert counters.releases + counters.invalidations == 3
    assert coordinator.pool.in_use_count == 0
    assert store.stored == []


@pytest.mark.asyncio
async def test_mid_use_crash_is_recovered_on_fresh_session(make_coordinator, sleeps):
    def render(session, url):
        if session.session_id == 1:
            raise SessionCrashedError("NoSuchWindow")
        return CLEAN_HTML

    coordinator, factory, http, store = make_coordinator(factory=FakeSessionFactory(render))

    record = await coordinator.fetch(BILL_URL, "BILL_PAGE")

    assert record.raw_source == CLEAN_HTML
    assert sleeps == []
    assert factory.destroyed == [factory.created[0]]
    assert coordinator.pool.idle_count == 1


@pytest.mark.asyncio
async def test_permanent_http_status_is_not_retried(make_coordinator, sleeps):
    http = FakeHttpFetcher()

    def respond(url, proxy):
        raise HttpStatusError("404 HTTP response received", 404)

    http.respond = respond
    coordinator, factory, http, store = make_coordinator(http=http)

    with pytest.raises(HttpStatusError):
        await coordinator.fetch("https://parliament.example/api/bills/404", "BILL_JSON")
    assert len(http.calls) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_pool_capacity_bounds_concurrent_browser_fetches(make_coordinator):
    factory = FakeSessionFactory()
    factory.gate = asyncio.Event()
    coordinator, factory, http, store = make_coordinator(factory=factory, max_sessions=2, borrow_timeout_s=5)

    urls = [f"https://parliament.example/bill/{n}" for n in (1, 2, 3)]
    tasks = [asyncio.create_task(coordinator.fetch(url, "BILL_PAGE")) for url in urls]
    for _ in range(20):
        await asyncio.sleep(0)

    assert len(factory.navigations) == 2
    assert coordinator.pool.size == 2
    assert not any(t.done() for t in tasks)

    factory.gate.set()
    records = await asyncio.gather(*tasks)

    assert [r.url for r in records] == urls
    assert factory.max_live == 2
    assert len(factory.created) == 2
    assert len(factory.navigations) == 3


@pytest.mark.asyncio
async def test_borrow_timeout_surfaces_pool_exhausted(make_coordinator, sleeps):
    factory = FakeSessionFactory()
    factory.gate = asyncio.Event()
    coordinator, factory, http, store = make_coordinator(factory=factory, max_sessions=1, borrow_timeout_s=0.05)

    holder = asyncio.create_task(coordinator.fetch("https://parliament.example/bill/1", "BILL_PAGE"))
    for _ in range(5):
        await asyncio.sleep(0)
    assert coordinator.pool.in_use_count == 1

    with pytest.raises(PoolExhaustedError):
        await coordinator.fetch("https://parliament.example/bill/2", "BILL_PAGE")
    assert sleeps == []

    factory.gate.set()
    await holder


@pytest.mark.asyncio
async def test_refetch_replaces_stored_page(make_coordinator):
    pages = iter(["<html>v1</html>", "<html>v2</html>"])
    coordinator, factory, http, store = make_coordinator(
        factory=FakeSessionFactory(lambda session, url: next(pages))
    )

    await coordinator.fetch(BILL_URL, "BILL_PAGE")
    newer = await coordinator.refetch(BILL_URL, "BILL_PAGE")

    assert newer.raw_source == "<html>v2</html>"
    assert (await coordinator.fetch(BILL_URL, "BILL_PAGE")).raw_source == "<html>v2</html>"
    assert len(factory.navigations) == 2


@pytest.mark.asyncio
async def test_strategy_override_forces_http(make_coordinator):
    coordinator, factory, http, store = make_coordinator()
    http.respond = lambda url, proxy: PageSnapshot(url=url, html=CLEAN_HTML, status=200)

    await coordinator.fetch(BILL_URL, "BILL_PAGE", strategy=FetchStrategy.HTTP)

    assert len(http.calls) == 1
    assert factory.navigations == []


@pytest.mark.asyncio
async def test_metadata_is_kept_on_the_stored_record(make_coordinator):
    coordinator, factory, http, store = make_coordinator()

    record = await coordinator.fetch(BILL_URL, "BILL_PAGE", metadata="bill T/1234")
    cached = await coordinator.fetch(BILL_URL, "BILL_PAGE", metadata="other")

    assert record.metadata == "bill T/1234"
    assert cached.metadata == "bill T/1234"


@pytest.mark.asyncio
async def test_open_coordinator_exports_stats_and_cleans_up(tmp_path):
    download_root = tmp_path / "downloads"
    (download_root / "browser3").mkdir(parents=True)
    config = ScrapeConfig(
        download_dir=str(download_root),
        page_store_path=str(tmp_path / "pages.jsonl"),
        stats_csv_name="fetch_stats",
        results_dir=str(tmp_path / "results"),
    )

    async with open_coordinator(config) as coordinator:
        assert isinstance(coordinator.store, JsonlPageStore)
        assert len(coordinator.proxies) == 0

    assert coordinator.pool.closed
    assert (tmp_path / "results" / "fetch_stats.csv").exists()
    assert not download_root.exists()
