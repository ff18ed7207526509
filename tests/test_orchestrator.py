import asyncio
import json
import time
from datetime import datetime, timezone

import httpx
import pytest
import respx
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ratewatch.db.tables import affiliate_id_cache
from ratewatch.scraper.identifiers import IdentifierResolver, ShopItemIds
from ratewatch.scraper.orchestrator import (
    AFFILIATE_TOP_URL,
    SCRAPER_KEY,
    RateScraper,
    ScrapeError,
    ScraperBusyError,
    ScrapeTarget,
    resolve_target_url,
)
from ratewatch.scraper.session import LoginRequiredError
from ratewatch.utils.scheduler import RequestScheduler


class FakeInput:
    def __init__(self, page):
        self.page = page

    async def fill(self, value):
        self.page.submitted.append(value)

    async def press(self, key):
        pass


class FakeButton:
    async def click(self):
        pass


class FakePage:
    def __init__(self, rates=None, timeouts=0, has_form=True):
        self.rates = rates or {}
        self.timeouts = timeouts
        self.has_form = has_form
        self.visits = []
        self.submitted = []

    async def goto(self, url, **kwargs):
        self.visits.append(url)
        if self.timeouts:
            self.timeouts -= 1
            raise PlaywrightTimeoutError("Timeout 30000ms exceeded")

    async def wait_for_timeout(self, ms):
        pass

    async def wait_for_load_state(self, state, **kwargs):
        pass

    async def query_selector(self, selector):
        if "input" in selector:
            return FakeInput(self) if self.has_form else None
        return FakeButton()

    async def query_selector_all(self, selector):
        return []

    async def content(self):
        key = self.submitted[-1] if self.submitted else self.visits[-1]
        rate = self.rates.get(key)
        return f"料率・報酬 {rate}%" if rate is not None else "<html></html>"


class FakeSession:
    instances = []

    def __init__(self, page, alive=True):
        self.page = page
        self.alive = alive
        self.opened = False
        self.closed = False

    async def open(self):
        self.opened = True

    async def is_alive(self):
        return self.alive

    async def close(self):
        self.closed = True


class FakeResolver:
    def __init__(self, ids=None):
        self.ids = ids or {}

    async def resolve(self, item_key, item_url):
        return self.ids.get(item_key)


@pytest.fixture()
def session_file(tmp_path):
    path = tmp_path / "session.json"
    path.write_text(json.dumps({"cookies": [], "lastLogin": datetime.now(timezone.utc).isoformat()}))
    return path


def _scraper(session_file, page, *, alive=True, resolver=None, scheduler=None):
    sessions = []

    def factory(state):
        session = FakeSession(page, alive=alive)
        sessions.append(session)
        return session

    scraper = RateScraper(
        resolver=resolver,
        session_factory=factory,
        session_path=session_file,
        scheduler=scheduler,
        delay_range=(0, 0),
        retry_delay=0,
    )
    return scraper, sessions


def test_resolve_target_url():
    assert resolve_target_url("https://item.rakuten.co.jp/shop/abc/", "shop:abc") == (
        "https://item.rakuten.co.jp/shop/abc/",
        "shop",
    )
    assert resolve_target_url("https://hb.afl.rakuten.co.jp/x", "shop:abc") == (
        "https://item.rakuten.co.jp/shop/abc/",
        "shop",
    )
    with pytest.raises(ScrapeError):
        resolve_target_url(None, "no-separator")


@pytest.mark.asyncio
async def test_batch_reuses_one_session(session_file):
    page = FakePage(rates={"https://item.rakuten.co.jp/shop/a/": 4.0})
    scraper, sessions = _scraper(session_file, page)
    targets = [
        ScrapeTarget("shop:a", "https://item.rakuten.co.jp/shop/a/", 3.0),
        ScrapeTarget("shop:b", "https://item.rakuten.co.jp/shop/b/", 3.0),
    ]
    first = await scraper.scrape_batch(targets)
    second = await scraper.scrape_batch(targets[:1])
    assert [r.actual_rate for r in first] == [4.0, None]
    assert second[0].actual_rate == 4.0
    assert len(sessions) == 1
    assert scraper.initialized
    await scraper.close()
    assert sessions[0].closed
    assert not scraper.initialized


@pytest.mark.asyncio
async def test_resolved_ids_skip_the_form(session_file):
    ids = ShopItemIds("111", "222")
    page = FakePage()
    page.rates = {
        "https://affiliate.rakuten.co.jp/link/pc/item?type=item&me_id=1111&item_id=222&l-id=af_header_cta_link": 6.0
    }
    scraper, _ = _scraper(session_file, page, resolver=FakeResolver({"shop:a": ids}))
    [result] = await scraper.scrape_batch([ScrapeTarget("shop:a", "https://item.rakuten.co.jp/shop/a/")])
    assert result.actual_rate == 6.0
    assert page.submitted == []
    assert AFFILIATE_TOP_URL not in page.visits


@pytest.mark.asyncio
async def test_timeout_is_retried_once(session_file):
    page = FakePage(rates={"https://item.rakuten.co.jp/shop/a/": 2.0}, timeouts=1)
    scraper, _ = _scraper(session_file, page)
    [result] = await scraper.scrape_batch([ScrapeTarget("shop:a", "https://item.rakuten.co.jp/shop/a/")])
    assert result.actual_rate == 2.0
    assert result.error is None
    assert page.visits.count(AFFILIATE_TOP_URL) == 2


@pytest.mark.asyncio
async def test_second_timeout_is_a_per_item_error(session_file):
    page = FakePage(rates={"https://item.rakuten.co.jp/shop/b/": 5.0}, timeouts=2)
    scraper, _ = _scraper(session_file, page)
    results = await scraper.scrape_batch(
        [
            ScrapeTarget("shop:a", "https://item.rakuten.co.jp/shop/a/"),
            ScrapeTarget("shop:b", "https://item.rakuten.co.jp/shop/b/"),
        ]
    )
    assert results[0].error and "Timed out" in results[0].error
    assert results[1].actual_rate == 5.0
    assert page.visits.count(AFFILIATE_TOP_URL) == 3


@pytest.mark.asyncio
async def test_other_errors_are_not_retried(session_file):
    page = FakePage(has_form=False)
    scraper, _ = _scraper(session_file, page)
    results = await scraper.scrape_batch(
        [
            ScrapeTarget("shop:a", "https://item.rakuten.co.jp/shop/a/"),
            ScrapeTarget("bad-key", None),
        ]
    )
    assert results[0].error == "URL input not found"
    assert results[1].error == "Invalid item key format"
    assert page.visits.count(AFFILIATE_TOP_URL) == 1


@pytest.mark.asyncio
async def test_login_required(tmp_path, session_file):
    scraper, _ = _scraper(tmp_path / "missing.json", FakePage())
    with pytest.raises(LoginRequiredError):
        await scraper.scrape_batch([ScrapeTarget("shop:a", None)])

    scraper, sessions = _scraper(session_file, FakePage(), alive=False)
    with pytest.raises(LoginRequiredError):
        await scraper.init()
    assert sessions[0].closed
    assert not scraper.initialized


@pytest.mark.asyncio
async def test_second_batch_is_refused_while_one_runs(session_file):
    scraper, _ = _scraper(session_file, FakePage())
    release = asyncio.Event()

    async def hold():
        async with scraper.lease():
            await release.wait()

    holder = asyncio.create_task(hold())
    await asyncio.sleep(0)
    with pytest.raises(ScraperBusyError):
        await scraper.scrape_batch([ScrapeTarget("shop:a", None)])
    release.set()
    await holder


@pytest.mark.asyncio
async def test_batch_survives_identifier_cache_outage(engine, session_file):
    with engine.begin() as conn:
        affiliate_id_cache.drop(conn)
    page = FakePage(
        rates={
            "https://affiliate.rakuten.co.jp/link/pc/item?type=item&me_id=1111&item_id=222&l-id=af_header_cta_link": 4.0,
            "https://item.rakuten.co.jp/shop/b/": 5.0,
        }
    )
    async with respx.mock() as router:
        router.get("https://item.rakuten.co.jp/shop/a/").mock(
            return_value=httpx.Response(200, text='{"shopId":"111","itemId":"222"}')
        )
        router.get("https://item.rakuten.co.jp/shop/b/").mock(return_value=httpx.Response(404))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as http:
            scraper, _ = _scraper(session_file, page, resolver=IdentifierResolver(engine, session=http))
            results = await scraper.scrape_batch(
                [
                    ScrapeTarget("shop:a", "https://item.rakuten.co.jp/shop/a/"),
                    ScrapeTarget("shop:b", "https://item.rakuten.co.jp/shop/b/"),
                ]
            )
    assert [r.actual_rate for r in results] == [4.0, 5.0]
    assert [r.error for r in results] == [None, None]
    assert page.submitted == ["https://item.rakuten.co.jp/shop/b/"]


class TimedPage(FakePage):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started = []

    async def goto(self, url, **kwargs):
        self.started.append(time.monotonic())
        await super().goto(url, **kwargs)


@pytest.mark.asyncio
async def test_scrapes_are_spaced_by_scheduler(session_file):
    page = TimedPage(rates={"https://item.rakuten.co.jp/shop/a/": 1.0, "https://item.rakuten.co.jp/shop/b/": 2.0})
    scheduler = RequestScheduler(interval_ms=200)
    scraper, _ = _scraper(session_file, page, scheduler=scheduler)
    results = await scraper.scrape_batch(
        [
            ScrapeTarget("shop:a", "https://item.rakuten.co.jp/shop/a/"),
            ScrapeTarget("shop:b", "https://item.rakuten.co.jp/shop/b/"),
        ]
    )
    assert [r.actual_rate for r in results] == [1.0, 2.0]
    assert page.started[1] - page.started[0] >= 0.19
    assert scraper.scheduler_key == SCRAPER_KEY
    assert scheduler.pending(SCRAPER_KEY) == 0
