"""Browser-driven lookup of the commission rate the affiliate site actually pays.

``RateScraper`` is a long-lived resource: ``init`` opens the browser from the
saved login, ``scrape_batch`` may be called many times on the same session and
``close`` tears it down. Only one batch may hold the browser at a time.
"""

from __future__ import annotations

import asyncio
import logging
import pathlib
import random
import re
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ratewatch.scraper.extract import extract_rate
from ratewatch.scraper.identifiers import IdentifierResolver, build_affiliate_url
from ratewatch.scraper.session import (
    NAVIGATION_TIMEOUT_MS,
    SESSION_FILE,
    BrowserSession,
    LoginRequiredError,
    SessionState,
    load_session,
)
from ratewatch.utils.dates import utcnow
from ratewatch.utils.retry import retry_async
from ratewatch.utils.scheduler import RequestScheduler

logger = logging.getLogger(__name__)

AFFILIATE_TOP_URL = "https://affiliate.rakuten.co.jp/"
ITEM_URL_PREFIX = "https://item.rakuten.co.jp/"
URL_INPUT_SELECTOR = 'input#u, input[name="u"], input[placeholder*="URL"]'
SUBMIT_SELECTOR = '#freelink button[type="submit"], #freelink .btn'
SHOP_FROM_URL_RE = re.compile(r"item\.rakuten\.co\.jp/([^/]+)")
ITEM_KEY_RE = re.compile(r"^([^:]+):(.+)$")
SCRAPER_KEY = "affiliate-session"


class ScrapeError(RuntimeError):
    pass


class NavigationTimeout(ScrapeError):
    """A page load or form result did not arrive in time."""


class ScraperBusyError(RuntimeError):
    pass


@dataclass(slots=True)
class ScrapeTarget:
    item_key: str
    item_url: str | None
    source_rate: float | None = None


@dataclass(slots=True)
class ScrapedRate:
    item_key: str
    item_url: str | None
    actual_rate: float | None = None
    shop_name: str | None = None
    scraped_at: datetime = field(default_factory=utcnow)
    error: str | None = None


def resolve_target_url(item_url: str | None, item_key: str) -> tuple[str, str]:
    """The item page to look up and its shop code; rebuilt from the key when the URL is unusable."""
    if item_url and "item.rakuten.co.jp" in item_url:
        match = SHOP_FROM_URL_RE.search(item_url)
        return item_url, match.group(1) if match else ""
    match = ITEM_KEY_RE.match(item_key)
    if not match:
        raise ScrapeError("Invalid item key format")
    shop, code = match.groups()
    return f"{ITEM_URL_PREFIX}{shop}/{code}/", shop


class RateScraper:
    def __init__(
        self,
        *,
        resolver: IdentifierResolver | None = None,
        session_factory: Callable[[SessionState], Any] = BrowserSession,
        session_path: pathlib.Path = SESSION_FILE,
        scheduler: RequestScheduler | None = None,
        scheduler_key: str = SCRAPER_KEY,
        delay_range: tuple[float, float] = (1.0, 2.0),
        retry_delay: float = 1.0,
    ) -> None:
        self.resolver = resolver
        self.session_factory = session_factory
        self.session_path = session_path
        self.scheduler = scheduler
        self.scheduler_key = scheduler_key
        self.delay_range = delay_range
        self.retry_delay = retry_delay
        self._session: Any = None
        self._lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._session is not None

    async def init(self) -> None:
        if self._session is not None:
            return
        state = load_session(self.session_path)
        if state is None:
            raise LoginRequiredError("No valid login session; run the login procedure")
        session = self.session_factory(state)
        await session.open()
        if not await session.is_alive():
            await session.close()
            raise LoginRequiredError("Saved session was rejected; run the login procedure")
        self._session = session

    async def close(self) -> None:
        async with self._lock:
            if self._session is not None:
                await self._session.close()
                self._session = None

    @asynccontextmanager
    async def lease(self) -> AsyncIterator["RateScraper"]:
        """Exclusive use of the browser for one batch."""
        if self._lock.locked():
            raise ScraperBusyError("A scrape batch is already running")
        async with self._lock:
            yield self

    async def scrape_rate(self, target: ScrapeTarget) -> ScrapedRate:
        if self._session is None:
            raise RuntimeError("Scraper not initialized; call init() first")
        result = ScrapedRate(item_key=target.item_key, item_url=target.item_url)
        lookup = retry_async(
            self._lookup,
            attempts=2,
            exceptions=(NavigationTimeout,),
            delay=self.retry_delay,
        )
        try:
            url, result.shop_name = resolve_target_url(target.item_url, target.item_key)
            logger.info("Target URL: %s", url)
            result.actual_rate = await lookup(target.item_key, url)
        except (ScrapeError, PlaywrightError) as exc:
            logger.error("Error scraping rate for %s: %s", target.item_key, exc)
            result.error = str(exc) or exc.__class__.__name__
        return result

    async def _lookup(self, item_key: str, url: str) -> float | None:
        page = self._session.page
        ids = await self.resolver.resolve(item_key, url) if self.resolver else None
        if ids:
            await self._goto(page, build_affiliate_url(ids))
        else:
            await self._submit_form(page, url)
        return await extract_rate(page)

    async def _goto(self, page: Any, url: str) -> None:
        try:
            await page.goto(url, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT_MS)
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeout(f"Timed out loading {url}") from exc

    async def _submit_form(self, page: Any, url: str) -> None:
        await self._goto(page, AFFILIATE_TOP_URL)
        await page.wait_for_timeout(1000)
        url_input = await page.query_selector(URL_INPUT_SELECTOR)
        if url_input is None:
            raise ScrapeError("URL input not found")
        await url_input.fill(url)
        await page.wait_for_timeout(300)
        submit = await page.query_selector(SUBMIT_SELECTOR)
        if submit is not None:
            await submit.click()
        else:
            await url_input.press("Enter")
        await page.wait_for_timeout(3000)
        try:
            await page.wait_for_load_state("networkidle", timeout=NAVIGATION_TIMEOUT_MS)
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeout(f"Timed out waiting for the result of {url}") from exc

    async def _scrape_paced(self, target: ScrapeTarget) -> ScrapedRate:
        if self.scheduler is None:
            return await self.scrape_rate(target)
        return await self.scheduler.schedule(self.scheduler_key, lambda: self.scrape_rate(target))

    async def scrape_batch(self, targets: list[ScrapeTarget]) -> list[ScrapedRate]:
        """Scrape targets one after another on the shared session."""
        async with self.lease():
            await self.init()
            results: list[ScrapedRate] = []
            for index, target in enumerate(targets, start=1):
                logger.info("Scraping %s/%s: %s", index, len(targets), target.item_key)
                result = await self._scrape_paced(target)
                results.append(result)
                if result.actual_rate is not None:
                    logger.info("  -> Rate: %s%%", result.actual_rate)
                elif result.error:
                    logger.info("  -> Error: %s", result.error)
                else:
                    logger.info("  -> Rate not found")
                if index < len(targets):
                    await asyncio.sleep(random.uniform(*self.delay_range))
            return results
