"""Saved login state and the browser built from it."""

from __future__ import annotations

import json
import logging
import os
import pathlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from ratewatch.utils.dates import days_between, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

SESSION_FILE = pathlib.Path(os.environ.get("RAKUTEN_SESSION_FILE", ".rakuten-session.json"))
SESSION_MAX_AGE_DAYS = 7
HEADLESS = os.environ.get("SCRAPER_HEADLESS", "true").lower() != "false"
NAVIGATION_TIMEOUT_MS = 30_000
LIVENESS_URL = "https://affiliate.rakuten.co.jp/link/ichiba/"
LOGIN_HOST_MARKER = "id.rakuten.co.jp"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class LoginRequiredError(RuntimeError):
    """No usable login session; an operator has to log in again."""


@dataclass(slots=True)
class SessionState:
    cookies: list[dict[str, Any]]
    last_login: datetime
    local_storage: dict[str, str] = field(default_factory=dict)


def load_session(path: pathlib.Path = SESSION_FILE, *, now: datetime | None = None) -> SessionState | None:
    """Return the saved session, or None when it is missing, unreadable or expired."""
    if not path.exists():
        logger.info("No session file at %s", path)
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        last_login = parse_timestamp(data["lastLogin"])
        cookies = list(data.get("cookies") or [])
    except (OSError, KeyError, TypeError, ValueError) as exc:
        logger.warning("Unreadable session file %s: %s", path, exc)
        return None
    age = days_between(last_login, now or utcnow())
    if age >= SESSION_MAX_AGE_DAYS:
        logger.info("Session expired (last login %.1f days ago)", age)
        return None
    return SessionState(cookies=cookies, last_login=last_login, local_storage=dict(data.get("localStorage") or {}))


def is_login_redirect(url: str) -> bool:
    return LOGIN_HOST_MARKER in url or "login" in url


class BrowserSession:
    """One browser, context and page carrying the saved cookies."""

    def __init__(self, state: SessionState, *, headless: bool = HEADLESS) -> None:
        self.state = state
        self.headless = headless
        self.page = None
        self._playwright = None
        self._browser = None

    async def open(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.headless)
        context = await self._browser.new_context(
            storage_state={"cookies": self.state.cookies, "origins": []},
            user_agent=USER_AGENT,
        )
        self.page = await context.new_page()
        self.page.set_default_navigation_timeout(NAVIGATION_TIMEOUT_MS)
        logger.info("Browser started with session from %s", self.state.last_login.isoformat())

    async def is_alive(self) -> bool:
        """Load a members-only page and check we were not bounced to the login flow."""
        try:
            await self.page.goto(LIVENESS_URL, wait_until="networkidle", timeout=NAVIGATION_TIMEOUT_MS)
            await self.page.wait_for_timeout(2000)
        except PlaywrightError as exc:
            logger.warning("Session check failed: %s", exc)
            return False
        url = self.page.url
        if is_login_redirect(url):
            logger.info("Redirected to login page (%s); session invalid", url)
            return False
        forms = await self.page.query_selector_all("input, form, .raf-form")
        return "affiliate.rakuten.co.jp" in url and len(forms) > 0

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
        if self._playwright is not None:
            await self._playwright.stop()
        self.page = None
        self._browser = None
        self._playwright = None
        logger.info("Browser stopped")
