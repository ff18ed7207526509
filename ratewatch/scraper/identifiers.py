"""Shop/item identifier extraction from item pages.

Each strategy is a pure ``html -> ShopItemIds | None`` function. They run in
the order of ``STRATEGIES`` and the first one to find both identifiers wins.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ratewatch.db.session import upsert
from ratewatch.db.tables import affiliate_id_cache
from ratewatch.utils.dates import utcnow

logger = logging.getLogger(__name__)

MAX_DEPTH = 15
BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "ja,en;q=0.9",
}

CAMEL_SHOP_RE = re.compile(r'"shopId"\s*:\s*"?(\d+)"?')
CAMEL_ITEM_RE = re.compile(r'"itemId"\s*:\s*"?(\d+)"?')
SNAKE_SHOP_RE = re.compile(r'"shop_id"\s*:\s*"?(\d+)"?')
SNAKE_ITEM_RE = re.compile(r'"item_id"\s*:\s*"?(\d+)"?')
PAGE_STATE_RE = re.compile(r'<script id="__NEXT_DATA__"[^>]*>(.*?)</script>', re.S)
TRACKING_SHOP_RE = re.compile(r"""["']si["']\s*:\s*["'](\d+)["']""")
TRACKING_ITEM_RE = re.compile(r"""["']ii["']\s*:\s*["'](\d+)["']""")
JSON_SCRIPT_RE = re.compile(r"""<script[^>]*type=["']application/json["'][^>]*>(.*?)</script>""", re.S)
ASSIGN_SHOP_RE = re.compile(r"""shopId\s*[=:]\s*["']?(\d{4,})["']?""")
ASSIGN_ITEM_RE = re.compile(r"""itemId\s*[=:]\s*["']?(\d{4,})["']?""")
DIGITS_RE = re.compile(r"\d+")


@dataclass(frozen=True, slots=True)
class ShopItemIds:
    shop_id: str
    item_id: str


def _pair(shop: re.Match[str] | None, item: re.Match[str] | None) -> ShopItemIds | None:
    if shop and item:
        return ShopItemIds(shop_id=shop.group(1), item_id=item.group(1))
    return None


def find_numeric(data: Any, key: str, depth: int = 0) -> str | None:
    """Depth-first search for an all-digit value stored under ``key``."""
    if depth > MAX_DEPTH:
        return None
    if isinstance(data, dict):
        children = list(data.items())
    elif isinstance(data, list):
        children = list(enumerate(data))
    else:
        return None
    for name, value in children:
        if name == key and not isinstance(value, (dict, list, bool)) and value is not None:
            text = str(value)
            if DIGITS_RE.fullmatch(text):
                return text
        if isinstance(value, (dict, list)):
            found = find_numeric(value, key, depth + 1)
            if found:
                return found
    return None


def _ids_in_document(data: Any) -> ShopItemIds | None:
    shop_id = find_numeric(data, "shopId") or find_numeric(data, "shop_id")
    item_id = find_numeric(data, "itemId") or find_numeric(data, "item_id")
    if shop_id and item_id:
        return ShopItemIds(shop_id=shop_id, item_id=item_id)
    return None


def _ids_in_script(body: str) -> ShopItemIds | None:
    try:
        return _ids_in_document(json.loads(body))
    except ValueError:
        return None


def from_camel_case_fields(html: str) -> ShopItemIds | None:
    return _pair(CAMEL_SHOP_RE.search(html), CAMEL_ITEM_RE.search(html))


def from_snake_case_fields(html: str) -> ShopItemIds | None:
    return _pair(SNAKE_SHOP_RE.search(html), SNAKE_ITEM_RE.search(html))


def from_page_state(html: str) -> ShopItemIds | None:
    match = PAGE_STATE_RE.search(html)
    if not match:
        return None
    return _ids_in_script(match.group(1))


def from_tracking_params(html: str) -> ShopItemIds | None:
    return _pair(TRACKING_SHOP_RE.search(html), TRACKING_ITEM_RE.search(html))


def from_json_scripts(html: str) -> ShopItemIds | None:
    for match in JSON_SCRIPT_RE.finditer(html):
        ids = _ids_in_script(match.group(1))
        if ids:
            return ids
    return None


def from_assignments(html: str) -> ShopItemIds | None:
    return _pair(ASSIGN_SHOP_RE.search(html), ASSIGN_ITEM_RE.search(html))


Strategy = Callable[[str], "ShopItemIds | None"]

STRATEGIES: tuple[Strategy, ...] = (
    from_camel_case_fields,
    from_snake_case_fields,
    from_page_state,
    from_tracking_params,
    from_json_scripts,
    from_assignments,
)


def extract_ids(html: str) -> ShopItemIds | None:
    for strategy in STRATEGIES:
        ids = strategy(html)
        if ids:
            logger.debug("Identifiers found by %s", strategy.__name__)
            return ids
    return None


def build_affiliate_url(ids: ShopItemIds) -> str:
    return (
        "https://affiliate.rakuten.co.jp/link/pc/item?type=item"
        f"&me_id=1{ids.shop_id}&item_id={ids.item_id}&l-id=af_header_cta_link"
    )


class IdentifierResolver:
    """Read-through resolver: cache first, then the item page itself."""

    def __init__(self, engine: Engine, *, session: httpx.AsyncClient | None = None) -> None:
        self.engine = engine
        self.session = session or httpx.AsyncClient(
            timeout=10.0, headers=BROWSER_HEADERS, follow_redirects=True
        )

    async def close(self) -> None:
        await self.session.aclose()

    async def resolve(self, item_key: str, item_url: str) -> ShopItemIds | None:
        loop = asyncio.get_running_loop()
        cached = await loop.run_in_executor(None, self._get_cached, item_key)
        if cached:
            return cached
        html = await self._fetch_html(item_url)
        if html is None:
            return None
        ids = extract_ids(html)
        if ids is None:
            logger.info("No identifiers found for %s", item_key)
            return None
        await loop.run_in_executor(None, self._store, item_key, ids)
        return ids

    async def _fetch_html(self, url: str) -> str | None:
        try:
            response = await self.session.get(url)
        except httpx.HTTPError as exc:
            logger.warning("Fetch error for %s: %r", url, exc)
            return None
        if response.is_error:
            logger.warning("HTTP %s for %s", response.status_code, url)
            return None
        return response.text

    def _get_cached(self, item_key: str) -> ShopItemIds | None:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(affiliate_id_cache.c.shop_id, affiliate_id_cache.c.item_id).where(
                        affiliate_id_cache.c.item_key == item_key
                    )
                ).first()
        except SQLAlchemyError as exc:
            logger.warning("Identifier cache read failed for %s: %s", item_key, exc)
            return None
        if row is None:
            return None
        return ShopItemIds(shop_id=row.shop_id, item_id=row.item_id)

    def _store(self, item_key: str, ids: ShopItemIds) -> None:
        try:
            with self.engine.begin() as conn:
                upsert(
                    conn,
                    affiliate_id_cache,
                    {"item_key": item_key, "shop_id": ids.shop_id, "item_id": ids.item_id, "created_at": utcnow()},
                    key=["item_key"],
                )
        except SQLAlchemyError as exc:
            logger.warning("Identifier cache write failed for %s: %s", item_key, exc)
