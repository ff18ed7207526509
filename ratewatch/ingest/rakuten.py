"""Ichiba ranking API client."""

from __future__ import annotations

import logging
from typing import Any, Mapping
from urllib.parse import parse_qs, urlparse

import httpx

from ratewatch.ingest.models import CredentialSet, RankingItem
from ratewatch.utils.scheduler import RequestScheduler

logger = logging.getLogger(__name__)

RANKING_ENDPOINT = "https://app.rakuten.co.jp/services/api/IchibaItem/Ranking/20220601"
ITEM_HOST = "item.rakuten.co.jp"
PAGE_SIZE = 30
MAX_PAGES = 4


class SourceFetchError(RuntimeError):
    """The ranking source failed; ``partial`` holds items fetched before the failure."""

    def __init__(self, message: str, *, partial: list[RankingItem] | None = None, page: int | None = None) -> None:
        super().__init__(message)
        self.partial = partial or []
        self.page = page


class RakutenRankingClient:
    def __init__(
        self,
        credentials: CredentialSet,
        *,
        session: httpx.AsyncClient | None = None,
        scheduler: RequestScheduler | None = None,
    ) -> None:
        self.credentials = credentials
        self.session = session or httpx.AsyncClient(timeout=30.0)
        self.scheduler = scheduler or RequestScheduler()

    async def close(self) -> None:
        await self.session.aclose()

    def for_credentials(self, credentials: CredentialSet) -> "RakutenRankingClient":
        """A client for another account sharing this client's HTTP session and scheduler."""
        return RakutenRankingClient(credentials, session=self.session, scheduler=self.scheduler)

    async def fetch_page(self, genre_id: str, page: int) -> dict[str, Any]:
        params: dict[str, Any] = {
            "applicationId": self.credentials.application_id,
            "formatVersion": 2,
            "genreId": genre_id,
            "page": page,
        }
        if self.credentials.access_key:
            params["accessKey"] = self.credentials.access_key
        if self.credentials.affiliate_id:
            params["affiliateId"] = self.credentials.affiliate_id
        return await self.scheduler.schedule(self.credentials.key, lambda: self._get(params))

    async def _get(self, params: Mapping[str, Any]) -> dict[str, Any]:
        try:
            response = await self.session.get(RANKING_ENDPOINT, params=params)
        except httpx.HTTPError as exc:
            raise SourceFetchError(f"Ranking request failed: {exc!r}") from exc
        if response.is_error:
            raise SourceFetchError(f"Ranking API error: {response.status_code} {response.reason_phrase}")
        try:
            data = response.json()
        except ValueError as exc:
            raise SourceFetchError("Ranking API returned a non-JSON body") from exc
        if data.get("error"):
            raise SourceFetchError(f"Ranking API error body: {data['error']} - {data.get('error_description')}")
        return data

    async def fetch_ranking(self, genre_id: str, top_n: int) -> list[RankingItem]:
        """Collect ranking pages until a short page, ``top_n`` items or the page cap."""
        items: list[RankingItem] = []
        for page in range(1, MAX_PAGES + 1):
            try:
                data = await self.fetch_page(genre_id, page)
            except SourceFetchError as exc:
                logger.warning("Genre %s stopped at page %s: %s", genre_id, page, exc)
                raise SourceFetchError(str(exc), partial=_truncate(items, top_n), page=page) from exc
            entries = data.get("Items") or []
            try:
                for entry in entries:
                    items.append(parse_item(entry, position=len(items) + 1))
            except (KeyError, TypeError, ValueError) as exc:
                raise SourceFetchError(
                    f"Malformed ranking item on page {page}: {exc!r}",
                    partial=_truncate(items, top_n),
                    page=page,
                ) from exc
            logger.info("Genre %s page %s: %s items", genre_id, page, len(entries))
            if top_n > 0 and len(items) >= top_n:
                break
            if len(entries) < PAGE_SIZE:
                break
        return _truncate(items, top_n)


def _truncate(items: list[RankingItem], top_n: int) -> list[RankingItem]:
    return items[:top_n] if top_n > 0 else list(items)


def parse_item(entry: Mapping[str, Any], *, position: int) -> RankingItem:
    item = entry.get("Item", entry)
    item_key = str(item["itemCode"])
    return RankingItem(
        rank=int(item.get("rank") or position),
        item_key=item_key,
        title=item.get("itemName") or "",
        item_url=direct_item_url(item.get("itemUrl"), item_key),
        shop_name=item.get("shopName"),
        source_rate=parse_rate(item.get("affiliateRate")),
        price=parse_price(item.get("itemPrice")),
        image_url=_first_image(item.get("mediumImageUrls")),
        raw=dict(item),
    )


def direct_item_url(item_url: str | None, item_key: str) -> str:
    """Unwrap the ``pc=`` target of an affiliate link, falling back to the shop page."""
    if item_url:
        target = parse_qs(urlparse(item_url).query).get("pc")
        if target:
            return target[0]
        if ITEM_HOST in item_url:
            return item_url
    shop_code = item_key.split(":", 1)[0]
    return f"https://{ITEM_HOST}/{shop_code}/"


def parse_rate(value: Any) -> float | None:
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return None
    return rate or None


def parse_price(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(str(value).replace(",", ""))
    except ValueError:
        return None


def _first_image(images: Any) -> str | None:
    if not images:
        return None
    first = images[0]
    if isinstance(first, Mapping):
        return first.get("imageUrl")
    return str(first)
