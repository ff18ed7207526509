"""Scrape batches: pick targets, run the scraper, write verified rates back."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Union

from sqlalchemy import select
from sqlalchemy.engine import Engine

from ratewatch.audit import AuditLogger
from ratewatch.db.tables import ranking_snapshots, snapshot_items, verification_tasks
from ratewatch.scraper.orchestrator import RateScraper, ScrapedRate, ScrapeTarget
from ratewatch.verification.service import PENDING, rate_difference, submit_verification

logger = logging.getLogger(__name__)

AUTOMATION_ACTOR_ID = "system@scraper.local"
DEFAULT_PENDING_LIMIT = 50


@dataclass(frozen=True, slots=True)
class BySnapshot:
    snapshot_id: int


@dataclass(frozen=True, slots=True)
class ByPendingQueue:
    limit: int = DEFAULT_PENDING_LIMIT


@dataclass(frozen=True, slots=True)
class ByItemKeys:
    item_keys: tuple[str, ...]


ScrapeRequest = Union[BySnapshot, ByPendingQueue, ByItemKeys]


@dataclass(slots=True)
class ScrapeItemResult:
    item_key: str
    source_rate: float | None
    scraped_rate: float | None
    difference: float | None
    status: str
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "itemKey": self.item_key,
            "sourceRate": self.source_rate,
            "scrapedRate": self.scraped_rate,
            "difference": self.difference,
            "status": self.status,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass(slots=True)
class ScrapeJobResult:
    total: int = 0
    success: int = 0
    failed: int = 0
    results: list[ScrapeItemResult] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "results": [item.as_dict() for item in self.results],
        }


def _target(row: Any) -> ScrapeTarget:
    return ScrapeTarget(item_key=row.item_key, item_url=row.item_url, source_rate=row.source_rate)


def _latest_items(engine: Engine, item_keys: list[str]) -> list[ScrapeTarget]:
    """Most recent snapshot item per key, in the order the keys were given."""
    if not item_keys:
        return []
    query = (
        select(snapshot_items.c.item_key, snapshot_items.c.item_url, snapshot_items.c.source_rate)
        .join(ranking_snapshots, ranking_snapshots.c.id == snapshot_items.c.snapshot_id)
        .where(snapshot_items.c.item_key.in_(item_keys))
        .order_by(ranking_snapshots.c.captured_at.desc(), snapshot_items.c.id.desc())
    )
    latest: dict[str, ScrapeTarget] = {}
    with engine.connect() as conn:
        for row in conn.execute(query):
            latest.setdefault(row.item_key, _target(row))
    missing = [key for key in item_keys if key not in latest]
    if missing:
        logger.warning("No snapshot item for %s keys: %s", len(missing), missing[:10])
    return [latest[key] for key in dict.fromkeys(item_keys) if key in latest]


def resolve_targets(engine: Engine, request: ScrapeRequest) -> list[ScrapeTarget]:
    if isinstance(request, BySnapshot):
        query = (
            select(snapshot_items.c.item_key, snapshot_items.c.item_url, snapshot_items.c.source_rate)
            .where(snapshot_items.c.snapshot_id == request.snapshot_id)
            .order_by(snapshot_items.c.rank)
        )
        with engine.connect() as conn:
            return [_target(row) for row in conn.execute(query)]
    if isinstance(request, ByPendingQueue):
        query = (
            select(verification_tasks.c.item_key)
            .where(verification_tasks.c.status == PENDING)
            .order_by(verification_tasks.c.priority.desc(), verification_tasks.c.last_seen_at.desc())
            .limit(request.limit)
        )
        with engine.connect() as conn:
            keys = list(conn.execute(query).scalars())
        return _latest_items(engine, keys)
    if isinstance(request, ByItemKeys):
        return _latest_items(engine, list(request.item_keys))
    raise TypeError(f"Unknown scrape request: {request!r}")


class RateScrapeService:
    def __init__(self, engine: Engine, scraper: RateScraper, *, audit: AuditLogger | None = None) -> None:
        self.engine = engine
        self.scraper = scraper
        self.audit = audit

    async def run(self, request: ScrapeRequest) -> ScrapeJobResult:
        loop = asyncio.get_running_loop()
        targets = await loop.run_in_executor(None, resolve_targets, self.engine, request)
        job = ScrapeJobResult(total=len(targets))
        if not targets:
            return job
        scraped = await self.scraper.scrape_batch(targets)
        for target, outcome in zip(targets, scraped):
            job.results.append(await self._record(target, outcome))
        job.success = sum(1 for item in job.results if item.status == "success")
        job.failed = sum(1 for item in job.results if item.status == "failed")
        logger.info("Scrape batch %s: %s total, %s success, %s failed", request, job.total, job.success, job.failed)
        if self.audit:
            await loop.run_in_executor(
                None,
                self.audit.log,
                "SCRAPE_BATCH",
                AUTOMATION_ACTOR_ID,
                "VerificationTask",
                None,
                {"request": repr(request), "total": job.total, "success": job.success, "failed": job.failed},
            )
        return job

    async def _record(self, target: ScrapeTarget, outcome: ScrapedRate) -> ScrapeItemResult:
        if outcome.actual_rate is not None:
            await asyncio.get_running_loop().run_in_executor(None, self._save, outcome)
            return ScrapeItemResult(
                item_key=target.item_key,
                source_rate=target.source_rate,
                scraped_rate=outcome.actual_rate,
                difference=rate_difference(outcome.actual_rate, target.source_rate),
                status="success",
            )
        return ScrapeItemResult(
            item_key=target.item_key,
            source_rate=target.source_rate,
            scraped_rate=None,
            difference=None,
            status="failed" if outcome.error else "no_rate",
            error=outcome.error,
        )

    def _save(self, outcome: ScrapedRate) -> None:
        submit_verification(
            self.engine,
            outcome.item_key,
            outcome.actual_rate,
            AUTOMATION_ACTOR_ID,
            note=f"Scraped at {outcome.scraped_at.isoformat()}",
        )
