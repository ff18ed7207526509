"""Scheduled scrape of the pending verification queue."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from dotenv import load_dotenv
from sqlalchemy.engine import Engine

from ratewatch.audit import AuditLogger
from ratewatch.db.session import create_engine_from_env
from ratewatch.scraper.identifiers import IdentifierResolver
from ratewatch.scraper.orchestrator import RateScraper
from ratewatch.scraper.service import ByPendingQueue, RateScrapeService
from ratewatch.utils.scheduler import RequestScheduler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
PENDING_LIMIT = int(os.environ.get("SCRAPE_PENDING_LIMIT", 50))


async def run_pending_scrape(
    limit: int = PENDING_LIMIT,
    engine: Engine | None = None,
    *,
    scraper: RateScraper | None = None,
) -> dict[str, Any]:
    load_dotenv()
    engine = engine or create_engine_from_env()
    resolver = None
    if scraper is None:
        resolver = IdentifierResolver(engine)
        scraper = RateScraper(resolver=resolver, scheduler=RequestScheduler())
    service = RateScrapeService(engine, scraper, audit=AuditLogger(engine))
    try:
        job = await service.run(ByPendingQueue(limit=limit))
    finally:
        await scraper.close()
        if resolver is not None:
            await resolver.close()
    return job.as_dict()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    asyncio.run(run_pending_scrape())
