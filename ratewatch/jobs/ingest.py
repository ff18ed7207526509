"""Periodic ranking ingestion job."""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any

from dotenv import load_dotenv
from sqlalchemy.engine import Engine

from ratewatch.audit import AuditLogger
from ratewatch.db.session import create_engine_from_env
from ratewatch.ingest.models import ERROR, PARTIAL, SUCCESS, CredentialSet
from ratewatch.ingest.rakuten import RakutenRankingClient
from ratewatch.ingest.ranking import RankingIngestor
from ratewatch.settings import load_settings, load_user_credentials
from ratewatch.utils.scheduler import RequestScheduler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def summarize(results: list[dict[str, Any]]) -> dict[str, int]:
    return {
        "success": sum(1 for r in results if r["status"] == SUCCESS),
        "error": sum(1 for r in results if r["status"] == ERROR),
        "partial": sum(1 for r in results if r["status"] == PARTIAL),
    }


async def run_ingest(
    engine: Engine | None = None,
    *,
    client: RakutenRankingClient | None = None,
) -> dict[str, Any]:
    load_dotenv()
    engine = engine or create_engine_from_env()
    loop = asyncio.get_running_loop()
    settings = await loop.run_in_executor(None, load_settings, engine)
    if not settings.ingest_enabled:
        logger.info("Ingestion disabled in settings; skipping")
        return {"ok": True, "skipped": True, "results": [], "summary": summarize([])}

    credentials = CredentialSet.from_env() if client is None else client.credentials
    client = client or RakutenRankingClient(credentials, scheduler=RequestScheduler())
    ingestor = RankingIngestor(engine, client, audit=AuditLogger(engine))
    try:
        results = [r.as_dict() for r in await ingestor.ingest_all_configured_categories(settings)]
        users = await loop.run_in_executor(
            None, partial(load_user_credentials, engine, fallback_app_id=credentials.application_id)
        )
        await ingestor.ingest_user_rates(users, settings.categories, settings.top_n)
    finally:
        await client.close()

    summary = summarize(results)
    logger.info(
        "Ingest complete: %s categories, %s success, %s partial, %s error",
        len(results),
        summary["success"],
        summary["partial"],
        summary["error"],
    )
    return {"ok": True, "results": results, "summary": summary}


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    asyncio.run(run_ingest())
