"""Celery configuration for scheduled jobs."""

from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

from ratewatch.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

celery_app = Celery("ratewatch", broker=broker_url, backend=backend_url, include=["ratewatch.jobs.ingest", "ratewatch.jobs.scrape"])
celery_app.conf.timezone = timezone_name()
celery_app.conf.beat_schedule = {
    "ranking-ingest": {
        "task": "ratewatch.jobs.ingest.run_ingest",
        "schedule": crontab(hour=os.environ.get("INGEST_HOUR", "*/6"), minute=os.environ.get("INGEST_MINUTE", "0")),
    },
    "pending-scrape": {
        "task": "ratewatch.jobs.scrape.run_pending_scrape",
        "schedule": crontab(hour=os.environ.get("SCRAPE_HOUR", "3"), minute=os.environ.get("SCRAPE_MINUTE", "30")),
    },
}


@celery_app.task(name="ratewatch.jobs.ingest.run_ingest")
def run_ingest_task():  # pragma: no cover - executed by worker
    import asyncio

    from ratewatch.jobs.ingest import run_ingest

    return asyncio.run(run_ingest())["summary"]


@celery_app.task(name="ratewatch.jobs.scrape.run_pending_scrape")
def run_pending_scrape_task():  # pragma: no cover - executed by worker
    import asyncio

    from ratewatch.jobs.scrape import run_pending_scrape

    data = asyncio.run(run_pending_scrape())
    return {"total": data["total"], "success": data["success"], "failed": data["failed"]}
