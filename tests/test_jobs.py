import pytest

from ratewatch.jobs import scrape as scrape_job
from ratewatch.jobs.celery_app import celery_app
from ratewatch.scraper.orchestrator import ScrapedRate
from ratewatch.utils.scheduler import RequestScheduler


class ClosingScraper:
    def __init__(self):
        self.closed = False
        self.targets = []

    async def scrape_batch(self, targets):
        self.targets = [t.item_key for t in targets]
        return [ScrapedRate(item_key=t.item_key, item_url=t.item_url, actual_rate=3.0) for t in targets]

    async def close(self):
        self.closed = True


def test_beat_schedule():
    schedule = celery_app.conf.beat_schedule
    assert schedule["ranking-ingest"]["task"] == "ratewatch.jobs.ingest.run_ingest"
    assert schedule["pending-scrape"]["task"] == "ratewatch.jobs.scrape.run_pending_scrape"


@pytest.mark.asyncio
async def test_pending_scrape_job(engine, snapshot_factory, task_factory):
    snapshot_factory(items=[(1, "shop:a", 3.0), (2, "shop:b", 2.0)])
    task_factory("shop:a", priority=10)
    task_factory("shop:b", priority=30)
    scraper = ClosingScraper()
    data = await scrape_job.run_pending_scrape(1, engine, scraper=scraper)
    assert scraper.targets == ["shop:b"]
    assert scraper.closed
    assert data["success"] == 1
    assert data["results"][0]["difference"] == 1.0


@pytest.mark.asyncio
async def test_pending_scrape_builds_paced_scraper(engine, monkeypatch):
    built = {}

    def factory(**kwargs):
        built.update(kwargs)
        return ClosingScraper()

    monkeypatch.setattr(scrape_job, "RateScraper", factory)
    data = await scrape_job.run_pending_scrape(5, engine)
    assert isinstance(built["scheduler"], RequestScheduler)
    assert built["resolver"] is not None
    assert data["total"] == 0
