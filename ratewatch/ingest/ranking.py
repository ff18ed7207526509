"""Ranking snapshot ingestion."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy import delete, insert, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from ratewatch.audit import AuditLogger
from ratewatch.db.session import upsert
from ratewatch.db.tables import (
    ranking_snapshots,
    snapshot_items,
    user_affiliate_rates,
    verified_rate_current,
)
from ratewatch.ingest import category_name
from ratewatch.ingest.models import (
    ERROR,
    PARTIAL,
    SUCCESS,
    CategoryResult,
    IngestResult,
    RankingItem,
    UserCredentials,
)
from ratewatch.ingest.rakuten import RakutenRankingClient, SourceFetchError
from ratewatch.settings import IngestSettings, load_settings
from ratewatch.utils.dates import utcnow
from ratewatch.verification.service import ConcurrentUpdateError, upsert_task_from_ingest

logger = logging.getLogger(__name__)

T = TypeVar("T")

RANKING_TYPE = "realtime"
SNAPSHOT_RETENTION = int(os.environ.get("SNAPSHOT_RETENTION", 2))


class RankingIngestor:
    def __init__(
        self,
        engine: Engine,
        client: RakutenRankingClient,
        *,
        audit: AuditLogger | None = None,
        retention: int = SNAPSHOT_RETENTION,
    ) -> None:
        self.engine = engine
        self.client = client
        self.audit = audit
        self.retention = retention

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.get_running_loop().run_in_executor(None, func, *args)

    async def ingest_category(self, category_id: str, top_n: int) -> IngestResult:
        status, error = SUCCESS, None
        try:
            items = await self.client.fetch_ranking(category_id, top_n)
        except SourceFetchError as exc:
            if not exc.partial:
                snapshot_id = await self._run(self._persist_snapshot, category_id, [], ERROR, str(exc))
                logger.error("Category %s failed; recorded error snapshot %s", category_id, snapshot_id)
                raise
            items, status, error = exc.partial, PARTIAL, str(exc)
        snapshot_id = await self._run(self._persist_snapshot, category_id, items, status, error)
        logger.info(
            "Snapshot %s for %s (%s): %s items, %s",
            snapshot_id,
            category_id,
            category_name(category_id),
            len(items),
            status,
        )
        if status == SUCCESS and self.retention > 0:
            await self._run(cleanup_old_snapshots, self.engine, category_id, self.retention)
        return IngestResult(snapshot_id=snapshot_id, count=len(items), status=status, error=error)

    def _persist_snapshot(
        self, category_id: str, items: list[RankingItem], status: str, error: str | None
    ) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(ranking_snapshots).values(
                    captured_at=utcnow(),
                    category_id=category_id,
                    ranking_type=RANKING_TYPE,
                    fetched_count=len(items),
                    status=status,
                    error_message=error,
                )
            )
            snapshot_id = int(result.inserted_primary_key[0])
            for item in items:
                self._persist_item(conn, snapshot_id, item)
        return snapshot_id

    def _persist_item(self, conn: Connection, snapshot_id: int, item: RankingItem) -> None:
        verified = conn.execute(
            select(verified_rate_current.c.verified_rate, verified_rate_current.c.updated_at).where(
                verified_rate_current.c.item_key == item.item_key
            )
        ).first()
        result = conn.execute(
            insert(snapshot_items).values(
                snapshot_id=snapshot_id,
                rank=item.rank,
                item_key=item.item_key,
                title=item.title,
                item_url=item.item_url,
                shop_name=item.shop_name,
                price=item.price,
                image_url=item.image_url,
                source_rate=item.source_rate,
                raw_json=dict(item.raw),
            )
        )
        upsert_task_from_ingest(
            conn,
            item.item_key,
            int(result.inserted_primary_key[0]),
            item.rank,
            item.source_rate,
            verified.verified_rate if verified else None,
            verified.updated_at if verified else None,
        )

    async def ingest_all_configured_categories(
        self, settings: IngestSettings | None = None
    ) -> list[CategoryResult]:
        if settings is None:
            settings = await self._run(load_settings, self.engine)
        logger.info("Starting ingest for %s categories, top_n=%s", len(settings.categories), settings.top_n)
        results: list[CategoryResult] = []
        for category_id in settings.categories:
            try:
                outcome = await self.ingest_category(category_id, settings.top_n)
            except (SourceFetchError, SQLAlchemyError, ConcurrentUpdateError) as exc:
                logger.error("Error ingesting category %s: %s", category_id, exc)
                results.append(CategoryResult(category_id=category_id, status=ERROR, error=str(exc)))
                continue
            results.append(
                CategoryResult(
                    category_id=category_id,
                    status=outcome.status,
                    count=outcome.count,
                    snapshot_id=outcome.snapshot_id,
                    error=outcome.error,
                )
            )
        if self.audit:
            await self._run(
                self.audit.log, "INGEST_RUN", None, "RankingSnapshot", None, [r.as_dict() for r in results]
            )
        return results

    async def ingest_user_rates(
        self, users: list[UserCredentials], categories: list[str], top_n: int
    ) -> dict[str, int]:
        """Fetch each user's own affiliate rates; accounts run concurrently, each paced by the scheduler."""
        if not users:
            logger.info("No users with their own credentials; skipping per-user rates")
            return {}
        counts = await asyncio.gather(*(self._ingest_user(user, categories, top_n) for user in users))
        return {user.user_id: count for user, count in zip(users, counts)}

    async def _ingest_user(self, user: UserCredentials, categories: list[str], top_n: int) -> int:
        client = self.client.for_credentials(user.credentials)
        saved = 0
        for category_id in categories:
            try:
                items = await client.fetch_ranking(category_id, top_n)
                await self._run(self._persist_user_rates, user.user_id, items)
            except (SourceFetchError, SQLAlchemyError) as exc:
                logger.error("User %s: category %s error: %s", user.user_id, category_id, exc)
                continue
            logger.info("User %s: category %s - %s rates saved", user.user_id, category_id, len(items))
            saved += len(items)
        return saved

    def _persist_user_rates(self, user_id: str, items: list[RankingItem]) -> None:
        now = utcnow()
        with self.engine.begin() as conn:
            for item in items:
                upsert(
                    conn,
                    user_affiliate_rates,
                    {
                        "user_id": user_id,
                        "item_key": item.item_key,
                        "affiliate_rate": item.source_rate or 0.0,
                        "fetched_at": now,
                    },
                    key=["user_id", "item_key"],
                )


def cleanup_old_snapshots(engine: Engine, category_id: str, keep: int) -> int:
    """Delete all but the ``keep`` most recent snapshots of a category; returns the number removed."""
    with engine.begin() as conn:
        ids = conn.execute(
            select(ranking_snapshots.c.id)
            .where(ranking_snapshots.c.category_id == category_id)
            .order_by(ranking_snapshots.c.captured_at.desc(), ranking_snapshots.c.id.desc())
        ).scalars().all()
        stale = list(ids[keep:])
        if not stale:
            return 0
        conn.execute(delete(snapshot_items).where(snapshot_items.c.snapshot_id.in_(stale)))
        conn.execute(delete(ranking_snapshots).where(ranking_snapshots.c.id.in_(stale)))
    logger.info("Deleted %s old snapshots for category %s", len(stale), category_id)
    return len(stale)
