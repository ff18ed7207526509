from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, insert

from ratewatch.db.tables import metadata, ranking_snapshots, snapshot_items, verification_tasks


@pytest.fixture()
def engine(tmp_path):
    # file-backed so executor threads share one database
    engine = create_engine(f"sqlite:///{tmp_path / 'ratewatch.db'}", future=True)
    metadata.create_all(engine)
    yield engine
    engine.dispose()


def make_snapshot(engine, category_id="0", items=(), captured_at=None, status="SUCCESS"):
    """Insert a snapshot with ``items`` given as (rank, item_key, source_rate) tuples."""
    captured_at = captured_at or datetime.now(timezone.utc)
    with engine.begin() as conn:
        snapshot_id = conn.execute(
            insert(ranking_snapshots).values(
                captured_at=captured_at,
                category_id=category_id,
                ranking_type="realtime",
                fetched_count=len(items),
                status=status,
            )
        ).inserted_primary_key[0]
        for rank, item_key, rate in items:
            shop, code = item_key.split(":")
            conn.execute(
                insert(snapshot_items).values(
                    snapshot_id=snapshot_id,
                    rank=rank,
                    item_key=item_key,
                    title=f"Item {code}",
                    item_url=f"https://item.rakuten.co.jp/{shop}/{code}/",
                    shop_name=shop,
                    source_rate=rate,
                )
            )
    return snapshot_id


def make_task(engine, item_key, status="PENDING", priority=10, last_seen_at=None, version=1):
    with engine.begin() as conn:
        conn.execute(
            insert(verification_tasks).values(
                item_key=item_key,
                status=status,
                priority=priority,
                last_seen_at=last_seen_at or datetime.now(timezone.utc),
                version=version,
                updated_at=datetime.now(timezone.utc),
            )
        )


@pytest.fixture()
def snapshot_factory(engine):
    return lambda **kwargs: make_snapshot(engine, **kwargs)


@pytest.fixture()
def task_factory(engine):
    return lambda item_key, **kwargs: make_task(engine, item_key, **kwargs)


@pytest.fixture()
def yesterday():
    return datetime.now(timezone.utc) - timedelta(days=1)
