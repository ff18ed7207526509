"""Prune old ranking snapshots for every category that has any."""

from __future__ import annotations

import argparse
import logging

from sqlalchemy import select

from ratewatch.db.session import create_engine_from_env
from ratewatch.db.tables import ranking_snapshots
from ratewatch.ingest.ranking import SNAPSHOT_RETENTION, cleanup_old_snapshots


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--keep", type=int, default=SNAPSHOT_RETENTION)
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    engine = create_engine_from_env()
    with engine.connect() as conn:
        categories = conn.execute(select(ranking_snapshots.c.category_id).distinct()).scalars().all()
    removed = sum(cleanup_old_snapshots(engine, category_id, args.keep) for category_id in categories)
    print(f"Removed {removed} snapshots across {len(categories)} categories")


if __name__ == "__main__":
    main()
