"""Seed the settings row and optional per-user credentials."""

from __future__ import annotations

import argparse
import os

from sqlalchemy import select

from ratewatch.db.migrate import run_migrations
from ratewatch.db.session import create_engine_from_env, insert_or_ignore
from ratewatch.db.tables import settings, user_credentials
from ratewatch.ingest import default_category_ids, load_categories
from ratewatch.settings import DEFAULT_TOP_N
from ratewatch.utils.dates import utcnow


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--categories", type=int, default=0, help="seed the first N catalog genres instead of the defaults")
    parser.add_argument("--top-n", type=int, default=DEFAULT_TOP_N)
    parser.add_argument("--user", help="user id to attach RAKUTEN_AFFILIATE_ID to")
    args = parser.parse_args()

    engine = create_engine_from_env()
    run_migrations(engine)
    if args.categories:
        category_ids = [category.id for category in load_categories(limit=args.categories)]
    else:
        category_ids = default_category_ids()
    with engine.begin() as conn:
        existing = conn.execute(select(settings.c.id).limit(1)).first()
        if existing is None:
            conn.execute(
                settings.insert().values(
                    categories=category_ids, top_n=args.top_n, ingest_enabled=True, updated_at=utcnow()
                )
            )
        if args.user:
            insert_or_ignore(
                conn,
                user_credentials,
                {
                    "user_id": args.user,
                    "application_id": os.environ.get("RAKUTEN_APP_ID"),
                    "access_key": os.environ.get("RAKUTEN_ACCESS_KEY"),
                    "affiliate_id": os.environ.get("RAKUTEN_AFFILIATE_ID"),
                },
            )
    print(f"Seed complete: {len(category_ids)} categories, top_n={args.top_n}")


if __name__ == "__main__":
    main()
