"""Database migration helpers."""

from __future__ import annotations

import sys

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ratewatch.db.session import create_engine_from_env
from ratewatch.db.tables import metadata


def run_migrations(engine: Engine) -> list[str]:
    """Create any missing tables and indexes; returns the names of the tables created."""
    existing = set(inspect(engine).get_table_names())
    metadata.create_all(engine)
    return [name for name in metadata.tables if name not in existing]


def main() -> None:
    try:
        engine = create_engine_from_env()
    except KeyError as exc:  # pragma: no cover - env failure is user error
        print(f"Missing environment variable: {exc}", file=sys.stderr)
        sys.exit(1)
    try:
        created = run_migrations(engine)
    except SQLAlchemyError as exc:
        print(f"Migration failed: {exc}", file=sys.stderr)
        sys.exit(2)
    print(f"Created {len(created)} tables: {', '.join(created) or 'none'}")


if __name__ == "__main__":
    main()
