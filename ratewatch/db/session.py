"""Database session helpers."""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

from sqlalchemy import Table, create_engine
from sqlalchemy.engine import Connection, Engine


DEFAULT_DATABASE_URL = "postgresql://user:pass@db:5432/ratewatch"


def create_engine_from_env() -> Engine:
    """Create an engine using the DATABASE_URL environment variable."""
    url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
    return create_engine(url, pool_pre_ping=True, future=True)


@contextmanager
def transaction(engine: Engine, conn: Connection | None = None) -> Iterator[Connection]:
    """Join the caller's transaction when one is given, otherwise open one."""
    if conn is not None:
        yield conn
        return
    with engine.begin() as own:
        yield own


def _dialect_insert(conn: Connection, table: Table):
    if conn.dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as pg_insert

        return pg_insert(table)
    from sqlalchemy.dialects.sqlite import insert as sqlite_insert

    return sqlite_insert(table)


def insert_or_ignore(conn: Connection, table: Table, values: dict[str, Any]) -> int:
    """Insert a row unless its key already exists; returns the inserted row count."""
    stmt = _dialect_insert(conn, table).values(**values).on_conflict_do_nothing()
    return conn.execute(stmt).rowcount


def upsert(conn: Connection, table: Table, values: dict[str, Any], *, key: Sequence[str]) -> None:
    """Insert a row or overwrite every non-key column of the existing one."""
    stmt = _dialect_insert(conn, table).values(**values)
    changes = {name: stmt.excluded[name] for name in values if name not in key}
    conn.execute(stmt.on_conflict_do_update(index_elements=list(key), set_=changes))
