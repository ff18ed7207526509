"""Read access to the ingestion settings and per-user credentials."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.engine import Engine

from ratewatch.db.tables import settings, user_credentials
from ratewatch.ingest import default_category_ids
from ratewatch.ingest.models import CredentialSet, UserCredentials

logger = logging.getLogger(__name__)

DEFAULT_TOP_N = int(os.environ.get("DEFAULT_TOP_N", 30))


@dataclass(slots=True)
class IngestSettings:
    categories: list[str]
    top_n: int
    ingest_enabled: bool


def load_settings(engine: Engine) -> IngestSettings:
    with engine.connect() as conn:
        row = conn.execute(select(settings).order_by(settings.c.id).limit(1)).mappings().first()
    if row is None:
        logger.info("No settings row; using default categories")
        return IngestSettings(categories=default_category_ids(), top_n=DEFAULT_TOP_N, ingest_enabled=True)
    categories = [str(category_id) for category_id in row["categories"] or []]
    return IngestSettings(
        categories=categories or default_category_ids(),
        top_n=row["top_n"] if row["top_n"] is not None else DEFAULT_TOP_N,
        ingest_enabled=bool(row["ingest_enabled"]),
    )


def load_user_credentials(engine: Engine, *, fallback_app_id: str | None = None) -> list[UserCredentials]:
    """Users with their own affiliate id; a missing app id falls back to the shared one."""
    with engine.connect() as conn:
        rows = conn.execute(
            select(user_credentials).order_by(user_credentials.c.id)
        ).mappings().all()
    found: list[UserCredentials] = []
    for row in rows:
        application_id = row["application_id"] or fallback_app_id
        if not application_id or not row["affiliate_id"]:
            continue
        found.append(
            UserCredentials(
                user_id=row["user_id"],
                credentials=CredentialSet(
                    application_id=application_id,
                    access_key=row["access_key"],
                    affiliate_id=row["affiliate_id"],
                ),
            )
        )
    return found
