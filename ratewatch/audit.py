"""Best-effort audit trail."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import insert
from sqlalchemy.engine import Engine

from ratewatch.db.tables import audit_log
from ratewatch.utils.dates import utcnow

logger = logging.getLogger(__name__)


class AuditLogger:
    """Writes audit events; a failed write is logged here and never reaches the caller."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def log(
        self,
        action_type: str,
        actor_id: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        meta: Any = None,
    ) -> None:
        try:
            meta_json = json.loads(json.dumps(meta, default=str)) if meta is not None else None
            with self.engine.begin() as conn:
                conn.execute(
                    insert(audit_log).values(
                        action_type=action_type,
                        actor_id=actor_id,
                        entity_type=entity_type,
                        entity_id=entity_id,
                        meta_json=meta_json,
                        created_at=utcnow(),
                    )
                )
        except Exception:
            logger.exception("Failed to write audit log %s", action_type)
