"""Verification tasks and verified rates.

A task moves PENDING -> IN_PROGRESS -> VERIFIED and is reopened VERIFIED -> PENDING
when a new ranking sample disagrees with the verified rate. Task rows carry a
``version`` column; every write is conditioned on the version that was read.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection, Engine

from ratewatch.audit import AuditLogger
from ratewatch.db.session import insert_or_ignore, transaction, upsert
from ratewatch.db.tables import (
    ranking_snapshots,
    snapshot_items,
    verification_tasks,
    verified_rate_current,
    verified_rate_history,
)
from ratewatch.utils.dates import utcnow

logger = logging.getLogger(__name__)

PENDING = "PENDING"
IN_PROGRESS = "IN_PROGRESS"
VERIFIED = "VERIFIED"

TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({IN_PROGRESS, VERIFIED}),
    IN_PROGRESS: frozenset({VERIFIED}),
    VERIFIED: frozenset({PENDING}),
}

REOPEN_THRESHOLD = 1.0
MAX_ATTEMPTS = 3


class InvalidTransitionError(ValueError):
    pass


class TaskNotFoundError(LookupError):
    pass


class ConcurrentUpdateError(RuntimeError):
    pass


def calculate_priority(rank: int, source_rate: float | None, verified_rate: float | None) -> int:
    """Rank prominence plus rate-disagreement severity; higher is more urgent."""
    if rank <= 3:
        score = 50
    elif rank <= 10:
        score = 30
    elif rank <= 50:
        score = 10
    else:
        score = 1
    if source_rate is not None and verified_rate is not None:
        diff = abs(source_rate - verified_rate)
        if diff >= 5.0:
            score += 40
        elif diff >= 1.0:
            score += 20
    return score


def rate_difference(verified_rate: float | None, source_rate: float | None) -> float | None:
    if verified_rate is None or source_rate is None:
        return None
    return verified_rate - source_rate


def ingest_target(source_rate: float | None, verified_rate: float | None) -> tuple[str, bool]:
    """Status implied by a fresh sample, and whether it reopens a verified task."""
    if verified_rate is None:
        return PENDING, False
    if source_rate is not None and abs(source_rate - verified_rate) >= REOPEN_THRESHOLD:
        return PENDING, True
    return VERIFIED, False


def plan_task_update(
    current_status: str,
    *,
    snapshot_item_id: int,
    rank: int,
    source_rate: float | None,
    verified_rate: float | None,
    now: datetime,
) -> dict[str, Any]:
    """Columns to write for an existing task seen again by ingestion.

    ``status`` is only present when a VERIFIED task is reopened; PENDING and
    IN_PROGRESS tasks keep whatever status they hold.
    """
    payload: dict[str, Any] = {
        "latest_snapshot_item_id": snapshot_item_id,
        "priority": calculate_priority(rank, source_rate, verified_rate),
        "last_seen_at": now,
        "updated_at": now,
    }
    _, reopen = ingest_target(source_rate, verified_rate)
    if reopen and current_status == VERIFIED:
        payload["status"] = PENDING
    return payload


def upsert_task_from_ingest(
    conn: Connection,
    item_key: str,
    snapshot_item_id: int,
    rank: int,
    source_rate: float | None,
    verified_rate: float | None,
    verified_at: datetime | None = None,
) -> str:
    """Create or refresh the task for ``item_key``; returns the resulting status."""
    now = utcnow()
    for _ in range(MAX_ATTEMPTS):
        row = conn.execute(
            select(verification_tasks.c.status, verification_tasks.c.version).where(
                verification_tasks.c.item_key == item_key
            )
        ).first()
        if row is None:
            status, _ = ingest_target(source_rate, verified_rate)
            inserted = insert_or_ignore(
                conn,
                verification_tasks,
                {
                    "item_key": item_key,
                    "latest_snapshot_item_id": snapshot_item_id,
                    "status": status,
                    "priority": calculate_priority(rank, source_rate, verified_rate),
                    "last_seen_at": now,
                    "version": 1,
                    "updated_at": now,
                },
            )
            if inserted:
                return status
            continue
        payload = plan_task_update(
            row.status,
            snapshot_item_id=snapshot_item_id,
            rank=rank,
            source_rate=source_rate,
            verified_rate=verified_rate,
            now=now,
        )
        if _write_versioned(conn, item_key, row.version, payload):
            if "status" in payload:
                logger.info("Reopened %s: source %s vs verified %s (verified %s)", item_key, source_rate, verified_rate, verified_at)
            return payload.get("status", row.status)
    raise ConcurrentUpdateError(f"Task {item_key} kept changing during ingest")


def _write_versioned(conn: Connection, item_key: str, version: int, values: dict[str, Any]) -> bool:
    result = conn.execute(
        update(verification_tasks)
        .where(verification_tasks.c.item_key == item_key, verification_tasks.c.version == version)
        .values(**values, version=version + 1)
    )
    return result.rowcount == 1


def _transition(engine: Engine, item_key: str, target: str, **values: Any) -> None:
    with engine.begin() as conn:
        row = conn.execute(
            select(verification_tasks.c.status, verification_tasks.c.version).where(
                verification_tasks.c.item_key == item_key
            )
        ).first()
        if row is None:
            raise TaskNotFoundError(item_key)
        if target not in TRANSITIONS[row.status]:
            raise InvalidTransitionError(f"{item_key}: {row.status} -> {target} is not allowed")
        if not _write_versioned(conn, item_key, row.version, {"status": target, "updated_at": utcnow(), **values}):
            raise ConcurrentUpdateError(f"Task {item_key} changed while moving to {target}")


def start_task(engine: Engine, item_key: str, assignee: str, due_at: datetime | None = None) -> None:
    _transition(engine, item_key, IN_PROGRESS, assignee=assignee, due_at=due_at)


def reopen_task(engine: Engine, item_key: str) -> None:
    _transition(engine, item_key, PENDING)


def submit_verification(
    engine: Engine,
    item_key: str,
    verified_rate: float,
    actor_id: str,
    *,
    evidence_url: str | None = None,
    note: str | None = None,
    audit: AuditLogger | None = None,
    conn: Connection | None = None,
) -> None:
    """Record ground truth: history row, current rate and VERIFIED task in one transaction."""
    now = utcnow()
    with transaction(engine, conn) as tx:
        tx.execute(
            insert(verified_rate_history).values(
                item_key=item_key,
                verified_rate=verified_rate,
                evidence_url=evidence_url,
                note=note,
                created_by=actor_id,
                created_at=now,
            )
        )
        upsert(
            tx,
            verified_rate_current,
            {
                "item_key": item_key,
                "verified_rate": verified_rate,
                "evidence_url": evidence_url,
                "note": note,
                "updated_by": actor_id,
                "updated_at": now,
            },
            key=["item_key"],
        )
        _mark_verified(tx, item_key, now)
    logger.info("Verified %s at %s%% by %s", item_key, verified_rate, actor_id)
    if audit:
        audit.log(
            "VERIFY_RATE",
            actor_id,
            "VerifiedRate",
            item_key,
            {"itemKey": item_key, "verifiedRate": verified_rate},
        )


def _mark_verified(conn: Connection, item_key: str, now: datetime) -> None:
    values = {"status": VERIFIED, "priority": 0, "updated_at": now}
    result = conn.execute(
        update(verification_tasks)
        .where(verification_tasks.c.item_key == item_key)
        .values(**values, version=verification_tasks.c.version + 1)
    )
    if result.rowcount:
        return
    inserted = insert_or_ignore(conn, verification_tasks, {"item_key": item_key, "version": 1, **values})
    if not inserted:
        # created between the update and the insert
        conn.execute(
            update(verification_tasks)
            .where(verification_tasks.c.item_key == item_key)
            .values(**values, version=verification_tasks.c.version + 1)
        )


def load_queue(engine: Engine, limit: int = 20) -> list[dict[str, Any]]:
    query = (
        select(verification_tasks)
        .where(verification_tasks.c.status.in_([PENDING, IN_PROGRESS]))
        .order_by(verification_tasks.c.priority.desc(), verification_tasks.c.last_seen_at.desc())
        .limit(limit)
    )
    with engine.connect() as conn:
        return [dict(row) for row in conn.execute(query).mappings()]


def load_detail(engine: Engine, item_key: str) -> dict[str, Any] | None:
    with engine.connect() as conn:
        task = conn.execute(
            select(verification_tasks).where(verification_tasks.c.item_key == item_key)
        ).mappings().first()
        if task is None:
            return None
        snapshot_item = None
        if task["latest_snapshot_item_id"] is not None:
            snapshot_item = conn.execute(
                select(snapshot_items, ranking_snapshots.c.captured_at, ranking_snapshots.c.category_id)
                .join(ranking_snapshots, ranking_snapshots.c.id == snapshot_items.c.snapshot_id)
                .where(snapshot_items.c.id == task["latest_snapshot_item_id"])
            ).mappings().first()
        current = conn.execute(
            select(verified_rate_current).where(verified_rate_current.c.item_key == item_key)
        ).mappings().first()
        history = conn.execute(
            select(verified_rate_history)
            .where(verified_rate_history.c.item_key == item_key)
            .order_by(verified_rate_history.c.created_at.desc(), verified_rate_history.c.id.desc())
            .limit(5)
        ).mappings().all()
    return {
        "task": dict(task),
        "snapshot_item": dict(snapshot_item) if snapshot_item else None,
        "current": dict(current) if current else None,
        "history": [dict(row) for row in history],
    }
