"""Table definitions shared by migrations, services and tests."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

settings = Table(
    "settings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("categories", JSON, nullable=False),
    Column("top_n", Integer, nullable=False, default=30),
    Column("ingest_enabled", Boolean, nullable=False, default=True),
    Column("updated_at", DateTime(timezone=True)),
)

user_credentials = Table(
    "user_credentials",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Text, nullable=False, unique=True),
    Column("application_id", Text),
    Column("access_key", Text),
    Column("affiliate_id", Text, nullable=False),
)

ranking_snapshots = Table(
    "ranking_snapshots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("captured_at", DateTime(timezone=True), nullable=False),
    Column("category_id", Text, nullable=False),
    Column("ranking_type", Text, nullable=False, default="realtime"),
    Column("fetched_count", Integer, nullable=False),
    Column("status", Text, nullable=False),
    Column("error_message", Text),
    Index("ix_ranking_snapshots_category_captured", "category_id", "captured_at"),
)

snapshot_items = Table(
    "snapshot_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("snapshot_id", Integer, ForeignKey("ranking_snapshots.id"), nullable=False),
    Column("rank", Integer, nullable=False),
    Column("item_key", Text, nullable=False),
    Column("title", Text),
    Column("item_url", Text),
    Column("shop_name", Text),
    Column("price", Integer),
    Column("image_url", Text),
    Column("source_rate", Float),
    Column("raw_json", JSON),
    UniqueConstraint("snapshot_id", "rank", name="uq_snapshot_items_rank"),
    Index("ix_snapshot_items_item_key", "item_key"),
)

verified_rate_current = Table(
    "verified_rate_current",
    metadata,
    Column("item_key", Text, primary_key=True),
    Column("verified_rate", Float, nullable=False),
    Column("evidence_url", Text),
    Column("note", Text),
    Column("updated_by", Text, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

verified_rate_history = Table(
    "verified_rate_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("item_key", Text, nullable=False, index=True),
    Column("verified_rate", Float, nullable=False),
    Column("evidence_url", Text),
    Column("note", Text),
    Column("created_by", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

# latest_snapshot_item_id is a plain pointer: retention deletes old snapshot items.
verification_tasks = Table(
    "verification_tasks",
    metadata,
    Column("item_key", Text, primary_key=True),
    Column("latest_snapshot_item_id", Integer),
    Column("status", Text, nullable=False),
    Column("priority", Integer, nullable=False, default=0),
    Column("last_seen_at", DateTime(timezone=True)),
    Column("assignee", Text),
    Column("due_at", DateTime(timezone=True)),
    Column("version", Integer, nullable=False, default=1),
    Column("updated_at", DateTime(timezone=True)),
    Index("ix_verification_tasks_status_priority", "status", "priority"),
)

affiliate_id_cache = Table(
    "affiliate_id_cache",
    metadata,
    Column("item_key", Text, primary_key=True),
    Column("shop_id", Text, nullable=False),
    Column("item_id", Text, nullable=False),
    Column("created_at", DateTime(timezone=True)),
)

user_affiliate_rates = Table(
    "user_affiliate_rates",
    metadata,
    Column("user_id", Text, primary_key=True),
    Column("item_key", Text, primary_key=True),
    Column("affiliate_rate", Float),
    Column("fetched_at", DateTime(timezone=True), nullable=False),
)

audit_log = Table(
    "audit_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("action_type", Text, nullable=False),
    Column("actor_id", Text),
    Column("entity_type", Text),
    Column("entity_id", Text),
    Column("meta_json", JSON),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
