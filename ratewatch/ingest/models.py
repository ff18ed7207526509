"""Ingestion data models."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping

SUCCESS = "SUCCESS"
PARTIAL = "PARTIAL"
ERROR = "ERROR"


@dataclass(slots=True)
class Category:
    id: str
    name: str
    name_ja: str


@dataclass(frozen=True, slots=True)
class CredentialSet:
    """One external account: the unit the ranking API rate-limits."""

    application_id: str
    access_key: str | None = None
    affiliate_id: str | None = None

    @property
    def key(self) -> str:
        return self.application_id

    @classmethod
    def from_env(cls) -> "CredentialSet":
        application_id = os.environ.get("RAKUTEN_APP_ID")
        if not application_id:
            raise KeyError("RAKUTEN_APP_ID")
        return cls(
            application_id=application_id,
            access_key=os.environ.get("RAKUTEN_ACCESS_KEY") or None,
            affiliate_id=os.environ.get("RAKUTEN_AFFILIATE_ID") or None,
        )


@dataclass(slots=True)
class UserCredentials:
    user_id: str
    credentials: CredentialSet


@dataclass(slots=True)
class RankingItem:
    rank: int
    item_key: str
    title: str
    item_url: str
    shop_name: str | None
    source_rate: float | None
    price: int | None
    image_url: str | None
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class IngestResult:
    snapshot_id: int
    count: int
    status: str = SUCCESS
    error: str | None = None


@dataclass(slots=True)
class CategoryResult:
    category_id: str
    status: str
    count: int = 0
    snapshot_id: int | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"categoryId": self.category_id, "status": self.status}
        if self.status != ERROR:
            data["count"] = self.count
            data["snapshotId"] = self.snapshot_id
        if self.error:
            data["error"] = self.error
        return data
