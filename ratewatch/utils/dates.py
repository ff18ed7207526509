"""Datetime helpers."""

from __future__ import annotations

import os
from datetime import datetime, timezone

import pendulum

DEFAULT_TZ = "Asia/Tokyo"


def timezone_name() -> str:
    return os.environ.get("TIMEZONE", DEFAULT_TZ)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> pendulum.DateTime:
    parsed = pendulum.parse(value)
    if not isinstance(parsed, pendulum.DateTime):
        raise ValueError(f"Not a timestamp: {value!r}")
    return parsed


def days_between(earlier: datetime, later: datetime) -> float:
    return (later.timestamp() - earlier.timestamp()) / 86400
