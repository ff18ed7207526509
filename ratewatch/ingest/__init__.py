"""Ingestion helpers."""

from __future__ import annotations

import functools
import pathlib

import yaml

from ratewatch.ingest.models import Category

CATEGORIES_PATH = pathlib.Path(__file__).with_name("categories.yml")


@functools.lru_cache(maxsize=1)
def _load_catalog() -> dict:
    return yaml.safe_load(CATEGORIES_PATH.read_text(encoding="utf-8"))


def load_categories(limit: int | None = None) -> list[Category]:
    categories = [Category(**item) for item in _load_catalog()["categories"]]
    if limit:
        return categories[:limit]
    return categories


def default_category_ids() -> list[str]:
    return [str(category_id) for category_id in _load_catalog()["default"]]


def category_name(category_id: str) -> str:
    for category in load_categories():
        if category.id == category_id:
            return category.name_ja
    return category_id
