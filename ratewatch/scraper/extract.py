"""Commission rate extraction from the link-builder result page."""

from __future__ import annotations

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

RATE_SELECTORS = (
    ".raf-head__contentData",
    '[data-test="rate"]',
    ".raf-product__rankBox",
)
PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")
CONTENT_PATTERNS = (
    re.compile(r"料率[・:]?\s*報酬.*?(\d+(?:\.\d+)?)\s*%"),
    re.compile(r'"(\d+(?:\.\d+)?)\s*%\s*"'),
)


def parse_percentage(text: str | None) -> float | None:
    if not text:
        return None
    match = PERCENT_RE.search(text)
    return float(match.group(1)) if match else None


def rate_from_content(html: str) -> float | None:
    for pattern in CONTENT_PATTERNS:
        match = pattern.search(html)
        if match:
            logger.debug("Rate found in page content: %s", match.group(0))
            return float(match.group(1))
    return None


async def extract_rate(page: Any) -> float | None:
    """Try each selector in order, then fall back to the raw page content."""
    for selector in RATE_SELECTORS:
        elements = await page.query_selector_all(selector)
        logger.debug('Selector "%s": %s elements', selector, len(elements))
        for element in elements:
            rate = parse_percentage(await element.text_content())
            if rate is not None:
                return rate
    return rate_from_content(await page.content())
