"""Diversity-constrained top-N selection."""

import logging
from typing import Optional
from urllib.parse import urlparse

from feed_curator.core.entities import DiversitySelection, RankedItem

logger = logging.getLogger(__name__)

EXCLUDED_SOURCE_CAP = "Excluded (source cap reached)"
EXCLUDED_DUPLICATE_URL = "Excluded (duplicate URL)"


def _url_key(url: str) -> Optional[str]:
    """Host + path, ignoring scheme and query; None when the URL is unusable."""
    if not url:
        return None
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError:
        return None
    if not hostname:
        return None
    return hostname.lower() + parsed.path.rstrip("/")


def select(
    ranked_items: list[RankedItem],
    max_per_source: int,
    target_count: int,
    dedupe_urls: bool = False,
) -> DiversitySelection:
    """Pick up to ``target_count`` items, at most ``max_per_source`` from any source.

    Items are visited in descending final score; equal scores keep their input
    order. Every visited item gets a reason.
    """
    if max_per_source < 0 or target_count < 0:
        raise ValueError("max_per_source and target_count cannot be negative")

    ordered = sorted(ranked_items, key=lambda r: -r.final_score)
    selected: list[RankedItem] = []
    reasons: dict[str, str] = {}
    source_counts: dict[str, int] = {}
    seen_urls: set[str] = set()

    for ranked in ordered:
        if len(selected) >= target_count:
            break

        item = ranked.item
        if dedupe_urls:
            key = _url_key(item.url)
            if key is not None and key in seen_urls:
                reasons[item.id] = EXCLUDED_DUPLICATE_URL
                logger.debug("Skipping duplicate URL from %s: %s", item.source, item.title)
                continue

        count = source_counts.get(item.source, 0)
        if count >= max_per_source:
            reasons[item.id] = EXCLUDED_SOURCE_CAP
            logger.debug("Skipping item from %s (source cap reached): %s", item.source, item.title)
            continue

        selected.append(ranked)
        source_counts[item.source] = count + 1
        if dedupe_urls:
            key = _url_key(item.url)
            if key is not None:
                seen_urls.add(key)
        reasons[item.id] = f"Selected (rank {len(selected)}, source count {count + 1}/{max_per_source})"

    logger.info(
        "Selected %d of %d item(s) across %d source(s)", len(selected), len(ranked_items), len(source_counts)
    )
    return DiversitySelection(selected=selected, reasons=reasons)
