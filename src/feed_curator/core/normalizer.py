"""Conversion of raw aggregator records into canonical feed items."""

import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from bs4 import BeautifulSoup

from feed_curator.core.entities import Category, FeedItem
from feed_curator.core.errors import MalformedItemError

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 500

AGGREGATOR_HOSTS = ("inoreader.com", "google.com/reader")
SKIPPED_LINK_MARKERS = ("tracking", "pixel", ".gif", ".png", ".jpg")


def item_identifier(source_key: str, native_id: str) -> str:
    """Stable id for a source item; the same source item always maps to it."""
    return hashlib.sha1(f"{source_key}\x1f{native_id}".encode("utf-8")).hexdigest()


def html_to_text(html: str) -> str:
    """Collapse an HTML fragment into plain text."""
    if not html:
        return ""
    if "<" not in html:
        return re.sub(r"\s+", " ", html).strip()
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return re.sub(r"\s+", " ", soup.get_text(" ")).strip()


def _is_aggregator_url(url: str) -> bool:
    return any(host in url for host in AGGREGATOR_HOSTS)


def _first_href(links: Any) -> str:
    if isinstance(links, list) and links and isinstance(links[0], dict):
        return str(links[0].get("href") or "")
    return ""


def extract_url_from_html(html: str) -> str:
    """First usable http(s) link in an HTML body (newsletter emails have no canonical link)."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for anchor in soup.find_all("a", href=True):
        url = anchor["href"].strip()
        if _is_aggregator_url(url) or url.startswith(("javascript:", "data:")):
            continue
        if any(marker in url for marker in SKIPPED_LINK_MARKERS):
            continue
        if url.startswith(("http://", "https://")):
            return url
    return ""


def _parse_published(raw: dict[str, Any]) -> datetime:
    value = raw.get("published")
    if value is None:
        value = raw.get("published_at")
    if value is None or value == "":
        raise MalformedItemError("missing publication time")

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise MalformedItemError(f"publication time out of range {value!r}") from None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise MalformedItemError(f"unparseable publication time {value!r}") from None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _label(category_path: str) -> str:
    """``user/1005/label/AI News`` -> ``AI News``."""
    return category_path.rstrip("/").split("/")[-1]


class Normalizer:
    """Map heterogeneous raw records to ``FeedItem`` without failing on partial data."""

    def __init__(
        self,
        default_category: Category = Category.TECH_ARTICLES,
        source_names: Optional[dict[str, str]] = None,
    ) -> None:
        self.default_category = Category.parse(default_category)
        self.source_names = source_names or {}

    def normalize(self, raw_items: list[dict[str, Any]]) -> list[FeedItem]:
        """Normalize a batch, skipping malformed records and duplicate ids (first wins)."""
        items: list[FeedItem] = []
        seen: set[str] = set()

        for raw in raw_items:
            try:
                item = self.normalize_item(raw)
            except (MalformedItemError, ValueError, TypeError, AttributeError, OverflowError) as e:
                native = raw.get("id", "?") if isinstance(raw, dict) else "?"
                logger.warning("Skipping malformed item %s: %s", native, e)
                continue

            if item.id in seen:
                logger.debug("Dropping duplicate item in batch: %s", item.id)
                continue
            seen.add(item.id)
            items.append(item)

        return items

    def normalize_item(self, raw: dict[str, Any]) -> FeedItem:
        """Normalize one record. Raises ``MalformedItemError`` on missing id or date."""
        if not isinstance(raw, dict):
            raise MalformedItemError(f"expected a mapping, got {type(raw).__name__}")

        native_id = str(raw.get("id") or "").strip()
        if not native_id:
            raise MalformedItemError("missing source item id")

        origin = raw.get("origin") or {}
        source_id = str(origin.get("streamId") or "")
        source_title = str(origin.get("title") or "")
        source = self.source_names.get(source_id) or source_title or "Unknown"

        summary_html = ""
        summary = raw.get("summary")
        if isinstance(summary, dict):
            summary_html = str(summary.get("content") or "")
        elif isinstance(summary, str):
            summary_html = summary

        url = ""
        for candidate in (_first_href(raw.get("canonical")), _first_href(raw.get("alternate"))):
            if candidate and not _is_aggregator_url(candidate):
                url = candidate
                break
        if not url:
            url = extract_url_from_html(summary_html)

        summary_text = html_to_text(summary_html)

        return FeedItem(
            id=item_identifier(source_id or source, native_id),
            source_item_id=native_id,
            title=html_to_text(str(raw.get("title") or "")),
            url=url,
            source=source,
            source_id=source_id,
            published_at=_parse_published(raw),
            category=self.default_category,
            author=str(raw.get("author") or ""),
            summary=summary_text,
            snippet=summary_text[:SNIPPET_LENGTH],
            labels=[_label(str(c)) for c in raw.get("categories") or [] if c],
            payload=raw,
        )
