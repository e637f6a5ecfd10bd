"""Shared fixtures: in-memory fakes for the content source and the oracle."""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

import pytest

from feed_curator.adapters.storage import SQLiteStore
from feed_curator.core import Category, ContentSource, FeedItem, Judgment, ScoringOracle, SourcePage


def raw_item(
    native_id: str,
    published: Optional[datetime] = None,
    title: str = "An article",
    stream_id: str = "feed/https://example.com/rss",
    source_title: str = "Example Blog",
    url: str = "",
    summary: str = "<p>Some summary text</p>",
    categories: Optional[list[str]] = None,
) -> dict[str, Any]:
    """Inoreader-shaped record."""
    published = published or datetime.now(timezone.utc) - timedelta(hours=1)
    return {
        "id": native_id,
        "title": title,
        "published": int(published.timestamp()),
        "canonical": [{"href": url or f"https://example.com/{native_id}"}],
        "summary": {"content": summary},
        "author": "Jane Doe",
        "origin": {"streamId": stream_id, "title": source_title},
        "categories": categories or [],
    }


def make_item(
    item_id: str,
    source: str = "Example Blog",
    category: Category = Category.TECH_ARTICLES,
    published_at: Optional[datetime] = None,
    title: str = "An article",
    url: str = "",
    summary: str = "",
) -> FeedItem:
    return FeedItem(
        id=item_id,
        source_item_id=item_id,
        title=title,
        url=url or f"https://{source.lower().replace(' ', '')}.example.com/{item_id}",
        source=source,
        source_id=f"feed/{source}",
        published_at=published_at or datetime.now(timezone.utc) - timedelta(hours=1),
        category=category,
        summary=summary,
        snippet=summary[:500],
    )


class FakeSource(ContentSource):
    """Serves fixed pages; cursors are ``page-<index>``."""

    def __init__(self, pages: list[list[dict[str, Any]]], errors: Optional[dict[int, Exception]] = None) -> None:
        self.pages = pages
        self.errors = errors or {}
        self.calls: list[Optional[str]] = []

    async def list_items(self, since, cursor, page_size) -> SourcePage:
        call_index = len(self.calls)
        self.calls.append(cursor)
        if call_index in self.errors:
            raise self.errors[call_index]
        index = 0 if cursor is None else int(cursor.split("-")[1])
        next_cursor = f"page-{index + 1}" if index + 1 < len(self.pages) else None
        return SourcePage(items=self.pages[index], next_cursor=next_cursor)


class FakeOracle(ScoringOracle):
    """Returns configured judgments keyed by a substring of the text."""

    def __init__(self, default: Judgment = Judgment(7, 6, ["agent"]), by_text: Optional[dict[str, Any]] = None):
        self.default = default
        self.by_text = by_text or {}
        self.calls = 0

    async def judge(self, text: str) -> Judgment:
        self.calls += 1
        for needle, result in self.by_text.items():
            if needle in text:
                if isinstance(result, Exception):
                    raise result
                return result
        return self.default


def make_pages(sizes: list[int], published: Optional[datetime] = None) -> list[list[dict[str, Any]]]:
    pages = []
    counter = 0
    for size in sizes:
        page = []
        for _ in range(size):
            page.append(raw_item(f"item-{counter}", published=published))
            counter += 1
        pages.append(page)
    return pages


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SQLiteStore]:
    db = SQLiteStore(tmp_path / "test.db")
    yield db
    db.close()
