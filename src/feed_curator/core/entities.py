"""Core domain entities."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class Category(str, Enum):
    """Closed set of content categories."""

    NEWSLETTERS = "newsletters"
    PODCASTS = "podcasts"
    TECH_ARTICLES = "tech_articles"
    AI_NEWS = "ai_news"
    PRODUCT_NEWS = "product_news"
    COMMUNITY = "community"
    RESEARCH = "research"

    @classmethod
    def parse(cls, value: "str | Category") -> "Category":
        """Validate a category value coming from outside the core."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(c.value for c in cls)
            raise ValueError(f"Unknown category {value!r} (expected one of: {allowed})") from None


class SyncStatus(str, Enum):
    """Lifecycle of a named sync job."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FeedItem:
    """Normalized content record; ``id`` is the idempotency key."""

    id: str
    source_item_id: str
    title: str
    url: str
    source: str
    source_id: str
    published_at: datetime
    category: Category
    author: str = ""
    summary: str = ""
    snippet: str = ""
    labels: list[str] = field(default_factory=list)
    payload: dict[str, Any] = field(default_factory=dict)
    full_text: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Item id cannot be empty")
        self.category = Category.parse(self.category)
        if self.published_at.tzinfo is None:
            self.published_at = self.published_at.replace(tzinfo=timezone.utc)

    @property
    def text(self) -> str:
        """Text handed to the lexical index and the scoring oracle."""
        parts = [self.title, self.summary or self.snippet]
        return "\n\n".join(p for p in parts if p)


@dataclass
class Judgment:
    """Scoring oracle verdict on the configured integer scale."""

    relevance: int
    usefulness: int
    tags: list[str] = field(default_factory=list)


@dataclass
class ItemScore:
    """Per-item scoring record; the latest one overwrites earlier runs."""

    item_id: str
    category: Category
    lexical: float
    llm_relevance: int
    llm_usefulness: int
    recency: float
    final: float
    reasoning: str = ""
    tags: list[str] = field(default_factory=list)
    oracle_fallback: bool = False
    scored_at: datetime = field(default_factory=utc_now)


@dataclass
class RankedItem:
    """Item paired with its score, as consumed by the selector."""

    item: FeedItem
    score: ItemScore

    @property
    def final_score(self) -> float:
        return self.score.final


@dataclass
class DiversitySelection:
    """Ordered selection plus a reason for every item that was considered."""

    selected: list[RankedItem]
    reasons: dict[str, str]


@dataclass
class SyncCheckpoint:
    """Persisted progress of one named sync job."""

    job_name: str
    status: SyncStatus = SyncStatus.IDLE
    cursor: Optional[str] = None
    items_processed: int = 0
    calls_used: int = 0
    error: Optional[str] = None
    since: Optional[datetime] = None
    started_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_resumable(self) -> bool:
        return self.status == SyncStatus.PAUSED and bool(self.cursor)


@dataclass
class BudgetWindow:
    """External call usage within one quota period."""

    period: str
    calls_used: int
    ceiling: int
    reserved: int = 0
    safety_reserve: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.ceiling - self.calls_used)

    @property
    def available(self) -> int:
        """Slots that can still be granted right now."""
        return max(0, self.ceiling - self.safety_reserve - self.calls_used - self.reserved)


@dataclass
class FetchFilter:
    """Server-side constraints for a page request."""

    since: Optional[datetime] = None
    page_size: int = 100


@dataclass
class SourcePage:
    """One page as returned by a content source."""

    items: list[dict[str, Any]]
    next_cursor: Optional[str]


@dataclass
class FetchResult:
    """Outcome of one budget-gated page fetch."""

    items: list[dict[str, Any]]
    next_cursor: Optional[str]
    calls_consumed: int
    budget_exhausted: bool = False


@dataclass
class SyncOptions:
    """Per-invocation sync settings."""

    lookback_days: Optional[float] = None
    max_items: Optional[int] = None


@dataclass
class SyncResult:
    """Structured outcome of ``run_sync``."""

    success: bool
    items_added: int = 0
    calls_used: int = 0
    categories_processed: list[Category] = field(default_factory=list)
    paused: bool = False
    resumed: bool = False
    error: Optional[str] = None


@dataclass
class FullTextResult:
    """Outcome of one full-text enrichment attempt."""

    item_id: str
    text: str = ""
    success: bool = False
    error: str = ""
