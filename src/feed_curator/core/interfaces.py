"""Core interfaces for adapters."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional

from feed_curator.core.entities import (
    BudgetWindow,
    Category,
    FeedItem,
    ItemScore,
    Judgment,
    SourcePage,
    SyncCheckpoint,
)


class ContentSource(ABC):
    """Paginated "list items since timestamp" feed aggregator."""

    @abstractmethod
    async def list_items(
        self,
        since: Optional[datetime],
        cursor: Optional[str],
        page_size: int,
    ) -> SourcePage:
        """Fetch one page. ``next_cursor`` is None on the last page."""
        pass


class ScoringOracle(ABC):
    """LLM judge for relevance and usefulness."""

    @abstractmethod
    async def judge(self, text: str) -> Judgment:
        """Rate item text on the configured integer scale."""
        pass


class ItemStore(ABC):
    """Durable storage for items and their scores."""

    @abstractmethod
    def upsert_items(self, items: list[FeedItem]) -> int:
        """Insert or replace items by id. Returns the number written."""
        pass

    @abstractmethod
    def load_items_by_category(
        self, category: Category, window_days: float, now: Optional[datetime] = None
    ) -> list[FeedItem]:
        """Load items of one category published within the window."""
        pass

    @abstractmethod
    def save_scores(self, scores: list[ItemScore]) -> None:
        """Persist scores, overwriting earlier ones for the same item."""
        pass

    @abstractmethod
    def load_scores(self, item_ids: list[str]) -> dict[str, ItemScore]:
        """Load the latest score per item id."""
        pass

    @abstractmethod
    def save_full_text(self, item_id: str, text: str) -> None:
        """Attach fetched full text to an item."""
        pass


class CheckpointStore(ABC):
    """Durable storage for sync checkpoints."""

    @abstractmethod
    def get_checkpoint(self, job_name: str) -> Optional[SyncCheckpoint]:
        """Return the checkpoint for a job, or None if it never ran."""
        pass

    @abstractmethod
    def save_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        """Overwrite the checkpoint row for ``checkpoint.job_name``."""
        pass

    @abstractmethod
    def begin_run(self, job_name: str, stale_after: timedelta) -> Optional[SyncCheckpoint]:
        """Atomically mark a job running and return its previous checkpoint.

        Raises ``SyncConflictError`` if a fresh ``running`` checkpoint exists.
        """
        pass

    @abstractmethod
    def commit_page(self, items: list[FeedItem], checkpoint: SyncCheckpoint) -> int:
        """Upsert a page of items and advance the checkpoint in one transaction."""
        pass


class BudgetStore(ABC):
    """Durable storage for quota windows."""

    @abstractmethod
    def load_budget(self, period: str) -> Optional[BudgetWindow]:
        """Load the usage recorded for a period."""
        pass

    @abstractmethod
    def reserve_budget(self, period: str, n: int, limit: int, ceiling: int) -> tuple[int, int]:
        """Atomically take up to ``n`` calls while usage stays within ``limit``.

        Returns ``(granted, calls_used)`` as of the same transaction.
        """
        pass

    @abstractmethod
    def adjust_budget(self, period: str, delta: int, ceiling: int) -> int:
        """Atomically add ``delta`` to usage, clamped to ``[0, ceiling]``; returns the new usage."""
        pass
