"""Core domain layer."""

from feed_curator.core.budget import BudgetTracker
from feed_curator.core.categorizer import Categorizer
from feed_curator.core.entities import (
    BudgetWindow,
    Category,
    DiversitySelection,
    FeedItem,
    FetchFilter,
    FetchResult,
    FullTextResult,
    ItemScore,
    Judgment,
    RankedItem,
    SourcePage,
    SyncCheckpoint,
    SyncOptions,
    SyncResult,
    SyncStatus,
)
from feed_curator.core.fetcher import Fetcher
from feed_curator.core.interfaces import BudgetStore, CheckpointStore, ContentSource, ItemStore, ScoringOracle
from feed_curator.core.normalizer import Normalizer
from feed_curator.core.retry import RetryPolicy, retry_async
from feed_curator.core.scorer import QueryContext, Scorer, SignalWeights
from feed_curator.core.selector import select

__all__ = [
    "BudgetTracker",
    "BudgetWindow",
    "BudgetStore",
    "Categorizer",
    "Category",
    "CheckpointStore",
    "ContentSource",
    "DiversitySelection",
    "FeedItem",
    "Fetcher",
    "FetchFilter",
    "FetchResult",
    "FullTextResult",
    "ItemScore",
    "ItemStore",
    "Judgment",
    "Normalizer",
    "QueryContext",
    "RankedItem",
    "RetryPolicy",
    "retry_async",
    "Scorer",
    "ScoringOracle",
    "select",
    "SignalWeights",
    "SourcePage",
    "SyncCheckpoint",
    "SyncOptions",
    "SyncResult",
    "SyncStatus",
]
