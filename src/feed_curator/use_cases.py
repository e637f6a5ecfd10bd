"""Business logic use cases."""

import asyncio
import dataclasses
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from feed_curator.config import CategoryScoring
from feed_curator.core.categorizer import Categorizer
from feed_curator.core.entities import (
    Category,
    DiversitySelection,
    FetchFilter,
    RankedItem,
    SyncCheckpoint,
    SyncOptions,
    SyncResult,
    SyncStatus,
    utc_now,
)
from feed_curator.core.errors import FetchError, PersistenceError, SyncConflictError
from feed_curator.core.fetcher import Fetcher
from feed_curator.core.interfaces import CheckpointStore, ItemStore
from feed_curator.core.normalizer import Normalizer
from feed_curator.core.scorer import QueryContext, Scorer
from feed_curator.core.selector import select

logger = logging.getLogger(__name__)


class SyncService:
    """Resumable, budget-aware sync of the aggregator stream into the item store.

    One run walks the stream page by page: fetch, normalize, categorize, then
    persist the items together with the advanced checkpoint. A run that stops
    early (budget, fetch error, cancellation, item cap) leaves a ``paused``
    checkpoint that the next run picks up from.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        normalizer: Normalizer,
        categorizer: Categorizer,
        store: CheckpointStore,
        default_window: timedelta = timedelta(hours=4),
        page_size: int = 100,
        stale_after: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.fetcher = fetcher
        self.normalizer = normalizer
        self.categorizer = categorizer
        self.store = store
        self.default_window = default_window
        self.page_size = page_size
        self.stale_after = stale_after
        self.clock = clock
        self._active: set[str] = set()

    def get_sync_status(self, job_name: str) -> Optional[SyncCheckpoint]:
        return self.store.get_checkpoint(job_name)

    async def run_sync(
        self,
        job_name: str,
        options: Optional[SyncOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncResult:
        """Run (or resume) ``job_name``. Never raises for pipeline failures."""
        if job_name in self._active:
            return SyncResult(success=False, error=f"Sync job {job_name!r} is already running in this process")

        self._active.add(job_name)
        try:
            return await self._run(job_name, options or SyncOptions(), cancel_event)
        finally:
            self._active.discard(job_name)

    async def _run(
        self,
        job_name: str,
        options: SyncOptions,
        cancel_event: Optional[asyncio.Event],
    ) -> SyncResult:
        try:
            previous = self.store.begin_run(job_name, self.stale_after)
        except SyncConflictError as e:
            logger.warning("%s", e)
            return SyncResult(success=False, error=str(e))
        except PersistenceError as e:
            logger.error("Cannot claim sync job %s: %s", job_name, e)
            return SyncResult(success=False, error=f"Persistence failure: {e}")

        now = self.clock()
        resumed = previous is not None and previous.is_resumable
        if resumed:
            checkpoint = SyncCheckpoint(
                job_name=job_name,
                status=SyncStatus.RUNNING,
                cursor=previous.cursor,
                items_processed=previous.items_processed,
                calls_used=previous.calls_used,
                since=previous.since or now - self.default_window,
                started_at=now,
            )
            logger.info(
                "Resuming %s from cursor %s (%d item(s) so far)", job_name, checkpoint.cursor, checkpoint.items_processed
            )
        else:
            if options.lookback_days is not None:
                window = timedelta(days=options.lookback_days)
            else:
                window = self.default_window
            checkpoint = SyncCheckpoint(
                job_name=job_name,
                status=SyncStatus.RUNNING,
                since=now - window,
                started_at=now,
            )
            logger.info("Starting %s for items since %s", job_name, checkpoint.since.isoformat())

        try:
            self.store.save_checkpoint(checkpoint)
        except PersistenceError as e:
            logger.error("Cannot write checkpoint for %s: %s", job_name, e)
            return SyncResult(success=False, resumed=resumed, error=f"Persistence failure: {e}")

        since = checkpoint.since
        fetch_filter = FetchFilter(since=since, page_size=self.page_size)
        categories: list[Category] = []
        seen_ids: set[str] = set()
        items_added = 0
        calls_used = 0
        pause_reason: Optional[str] = None

        while True:
            if cancel_event is not None and cancel_event.is_set():
                pause_reason = "Sync cancelled"
                break
            if options.max_items is not None and items_added >= options.max_items:
                pause_reason = f"Reached per-run item cap ({options.max_items})"
                break

            try:
                result = await self.fetcher.fetch_page(checkpoint.cursor, fetch_filter)
            except FetchError as e:
                calls_used += e.calls_consumed
                checkpoint.calls_used += e.calls_consumed
                pause_reason = str(e)
                break
            except PersistenceError as e:
                # Budget usage could not be recorded.
                return self._fail(checkpoint, e, items_added, calls_used, categories, resumed)
            except Exception as e:
                logger.exception("Unexpected error fetching a page for %s", job_name)
                pause_reason = f"Unexpected error: {type(e).__name__}: {e}"
                break

            calls_used += result.calls_consumed
            checkpoint.calls_used += result.calls_consumed
            if result.budget_exhausted:
                pause_reason = "API budget exhausted"
                break

            try:
                items = self.categorizer.categorize(self.normalizer.normalize(result.items))
            except Exception as e:
                logger.exception("Unexpected error processing a page for %s", job_name)
                pause_reason = f"Unexpected error: {type(e).__name__}: {e}"
                break

            fresh = [item for item in items if item.published_at > since and item.id not in seen_ids]

            done = result.next_cursor is None
            pending = dataclasses.replace(
                checkpoint,
                cursor=result.next_cursor,
                items_processed=checkpoint.items_processed + len(fresh),
                status=SyncStatus.COMPLETED if done else SyncStatus.RUNNING,
                error=None,
            )
            try:
                written = self.store.commit_page(fresh, pending)
            except PersistenceError as e:
                return self._fail(checkpoint, e, items_added, calls_used, categories, resumed)

            checkpoint = pending
            items_added += written
            seen_ids.update(item.id for item in fresh)
            for item in fresh:
                if item.category not in categories:
                    categories.append(item.category)
            logger.info(
                "Page committed: %d of %d item(s) kept, %d total this run", len(fresh), len(result.items), items_added
            )

            if done:
                logger.info("Sync %s completed: %d item(s), %d call(s)", job_name, items_added, calls_used)
                return SyncResult(
                    success=True,
                    items_added=items_added,
                    calls_used=calls_used,
                    categories_processed=categories,
                    resumed=resumed,
                )

        checkpoint.status = SyncStatus.PAUSED
        checkpoint.error = pause_reason
        try:
            self.store.save_checkpoint(checkpoint)
        except PersistenceError as e:
            return self._fail(checkpoint, e, items_added, calls_used, categories, resumed)

        logger.warning("Sync %s paused at cursor %s: %s", job_name, checkpoint.cursor, pause_reason)
        return SyncResult(
            success=False,
            items_added=items_added,
            calls_used=calls_used,
            categories_processed=categories,
            paused=True,
            resumed=resumed,
            error=pause_reason,
        )

    def _fail(
        self,
        last_good: SyncCheckpoint,
        error: PersistenceError,
        items_added: int,
        calls_used: int,
        categories: list[Category],
        resumed: bool,
    ) -> SyncResult:
        message = f"Persistence failure: {error}"
        logger.error("Sync %s failed: %s", last_good.job_name, error)
        # Leave the job resumable from the last committed page if the store allows it.
        last_good.status = SyncStatus.PAUSED
        last_good.error = message
        try:
            self.store.save_checkpoint(last_good)
        except PersistenceError as e:
            logger.error("Could not mark %s as paused: %s", last_good.job_name, e)
        return SyncResult(
            success=False,
            items_added=items_added,
            calls_used=calls_used,
            categories_processed=categories,
            paused=False,
            resumed=resumed,
            error=message,
        )


class CurationService:
    """Rank one category's recent items and pick a source-diverse top list."""

    def __init__(
        self,
        store: ItemStore,
        scorer: Scorer,
        categories: dict[Category, CategoryScoring],
        dedupe_urls: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.scorer = scorer
        self.categories = categories
        self.dedupe_urls = dedupe_urls
        self.clock = clock

    async def curate(
        self,
        category: "Category | str",
        window_days: float,
        target_count: Optional[int] = None,
        max_per_source: Optional[int] = None,
        rescore: bool = False,
    ) -> DiversitySelection:
        """Score what is missing (or everything with ``rescore``), then select.

        Reused scores keep their lexical and LLM signals; recency and the final
        blend are recomputed at the current time so every item is ranked against
        the same clock.
        """
        category = Category.parse(category)
        params = self.categories.get(category) or CategoryScoring()
        now = self.clock()

        items = self.store.load_items_by_category(category, window_days, now)
        if not items:
            logger.info("No %s items in the last %g day(s)", category.value, window_days)
            return DiversitySelection(selected=[], reasons={})

        ctx = QueryContext(
            category=category,
            query_terms=[params.query],
            window_days=window_days,
            weights=params.weights,
            half_life_days=params.half_life_days,
            now=now,
        )
        stored = {} if rescore else self.store.load_scores([item.id for item in items])
        scores = {
            item.id: self.scorer.refresh(item, stored[item.id], ctx)
            for item in items
            if item.id in stored and stored[item.id].category == category
        }
        missing = [item for item in items if item.id not in scores]

        if missing:
            new_scores = await self.scorer.score_items(missing, ctx, corpus=items)
            self.store.save_scores(new_scores)
            scores.update({score.item_id: score for score in new_scores})
        logger.info("Reused %d stored score(s), computed %d", len(items) - len(missing), len(missing))

        ranked = [RankedItem(item=item, score=scores[item.id]) for item in items]
        return select(
            ranked,
            max_per_source=params.max_per_source if max_per_source is None else max_per_source,
            target_count=params.max_items if target_count is None else target_count,
            dedupe_urls=self.dedupe_urls,
        )
