"""Tests for use cases."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from conftest import FakeOracle, FakeSource, make_item, make_pages, raw_item

from feed_curator.adapters.storage import SQLiteStore
from feed_curator.config import CategoryScoring
from feed_curator.core import (
    BudgetTracker,
    Categorizer,
    Category,
    Fetcher,
    Judgment,
    Normalizer,
    RetryPolicy,
    Scorer,
    SignalWeights,
    SourcePage,
    SyncOptions,
    SyncStatus,
)
from feed_curator.core.errors import PersistenceError, TransientSourceError
from feed_curator.use_cases import CurationService, SyncService


def build_sync(store: SQLiteStore, source: FakeSource, ceiling: int = 100) -> tuple[SyncService, BudgetTracker]:
    budget = BudgetTracker(ceiling=ceiling)
    fetcher = Fetcher(source, budget, retry_policy=RetryPolicy(max_attempts=2, initial_delay=0.0))
    return SyncService(fetcher, Normalizer(), Categorizer(), store), budget


@pytest.mark.asyncio
async def test_sync_completes_all_pages(store: SQLiteStore) -> None:
    """Test a 48-hour catch-up over three pages within budget."""
    source = FakeSource(make_pages([1000, 1000, 200]))
    service, budget = build_sync(store, source, ceiling=95)

    result = await service.run_sync("hourly-sync", SyncOptions(lookback_days=2))

    assert result.success
    assert not result.paused
    assert not result.resumed
    assert result.calls_used == 3
    assert result.items_added == 2200
    assert result.categories_processed == [Category.TECH_ARTICLES]
    assert budget.snapshot().calls_used == 3
    checkpoint = service.get_sync_status("hourly-sync")
    assert checkpoint.status == SyncStatus.COMPLETED
    assert checkpoint.cursor is None
    assert checkpoint.items_processed == 2200
    assert store.count_items() == 2200


@pytest.mark.asyncio
async def test_budget_exhaustion_pauses_and_rerun_resumes(store: SQLiteStore) -> None:
    """Test a run out of budget pauses at page 3 and a rerun fetches only page 3."""
    pages = make_pages([10, 10, 5])
    source = FakeSource(pages)
    service, _ = build_sync(store, source, ceiling=2)

    first = await service.run_sync("job", SyncOptions(lookback_days=2))

    assert not first.success
    assert first.paused
    assert first.items_added == 20
    checkpoint = store.get_checkpoint("job")
    assert checkpoint.status == SyncStatus.PAUSED
    assert checkpoint.cursor == "page-2"
    assert "budget" in checkpoint.error.lower()

    rerun_source = FakeSource(pages)
    rerun, _ = build_sync(store, rerun_source, ceiling=100)
    second = await rerun.run_sync("job")

    assert second.success
    assert second.resumed
    assert second.items_added == 5
    assert rerun_source.calls == ["page-2"]
    final = store.get_checkpoint("job")
    assert final.status == SyncStatus.COMPLETED
    assert final.items_processed == 25
    assert store.count_items() == 25


@pytest.mark.asyncio
async def test_resumed_run_matches_uninterrupted_run(tmp_path) -> None:
    """Test interrupting and resuming ends with the same item count."""
    pages = make_pages([7, 8, 9, 4])

    straight_store = SQLiteStore(tmp_path / "straight.db")
    straight, _ = build_sync(straight_store, FakeSource(pages))
    await straight.run_sync("job", SyncOptions(lookback_days=1))

    split_store = SQLiteStore(tmp_path / "split.db")
    capped, _ = build_sync(split_store, FakeSource(pages))
    paused = await capped.run_sync("job", SyncOptions(lookback_days=1, max_items=10))
    assert paused.paused
    resumed, _ = build_sync(split_store, FakeSource(pages))
    await resumed.run_sync("job")

    assert split_store.get_checkpoint("job").items_processed == straight_store.get_checkpoint("job").items_processed
    assert split_store.count_items() == straight_store.count_items() == 28
    straight_store.close()
    split_store.close()


@pytest.mark.asyncio
async def test_cancellation_pauses_between_pages(store: SQLiteStore) -> None:
    """Test a cancel signal stops the run after the current page."""
    cancel = asyncio.Event()

    class CancellingSource(FakeSource):
        async def list_items(self, since, cursor, page_size) -> SourcePage:
            page = await super().list_items(since, cursor, page_size)
            cancel.set()
            return page

    service, _ = build_sync(store, CancellingSource(make_pages([3, 3])))

    result = await service.run_sync("job", cancel_event=cancel)

    assert result.paused
    assert result.items_added == 3
    assert store.get_checkpoint("job").cursor == "page-1"


@pytest.mark.asyncio
async def test_fetch_error_pauses_with_message(store: SQLiteStore) -> None:
    """Test exhausted retries leave a resumable checkpoint."""
    errors = {1: TransientSourceError("503"), 2: TransientSourceError("503")}
    service, _ = build_sync(store, FakeSource(make_pages([2, 2]), errors=errors))

    result = await service.run_sync("job")

    assert result.paused
    assert not result.success
    assert result.calls_used == 3
    assert "503" in result.error
    checkpoint = store.get_checkpoint("job")
    assert checkpoint.status == SyncStatus.PAUSED
    assert checkpoint.cursor == "page-1"


@pytest.mark.asyncio
async def test_unexpected_source_error_pauses(store: SQLiteStore) -> None:
    """Test an unknown adapter failure leaves a paused, resumable checkpoint."""
    service, _ = build_sync(store, FakeSource(make_pages([2, 2]), errors={1: RuntimeError("boom")}))

    result = await service.run_sync("job")

    assert not result.success
    assert result.paused
    assert "RuntimeError: boom" in result.error
    assert result.items_added == 2
    checkpoint = store.get_checkpoint("job")
    assert checkpoint.status == SyncStatus.PAUSED
    assert checkpoint.cursor == "page-1"


@pytest.mark.asyncio
async def test_unexpected_categorizer_error_pauses(store: SQLiteStore) -> None:
    """Test a crash while processing a page does not leave the job running."""

    class BrokenCategorizer(Categorizer):
        def categorize(self, items):
            raise KeyError("label")

    budget = BudgetTracker(ceiling=10)
    fetcher = Fetcher(FakeSource(make_pages([2])), budget, retry_policy=RetryPolicy(initial_delay=0.0))
    service = SyncService(fetcher, Normalizer(), BrokenCategorizer(), store)

    result = await service.run_sync("job")

    assert result.paused
    assert "KeyError" in result.error
    assert store.get_checkpoint("job").status == SyncStatus.PAUSED


@pytest.mark.asyncio
async def test_out_of_range_publish_time_does_not_abort_sync(store: SQLiteStore) -> None:
    """Test one record with an absurd timestamp is skipped and the run completes."""
    page = [raw_item("good"), {"id": "x", "published": float("inf")}]
    service, _ = build_sync(store, FakeSource([page]))

    result = await service.run_sync("job")

    assert result.success
    assert result.items_added == 1


@pytest.mark.asyncio
async def test_items_older_than_window_filtered(store: SQLiteStore) -> None:
    """Test the client-side published filter drops stale items."""
    old = datetime.now(timezone.utc) - timedelta(days=10)
    page = [raw_item("old", published=old), raw_item("fresh"), {"id": "", "published": 1}]
    service, _ = build_sync(store, FakeSource([page]))

    result = await service.run_sync("job", SyncOptions(lookback_days=1))

    assert result.success
    assert result.items_added == 1


@pytest.mark.asyncio
async def test_running_job_is_rejected(store: SQLiteStore) -> None:
    """Test a second run of the same job in this process is refused."""
    gate = asyncio.Event()

    class GatedSource(FakeSource):
        async def list_items(self, since, cursor, page_size) -> SourcePage:
            await gate.wait()
            return await super().list_items(since, cursor, page_size)

    service, _ = build_sync(store, GatedSource(make_pages([1])))

    first = asyncio.create_task(service.run_sync("job"))
    await asyncio.sleep(0)
    second = await service.run_sync("job")
    gate.set()
    first_result = await first

    assert not second.success
    assert "already running" in second.error
    assert first_result.success


@pytest.mark.asyncio
async def test_job_running_elsewhere_is_rejected(store: SQLiteStore) -> None:
    """Test the store-level claim blocks a second process."""
    store.begin_run("job", timedelta(minutes=30))
    service, _ = build_sync(store, FakeSource(make_pages([1])))

    result = await service.run_sync("job")

    assert not result.success
    assert not result.paused
    assert "already running" in result.error


@pytest.mark.asyncio
async def test_persistence_failure_is_fatal_but_resumable(tmp_path) -> None:
    """Test a store failure ends the run and leaves the last good cursor paused."""

    class FailingStore(SQLiteStore):
        fail_on_page: Optional[int] = 2
        pages = 0

        def commit_page(self, items, checkpoint):
            self.pages += 1
            if self.pages == self.fail_on_page:
                raise PersistenceError("disk full")
            return super().commit_page(items, checkpoint)

    store = FailingStore(tmp_path / "db.sqlite")
    service, _ = build_sync(store, FakeSource(make_pages([2, 2, 2])))

    result = await service.run_sync("job")

    assert not result.success
    assert not result.paused
    assert "disk full" in result.error
    assert result.items_added == 2
    checkpoint = store.get_checkpoint("job")
    assert checkpoint.status == SyncStatus.PAUSED
    assert checkpoint.cursor == "page-1"
    store.close()


def curation_service(store: SQLiteStore, oracle: FakeOracle) -> CurationService:
    categories = {
        Category.RESEARCH: CategoryScoring(
            query="code search agents",
            half_life_days=10,
            weights=SignalWeights(lexical=0.3, llm=0.5, recency=0.2),
            max_items=3,
            max_per_source=1,
        )
    }
    return CurationService(store, Scorer(oracle=oracle), categories)


@pytest.mark.asyncio
async def test_curate_scores_ranks_and_selects(store: SQLiteStore) -> None:
    """Test curation picks a diverse top list and persists scores."""
    now = datetime.now(timezone.utc)
    store.upsert_items([
        make_item("a1", source="A", category=Category.RESEARCH, title="code search agents", published_at=now),
        make_item("a2", source="A", category=Category.RESEARCH, title="code search", published_at=now),
        make_item("b1", source="B", category=Category.RESEARCH, title="agents", published_at=now),
        make_item("c1", source="C", category=Category.RESEARCH, title="gardening", published_at=now),
        make_item("old", source="D", category=Category.RESEARCH, published_at=now - timedelta(days=30)),
        make_item("pod", source="E", category=Category.PODCASTS, published_at=now),
    ])
    oracle = FakeOracle(default=Judgment(5, 5), by_text={"gardening": Judgment(0, 0)})
    service = curation_service(store, oracle)

    selection = await service.curate("research", window_days=7)

    ids = [r.item.id for r in selection.selected]
    assert ids == ["a1", "b1", "c1"]
    assert selection.reasons["a2"] == "Excluded (source cap reached)"
    assert oracle.calls == 4
    assert set(store.load_scores(["a1", "a2", "b1", "c1"])) == {"a1", "a2", "b1", "c1"}


@pytest.mark.asyncio
async def test_curate_reuses_stored_scores(store: SQLiteStore) -> None:
    """Test a second curation does not call the oracle again unless asked."""
    store.upsert_items([make_item(f"r{n}", source=f"S{n}", category=Category.RESEARCH) for n in range(3)])
    oracle = FakeOracle()
    service = curation_service(store, oracle)

    await service.curate(Category.RESEARCH, window_days=7)
    await service.curate(Category.RESEARCH, window_days=7, target_count=2, max_per_source=2)
    assert oracle.calls == 3

    selection = await service.curate(Category.RESEARCH, window_days=7, target_count=2, rescore=True)
    assert oracle.calls == 6
    assert len(selection.selected) == 2


@pytest.mark.asyncio
async def test_curate_empty_window(store: SQLiteStore) -> None:
    """Test an empty category yields an empty selection."""
    selection = await curation_service(store, FakeOracle()).curate("research", window_days=1)

    assert selection.selected == []
    assert selection.reasons == {}


@pytest.mark.asyncio
async def test_curate_rejects_unknown_category(store: SQLiteStore) -> None:
    """Test category names are validated."""
    with pytest.raises(ValueError, match="Unknown category"):
        await curation_service(store, FakeOracle()).curate("memes", window_days=1)


@pytest.mark.asyncio
async def test_curate_refreshes_recency_of_stored_scores(store: SQLiteStore) -> None:
    """Test reused scores are re-aged to the current clock without new oracle calls."""
    published = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    store.upsert_items([make_item("r1", category=Category.RESEARCH, published_at=published)])
    oracle = FakeOracle()
    now = {"value": published + timedelta(hours=1)}
    categories = {Category.RESEARCH: CategoryScoring(query="agents", half_life_days=2)}
    service = CurationService(store, Scorer(oracle=oracle), categories, clock=lambda: now["value"])

    fresh = (await service.curate("research", window_days=30)).selected[0].score
    now["value"] = published + timedelta(days=6)
    aged = (await service.curate("research", window_days=30)).selected[0].score

    assert oracle.calls == 1
    assert aged.llm_relevance == fresh.llm_relevance
    assert aged.lexical == fresh.lexical
    assert aged.recency < fresh.recency
    assert aged.final < fresh.final
