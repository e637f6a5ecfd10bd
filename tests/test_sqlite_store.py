"""Tests for the SQLite store."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from conftest import make_item, raw_item

from feed_curator.adapters.storage import SQLiteStore
from feed_curator.core import (
    Category,
    Categorizer,
    ItemScore,
    Normalizer,
    SyncCheckpoint,
    SyncStatus,
)
from feed_curator.core.errors import PersistenceError, SyncConflictError


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_upsert_is_idempotent(store: SQLiteStore) -> None:
    """Test normalizing and persisting the same records twice keeps one row each."""
    raws = [raw_item(f"n{i}", categories=["user/1/label/Research"]) for i in range(5)]

    for _ in range(2):
        items = Categorizer().categorize(Normalizer().normalize(raws))
        store.upsert_items(items)

    assert store.count_items() == 5
    assert store.count_items(Category.RESEARCH) == 5


def test_upsert_updates_fields_but_keeps_full_text(store: SQLiteStore) -> None:
    """Test re-ingesting an item does not drop enrichment."""
    item = make_item("x", title="Old title")
    store.upsert_items([item])
    store.save_full_text("x", "Full body")

    item.title = "New title"
    store.upsert_items([item])

    [loaded] = store.load_items_by_category(Category.TECH_ARTICLES, window_days=1)
    assert loaded.title == "New title"
    assert loaded.full_text == "Full body"


def test_load_items_by_category_respects_window(store: SQLiteStore) -> None:
    """Test only items inside the window and category are returned, newest first."""
    now = datetime.now(timezone.utc)
    store.upsert_items([
        make_item("new", published_at=now - timedelta(hours=2)),
        make_item("newer", published_at=now - timedelta(hours=1)),
        make_item("old", published_at=now - timedelta(days=10)),
        make_item("other", category=Category.PODCASTS, published_at=now),
    ])

    items = store.load_items_by_category(Category.TECH_ARTICLES, window_days=7, now=now)

    assert [i.id for i in items] == ["newer", "new"]
    assert items[0].published_at.tzinfo is not None


def test_scores_round_trip_latest_wins(store: SQLiteStore) -> None:
    """Test saving a score twice keeps the later one."""

    def score(final: float) -> ItemScore:
        return ItemScore(
            item_id="s1",
            category=Category.RESEARCH,
            lexical=0.1,
            llm_relevance=7,
            llm_usefulness=6,
            recency=0.9,
            final=final,
            tags=["agent"],
            oracle_fallback=True,
        )

    store.save_scores([score(0.2)])
    store.save_scores([score(0.8)])

    loaded = store.load_scores(["s1", "missing"])
    assert set(loaded) == {"s1"}
    assert loaded["s1"].final == 0.8
    assert loaded["s1"].tags == ["agent"]
    assert loaded["s1"].oracle_fallback is True


def test_begin_run_rejects_fresh_running_checkpoint(tmp_path: Path) -> None:
    """Test a second writer is refused while the job is running."""
    clock = Clock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))
    store = SQLiteStore(tmp_path / "db.sqlite", clock=clock)

    assert store.begin_run("job", timedelta(minutes=30)) is None
    clock.now += timedelta(minutes=5)

    with pytest.raises(SyncConflictError, match="already running"):
        store.begin_run("job", timedelta(minutes=30))
    store.close()


def test_begin_run_reclaims_stale_checkpoint(tmp_path: Path) -> None:
    """Test a crashed run's checkpoint is reclaimed as paused with its cursor."""
    clock = Clock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))
    store = SQLiteStore(tmp_path / "db.sqlite", clock=clock)
    store.save_checkpoint(
        SyncCheckpoint(job_name="job", status=SyncStatus.RUNNING, cursor="c-2", items_processed=40, calls_used=2)
    )
    clock.now += timedelta(hours=1)

    previous = store.begin_run("job", timedelta(minutes=30))

    assert previous is not None
    assert previous.status == SyncStatus.PAUSED
    assert previous.is_resumable
    current = store.get_checkpoint("job")
    assert current.status == SyncStatus.RUNNING
    assert current.cursor == "c-2"
    store.close()


def test_commit_page_is_atomic(store: SQLiteStore) -> None:
    """Test a failed commit leaves neither items nor checkpoint behind."""
    store.save_checkpoint(SyncCheckpoint(job_name="job", status=SyncStatus.RUNNING, cursor="c-1"))
    good = make_item("good")
    bad = make_item("bad")
    bad.title = None  # violates NOT NULL

    with pytest.raises(PersistenceError):
        store.commit_page([good, bad], SyncCheckpoint(job_name="job", status=SyncStatus.RUNNING, cursor="c-2"))

    assert store.count_items() == 0
    assert store.get_checkpoint("job").cursor == "c-1"


def test_checkpoint_persists(store: SQLiteStore) -> None:
    """Test checkpoints survive a reload."""
    since = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
    store.save_checkpoint(
        SyncCheckpoint(job_name="job", status=SyncStatus.PAUSED, cursor="c", items_processed=3, since=since, error="x")
    )

    checkpoint = store.get_checkpoint("job")
    assert checkpoint.since == since
    assert checkpoint.error == "x"
    assert store.get_checkpoint("nope") is None


def test_budget_reserve_and_adjust(tmp_path: Path) -> None:
    """Test budget grants are capped and visible to a second connection."""
    store = SQLiteStore(tmp_path / "db.sqlite")
    other = SQLiteStore(tmp_path / "db.sqlite")

    assert store.reserve_budget("2024-05-01", 8, limit=10, ceiling=12) == (8, 8)
    assert other.reserve_budget("2024-05-01", 5, limit=10, ceiling=12) == (2, 10)
    assert other.reserve_budget("2024-05-01", 1, limit=10, ceiling=12) == (0, 10)
    assert store.adjust_budget("2024-05-01", 5, ceiling=12) == 12
    assert store.adjust_budget("2024-05-01", -20, ceiling=12) == 0
    assert other.load_budget("2024-05-01").calls_used == 0
    assert store.load_budget("2024-05-02") is None
    store.close()
    other.close()


def test_sqlite_errors_wrapped(store: SQLiteStore) -> None:
    """Test driver errors surface as PersistenceError."""
    store._conn.execute("DROP TABLE items")

    with pytest.raises(PersistenceError):
        store.count_items()
