"""Tests for the daily budget tracker."""

import logging
import random
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from feed_curator.adapters.storage import SQLiteStore
from feed_curator.core import BudgetTracker, BudgetWindow


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


def test_try_reserve_grants_up_to_available(clock: Clock) -> None:
    """Test reservations never exceed ceiling minus safety reserve."""
    tracker = BudgetTracker(ceiling=10, safety_reserve=2, clock=clock)

    assert tracker.try_reserve(5) == 5
    assert tracker.try_reserve(5) == 3
    assert tracker.try_reserve(1) == 0
    assert tracker.snapshot().reserved == 8


def test_record_used_releases_reservation(clock: Clock) -> None:
    """Test recording usage converts reservations into used calls."""
    tracker = BudgetTracker(ceiling=10, clock=clock)
    tracker.try_reserve(3)
    tracker.record_used(2)
    tracker.release(1)

    window = tracker.snapshot()
    assert window.calls_used == 2
    assert window.reserved == 0
    assert window.remaining == 8


def test_usage_capped_at_ceiling(clock: Clock) -> None:
    """Test misbehaving callers cannot push usage past the ceiling."""
    tracker = BudgetTracker(ceiling=5, clock=clock)
    tracker.record_used(4)
    tracker.record_used(4)

    assert tracker.snapshot().calls_used == 5
    assert tracker.try_reserve(1) == 0


def test_period_rollover_resets_usage(clock: Clock) -> None:
    """Test a new UTC day starts a fresh window."""
    tracker = BudgetTracker(ceiling=3, clock=clock)
    tracker.try_reserve(3)
    tracker.record_used(3)
    assert tracker.try_reserve(1) == 0

    clock.now = datetime(2024, 5, 2, 0, 0, 1, tzinfo=timezone.utc)

    assert tracker.try_reserve(1) == 1
    assert tracker.snapshot().period == "2024-05-02"


def test_usage_reserved_through_store(clock: Clock) -> None:
    """Test grants come from the store and unused slots are handed back to it."""
    store = MagicMock()
    store.load_budget.return_value = BudgetWindow(period="2024-05-01", calls_used=7, ceiling=10)
    store.reserve_budget.return_value = (3, 10)
    store.adjust_budget.return_value = 8
    tracker = BudgetTracker(ceiling=10, store=store, clock=clock)

    assert tracker.try_reserve(5) == 3
    tracker.record_used(1)
    tracker.release(2)

    store.reserve_budget.assert_called_once_with("2024-05-01", 5, 10, 10)
    store.adjust_budget.assert_called_once_with("2024-05-01", -2, 10)


def test_trackers_sharing_a_store_respect_one_ceiling(clock: Clock, tmp_path) -> None:
    """Test two trackers on the same database cannot overspend together."""
    store = SQLiteStore(tmp_path / "budget.db", clock=clock)
    first = BudgetTracker(ceiling=10, store=store, clock=clock)
    second = BudgetTracker(ceiling=10, store=store, clock=clock)

    granted = 0
    for _ in range(10):
        for tracker in (first, second):
            got = tracker.try_reserve(1)
            granted += got
            tracker.record_used(got)

    assert granted == 10
    assert store.load_budget("2024-05-01").calls_used == 10
    assert first.snapshot().calls_used == 10


def test_released_slots_return_to_shared_pool(clock: Clock, tmp_path) -> None:
    """Test a slot released by one tracker can be granted to another."""
    store = SQLiteStore(tmp_path / "budget.db", clock=clock)
    first = BudgetTracker(ceiling=2, store=store, clock=clock)
    second = BudgetTracker(ceiling=2, store=store, clock=clock)

    assert first.try_reserve(2) == 2
    assert second.try_reserve(1) == 0
    first.release(1)

    assert second.try_reserve(1) == 1


def test_invariant_holds_for_random_sequences(clock: Clock) -> None:
    """Test calls_used never exceeds the ceiling across random operations."""
    rng = random.Random(42)
    tracker = BudgetTracker(ceiling=50, safety_reserve=5, clock=clock)
    outstanding = 0

    for _ in range(500):
        action = rng.choice(["reserve", "use", "release"])
        n = rng.randint(1, 6)
        if action == "reserve":
            outstanding += tracker.try_reserve(n)
        elif action == "use":
            used = min(n, outstanding)
            tracker.record_used(used)
            outstanding -= used
        else:
            released = min(n, outstanding)
            tracker.release(released)
            outstanding -= released

        window = tracker.snapshot()
        assert 0 <= window.calls_used <= window.ceiling
        assert window.calls_used + window.reserved <= window.ceiling - window.safety_reserve


def test_milestones_logged_once(clock: Clock, caplog: pytest.LogCaptureFixture) -> None:
    """Test budget milestones are logged when crossed."""
    tracker = BudgetTracker(ceiling=10, clock=clock)

    with caplog.at_level(logging.INFO, logger="feed_curator.core.budget"):
        for _ in range(8):
            tracker.try_reserve(1)
            tracker.record_used(1)

    messages = [r.getMessage() for r in caplog.records if "API budget at" in r.getMessage()]
    assert len(messages) == 2
    assert "50%" in messages[0]
    assert "80%" in messages[1]


def test_invalid_configuration_rejected() -> None:
    """Test negative ceiling and oversized reserve are rejected."""
    with pytest.raises(ValueError):
        BudgetTracker(ceiling=-1)
    with pytest.raises(ValueError):
        BudgetTracker(ceiling=10, safety_reserve=11)
