"""Daily quota gatekeeper for external API calls."""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from feed_curator.core.entities import BudgetWindow, utc_now
from feed_curator.core.interfaces import BudgetStore

logger = logging.getLogger(__name__)

MILESTONES = (50, 75, 90)


class BudgetTracker:
    """Track calls against a fixed ceiling per UTC calendar day.

    Callers reserve slots before an external request and record them once the
    request went out. Usage never exceeds the ceiling: reservations are only
    granted from what is left after committed usage, in-flight reservations
    and the safety reserve.
    """

    def __init__(
        self,
        ceiling: int,
        store: Optional[BudgetStore] = None,
        safety_reserve: int = 0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if ceiling < 0:
            raise ValueError("Budget ceiling cannot be negative")
        if not 0 <= safety_reserve <= ceiling:
            raise ValueError("Safety reserve must be between 0 and the ceiling")
        self.ceiling = ceiling
        self.safety_reserve = safety_reserve
        self.store = store
        self.clock = clock
        self._lock = threading.Lock()
        self._period: Optional[str] = None
        self._calls_used = 0
        self._reserved = 0
        self._last_milestone = 0

    def try_reserve(self, n: int = 1) -> int:
        """Reserve up to ``n`` call slots and return how many were granted.

        A return value of 0 means the quota is exhausted for this period; it is
        not an error. With a store, the grant is taken from the shared usage
        row, so trackers in other processes see it immediately.
        """
        if n <= 0:
            return 0
        with self._lock:
            self._roll_period()
            limit = self.ceiling - self.safety_reserve
            if self.store is not None:
                granted, total = self.store.reserve_budget(self._period, n, limit, self.ceiling)
                self._reserved += granted
                self._calls_used = max(0, total - self._reserved)
            else:
                granted = max(0, min(n, limit - self._calls_used - self._reserved))
                self._reserved += granted
        if granted < n:
            logger.info("Budget granted %d of %d requested call(s) for %s", granted, n, self._period)
        return granted

    def record_used(self, n: int = 1) -> None:
        """Commit ``n`` calls that actually went out, releasing their reservations."""
        if n <= 0:
            return
        with self._lock:
            self._roll_period()
            settled = min(n, self._reserved)
            self._reserved -= settled
            if self.store is not None and n > settled:
                # Unreserved calls are not in the shared row yet.
                total = self.store.adjust_budget(self._period, n - settled, self.ceiling)
                self._calls_used = max(0, total - self._reserved)
            else:
                self._calls_used = min(self.ceiling, self._calls_used + n)
            window = self._window()
        self._log_milestone(window)

    def release(self, n: int = 1) -> None:
        """Return reserved slots that were not used."""
        if n <= 0:
            return
        with self._lock:
            self._roll_period()
            released = min(n, self._reserved)
            self._reserved -= released
            if self.store is not None and released:
                total = self.store.adjust_budget(self._period, -released, self.ceiling)
                self._calls_used = max(0, total - self._reserved)

    def snapshot(self) -> BudgetWindow:
        """Current window, rolling over to a new period if needed."""
        with self._lock:
            self._roll_period()
            if self.store is not None:
                stored = self.store.load_budget(self._period)
                self._calls_used = max(0, (stored.calls_used if stored else 0) - self._reserved)
            return self._window()

    def _window(self) -> BudgetWindow:
        return BudgetWindow(
            period=self._period or "",
            calls_used=self._calls_used,
            ceiling=self.ceiling,
            reserved=self._reserved,
            safety_reserve=self.safety_reserve,
        )

    def _roll_period(self) -> None:
        """Switch to a new period lazily on the first call after midnight UTC."""
        period = self.clock().date().isoformat()
        if period == self._period:
            return

        stored = self.store.load_budget(period) if self.store is not None else None
        if self._period is not None:
            logger.info("Budget period rolled over: %s -> %s", self._period, period)
        self._period = period
        self._calls_used = min(stored.calls_used, self.ceiling) if stored else 0
        self._reserved = 0
        self._last_milestone = max((m for m in MILESTONES if self._percent_used() >= m), default=0)

    def _percent_used(self) -> int:
        if self.ceiling == 0:
            return 100
        return round(self._calls_used * 100 / self.ceiling)

    def _log_milestone(self, window: BudgetWindow) -> None:
        percent = round(window.calls_used * 100 / window.ceiling) if window.ceiling else 100
        reached = max((m for m in MILESTONES if percent >= m), default=0)
        if reached <= self._last_milestone:
            return
        self._last_milestone = reached
        level = logging.WARNING if reached >= 75 else logging.INFO
        logger.log(
            level,
            "API budget at %d%% (%d/%d calls used, %d remaining)",
            percent,
            window.calls_used,
            window.ceiling,
            window.remaining,
        )
