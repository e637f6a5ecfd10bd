"""Budget-gated page fetching against the content source."""

import asyncio
import logging
from typing import Optional

from feed_curator.core.budget import BudgetTracker
from feed_curator.core.entities import FetchFilter, FetchResult, SourcePage
from feed_curator.core.errors import FetchError, QuotaExhausted, SourceError
from feed_curator.core.interfaces import ContentSource
from feed_curator.core.retry import RETRYABLE, RetryPolicy, retry_async

logger = logging.getLogger(__name__)


class Fetcher:
    """Issue one page request per call, consulting the budget before every attempt."""

    def __init__(
        self,
        source: ContentSource,
        budget: BudgetTracker,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
    ) -> None:
        self.source = source
        self.budget = budget
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout

    async def fetch_page(self, cursor: Optional[str], fetch_filter: FetchFilter) -> FetchResult:
        """Fetch the page at ``cursor``.

        Returns ``budget_exhausted=True`` (and the unchanged cursor) when no
        call slot is available. Raises ``FetchError`` once retries run out or
        the source rejects the request outright.
        """
        calls = 0

        async def attempt() -> SourcePage:
            nonlocal calls
            if self.budget.try_reserve(1) < 1:
                raise QuotaExhausted("No API calls left in the current budget period")
            calls += 1
            try:
                return await asyncio.wait_for(
                    self.source.list_items(fetch_filter.since, cursor, fetch_filter.page_size),
                    timeout=self.timeout,
                )
            finally:
                self.budget.record_used(1)

        try:
            page = await retry_async(attempt, self.retry_policy, description="Fetch page")
        except QuotaExhausted:
            logger.info("Budget exhausted before fetching page (cursor=%s)", cursor)
            return FetchResult(items=[], next_cursor=cursor, calls_consumed=calls, budget_exhausted=True)
        except RETRYABLE as e:
            raise FetchError(f"Fetch failed after {calls} attempt(s): {e or type(e).__name__}", calls) from e
        except SourceError as e:
            raise FetchError(f"Source rejected request: {e}", calls) from e

        logger.debug("Fetched %d item(s), next cursor: %s", len(page.items), page.next_cursor)
        return FetchResult(items=page.items, next_cursor=page.next_cursor or None, calls_consumed=calls)
