"""Full-text enrichment with a bounded worker pool and a per-domain gate."""

import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, Optional
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from feed_curator.core.entities import FeedItem, FullTextResult
from feed_curator.core.errors import FeedCuratorError, TransientError
from feed_curator.core.interfaces import ItemStore
from feed_curator.core.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; feed-curator/0.1; +https://github.com/)"
CONTENT_SELECTORS = ("article", "main", "[role=main]", ".post-content", ".entry-content")


class DomainGate:
    """Enforce a minimum interval between requests to the same host."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval = min_interval
        self.clock = clock
        self.sleep = sleep
        self._locks: dict[str, asyncio.Lock] = {}
        self._last: dict[str, float] = {}

    async def wait(self, host: str) -> None:
        lock = self._locks.setdefault(host, asyncio.Lock())
        async with lock:
            last = self._last.get(host)
            if last is not None:
                delay = self.min_interval - (self.clock() - last)
                if delay > 0:
                    await self.sleep(delay)
            self._last[host] = self.clock()


def extract_text(html: str, max_chars: int = 20000) -> str:
    """Main readable text of a page: the article body when one is marked up."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "header", "footer", "aside", "form", "noscript"]):
        tag.decompose()

    container = None
    for selector in CONTENT_SELECTORS:
        container = soup.select_one(selector)
        if container is not None:
            break
    if container is None:
        container = soup.body or soup

    paragraphs = [p.get_text(" ", strip=True) for p in container.find_all(["p", "h1", "h2", "h3", "li", "pre"])]
    text = "\n\n".join(p for p in paragraphs if p)
    if not text:
        text = container.get_text(" ", strip=True)
    text = re.sub(r"[ \t]+", " ", text).strip()
    return text[:max_chars]


class FullTextEnricher:
    """Fetch article bodies for items with a fixed number of worker tasks.

    Failures are isolated per item and reported in ``FullTextResult``.
    """

    def __init__(
        self,
        workers: int = 4,
        min_domain_interval: float = 2.0,
        timeout: float = 10.0,
        max_chars: int = 20000,
        store: Optional[ItemStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        gate: Optional[DomainGate] = None,
    ) -> None:
        self.workers = max(1, workers)
        self.timeout = timeout
        self.max_chars = max_chars
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=2, initial_delay=1.0)
        self.gate = gate or DomainGate(min_domain_interval)

    async def enrich(self, items: list[FeedItem]) -> list[FullTextResult]:
        """Enrich ``items``; results come back in input order."""
        if not items:
            return []

        queue: asyncio.Queue = asyncio.Queue()
        for index, item in enumerate(items):
            queue.put_nowait((index, item))
        results: list[Optional[FullTextResult]] = [None] * len(items)

        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        ) as client:

            async def worker() -> None:
                while True:
                    try:
                        index, item = queue.get_nowait()
                    except asyncio.QueueEmpty:
                        return
                    results[index] = await self._enrich_one(client, item)

            await asyncio.gather(*(worker() for _ in range(min(self.workers, len(items)))))

        done = [r for r in results if r is not None]
        succeeded = sum(1 for r in done if r.success)
        logger.info("Full text fetched for %d of %d item(s)", succeeded, len(items))
        return done

    async def _enrich_one(self, client: httpx.AsyncClient, item: FeedItem) -> FullTextResult:
        if not item.url:
            return FullTextResult(item_id=item.id, error="Empty URL")

        try:
            host = (urlparse(item.url).hostname or "").lower()
        except ValueError as e:
            return FullTextResult(item_id=item.id, error=f"Invalid URL: {e}")
        try:
            text = await retry_async(
                lambda: self._fetch(client, host, item.url),
                self.retry_policy,
                description=f"Full text fetch for {host}",
            )
        except (FeedCuratorError, httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError) as e:
            logger.debug("Full text failed for %s: %s", item.url, e)
            return FullTextResult(item_id=item.id, error=f"Fetch failed: {e or type(e).__name__}")

        if not text:
            return FullTextResult(item_id=item.id, error="No content extracted")

        if self.store is not None:
            try:
                self.store.save_full_text(item.id, text)
            except FeedCuratorError as e:
                logger.warning("Could not save full text for %s: %s", item.id, e)
                return FullTextResult(item_id=item.id, text=text, error=f"Save failed: {e}")

        return FullTextResult(item_id=item.id, text=text, success=True)

    async def _fetch(self, client: httpx.AsyncClient, host: str, url: str) -> str:
        await self.gate.wait(host)
        try:
            response = await client.get(url)
        except httpx.RequestError as e:
            raise TransientError(f"Network error: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(f"HTTP {response.status_code}")
        if response.status_code != 200:
            raise FeedCuratorError(f"HTTP {response.status_code}")
        content_type = response.headers.get("content-type", "")
        if content_type and "html" not in content_type:
            raise FeedCuratorError(f"Unsupported content type {content_type}")
        return extract_text(response.text, self.max_chars)
