"""SQLite-backed item, score, checkpoint and budget storage."""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from feed_curator.core.entities import (
    BudgetWindow,
    Category,
    FeedItem,
    ItemScore,
    SyncCheckpoint,
    SyncStatus,
    utc_now,
)
from feed_curator.core.errors import PersistenceError, SyncConflictError
from feed_curator.core.interfaces import BudgetStore, CheckpointStore, ItemStore

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    source_item_id TEXT NOT NULL,
    title TEXT NOT NULL,
    url TEXT NOT NULL DEFAULT '',
    source TEXT NOT NULL,
    source_id TEXT NOT NULL DEFAULT '',
    author TEXT NOT NULL DEFAULT '',
    published_ts REAL NOT NULL,
    category TEXT NOT NULL,
    summary TEXT NOT NULL DEFAULT '',
    snippet TEXT NOT NULL DEFAULT '',
    labels TEXT NOT NULL DEFAULT '[]',
    payload TEXT NOT NULL DEFAULT '{}',
    full_text TEXT,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_items_category_published ON items(category, published_ts);

CREATE TABLE IF NOT EXISTS item_scores (
    item_id TEXT PRIMARY KEY,
    category TEXT NOT NULL,
    lexical REAL NOT NULL,
    llm_relevance INTEGER NOT NULL,
    llm_usefulness INTEGER NOT NULL,
    recency REAL NOT NULL,
    final REAL NOT NULL,
    reasoning TEXT NOT NULL DEFAULT '',
    tags TEXT NOT NULL DEFAULT '[]',
    oracle_fallback INTEGER NOT NULL DEFAULT 0,
    scored_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_state (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    continuation_token TEXT,
    items_processed INTEGER NOT NULL DEFAULT 0,
    calls_used INTEGER NOT NULL DEFAULT 0,
    since TEXT,
    started_at TEXT,
    last_updated_at TEXT NOT NULL,
    error TEXT
);

CREATE TABLE IF NOT EXISTS api_budget (
    period TEXT PRIMARY KEY,
    calls_used INTEGER NOT NULL,
    ceiling INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);
"""

# Keeps IN (...) lists under SQLite's host parameter limit.
_CHUNK = 500


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class SQLiteStore(ItemStore, CheckpointStore, BudgetStore):
    """One SQLite database file holding everything the pipeline persists.

    The connection runs in autocommit mode; multi-statement writes go through
    ``_transaction`` so a failure rolls the whole unit back.
    """

    def __init__(self, db_path: Path, clock: Callable[[], datetime] = utc_now) -> None:
        self.db_path = Path(db_path)
        self.clock = clock
        self._lock = threading.RLock()
        try:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), isolation_level=None, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise PersistenceError(f"Cannot start transaction: {e}") from e
            try:
                yield self._conn
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._conn.execute("ROLLBACK")
                raise PersistenceError(str(e)) from e
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(str(e)) from e

    # Items

    def upsert_items(self, items: list[FeedItem]) -> int:
        if not items:
            return 0
        with self._transaction() as conn:
            return self._write_items(conn, items)

    def _write_items(self, conn: sqlite3.Connection, items: list[FeedItem]) -> int:
        now = _iso(self.clock())
        conn.executemany(
            """
            INSERT INTO items (
                id, source_item_id, title, url, source, source_id, author, published_ts,
                category, summary, snippet, labels, payload, full_text, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                source_item_id = excluded.source_item_id,
                title = excluded.title,
                url = excluded.url,
                source = excluded.source,
                source_id = excluded.source_id,
                author = excluded.author,
                published_ts = excluded.published_ts,
                category = excluded.category,
                summary = excluded.summary,
                snippet = excluded.snippet,
                labels = excluded.labels,
                payload = excluded.payload,
                full_text = COALESCE(excluded.full_text, items.full_text),
                updated_at = excluded.updated_at
            """,
            [
                (
                    item.id,
                    item.source_item_id,
                    item.title,
                    item.url,
                    item.source,
                    item.source_id,
                    item.author,
                    item.published_at.timestamp(),
                    item.category.value,
                    item.summary,
                    item.snippet,
                    json.dumps(item.labels, ensure_ascii=False),
                    json.dumps(item.payload, ensure_ascii=False, default=str),
                    item.full_text,
                    now,
                )
                for item in items
            ],
        )
        return len(items)

    def load_items_by_category(
        self, category: Category, window_days: float, now: Optional[datetime] = None
    ) -> list[FeedItem]:
        category = Category.parse(category)
        cutoff = (now or self.clock()) - timedelta(days=window_days)
        rows = self._query(
            "SELECT * FROM items WHERE category = ? AND published_ts >= ? ORDER BY published_ts DESC, id",
            (category.value, cutoff.timestamp()),
        )
        return [self._row_to_item(row) for row in rows]

    def load_items_without_full_text(self, category: Category, window_days: float) -> list[FeedItem]:
        """Items in the window that still need enrichment."""
        return [
            item
            for item in self.load_items_by_category(category, window_days)
            if not item.full_text and item.url
        ]

    def count_items(self, category: Optional[Category] = None) -> int:
        if category is None:
            rows = self._query("SELECT COUNT(*) FROM items")
        else:
            rows = self._query("SELECT COUNT(*) FROM items WHERE category = ?", (Category.parse(category).value,))
        return int(rows[0][0])

    def save_full_text(self, item_id: str, text: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE items SET full_text = ?, updated_at = ? WHERE id = ?",
                (text, _iso(self.clock()), item_id),
            )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> FeedItem:
        return FeedItem(
            id=row["id"],
            source_item_id=row["source_item_id"],
            title=row["title"],
            url=row["url"],
            source=row["source"],
            source_id=row["source_id"],
            author=row["author"],
            published_at=datetime.fromtimestamp(row["published_ts"], tz=timezone.utc),
            category=Category.parse(row["category"]),
            summary=row["summary"],
            snippet=row["snippet"],
            labels=json.loads(row["labels"] or "[]"),
            payload=json.loads(row["payload"] or "{}"),
            full_text=row["full_text"],
        )

    # Scores

    def save_scores(self, scores: list[ItemScore]) -> None:
        if not scores:
            return
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO item_scores (
                    item_id, category, lexical, llm_relevance, llm_usefulness, recency,
                    final, reasoning, tags, oracle_fallback, scored_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        s.item_id,
                        s.category.value,
                        s.lexical,
                        s.llm_relevance,
                        s.llm_usefulness,
                        s.recency,
                        s.final,
                        s.reasoning,
                        json.dumps(s.tags, ensure_ascii=False),
                        int(s.oracle_fallback),
                        _iso(s.scored_at),
                    )
                    for s in scores
                ],
            )

    def load_scores(self, item_ids: list[str]) -> dict[str, ItemScore]:
        scores: dict[str, ItemScore] = {}
        for start in range(0, len(item_ids), _CHUNK):
            chunk = item_ids[start:start + _CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            rows = self._query(f"SELECT * FROM item_scores WHERE item_id IN ({placeholders})", tuple(chunk))
            for row in rows:
                scores[row["item_id"]] = ItemScore(
                    item_id=row["item_id"],
                    category=Category.parse(row["category"]),
                    lexical=row["lexical"],
                    llm_relevance=row["llm_relevance"],
                    llm_usefulness=row["llm_usefulness"],
                    recency=row["recency"],
                    final=row["final"],
                    reasoning=row["reasoning"],
                    tags=json.loads(row["tags"] or "[]"),
                    oracle_fallback=bool(row["oracle_fallback"]),
                    scored_at=_parse_iso(row["scored_at"]) or self.clock(),
                )
        return scores

    # Checkpoints

    def get_checkpoint(self, job_name: str) -> Optional[SyncCheckpoint]:
        rows = self._query("SELECT * FROM sync_state WHERE id = ?", (job_name,))
        return self._row_to_checkpoint(rows[0]) if rows else None

    def save_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        with self._transaction() as conn:
            self._write_checkpoint(conn, checkpoint)

    def begin_run(self, job_name: str, stale_after: timedelta) -> Optional[SyncCheckpoint]:
        now = self.clock()
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM sync_state WHERE id = ?", (job_name,)).fetchone()
            previous = self._row_to_checkpoint(row) if row else None

            if previous is not None and previous.status == SyncStatus.RUNNING:
                if now - previous.updated_at < stale_after:
                    raise SyncConflictError(
                        f"Sync job {job_name!r} is already running "
                        f"(last update {previous.updated_at.isoformat()})"
                    )
                logger.warning(
                    "Reclaiming stale running checkpoint for %s (last update %s)",
                    job_name,
                    previous.updated_at.isoformat(),
                )
                previous.status = SyncStatus.PAUSED
                previous.error = previous.error or "Previous run stopped without finishing"

            claimed = SyncCheckpoint(
                job_name=job_name,
                status=SyncStatus.RUNNING,
                cursor=previous.cursor if previous else None,
                items_processed=previous.items_processed if previous else 0,
                calls_used=previous.calls_used if previous else 0,
                error=None,
                since=previous.since if previous else None,
                started_at=now,
                updated_at=now,
            )
            self._write_checkpoint(conn, claimed)
        return previous

    def commit_page(self, items: list[FeedItem], checkpoint: SyncCheckpoint) -> int:
        with self._transaction() as conn:
            written = self._write_items(conn, items) if items else 0
            self._write_checkpoint(conn, checkpoint)
        return written

    def _write_checkpoint(self, conn: sqlite3.Connection, checkpoint: SyncCheckpoint) -> None:
        checkpoint.updated_at = self.clock()
        conn.execute(
            """
            INSERT OR REPLACE INTO sync_state (
                id, status, continuation_token, items_processed, calls_used,
                since, started_at, last_updated_at, error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                checkpoint.job_name,
                checkpoint.status.value,
                checkpoint.cursor,
                checkpoint.items_processed,
                checkpoint.calls_used,
                _iso(checkpoint.since),
                _iso(checkpoint.started_at),
                _iso(checkpoint.updated_at),
                checkpoint.error,
            ),
        )

    @staticmethod
    def _row_to_checkpoint(row: Any) -> SyncCheckpoint:
        return SyncCheckpoint(
            job_name=row["id"],
            status=SyncStatus(row["status"]),
            cursor=row["continuation_token"],
            items_processed=row["items_processed"],
            calls_used=row["calls_used"],
            error=row["error"],
            since=_parse_iso(row["since"]),
            started_at=_parse_iso(row["started_at"]),
            updated_at=_parse_iso(row["last_updated_at"]) or utc_now(),
        )

    # Budget

    def load_budget(self, period: str) -> Optional[BudgetWindow]:
        rows = self._query("SELECT * FROM api_budget WHERE period = ?", (period,))
        if not rows:
            return None
        row = rows[0]
        return BudgetWindow(period=row["period"], calls_used=row["calls_used"], ceiling=row["ceiling"])

    def reserve_budget(self, period: str, n: int, limit: int, ceiling: int) -> tuple[int, int]:
        with self._transaction() as conn:
            used = self._budget_used(conn, period)
            granted = max(0, min(n, limit - used))
            if granted:
                used += granted
                self._write_budget(conn, period, used, ceiling)
        return granted, used

    def adjust_budget(self, period: str, delta: int, ceiling: int) -> int:
        with self._transaction() as conn:
            used = max(0, min(ceiling, self._budget_used(conn, period) + delta))
            self._write_budget(conn, period, used, ceiling)
        return used

    @staticmethod
    def _budget_used(conn: sqlite3.Connection, period: str) -> int:
        row = conn.execute("SELECT calls_used FROM api_budget WHERE period = ?", (period,)).fetchone()
        return row["calls_used"] if row else 0

    def _write_budget(self, conn: sqlite3.Connection, period: str, calls_used: int, ceiling: int) -> None:
        conn.execute(
            """
            INSERT INTO api_budget (period, calls_used, ceiling, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(period) DO UPDATE SET
                calls_used = excluded.calls_used,
                ceiling = excluded.ceiling,
                updated_at = excluded.updated_at
            """,
            (period, calls_used, ceiling, _iso(self.clock())),
        )
