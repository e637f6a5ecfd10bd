"""Hybrid relevance scoring: lexical match, LLM judgment and recency decay."""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from feed_curator.core.bm25 import BM25Index, min_max_normalize
from feed_curator.core.entities import Category, FeedItem, ItemScore, Judgment, utc_now
from feed_curator.core.interfaces import ScoringOracle

logger = logging.getLogger(__name__)

DECAY_KINDS = ("exponential", "linear")


@dataclass
class SignalWeights:
    """Blend weights for the three normalized signals; must sum to 1."""

    lexical: float = 0.35
    llm: float = 0.45
    recency: float = 0.2

    def __post_init__(self) -> None:
        values = (self.lexical, self.llm, self.recency)
        if any(v < 0 for v in values):
            raise ValueError(f"Signal weights cannot be negative: {values}")
        if not math.isclose(sum(values), 1.0, abs_tol=1e-6):
            raise ValueError(f"Signal weights must sum to 1, got {sum(values):.4f}")


@dataclass
class QueryContext:
    """What the batch is being scored for."""

    category: Category
    query_terms: list[str]
    window_days: float
    weights: SignalWeights = field(default_factory=SignalWeights)
    half_life_days: float = 3.0
    now: datetime = field(default_factory=utc_now)


@dataclass
class CorpusStats:
    """Batch-level lexical statistics, min-max normalized over the batch."""

    lexical: dict[str, float]
    raw: dict[str, float]

    @classmethod
    def build(cls, items: list[FeedItem], query_terms: list[str]) -> "CorpusStats":
        index = BM25Index()
        index.add_documents((item.id, _lexical_document(item)) for item in items)
        raw = index.score(query_terms)
        return cls(lexical=min_max_normalize(raw), raw=raw)

    def lexical_for(self, item_id: str) -> float:
        return self.lexical.get(item_id, 0.0)


def _lexical_document(item: FeedItem) -> str:
    return " ".join(p for p in (item.title, item.summary, item.source, " ".join(item.labels)) if p)


def recency_score(
    published_at: datetime,
    now: datetime,
    half_life_days: float,
    window_days: float,
    decay: str = "exponential",
    floor: float = 0.2,
) -> float:
    """Monotonically decreasing freshness score in [0, 1].

    ``exponential`` halves the distance to ``floor`` every half-life;
    ``linear`` falls from 1 to 0 across the scoring window.
    """
    age_days = max(0.0, (now - published_at).total_seconds() / 86400)
    if decay == "linear":
        if window_days <= 0:
            return 1.0 if age_days == 0 else 0.0
        value = 1.0 - age_days / window_days
    elif decay == "exponential":
        if half_life_days <= 0:
            return 1.0 if age_days == 0 else floor
        value = floor + (1.0 - floor) * math.pow(2.0, -age_days / half_life_days)
    else:
        raise ValueError(f"Unknown decay kind {decay!r} (expected one of {DECAY_KINDS})")
    return min(1.0, max(0.0, value))


class Scorer:
    """Compute ``ItemScore`` records for a batch of items in one category."""

    def __init__(
        self,
        oracle: Optional[ScoringOracle],
        scale_max: int = 10,
        neutral_score: Optional[int] = None,
        relevance_weight: float = 0.7,
        oracle_timeout: float = 60.0,
        concurrency: int = 4,
        decay: str = "exponential",
        recency_floor: float = 0.2,
    ) -> None:
        if scale_max <= 0:
            raise ValueError("scale_max must be positive")
        if decay not in DECAY_KINDS:
            raise ValueError(f"Unknown decay kind {decay!r}")
        if not 0.0 <= relevance_weight <= 1.0:
            raise ValueError("relevance_weight must be within [0, 1]")
        self.oracle = oracle
        self.scale_max = scale_max
        self.neutral_score = scale_max // 2 if neutral_score is None else self._clamp(neutral_score)
        self.relevance_weight = relevance_weight
        self.oracle_timeout = oracle_timeout
        self.concurrency = max(1, concurrency)
        self.decay = decay
        self.recency_floor = recency_floor

    async def score_items(
        self, items: list[FeedItem], ctx: QueryContext, corpus: Optional[list[FeedItem]] = None
    ) -> list[ItemScore]:
        """Score a batch; oracle calls run concurrently up to ``concurrency``.

        Lexical scores are normalized over ``corpus`` (default: ``items``), so a
        partial rescore stays comparable with stored scores.
        """
        if not items:
            return []

        stats = CorpusStats.build(corpus if corpus is not None else items, ctx.query_terms)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def bounded(item: FeedItem) -> ItemScore:
            async with semaphore:
                return await self.score(item, stats, ctx)

        scores = await asyncio.gather(*(bounded(item) for item in items))
        fallbacks = sum(1 for s in scores if s.oracle_fallback)
        logger.info(
            "Scored %d %s item(s) (%d with neutral LLM fallback)", len(scores), ctx.category.value, fallbacks
        )
        return list(scores)

    async def score(self, item: FeedItem, stats: CorpusStats, ctx: QueryContext) -> ItemScore:
        """Blend the three signals for one item."""
        judgment, fallback = await self.judge(item)
        return self._blend(item, ctx, stats.lexical_for(item.id), judgment, fallback)

    def refresh(self, item: FeedItem, stored: ItemScore, ctx: QueryContext) -> ItemScore:
        """Recompute recency and the blend of a stored score as of ``ctx.now``.

        Lexical and LLM signals are kept; no oracle call is made.
        """
        judgment = Judgment(relevance=stored.llm_relevance, usefulness=stored.llm_usefulness, tags=stored.tags)
        return self._blend(item, ctx, stored.lexical, judgment, stored.oracle_fallback)

    def _blend(
        self, item: FeedItem, ctx: QueryContext, lexical: float, judgment: Judgment, fallback: bool
    ) -> ItemScore:
        llm = self.llm_signal(judgment)
        recency = recency_score(
            item.published_at,
            ctx.now,
            half_life_days=ctx.half_life_days,
            window_days=ctx.window_days,
            decay=self.decay,
            floor=self.recency_floor,
        )
        weights = ctx.weights
        final = weights.lexical * lexical + weights.llm * llm + weights.recency * recency
        final = min(1.0, max(0.0, final))

        age_days = max(0.0, (ctx.now - item.published_at).total_seconds() / 86400)
        reasoning = " | ".join(
            (
                f"LLM: relevance={judgment.relevance}, usefulness={judgment.usefulness}"
                + (" (neutral fallback)" if fallback else ""),
                f"Lexical={lexical:.2f}",
                f"Recency={recency:.2f} (age: {age_days:.1f}d)",
                f"Tags: {', '.join(judgment.tags) or 'none'}",
            )
        )

        return ItemScore(
            item_id=item.id,
            category=ctx.category,
            lexical=lexical,
            llm_relevance=judgment.relevance,
            llm_usefulness=judgment.usefulness,
            recency=recency,
            final=final,
            reasoning=reasoning,
            tags=list(judgment.tags),
            oracle_fallback=fallback,
            scored_at=ctx.now,
        )

    async def judge(self, item: FeedItem) -> tuple[Judgment, bool]:
        """Ask the oracle; any failure yields the neutral judgment and ``True``."""
        if self.oracle is None:
            return self._neutral(), True
        try:
            judgment = await asyncio.wait_for(self.oracle.judge(self._oracle_text(item)), self.oracle_timeout)
        except asyncio.TimeoutError:
            logger.warning("Oracle timed out after %.0fs for %r, using neutral score", self.oracle_timeout, item.title[:60])
            return self._neutral(), True
        except Exception as e:
            logger.warning("Oracle failed for %r (%s: %s), using neutral score", item.title[:60], type(e).__name__, e)
            return self._neutral(), True

        return (
            Judgment(
                relevance=self._clamp(judgment.relevance),
                usefulness=self._clamp(judgment.usefulness),
                tags=[str(t).strip().lower() for t in judgment.tags if str(t).strip()],
            ),
            False,
        )

    def llm_signal(self, judgment: Judgment) -> float:
        """Weighted relevance/usefulness mapped to [0, 1]."""
        rw = self.relevance_weight
        value = (rw * judgment.relevance + (1 - rw) * judgment.usefulness) / self.scale_max
        return min(1.0, max(0.0, value))

    def _neutral(self) -> Judgment:
        return Judgment(relevance=self.neutral_score, usefulness=self.neutral_score, tags=[])

    def _clamp(self, value: object) -> int:
        try:
            number = int(round(float(value)))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return self.scale_max // 2
        return min(self.scale_max, max(0, number))

    @staticmethod
    def _oracle_text(item: FeedItem) -> str:
        parts = [f"Title: {item.title}", f"Source: {item.source}"]
        if item.summary:
            parts.append(f"Summary: {item.summary}")
        if item.full_text:
            parts.append(f"Full Text (preview): {item.full_text[:1000]}")
        if item.url:
            parts.append(f"URL: {item.url}")
        return "\n".join(parts)
