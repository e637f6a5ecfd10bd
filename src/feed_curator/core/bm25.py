"""BM25 lexical ranking over a small in-memory corpus."""

import math
import re
from collections import Counter
from typing import Iterable

TOKEN_RE = re.compile(r"\b\w+\b")


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens longer than two characters."""
    return [t for t in TOKEN_RE.findall(text.lower()) if len(t) > 2]


def min_max_normalize(scores: dict[str, float], constant: float = 0.5) -> dict[str, float]:
    """Scale scores to [0, 1]; all-equal input (including a single item) maps to ``constant``."""
    if not scores:
        return {}
    low = min(scores.values())
    high = max(scores.values())
    if high == low:
        return {key: constant for key in scores}
    span = high - low
    return {key: min(1.0, max(0.0, (value - low) / span)) for key, value in scores.items()}


class BM25Index:
    """Okapi BM25 with the usual k1/b parameters."""

    def __init__(self, k1: float = 1.5, b: float = 0.75) -> None:
        self.k1 = k1
        self.b = b
        self._term_freqs: dict[str, Counter[str]] = {}
        self._doc_lengths: dict[str, int] = {}
        self._doc_freq: Counter[str] = Counter()
        self._avg_length = 0.0

    def __len__(self) -> int:
        return len(self._term_freqs)

    def add_documents(self, documents: Iterable[tuple[str, str]]) -> None:
        """Replace the corpus with ``(doc_id, text)`` pairs."""
        self._term_freqs.clear()
        self._doc_lengths.clear()
        self._doc_freq.clear()

        for doc_id, text in documents:
            tokens = tokenize(text)
            counts = Counter(tokens)
            self._term_freqs[doc_id] = counts
            self._doc_lengths[doc_id] = len(tokens)
            self._doc_freq.update(counts.keys())

        total = sum(self._doc_lengths.values())
        self._avg_length = total / max(len(self._doc_lengths), 1)

    def idf(self, term: str) -> float:
        n = self._doc_freq.get(term, 0)
        return math.log((len(self) - n + 0.5) / (n + 0.5) + 1)

    def score(self, query_terms: Iterable[str]) -> dict[str, float]:
        """Raw BM25 score of every document for the query."""
        terms = [t for term in query_terms for t in tokenize(term)]
        scores = {doc_id: 0.0 for doc_id in self._term_freqs}
        if not terms or not scores:
            return scores

        avg_length = self._avg_length or 1.0
        for term in set(terms):
            idf = self.idf(term)
            for doc_id, counts in self._term_freqs.items():
                tf = counts.get(term, 0)
                if not tf:
                    continue
                length_norm = 1 - self.b + self.b * (self._doc_lengths[doc_id] / avg_length)
                scores[doc_id] += idf * (tf * (self.k1 + 1)) / (tf + self.k1 * length_norm)
        return scores
