"""Assignment of exactly one category per item."""

import dataclasses
import logging
import re
from typing import Optional
from urllib.parse import urlparse

from feed_curator.core.entities import Category, FeedItem

logger = logging.getLogger(__name__)

# Folder/label names as they appear in the aggregator, lowercased.
DEFAULT_LABEL_MAP: dict[str, Category] = {
    "research": Category.RESEARCH,
    "arxiv digest": Category.RESEARCH,
    "arxiv": Category.RESEARCH,
    "paper": Category.RESEARCH,
    "papers": Category.RESEARCH,
    "academic": Category.RESEARCH,
    "tech articles": Category.TECH_ARTICLES,
    "tech-articles": Category.TECH_ARTICLES,
    "articles": Category.TECH_ARTICLES,
    "blog": Category.TECH_ARTICLES,
    "blogs": Category.TECH_ARTICLES,
    "dev blogs": Category.TECH_ARTICLES,
    "engineering": Category.TECH_ARTICLES,
    "podcast": Category.PODCASTS,
    "podcasts": Category.PODCASTS,
    "tech podcasts": Category.PODCASTS,
    "product news": Category.PRODUCT_NEWS,
    "product updates": Category.PRODUCT_NEWS,
    "releases": Category.PRODUCT_NEWS,
    "changelog": Category.PRODUCT_NEWS,
    "announcements": Category.PRODUCT_NEWS,
    "community": Category.COMMUNITY,
    "developer communities": Category.COMMUNITY,
    "reddit": Category.COMMUNITY,
    "hacker news": Category.COMMUNITY,
    "hn": Category.COMMUNITY,
    "discussion": Category.COMMUNITY,
    "ai news": Category.AI_NEWS,
    "ai-news": Category.AI_NEWS,
    "ai articles": Category.AI_NEWS,
    "ai research": Category.AI_NEWS,
    "llm": Category.AI_NEWS,
    "machine-learning": Category.AI_NEWS,
    "newsletter": Category.NEWSLETTERS,
    "newsletters": Category.NEWSLETTERS,
    "weekly-digest": Category.NEWSLETTERS,
}

DEFAULT_DOMAIN_RULES: dict[str, Category] = {
    "arxiv.org": Category.RESEARCH,
    "openreview.net": Category.RESEARCH,
    "aclanthology.org": Category.RESEARCH,
    "reddit.com": Category.COMMUNITY,
    "news.ycombinator.com": Category.COMMUNITY,
    "lobste.rs": Category.COMMUNITY,
    "substack.com": Category.NEWSLETTERS,
    "buttondown.email": Category.NEWSLETTERS,
    "podcasts.apple.com": Category.PODCASTS,
    "open.spotify.com": Category.PODCASTS,
}

# Checked in this order; the first category with a hit wins.
DEFAULT_KEYWORDS: dict[Category, tuple[str, ...]] = {
    Category.RESEARCH: ("arxiv", "preprint", "proceedings", "we propose", "we present"),
    Category.COMMUNITY: ("ask hn", "show hn", "r/"),
    Category.NEWSLETTERS: ("newsletter", "weekly digest", "issue #"),
    Category.PRODUCT_NEWS: (
        "release notes",
        "changelog",
        "now available",
        "generally available",
        "introducing",
        "announcing",
        "launches",
    ),
    Category.AI_NEWS: ("llm", "gpt", "openai", "anthropic", "gemini", "language model", "foundation model"),
}

PODCAST_PATTERNS = (
    re.compile(r"^podcast:", re.IGNORECASE),
    re.compile(r"\bpodcast\b.*\bepisode\b", re.IGNORECASE),
    re.compile(r"\bepisode \d+", re.IGNORECASE),
    re.compile(r"^ep\.\s*\d+", re.IGNORECASE),
)


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    # Word boundaries only where the keyword itself starts/ends with a word char.
    prefix = r"\b" if keyword[:1].isalnum() else ""
    suffix = r"\b" if keyword[-1:].isalnum() else ""
    return re.compile(prefix + re.escape(keyword) + suffix, re.IGNORECASE)


class Categorizer:
    """Pick a category by explicit mapping, then heuristics, then the default."""

    def __init__(
        self,
        label_map: Optional[dict[str, "Category | str"]] = None,
        source_map: Optional[dict[str, "Category | str"]] = None,
        default_category: "Category | str" = Category.TECH_ARTICLES,
        domain_rules: Optional[dict[str, "Category | str"]] = None,
        keywords: Optional[dict["Category | str", tuple[str, ...]]] = None,
    ) -> None:
        labels = DEFAULT_LABEL_MAP if label_map is None else label_map
        self.label_map = {k.strip().lower(): Category.parse(v) for k, v in labels.items()}
        self.source_map = {k: Category.parse(v) for k, v in (source_map or {}).items()}
        self.default_category = Category.parse(default_category)
        domains = DEFAULT_DOMAIN_RULES if domain_rules is None else domain_rules
        self.domain_rules = {k.lower(): Category.parse(v) for k, v in domains.items()}
        words = DEFAULT_KEYWORDS if keywords is None else keywords
        self.keyword_rules = [
            (Category.parse(category), [_keyword_pattern(w) for w in terms])
            for category, terms in words.items()
        ]

    def categorize(self, items: list[FeedItem]) -> list[FeedItem]:
        """Return copies of ``items`` with their category decided; bad items are skipped."""
        categorized: list[FeedItem] = []
        for item in items:
            try:
                category, rule = self.decide(item)
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning("Skipping item %s during categorization: %s", item.id, e)
                continue
            if category != item.category:
                logger.debug("Categorized %r as %s (%s)", item.title[:60], category.value, rule)
            categorized.append(dataclasses.replace(item, category=category))
        return categorized

    def decide(self, item: FeedItem) -> tuple[Category, str]:
        """Return the winning category and the rule that produced it."""
        mapped = self._explicit(item)
        if mapped is not None:
            return mapped, "mapping"

        if self._is_podcast(item):
            return Category.PODCASTS, "podcast pattern"

        domain = self._by_domain(item.url)
        if domain is not None:
            return domain, "domain"

        text = f"{item.title} {item.source}"
        for category, patterns in self.keyword_rules:
            if any(p.search(text) for p in patterns):
                return category, "keyword"

        return self.default_category, "default"

    def _explicit(self, item: FeedItem) -> Optional[Category]:
        if item.source_id and item.source_id in self.source_map:
            return self.source_map[item.source_id]

        for label in item.labels:
            full = label.strip().lower()
            if full in self.label_map:
                return self.label_map[full]
            # Nested folders ("Feeds/AI News") match on any path segment.
            for part in full.split("/"):
                part = part.strip()
                if part and part in self.label_map:
                    return self.label_map[part]
        return None

    @staticmethod
    def _is_podcast(item: FeedItem) -> bool:
        if "podcast" in item.source.lower():
            return True
        return any(p.search(item.title) for p in PODCAST_PATTERNS)

    def _by_domain(self, url: str) -> Optional[Category]:
        if not url:
            return None
        host = (urlparse(url).hostname or "").lower()
        for domain, category in self.domain_rules.items():
            if host == domain or host.endswith("." + domain):
                return category
        return None
