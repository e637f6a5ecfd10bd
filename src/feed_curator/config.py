"""Configuration management."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from feed_curator.adapters.llm.claude_client import DEFAULT_TAGS
from feed_curator.core.categorizer import DEFAULT_LABEL_MAP
from feed_curator.core.entities import Category
from feed_curator.core.scorer import DECAY_KINDS, SignalWeights


@dataclass
class InoreaderConfig:
    """Feed aggregator API settings."""
    base_url: str = "https://www.inoreader.com/reader/api/0"
    token_url: str = "https://www.inoreader.com/oauth2/token"
    stream_id: str = "user/-/state/com.google/reading-list"
    page_size: int = 100
    request_timeout: float = 30.0


@dataclass
class BudgetConfig:
    """Daily API quota settings."""
    daily_ceiling: int = 1000
    safety_reserve: int = 20


@dataclass
class RetryConfig:
    """Backoff settings shared by every external caller."""
    max_attempts: int = 3
    initial_delay: float = 2.0
    max_delay: float = 30.0


@dataclass
class SyncConfig:
    """Sync job settings."""
    job_name: str = "hourly-sync"
    default_window_hours: float = 4.0
    stale_after_minutes: float = 30.0
    max_items: Optional[int] = None


@dataclass
class ClaudeConfig:
    """Claude API settings."""
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 512
    temperature: float = 0.0
    request_timeout: float = 60.0
    request_delay: float = 0.5
    tags: list[str] = field(default_factory=lambda: list(DEFAULT_TAGS))


@dataclass
class CategoryScoring:
    """Per-category ranking parameters."""
    query: str = ""
    half_life_days: float = 3.0
    weights: SignalWeights = field(default_factory=SignalWeights)
    max_items: int = 10
    max_per_source: int = 2


def _category(query: str, half_life_days: float, llm: float, lexical: float, recency: float) -> CategoryScoring:
    return CategoryScoring(
        query=query,
        half_life_days=half_life_days,
        weights=SignalWeights(lexical=lexical, llm=llm, recency=recency),
    )


def _default_categories() -> dict[Category, CategoryScoring]:
    return {
        Category.NEWSLETTERS: _category(
            "code search semantic search codebase intelligence agents code review devtools IDE",
            3, llm=0.45, lexical=0.35, recency=0.2,
        ),
        Category.PODCASTS: _category(
            "AI coding podcast agents code search LLM developer productivity tools infrastructure",
            7, llm=0.5, lexical=0.3, recency=0.2,
        ),
        Category.TECH_ARTICLES: _category(
            "code search semantic search codebase refactoring agents code intelligence testing "
            "CI/CD architecture patterns",
            5, llm=0.4, lexical=0.4, recency=0.2,
        ),
        Category.AI_NEWS: _category(
            "LLM transformer model reasoning AI inference coding agents foundation models context window",
            2, llm=0.45, lexical=0.35, recency=0.2,
        ),
        Category.PRODUCT_NEWS: _category(
            "release feature announcement changelog IDE debugger code review tool productivity integrations",
            4, llm=0.45, lexical=0.35, recency=0.2,
        ),
        Category.COMMUNITY: _category(
            "code search agents devtools codebase refactoring code review testing CI/CD best practices",
            3, llm=0.5, lexical=0.35, recency=0.15,
        ),
        Category.RESEARCH: _category(
            "semantic search code search program synthesis AST machine learning software engineering "
            "empirical study",
            10, llm=0.5, lexical=0.3, recency=0.2,
        ),
    }


@dataclass
class ScoringConfig:
    """Hybrid scoring settings."""
    scale_max: int = 10
    neutral_score: int = 5
    relevance_weight: float = 0.7
    oracle_timeout: float = 60.0
    oracle_concurrency: int = 4
    decay: str = "exponential"
    recency_floor: float = 0.2
    dedupe_urls: bool = True
    categories: dict[Category, CategoryScoring] = field(default_factory=_default_categories)

    def for_category(self, category: Category) -> CategoryScoring:
        return self.categories.get(Category.parse(category)) or CategoryScoring()


@dataclass
class CategorizationConfig:
    """Category assignment settings."""
    default_category: Category = Category.TECH_ARTICLES
    label_map: dict[str, Category] = field(default_factory=lambda: dict(DEFAULT_LABEL_MAP))
    source_map: dict[str, Category] = field(default_factory=dict)
    source_names: dict[str, str] = field(default_factory=dict)


@dataclass
class EnrichmentConfig:
    """Full-text fetch settings."""
    workers: int = 4
    min_domain_interval: float = 2.0
    timeout: float = 10.0
    max_chars: int = 20000


@dataclass
class PathsConfig:
    """Path settings."""
    db_path: Path = Path("data/feed_curator.db")
    output_dir: Path = Path("digests")


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"


@dataclass
class Settings:
    """Application settings."""

    # API keys (from environment only)
    anthropic_api_key: str = ""
    inoreader_client_id: str = ""
    inoreader_client_secret: str = ""
    inoreader_refresh_token: str = ""

    # Config sections
    inoreader: InoreaderConfig = field(default_factory=InoreaderConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    categorization: CategorizationConfig = field(default_factory=CategorizationConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def has_inoreader_credentials(self) -> bool:
        return bool(self.inoreader_client_id and self.inoreader_client_secret and self.inoreader_refresh_token)


def load_config(config_path: Path = Path("config.yaml")) -> dict:
    """Load configuration from YAML file."""
    if not config_path.exists():
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _apply(section: Any, values: dict, name: str) -> None:
    for key, value in (values or {}).items():
        if not hasattr(section, key):
            raise ValueError(f"Unknown setting {name}.{key}")
        setattr(section, key, value)


def _parse_category_scoring(raw: dict, base: CategoryScoring) -> CategoryScoring:
    weights = base.weights
    if "weights" in raw:
        merged = {"lexical": weights.lexical, "llm": weights.llm, "recency": weights.recency}
        for key, value in (raw["weights"] or {}).items():
            if key not in merged:
                raise ValueError(f"Unknown weight {key!r} (expected lexical, llm or recency)")
            merged[key] = float(value)
        weights = SignalWeights(**merged)
    return CategoryScoring(
        query=raw.get("query", base.query),
        half_life_days=float(raw.get("half_life_days", base.half_life_days)),
        weights=weights,
        max_items=int(raw.get("max_items", base.max_items)),
        max_per_source=int(raw.get("max_per_source", base.max_per_source)),
    )


def get_settings(config_path: Path = Path("config.yaml")) -> Settings:
    """Get application settings from YAML config and environment.

    Raises ``ValueError`` for unknown categories, unknown keys and blend
    weights that do not sum to 1.
    """
    config = load_config(config_path)

    settings = Settings(
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
        inoreader_client_id=os.getenv("INOREADER_CLIENT_ID", ""),
        inoreader_client_secret=os.getenv("INOREADER_CLIENT_SECRET", ""),
        inoreader_refresh_token=os.getenv("INOREADER_REFRESH_TOKEN", ""),
    )

    for name in ("inoreader", "budget", "retry", "sync", "claude", "enrichment", "logging"):
        if name in config:
            _apply(getattr(settings, name), config[name], name)

    if "paths" in config:
        for key, value in config["paths"].items():
            _apply(settings.paths, {key: Path(value)}, "paths")

    if "scoring" in config:
        scoring = dict(config["scoring"])
        categories = scoring.pop("categories", None) or {}
        _apply(settings.scoring, scoring, "scoring")
        for key, raw in categories.items():
            category = Category.parse(key)
            settings.scoring.categories[category] = _parse_category_scoring(
                raw or {}, settings.scoring.for_category(category)
            )
        if settings.scoring.decay not in DECAY_KINDS:
            raise ValueError(f"Unknown decay kind {settings.scoring.decay!r} (expected one of {DECAY_KINDS})")

    if "categorization" in config:
        section = config["categorization"]
        cat = settings.categorization
        if "default_category" in section:
            cat.default_category = Category.parse(section["default_category"])
        if "label_map" in section:
            cat.label_map = {str(k).lower(): Category.parse(v) for k, v in (section["label_map"] or {}).items()}
        if "source_map" in section:
            cat.source_map = {str(k): Category.parse(v) for k, v in (section["source_map"] or {}).items()}
        if "source_names" in section:
            cat.source_names = {str(k): str(v) for k, v in (section["source_names"] or {}).items()}

    return settings
