"""CLI entry point for feed curator."""

import asyncio
import logging
import signal
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import typer

from feed_curator.adapters.digest import MarkdownDigestGenerator
from feed_curator.adapters.enrichment import FullTextEnricher
from feed_curator.adapters.llm import ClaudeClient
from feed_curator.adapters.sources import InoreaderSource
from feed_curator.adapters.storage import SQLiteStore
from feed_curator.config import Settings, get_settings
from feed_curator.core import (
    BudgetTracker,
    Categorizer,
    Category,
    Fetcher,
    Normalizer,
    RetryPolicy,
    Scorer,
    SyncOptions,
    SyncResult,
)
from feed_curator.core.errors import PersistenceError
from feed_curator.use_cases import CurationService, SyncService

app = typer.Typer(help="Budget-aware feed sync and curated top picks.", no_args_is_help=True)

ConfigOption = typer.Option(Path("config.yaml"), "--config", "-c", help="Path to config.yaml")


def main() -> None:
    """CLI entry point."""
    app()


def _setup(config_path: Path) -> Settings:
    try:
        settings = get_settings(config_path)
    except ValueError as e:
        print(f"❌ Invalid configuration: {e}")
        raise typer.Exit(code=1)
    logging.basicConfig(
        level=getattr(logging, str(settings.logging.level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return settings


def _banner(title: str) -> None:
    print("\n" + "=" * 70)
    print(title)
    print("=" * 70)


def _retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.retry.max_attempts,
        initial_delay=settings.retry.initial_delay,
        max_delay=settings.retry.max_delay,
    )


def _budget(settings: Settings, store: SQLiteStore) -> BudgetTracker:
    return BudgetTracker(
        ceiling=settings.budget.daily_ceiling,
        store=store,
        safety_reserve=settings.budget.safety_reserve,
    )


def _scorer(settings: Settings) -> Scorer:
    oracle = None
    if settings.anthropic_api_key:
        oracle = ClaudeClient(
            api_key=settings.anthropic_api_key,
            model=settings.claude.model,
            max_tokens=settings.claude.max_tokens,
            temperature=settings.claude.temperature,
            timeout=settings.claude.request_timeout,
            request_delay=settings.claude.request_delay,
            tags=settings.claude.tags,
            scale_max=settings.scoring.scale_max,
            retry_policy=_retry_policy(settings),
        )
    return Scorer(
        oracle=oracle,
        scale_max=settings.scoring.scale_max,
        neutral_score=settings.scoring.neutral_score,
        relevance_weight=settings.scoring.relevance_weight,
        oracle_timeout=settings.scoring.oracle_timeout,
        concurrency=settings.scoring.oracle_concurrency,
        decay=settings.scoring.decay,
        recency_floor=settings.scoring.recency_floor,
    )


def _open_store(settings: Settings) -> SQLiteStore:
    try:
        return SQLiteStore(settings.paths.db_path)
    except PersistenceError as e:
        print(f"❌ {e}")
        raise typer.Exit(code=1)


def _parse_category(value: str) -> Category:
    try:
        return Category.parse(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


@app.command()
def sync(
    job: Optional[str] = typer.Option(None, "--job", help="Sync job name"),
    days: Optional[float] = typer.Option(None, "--days", help="Catch-up window in days (default: configured hours)"),
    max_items: Optional[int] = typer.Option(None, "--max-items", help="Pause after this many items"),
    config: Path = ConfigOption,
) -> None:
    """Pull new items from the aggregator, resuming a paused run if there is one."""
    settings = _setup(config)
    if not settings.has_inoreader_credentials:
        print("❌ INOREADER_CLIENT_ID / INOREADER_CLIENT_SECRET / INOREADER_REFRESH_TOKEN are not set")
        raise typer.Exit(code=1)

    job_name = job or settings.sync.job_name
    _banner(f"📥 SYNC: {job_name}")
    store = _open_store(settings)
    result = asyncio.run(_run_sync(settings, store, job_name, SyncOptions(lookback_days=days, max_items=max_items)))

    if result.resumed:
        print("↻ Resumed from a paused checkpoint")
    print(f"✓ Items added: {result.items_added}")
    print(f"✓ API calls used: {result.calls_used}")
    if result.categories_processed:
        print(f"✓ Categories: {', '.join(c.value for c in result.categories_processed)}")

    if result.success:
        print("✅ Sync completed")
        return
    if result.paused:
        print(f"⏸️  Sync paused: {result.error}")
        return
    print(f"❌ Sync failed: {result.error}")
    raise typer.Exit(code=1)


async def _run_sync(settings: Settings, store: SQLiteStore, job_name: str, options: SyncOptions) -> SyncResult:
    try:
        source = InoreaderSource(
            client_id=settings.inoreader_client_id,
            client_secret=settings.inoreader_client_secret,
            refresh_token=settings.inoreader_refresh_token,
            stream_id=settings.inoreader.stream_id,
            base_url=settings.inoreader.base_url,
            token_url=settings.inoreader.token_url,
            timeout=settings.inoreader.request_timeout,
        )
        print(f"{source.emoji} {source.name}: {settings.inoreader.stream_id}")
        fetcher = Fetcher(
            source,
            _budget(settings, store),
            retry_policy=_retry_policy(settings),
            timeout=settings.inoreader.request_timeout,
        )
        cat = settings.categorization
        service = SyncService(
            fetcher=fetcher,
            normalizer=Normalizer(default_category=cat.default_category, source_names=cat.source_names),
            categorizer=Categorizer(
                label_map=cat.label_map,
                source_map=cat.source_map,
                default_category=cat.default_category,
            ),
            store=store,
            default_window=timedelta(hours=settings.sync.default_window_hours),
            page_size=settings.inoreader.page_size,
            stale_after=timedelta(minutes=settings.sync.stale_after_minutes),
        )

        cancel = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, cancel.set)
            except NotImplementedError:
                # Not available on Windows event loops
                pass

        if options.max_items is None:
            options.max_items = settings.sync.max_items
        return await service.run_sync(job_name, options, cancel)
    finally:
        store.close()


@app.command()
def status(
    job: Optional[str] = typer.Option(None, "--job", help="Sync job name"),
    config: Path = ConfigOption,
) -> None:
    """Show the checkpoint of a sync job."""
    settings = _setup(config)
    job_name = job or settings.sync.job_name
    store = _open_store(settings)
    try:
        checkpoint = store.get_checkpoint(job_name)
        total = store.count_items()
    finally:
        store.close()

    _banner(f"📊 STATUS: {job_name}")
    if checkpoint is None:
        print("Job has never run")
    else:
        print(f"  • Status: {checkpoint.status.value}")
        print(f"  • Cursor: {checkpoint.cursor or '-'}")
        print(f"  • Items processed: {checkpoint.items_processed}")
        print(f"  • API calls used: {checkpoint.calls_used}")
        if checkpoint.since:
            print(f"  • Window start: {checkpoint.since.isoformat()}")
        print(f"  • Last update: {checkpoint.updated_at.isoformat()}")
        if checkpoint.error:
            print(f"  ⚠️  {checkpoint.error}")
    print(f"  • Items stored: {total}")


@app.command()
def budget(config: Path = ConfigOption) -> None:
    """Show today's API budget."""
    settings = _setup(config)
    store = _open_store(settings)
    try:
        window = _budget(settings, store).snapshot()
    finally:
        store.close()

    _banner(f"💰 BUDGET: {window.period} (UTC)")
    print(f"  • Used: {window.calls_used}/{window.ceiling}")
    print(f"  • Remaining: {window.remaining}")
    print(f"  • Available for sync: {window.available} (safety reserve {window.safety_reserve})")


@app.command()
def curate(
    category: str = typer.Argument(..., help=f"One of: {', '.join(c.value for c in Category)}"),
    days: float = typer.Option(7.0, "--days", help="Window in days"),
    top: Optional[int] = typer.Option(None, "--top", help="Number of items to select"),
    max_per_source: Optional[int] = typer.Option(None, "--max-per-source", help="Cap per source"),
    rescore: bool = typer.Option(False, "--rescore", help="Ignore stored scores"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the markdown report here"),
    config: Path = ConfigOption,
) -> None:
    """Rank a category's recent items and print a diverse top list."""
    settings = _setup(config)
    parsed = _parse_category(category)

    _banner(f"🏆 CURATE: {parsed.value} (last {days:g} days)")
    if not settings.anthropic_api_key:
        print("  ⚠️  ANTHROPIC_API_KEY not found: LLM signal uses the neutral score")

    store = _open_store(settings)
    try:
        service = CurationService(
            store=store,
            scorer=_scorer(settings),
            categories=settings.scoring.categories,
            dedupe_urls=settings.scoring.dedupe_urls,
        )
        selection = asyncio.run(service.curate(parsed, days, top, max_per_source, rescore))
    finally:
        store.close()

    generator = MarkdownDigestGenerator()
    report = generator.generate(selection, parsed, days, datetime.now())
    print(report)

    if output is None and selection.selected:
        output = settings.paths.output_dir / f"{datetime.now().strftime('%Y-%m-%d_%H-%M-%S')}_{parsed.value}.md"
    if output is not None:
        generator.save(report, output)
        print(f"📄 Report saved: {output}")


@app.command()
def enrich(
    category: str = typer.Argument(..., help="Category to enrich"),
    days: float = typer.Option(7.0, "--days", help="Window in days"),
    config: Path = ConfigOption,
) -> None:
    """Fetch full article text for items that lack it."""
    settings = _setup(config)
    parsed = _parse_category(category)

    store = _open_store(settings)
    try:
        items = store.load_items_without_full_text(parsed, days)
        _banner(f"📚 ENRICH: {parsed.value} ({len(items)} items)")
        enricher = FullTextEnricher(
            workers=settings.enrichment.workers,
            min_domain_interval=settings.enrichment.min_domain_interval,
            timeout=settings.enrichment.timeout,
            max_chars=settings.enrichment.max_chars,
            store=store,
            retry_policy=_retry_policy(settings),
        )
        results = asyncio.run(enricher.enrich(items))
    finally:
        store.close()

    failed = [r for r in results if not r.success]
    print(f"✓ Enriched: {len(results) - len(failed)}")
    if failed:
        print(f"⚠️  Failed: {len(failed)}")


if __name__ == "__main__":
    main()
