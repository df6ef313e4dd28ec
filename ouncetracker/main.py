"""Command-line interface entry point for the OunceTracker price worker."""

from __future__ import annotations

import argparse
import asyncio
import re
import signal
import sys
from datetime import timedelta
from pathlib import Path
from typing import Iterable

from dotenv import load_dotenv
from playwright.async_api import Page
from sqlalchemy.orm import Session, sessionmaker

from ouncetracker.alerts.notifier import Notifier, build_notifier
from ouncetracker.browser import BrowserResourceManager, BrowserSession
from ouncetracker.catalog import DEALERS, DealerCatalogEntry, filter_dealers, load_catalog, total_products
from ouncetracker.config import DEFAULT_CONFIG_PATH, WorkerSettings, load_config, require_database_url
from ouncetracker.diagnostics import ResourceDiagnosticsCollector
from ouncetracker.errors import ConfigurationFault
from ouncetracker.health import DealerHealthTracker
from ouncetracker.jobs import (
    HEALTHCHECK_JOB,
    STALE_LISTINGS_JOB,
    healthcheck_job,
    stale_listings_job,
)
from ouncetracker.logging_config import get_logger
from ouncetracker.orchestrator import ListingStore, NullListingStore, ScrapeCycleOrchestrator
from ouncetracker.retailers.registry import default_registry
from ouncetracker.retry import RetryPolicy
from ouncetracker.scheduler import BackgroundJobScheduler
from ouncetracker.storage import repo
from ouncetracker.storage.db import get_engine, init_db_safe, make_session
from ouncetracker.supervisor import ResourceLifecycleSupervisor

LOGGER = get_logger(__name__)


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the worker."""

    parser = argparse.ArgumentParser(
        description="Scrape precious-metal dealer prices and keep listings current."
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single scrape cycle and exit instead of looping forever.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to the YAML configuration file (default: {DEFAULT_CONFIG_PATH}).",
    )
    parser.add_argument(
        "--dealers",
        type=str,
        help="Regex filter applied to dealer ids and names (case-insensitive).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Scrape without writing listings; DATABASE_URL is not required.",
    )
    parser.add_argument(
        "--seed-catalog",
        action="store_true",
        help="Create or refresh dealer and product rows from the catalog and exit.",
    )
    parser.add_argument(
        "--list-dealers",
        action="store_true",
        help="Print the configured dealers and exit.",
    )
    return parser.parse_args(list(argv) if argv is not None else None)


def _compile_filter(pattern: str | None) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise ConfigurationFault(f"Invalid --dealers pattern '{pattern}': {exc}") from exc


def _load_catalog(settings: WorkerSettings, pattern: str | None) -> tuple[DealerCatalogEntry, ...]:
    dealers = load_catalog(settings.catalog_path) if settings.catalog_path else DEALERS
    selected = filter_dealers(dealers, _compile_filter(pattern))
    if not selected:
        raise ConfigurationFault(f"No dealers match filter '{pattern}'")
    return selected


def _print_dealers(catalog: Iterable[DealerCatalogEntry]) -> None:
    for dealer in catalog:
        print(
            f"{dealer.dealer_id:<26} {dealer.bot_mitigation.value:<10} "
            f"{len(dealer.products):>2} products  {dealer.base_url}"
        )


def _open_database(url: str) -> sessionmaker[Session]:
    engine = get_engine(url)
    init_db_safe(engine)
    LOGGER.info("Database initialized (existing tables preserved)")
    return make_session(engine)


def _seed(session_factory: sessionmaker[Session], catalog: Iterable[DealerCatalogEntry]) -> None:
    with session_factory() as session:
        dealers, products = repo.seed_catalog(session, catalog)
        session.commit()
    LOGGER.info("Catalog seeded | dealers=%d | products=%d", dealers, products)


def _build_scheduler(
    settings: WorkerSettings,
    session_factory: sessionmaker[Session] | None,
    notifier: Notifier,
) -> BackgroundJobScheduler:
    scheduler = BackgroundJobScheduler()
    if settings.healthcheck_url:
        scheduler.schedule_job(
            HEALTHCHECK_JOB,
            settings.healthcheck_minutes * 60_000,
            healthcheck_job(settings.healthcheck_url),
        )
    if session_factory is not None:
        scheduler.schedule_job(
            STALE_LISTINGS_JOB,
            settings.stale_listing_minutes * 60_000,
            stale_listings_job(
                session_factory, notifier, timedelta(hours=settings.stale_after_hours)
            ),
        )
    else:
        LOGGER.info("Dry run: %s job disabled", STALE_LISTINGS_JOB)
    return scheduler


async def _live_page(
    manager: BrowserResourceManager, session: BrowserSession, page: Page
) -> Page:
    if not page.is_closed():
        return page
    LOGGER.warning("Shared page is closed; opening a replacement")
    replacement = await manager.new_page(session)
    await manager.install_resource_filter(replacement)
    return replacement


async def run_worker(
    args: argparse.Namespace,
    settings: WorkerSettings,
    catalog: tuple[DealerCatalogEntry, ...],
    store: ListingStore,
    notifier: Notifier,
    scheduler: BackgroundJobScheduler,
    *,
    manager: BrowserResourceManager | None = None,
    max_cycles: int | None = None,
) -> int:
    """Launch the browser once and run scrape cycles until cancelled.

    ``--once`` stops after one cycle; *max_cycles* caps the loop otherwise.
    """

    if args.once:
        max_cycles = 1

    manager = manager or BrowserResourceManager(settings.browser)
    health = DealerHealthTracker(escalate_after=settings.escalate_after)
    orchestrator = ScrapeCycleOrchestrator(
        catalog,
        default_registry(),
        manager,
        store,
        notifier,
        retry_policy=RetryPolicy(settings.retry_attempts, settings.retry_delay_ms),
        product_delay_ms=settings.product_delay_ms,
        dealer_pause_s=settings.dealer_pause_s,
        health=health,
    )
    supervisor = ResourceLifecycleSupervisor(
        manager,
        storage_every=settings.recycle.storage_every,
        page_every=settings.recycle.page_every,
        context_every=settings.recycle.context_every,
        max_pages_per_context=settings.recycle.max_pages_per_context,
    )
    diagnostics = ResourceDiagnosticsCollector(
        notifier,
        max_retained=settings.diagnostics.max_retained,
        trend_window=settings.diagnostics.trend_window,
        snapshot_every=settings.diagnostics.snapshot_every,
        analyze_every=settings.diagnostics.analyze_every,
        trace_heap=settings.diagnostics.trace_python_heap,
        resource_counter=manager.count_resources,
    )

    # launch failure is fatal and propagates to main()
    session: BrowserSession = await manager.launch()
    try:
        page = await manager.new_page(session)
        await manager.install_resource_filter(page)
        diagnostics.take_snapshot(session, label="startup", cycle_index=0)
        scheduler.start()

        cycles = 0
        while True:
            cycles += 1
            try:
                page = await _live_page(manager, session, page)
                summary = await orchestrator.run_cycle(session, page)
                page = await supervisor.after_cycle(session, page)
                diagnostics.maybe_snapshot(session, summary.cycle_index)
                diagnostics.maybe_analyze(summary.cycle_index)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Scrape cycle failed; continuing after the normal delay")

            if max_cycles is not None and cycles >= max_cycles:
                break
            LOGGER.info("Sleeping %.0fs until the next cycle", settings.cycle_delay_s)
            await asyncio.sleep(settings.cycle_delay_s)
    finally:
        scheduler.shutdown()
        await manager.close_session(session)
    return 0


def _install_signal_handlers(task: asyncio.Task) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, task.cancel)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows
            LOGGER.debug("Signal handler unavailable for %s", signum)


async def _async_main(argv: Iterable[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)

    config = load_config(args.config)
    settings = WorkerSettings.from_config(config)
    catalog = _load_catalog(settings, args.dealers)

    if args.list_dealers:
        _print_dealers(catalog)
        return 0

    session_factory: sessionmaker[Session] | None = None
    if args.dry_run and not args.seed_catalog:
        store: ListingStore = NullListingStore()
        LOGGER.info("Dry run: listings will not be persisted")
    else:
        session_factory = _open_database(require_database_url())
        store = repo.SqlListingStore(session_factory)

    if args.seed_catalog:
        _seed(session_factory, catalog)
        return 0

    notifier = build_notifier()
    scheduler = _build_scheduler(settings, session_factory, notifier)
    LOGGER.info(
        "Worker starting | dealers=%d | products=%d | once=%s | dry_run=%s",
        len(catalog),
        total_products(catalog),
        args.once,
        args.dry_run,
    )

    task = asyncio.current_task()
    if task is not None:
        _install_signal_handlers(task)
    try:
        return await run_worker(args, settings, catalog, store, notifier, scheduler)
    except asyncio.CancelledError:
        LOGGER.info("Shutdown signal received; worker stopped")
        return 0
    finally:
        await asyncio.to_thread(notifier.close)


def main(argv: Iterable[str] | None = None) -> None:
    try:
        code = asyncio.run(_async_main(argv))
    except ConfigurationFault as exc:
        LOGGER.error("Configuration error: %s", exc)
        raise SystemExit(1) from exc
    except Exception as exc:
        LOGGER.exception("Worker stopped by a fatal error")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:  # pragma: no cover - interactive safety
        LOGGER.info("Interrupted by user")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
