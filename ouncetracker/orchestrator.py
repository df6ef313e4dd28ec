"""One full pass over the dealer catalog."""

from __future__ import annotations

import asyncio
import random
import time
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Protocol

from playwright.async_api import Page

from ouncetracker.alerts.notifier import Notifier
from ouncetracker.browser import BrowserResourceManager, BrowserSession
from ouncetracker.catalog import DealerCatalogEntry, ProductTarget, total_products
from ouncetracker.health import DealerHealthTracker
from ouncetracker.logging_config import get_logger
from ouncetracker.models import CycleReport, CycleSummary, ExtractionResult, first_line, validate_result
from ouncetracker.playwright_env import pacing_delay_ms
from ouncetracker.retailers.registry import Strategy, StrategyRegistry
from ouncetracker.retry import RetryPolicy

LOGGER = get_logger(__name__)

NO_STRATEGY = "no strategy registered"


class ListingStore(Protocol):
    def upsert(
        self,
        dealer_id: str,
        product_name: str,
        price: Decimal,
        canonical_url: str,
        in_stock: bool = True,
    ) -> None: ...


class NullListingStore:
    """Store used by --dry-run; accepts every write and keeps nothing."""

    def upsert(
        self,
        dealer_id: str,
        product_name: str,
        price: Decimal,
        canonical_url: str,
        in_stock: bool = True,
    ) -> None:
        LOGGER.info(
            "Dry run, not persisted | dealer=%s | product=%s | price=%.2f",
            dealer_id,
            product_name,
            price,
        )


class ScrapeCycleOrchestrator:
    """Visits every dealer/product pair once per cycle and reports the outcome."""

    def __init__(
        self,
        catalog: Iterable[DealerCatalogEntry],
        registry: StrategyRegistry,
        manager: BrowserResourceManager,
        store: ListingStore,
        notifier: Notifier,
        *,
        retry_policy: RetryPolicy | None = None,
        persistence_policy: RetryPolicy | None = None,
        product_delay_ms: tuple[int, int] = (1000, 3000),
        dealer_pause_s: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Any = random,
        health: DealerHealthTracker | None = None,
    ) -> None:
        self._catalog = tuple(catalog)
        self._registry = registry
        self._manager = manager
        self._store = store
        self._notifier = notifier
        self._retry = retry_policy or RetryPolicy()
        self._persist_retry = persistence_policy or self._retry
        self._product_delay_ms = product_delay_ms
        self._dealer_pause_s = dealer_pause_s
        self._sleep = sleep
        self._rng = rng
        self._health = health
        self._report = CycleReport()
        self._cycle_index = 0

    @property
    def catalog(self) -> tuple[DealerCatalogEntry, ...]:
        return self._catalog

    @property
    def report(self) -> CycleReport:
        return self._report

    @property
    def cycle_index(self) -> int:
        return self._cycle_index

    def _needs_isolation(self, dealer: DealerCatalogEntry) -> bool:
        if self._health is not None:
            return self._health.needs_isolation(dealer)
        return dealer.is_protected

    @asynccontextmanager
    async def _page_for(
        self, session: BrowserSession, shared_page: Page, isolated: bool
    ) -> AsyncIterator[Page]:
        if not isolated:
            yield shared_page
            return
        page = await self._manager.isolated_page(session)
        try:
            await self._manager.install_resource_filter(page)
            yield page
        finally:
            await self._manager.close_page(page)

    async def run_cycle(self, session: BrowserSession, shared_page: Page) -> CycleSummary:
        """Run one cycle and return a frozen copy of its report."""

        self._cycle_index += 1
        self._report.clear()
        started = time.monotonic()
        expected = total_products(self._catalog)
        LOGGER.info(
            "Cycle started | cycle=%d | dealers=%d | products=%d",
            self._cycle_index,
            len(self._catalog),
            expected,
        )

        for dealer in self._catalog:
            await self._visit_dealer(session, shared_page, dealer)

        summary = self._report.freeze(self._cycle_index, time.monotonic() - started)
        if summary.total != expected:
            LOGGER.error(
                "Cycle accounting mismatch | cycle=%d | recorded=%d | expected=%d",
                self._cycle_index,
                summary.total,
                expected,
            )
        LOGGER.info(
            "Cycle finished | cycle=%d | updated=%d | failed=%d | duration=%.1fs",
            summary.cycle_index,
            len(summary.successes),
            len(summary.failures),
            summary.duration_s,
        )
        for failure in summary.failures:
            LOGGER.info(
                "Failed listing | dealer=%s | product=%s | error=%s",
                failure.dealer_id,
                failure.product_name,
                failure.error_summary,
            )
        self._notifier.send_structured(summary)
        self._report.clear()
        return summary

    async def _visit_dealer(
        self, session: BrowserSession, shared_page: Page, dealer: DealerCatalogEntry
    ) -> None:
        strategy = self._registry.get(dealer.dealer_id)
        if strategy is None:
            LOGGER.warning("No strategy registered | dealer=%s", dealer.dealer_id)
            for target in dealer.products:
                self._report.record_failure(dealer.dealer_id, target.product_name, NO_STRATEGY)
            return
        if not dealer.products:
            return

        isolated = self._needs_isolation(dealer)
        successes_before = len(self._report.successes)
        failures_before = len(self._report.failures)
        LOGGER.info(
            "Visiting dealer | dealer=%s | products=%d | isolated=%s",
            dealer.dealer_id,
            len(dealer.products),
            isolated,
        )

        for index, target in enumerate(dealer.products):
            if index > 0:
                delay_ms = pacing_delay_ms(self._product_delay_ms, self._rng)
                await self._sleep(delay_ms / 1000)
            await self._process_product(session, shared_page, dealer, target, strategy, isolated)

        if self._health is not None:
            self._health.record_visit(
                dealer.dealer_id,
                successes=len(self._report.successes) - successes_before,
                failures=len(self._report.failures) - failures_before,
            )

        await self._sleep(self._dealer_pause_s)
        if not isolated:
            await self._manager.navigate_blank(shared_page)

    async def _process_product(
        self,
        session: BrowserSession,
        shared_page: Page,
        dealer: DealerCatalogEntry,
        target: ProductTarget,
        strategy: Strategy,
        isolated: bool,
    ) -> None:
        label = f"{dealer.dealer_id} / {target.product_name}"

        # every attempt on an isolated dealer gets its own fresh context
        async def _extract() -> ExtractionResult:
            async with self._page_for(session, shared_page, isolated) as page:
                raw = await strategy(target, dealer.base_url, page)
            return validate_result(dealer.dealer_id, target.product_name, raw)

        try:
            result = await self._retry.run(_extract, label=label, sleep=self._sleep)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            summary = first_line(exc)
            LOGGER.warning(
                "Extraction failed | dealer=%s | product=%s | error=%s",
                dealer.dealer_id,
                target.product_name,
                summary,
            )
            self._report.record_failure(dealer.dealer_id, target.product_name, summary)
            return

        async def _persist() -> None:
            await asyncio.to_thread(
                self._store.upsert,
                dealer.dealer_id,
                target.product_name,
                result.price,
                result.canonical_url,
                result.in_stock,
            )

        try:
            await self._persist_retry.run(_persist, label=f"persist {label}", sleep=self._sleep)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            summary = f"persistence: {first_line(exc)}"
            LOGGER.warning(
                "Persistence failed | dealer=%s | product=%s | error=%s",
                dealer.dealer_id,
                target.product_name,
                summary,
            )
            self._report.record_failure(dealer.dealer_id, target.product_name, summary)
            return

        LOGGER.info(
            "Price recorded | dealer=%s | product=%s | price=%.2f | in_stock=%s",
            dealer.dealer_id,
            target.product_name,
            result.price,
            result.in_stock,
        )
        self._report.record_success(dealer.dealer_id, target.product_name, result.price)
