from __future__ import annotations

import random
from decimal import Decimal
from typing import Any

import pytest

from ouncetracker.catalog import BotMitigationClass, DealerCatalogEntry, ProductTarget
from ouncetracker.errors import ConfigurationFault
from ouncetracker.health import DealerHealthTracker
from ouncetracker.models import CycleSummary, ExtractionResult
from ouncetracker.orchestrator import NO_STRATEGY, ScrapeCycleOrchestrator
from ouncetracker.retailers.registry import StrategyRegistry
from ouncetracker.retry import RetryPolicy
from tests.fakes import RecordingSleep


class StubPage:
    def __init__(self, name: str) -> None:
        self.name = name


class StubManager:
    """Implements the slice of the browser manager the orchestrator uses."""

    def __init__(self) -> None:
        self.opened: list[StubPage] = []
        self.closed: list[StubPage] = []
        self.blank_resets = 0
        self.fail_isolated = 0

    async def isolated_page(self, session: Any) -> StubPage:
        if self.fail_isolated:
            self.fail_isolated -= 1
            raise RuntimeError("new_context failed")
        page = StubPage(f"isolated-{len(self.opened)}")
        self.opened.append(page)
        return page

    async def install_resource_filter(self, page: StubPage) -> bool:
        return True

    async def close_page(self, page: StubPage) -> None:
        self.closed.append(page)

    async def navigate_blank(self, page: StubPage) -> bool:
        self.blank_resets += 1
        return True


class MemoryStore:
    def __init__(self, fail: Exception | None = None) -> None:
        self.rows: dict[tuple[str, str], tuple[Decimal, str, bool]] = {}
        self.calls = 0
        self.fail = fail

    def upsert(self, dealer_id, product_name, price, canonical_url, in_stock=True) -> None:
        self.calls += 1
        if self.fail is not None:
            raise self.fail
        self.rows[(dealer_id, product_name)] = (price, canonical_url, in_stock)


class CollectingNotifier:
    def __init__(self) -> None:
        self.structured: list[Any] = []
        self.texts: list[str] = []

    def send_text(self, message: str) -> None:
        self.texts.append(message)

    def send_structured(self, summary: Any) -> None:
        self.structured.append(summary)


def _dealer(dealer_id: str, products: int = 2, protected: bool = False) -> DealerCatalogEntry:
    return DealerCatalogEntry(
        dealer_id=dealer_id,
        display_name=dealer_id.title(),
        base_url=f"https://{dealer_id}.example",
        bot_mitigation=BotMitigationClass.PROTECTED if protected else BotMitigationClass.NONE,
        products=tuple(ProductTarget(f"Product {i}", f"/p{i}") for i in range(products)),
    )


def _fixed_price(price: str):
    async def _strategy(target, base_url, page):
        return ExtractionResult(Decimal(price), f"{base_url}{target.relative_path}")

    return _strategy


def _build(catalog, strategies, *, store=None, manager=None, health=None, sleep=None):
    manager = manager or StubManager()
    notifier = CollectingNotifier()
    orchestrator = ScrapeCycleOrchestrator(
        catalog,
        StrategyRegistry(strategies),
        manager,
        store or MemoryStore(),
        notifier,
        retry_policy=RetryPolicy(max_attempts=3, delay_ms=0),
        product_delay_ms=(1000, 3000),
        dealer_pause_s=5.0,
        sleep=sleep or RecordingSleep(),
        rng=random.Random(7),
        health=health,
    )
    return orchestrator, manager, notifier


@pytest.mark.asyncio
async def test_known_and_unknown_dealers_split_into_successes_and_failures() -> None:
    catalog = (_dealer("dealer-a"), _dealer("dealer-b"))
    store = MemoryStore()
    orchestrator, _, notifier = _build(catalog, {"dealer-a": _fixed_price("100.00")}, store=store)

    summary = await orchestrator.run_cycle(session=None, shared_page=StubPage("shared"))

    assert [(s.dealer_id, s.price) for s in summary.successes] == [
        ("dealer-a", Decimal("100.00")),
        ("dealer-a", Decimal("100.00")),
    ]
    assert [(f.dealer_id, f.error_summary) for f in summary.failures] == [
        ("dealer-b", NO_STRATEGY),
        ("dealer-b", NO_STRATEGY),
    ]
    assert len(store.rows) == 2
    assert notifier.structured == [summary]
    assert orchestrator.report.successes == [] and orchestrator.report.failures == []


@pytest.mark.asyncio
async def test_every_product_gets_exactly_one_outcome() -> None:
    calls = {"n": 0}

    async def _sometimes(target, base_url, page):
        calls["n"] += 1
        if calls["n"] % 2:
            raise RuntimeError("selector missing")
        return ExtractionResult(Decimal("1"), base_url)

    catalog = (_dealer("a", 3), _dealer("b", 1, protected=True), _dealer("c", 2), _dealer("d", 0))
    orchestrator, _, _ = _build(catalog, {"a": _sometimes, "b": _sometimes, "d": _sometimes})

    for _ in range(3):
        summary = await orchestrator.run_cycle(None, StubPage("shared"))
        assert isinstance(summary, CycleSummary)
        assert len(summary.successes) + len(summary.failures) == 6


@pytest.mark.asyncio
async def test_negative_price_is_a_failure() -> None:
    catalog = (_dealer("a", 1),)
    store = MemoryStore()
    orchestrator, _, _ = _build(catalog, {"a": _fixed_price("-5")}, store=store)

    summary = await orchestrator.run_cycle(None, StubPage("shared"))

    assert summary.successes == ()
    assert "negative price" in summary.failures[0].error_summary
    assert store.calls == 0


@pytest.mark.asyncio
async def test_isolated_pages_always_closed_even_when_strategy_raises() -> None:
    async def _broken(target, base_url, page):
        raise RuntimeError("challenge page")

    catalog = (
        _dealer("guarded", 2, protected=True),
        _dealer("open", 2),
        _dealer("guarded-ok", 1, protected=True),
    )
    orchestrator, manager, _ = _build(
        catalog,
        {"guarded": _broken, "open": _broken, "guarded-ok": _fixed_price("10")},
    )

    for _ in range(2):
        await orchestrator.run_cycle(None, StubPage("shared"))

    # two failing products retried three times each, plus one clean visit, per cycle
    assert len(manager.opened) == 14
    assert manager.closed == manager.opened


@pytest.mark.asyncio
async def test_isolated_page_acquisition_failure_records_each_product() -> None:
    manager = StubManager()
    manager.fail_isolated = 99
    catalog = (_dealer("guarded", 2, protected=True), _dealer("open", 1))
    orchestrator, _, _ = _build(
        catalog, {"guarded": _fixed_price("1"), "open": _fixed_price("2")}, manager=manager
    )

    summary = await orchestrator.run_cycle(None, StubPage("shared"))

    assert [f.dealer_id for f in summary.failures] == ["guarded", "guarded"]
    assert all("new_context failed" in f.error_summary for f in summary.failures)
    assert [s.dealer_id for s in summary.successes] == ["open"]


@pytest.mark.asyncio
async def test_each_protected_product_visit_gets_its_own_page() -> None:
    pages_seen: list[StubPage] = []

    async def _record(target, base_url, page):
        pages_seen.append(page)
        return ExtractionResult(Decimal("4100"), base_url + target.relative_path)

    orchestrator, manager, _ = _build((_dealer("guarded", 3, protected=True),), {"guarded": _record})
    shared = StubPage("shared")

    summary = await orchestrator.run_cycle(None, shared)

    assert len(summary.successes) == 3
    assert pages_seen == manager.opened
    assert len({id(page) for page in pages_seen}) == 3
    assert shared not in pages_seen
    assert manager.closed == manager.opened


@pytest.mark.asyncio
async def test_isolated_page_acquisition_is_retried() -> None:
    manager = StubManager()
    manager.fail_isolated = 1
    orchestrator, _, _ = _build(
        (_dealer("guarded", 2, protected=True),), {"guarded": _fixed_price("1")}, manager=manager
    )

    summary = await orchestrator.run_cycle(None, StubPage("shared"))

    assert summary.failures == ()
    assert len(summary.successes) == 2
    assert len(manager.opened) == 2


@pytest.mark.asyncio
async def test_strategy_retried_before_success() -> None:
    attempts = {"n": 0}

    async def _flaky(target, base_url, page):
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise TimeoutError("slow page")
        return ExtractionResult(Decimal("4170.49"), base_url)

    orchestrator, _, _ = _build((_dealer("a", 1),), {"a": _flaky})

    summary = await orchestrator.run_cycle(None, StubPage("shared"))

    assert attempts["n"] == 3
    assert summary.successes[0].price == Decimal("4170.49")


@pytest.mark.asyncio
async def test_persistence_failure_downgrades_success() -> None:
    store = MemoryStore(fail=RuntimeError("connection reset"))
    orchestrator, _, _ = _build((_dealer("a", 1),), {"a": _fixed_price("5")}, store=store)

    summary = await orchestrator.run_cycle(None, StubPage("shared"))

    assert summary.successes == ()
    assert summary.failures[0].error_summary.startswith("persistence: ")
    assert store.calls == 3


@pytest.mark.asyncio
async def test_unknown_listing_is_not_retried() -> None:
    store = MemoryStore(fail=ConfigurationFault("Dealer not found: a"))
    orchestrator, _, _ = _build((_dealer("a", 1),), {"a": _fixed_price("5")}, store=store)

    summary = await orchestrator.run_cycle(None, StubPage("shared"))

    assert store.calls == 1
    assert "Dealer not found" in summary.failures[0].error_summary


@pytest.mark.asyncio
async def test_pacing_between_products_and_after_dealers() -> None:
    sleep = RecordingSleep()
    catalog = (_dealer("a", 3), _dealer("b", 1, protected=True))
    orchestrator, manager, _ = _build(
        catalog, {"a": _fixed_price("1"), "b": _fixed_price("2")}, sleep=sleep
    )

    await orchestrator.run_cycle(None, StubPage("shared"))

    product_delays = sleep.calls[:2]
    assert all(1.0 <= delay <= 3.0 for delay in product_delays)
    assert sleep.calls[2] == 5.0
    assert sleep.calls[3] == 5.0
    assert len(sleep.calls) == 4
    # only the non-isolated dealer resets the shared page
    assert manager.blank_resets == 1


@pytest.mark.asyncio
async def test_unknown_dealer_gets_no_attempts_or_pacing() -> None:
    sleep = RecordingSleep()
    orchestrator, manager, _ = _build((_dealer("ghost", 2),), {}, sleep=sleep)

    summary = await orchestrator.run_cycle(None, StubPage("shared"))

    assert len(summary.failures) == 2
    assert sleep.calls == []
    assert manager.blank_resets == 0


@pytest.mark.asyncio
async def test_failing_dealer_escalates_to_isolated_pages() -> None:
    async def _blocked(target, base_url, page):
        raise RuntimeError("403")

    health = DealerHealthTracker(escalate_after=2)
    orchestrator, manager, _ = _build((_dealer("a", 1),), {"a": _blocked}, health=health)

    await orchestrator.run_cycle(None, StubPage("shared"))
    await orchestrator.run_cycle(None, StubPage("shared"))
    assert manager.opened == []

    await orchestrator.run_cycle(None, StubPage("shared"))
    assert len(manager.opened) == 3
    assert manager.closed == manager.opened
