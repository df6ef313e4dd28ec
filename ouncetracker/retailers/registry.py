"""Dealer strategy registry.

A strategy is an async callable ``(target, base_url, page) -> ExtractionResult``.
It only navigates and reads the page it is given; cookies, storage and page
lifetime belong to the browser manager.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Iterator

from playwright.async_api import Page

from ouncetracker.catalog import ProductTarget
from ouncetracker.models import ExtractionResult

Strategy = Callable[[ProductTarget, str, Page], Awaitable[ExtractionResult]]


class StrategyRegistry:
    """Closed mapping of dealer id to strategy."""

    def __init__(self, strategies: dict[str, Strategy] | None = None) -> None:
        self._strategies: dict[str, Strategy] = {}
        for dealer_id, strategy in (strategies or {}).items():
            self.register(dealer_id, strategy)

    def register(self, dealer_id: str, strategy: Strategy) -> None:
        if dealer_id in self._strategies:
            raise ValueError(f"Strategy already registered for dealer '{dealer_id}'")
        self._strategies[dealer_id] = strategy

    def get(self, dealer_id: str) -> Strategy | None:
        return self._strategies.get(dealer_id)

    def dealer_ids(self) -> tuple[str, ...]:
        return tuple(self._strategies)

    def __contains__(self, dealer_id: object) -> bool:
        return dealer_id in self._strategies

    def __iter__(self) -> Iterator[str]:
        return iter(self._strategies)

    def __len__(self) -> int:
        return len(self._strategies)


def default_registry() -> StrategyRegistry:
    from ouncetracker.retailers.jm_bullion import scrape_jm_bullion
    from ouncetracker.retailers.structured_data import scrape_structured_data
    from ouncetracker.retailers.tiered import (
        scrape_bgasc,
        scrape_golddealer,
        scrape_pimbex,
        scrape_sd_bullion,
    )
    from ouncetracker.retailers.woocommerce import scrape_woocommerce

    return StrategyRegistry(
        {
            "new-york-gold-co": scrape_woocommerce,
            "bullion-trading-llc": scrape_woocommerce,
            "hollywood-gold-exchange": scrape_woocommerce,
            "bullion-exchanges": scrape_structured_data,
            "nyc-bullion": scrape_structured_data,
            "apmex": scrape_structured_data,
            "jm-bullion": scrape_jm_bullion,
            "sd-bullion": scrape_sd_bullion,
            "bgasc": scrape_bgasc,
            "pimbex": scrape_pimbex,
            "golddealercom": scrape_golddealer,
        }
    )


__all__ = ["Strategy", "StrategyRegistry", "default_registry"]
