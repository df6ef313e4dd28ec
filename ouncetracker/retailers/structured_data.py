"""Dealers that publish schema.org Product data (APMEX, NYC Bullion, Bullion Exchanges)."""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Iterator

from playwright.async_api import Page

from ouncetracker.catalog import ProductTarget
from ouncetracker.logging_config import get_logger
from ouncetracker.models import ExtractionResult
from ouncetracker.retailers.common import (
    PriceNotFound,
    first_price,
    goto_product,
    parse_price,
    product_url,
)

LOGGER = get_logger(__name__)

_IN_STOCK = {"instock", "limitedavailability", "preorder", "onlineonly"}


def _walk(node: Any) -> Iterator[dict[str, Any]]:
    if isinstance(node, list):
        for item in node:
            yield from _walk(item)
    elif isinstance(node, dict):
        yield node
        for key in ("@graph", "offers", "mainEntity"):
            if key in node:
                yield from _walk(node[key])


def _availability(value: Any) -> bool | None:
    if not isinstance(value, str) or not value.strip():
        return None
    tail = value.rstrip("/").rsplit("/", 1)[-1].strip().lower()
    return tail in _IN_STOCK


def offer_from_json_ld(blocks: list[str]) -> tuple[Decimal | None, bool | None]:
    """Return the lowest offer price and availability found in JSON-LD *blocks*."""

    best: Decimal | None = None
    in_stock: bool | None = None
    for raw in blocks:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            continue
        for node in _walk(data):
            node_type = str(node.get("@type") or "").lower()
            if node_type not in {"offer", "aggregateoffer"}:
                continue
            price = parse_price(str(node.get("lowPrice") or node.get("price") or ""))
            if price is None:
                continue
            if best is None or price < best:
                best = price
            availability = _availability(node.get("availability"))
            if availability is not None:
                in_stock = availability if in_stock is None else (in_stock or availability)
    return best, in_stock


async def scrape_structured_data(
    target: ProductTarget, base_url: str, page: Page
) -> ExtractionResult:
    url = product_url(base_url, target)
    await goto_product(page, url)

    blocks = await page.locator('script[type="application/ld+json"]').all_text_contents()
    price, in_stock = offer_from_json_ld(blocks)
    if price is None:
        price = await first_price(page, ('meta[itemprop="price"]',), attribute="content")
    if price is None:
        raise PriceNotFound(f"No structured offer data at {url}")

    LOGGER.info("Structured-data price | product=%s | price=%s", target.product_name, price)
    return ExtractionResult(
        price=price,
        canonical_url=page.url or url,
        in_stock=True if in_stock is None else in_stock,
    )
