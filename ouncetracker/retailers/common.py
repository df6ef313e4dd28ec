"""Helpers shared by dealer strategies."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Iterable

from playwright.async_api import Page

from ouncetracker.catalog import ProductTarget
from ouncetracker.logging_config import get_logger

LOGGER = get_logger(__name__)

GOTO_TIMEOUT_MS = 15000
SELECTOR_TIMEOUT_MS = 10000

_PRICE_RE = re.compile(r"\d[\d,]*(?:\.\d+)?")
_OUT_OF_STOCK_RE = re.compile(r"\b(out\s+of\s+stock|sold\s+out|currently\s+unavailable)\b", re.I)


class PriceNotFound(RuntimeError):
    """Raised when a strategy cannot locate a usable price on the page."""


def product_url(base_url: str, target: ProductTarget) -> str:
    return base_url.rstrip("/") + "/" + target.relative_path.lstrip("/")


def parse_price(text: str | None) -> Decimal | None:
    """Parse ``"$4,170.49"`` style text into a positive Decimal."""

    if not text:
        return None
    match = _PRICE_RE.search(text)
    if not match:
        return None
    try:
        value = Decimal(match.group(0).replace(",", ""))
    except InvalidOperation:
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


async def goto_product(page: Page, url: str) -> None:
    response = await page.goto(url, wait_until="domcontentloaded", timeout=GOTO_TIMEOUT_MS)
    if response is not None and response.status >= 400:
        raise RuntimeError(f"HTTP {response.status} for {url}")


async def wait_for_any(page: Page, selectors: Iterable[str]) -> str | None:
    """Wait for the first selector that appears; returns it or None."""

    for selector in selectors:
        try:
            await page.wait_for_selector(selector, timeout=SELECTOR_TIMEOUT_MS)
            return selector
        except Exception:
            LOGGER.debug("Selector not found: %s", selector)
    return None


async def first_price(
    page: Page,
    selectors: Iterable[str],
    *,
    attribute: str | None = None,
) -> Decimal | None:
    """Return the first parseable price among *selectors* (text or *attribute*)."""

    for selector in selectors:
        locator = page.locator(selector).first
        try:
            if await locator.count() == 0:
                continue
            raw = (
                await locator.get_attribute(attribute)
                if attribute
                else await locator.inner_text()
            )
        except Exception as exc:
            LOGGER.debug("Price read failed | selector=%s | error=%s", selector, exc)
            continue
        price = parse_price(raw)
        if price is not None:
            return price
    return None


async def page_shows_out_of_stock(page: Page) -> bool:
    try:
        body = await page.locator("body").inner_text()
    except Exception:
        return False
    return bool(_OUT_OF_STOCK_RE.search(body or ""))
