"""WooCommerce storefronts (New York Gold Co, Bullion Trading LLC, Hollywood Gold Exchange)."""

from __future__ import annotations

from playwright.async_api import Page

from ouncetracker.catalog import ProductTarget
from ouncetracker.logging_config import get_logger
from ouncetracker.models import ExtractionResult
from ouncetracker.retailers.common import (
    PriceNotFound,
    first_price,
    goto_product,
    page_shows_out_of_stock,
    product_url,
    wait_for_any,
)

LOGGER = get_logger(__name__)

PRICE_SELECTORS = (
    "p.price ins span.woocommerce-Price-amount.amount bdi",
    "p.price span.woocommerce-Price-amount.amount bdi",
    "span.woocommerce-Price-amount.amount bdi",
    "p.price",
)


async def scrape_woocommerce(target: ProductTarget, base_url: str, page: Page) -> ExtractionResult:
    url = product_url(base_url, target)
    await goto_product(page, url)
    await wait_for_any(page, (".woocommerce-Price-amount.amount", "p.price"))

    price = await first_price(page, PRICE_SELECTORS)
    if price is None:
        raise PriceNotFound(f"WooCommerce price element not found at {url}")

    in_stock = True
    try:
        in_stock = await page.locator("p.stock.out-of-stock").count() == 0
    except Exception as exc:
        LOGGER.debug("Stock badge lookup failed: %s", exc)
    if in_stock:
        in_stock = not await page_shows_out_of_stock(page)

    LOGGER.info("WooCommerce price | product=%s | price=%s | in_stock=%s", target.product_name, price, in_stock)
    return ExtractionResult(price=price, canonical_url=page.url or url, in_stock=in_stock)
