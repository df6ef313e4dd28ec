"""JM Bullion product pages (Cloudflare protected, always visited on an isolated page)."""

from __future__ import annotations

from playwright.async_api import Page

from ouncetracker.catalog import ProductTarget
from ouncetracker.models import ExtractionResult
from ouncetracker.retailers.common import (
    PriceNotFound,
    first_price,
    goto_product,
    page_shows_out_of_stock,
    product_url,
    wait_for_any,
)

AS_LOW_AS = 'xpath=//*[normalize-space(text())="As Low As"]/following-sibling::*[1]'


async def scrape_jm_bullion(target: ProductTarget, base_url: str, page: Page) -> ExtractionResult:
    url = product_url(base_url, target)
    await goto_product(page, url)
    await wait_for_any(page, ("text=As Low As", ".price"))

    price = await first_price(page, (AS_LOW_AS, "span.price", ".price"))
    if price is None:
        raise PriceNotFound(f"JM Bullion 'As Low As' price not found at {url}")
    in_stock = not await page_shows_out_of_stock(page)
    return ExtractionResult(price=price, canonical_url=url, in_stock=in_stock)
