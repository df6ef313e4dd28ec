"""Dealers whose price is rendered by JavaScript into a quantity/payment tier table."""

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


async def scrape_sd_bullion(target: ProductTarget, base_url: str, page: Page) -> ExtractionResult:
    """1+ quantity, check/wire price."""

    url = product_url(base_url, target)
    await goto_product(page, url)
    cash_price = 'span[data-nfusions-payment-type="cash_price"][data-price-amount]'
    await wait_for_any(page, (cash_price, "table.prices-tier.items"))

    price = await first_price(page, (cash_price,), attribute="data-price-amount")
    if price is None:
        price = await first_price(
            page, ("table.prices-tier.items tbody tr:first-child td:nth-child(2) strong.price-formatted",)
        )
    if price is None:
        raise PriceNotFound(f"SD Bullion tier price not found at {url}")
    return ExtractionResult(price=price, canonical_url=url, in_stock=True)


async def scrape_bgasc(target: ProductTarget, base_url: str, page: Page) -> ExtractionResult:
    url = product_url(base_url, target)
    await goto_product(page, url)
    primary = '.payment-inner span[id^="price_"]'
    await wait_for_any(page, (primary, "#producttable"))

    price = await first_price(page, (primary,))
    if price is None:
        price = await first_price(
            page,
            ("#producttable tbody tr:first-child td:first-child + td[data-price]",),
            attribute="data-price",
        )
    if price is None:
        raise PriceNotFound(f"BGASC price not found at {url}")
    return ExtractionResult(price=price, canonical_url=url, in_stock=True)


async def scrape_pimbex(target: ProductTarget, base_url: str, page: Page) -> ExtractionResult:
    """1-9 quantity, ACH/wire column of the pricing tier list."""

    url = product_url(base_url, target)
    await goto_product(page, url)
    if await wait_for_any(page, ("#pricingTable",)) is None:
        raise PriceNotFound(f"Pimbex pricing table missing at {url}")

    tiers = page.locator("#pricingTable .pricing-tier")
    price = None
    for index in range(await tiers.count()):
        tier = tiers.nth(index)
        label = (await tier.locator("li").first.inner_text()).strip()
        if label.replace(" ", "") == "1-9":
            price = await first_price(tier, ("li:nth-child(2)",))
            break
    if price is None:
        raise PriceNotFound(f"Pimbex 1-9 tier price not found at {url}")
    return ExtractionResult(price=price, canonical_url=url, in_stock=True)


async def scrape_golddealer(target: ProductTarget, base_url: str, page: Page) -> ExtractionResult:
    url = product_url(base_url, target)
    await goto_product(page, url)
    await wait_for_any(page, ("#priceBuySell2",))

    in_stock = not await page_shows_out_of_stock(page)
    price = await first_price(page, ('#priceBuySell2 span[itemprop="price"]', "#sellPrice"))
    if price is None:
        raise PriceNotFound(f"GoldDealer price not found at {url}")
    LOGGER.debug("GoldDealer stock | product=%s | in_stock=%s", target.product_name, in_stock)
    return ExtractionResult(price=price, canonical_url=url, in_stock=in_stock)
