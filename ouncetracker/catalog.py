"""Static dealer/product catalog and loaders."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable

import yaml

from ouncetracker.errors import ConfigurationFault


class BotMitigationClass(str, Enum):
    """Page isolation policy for a dealer."""

    NONE = "none"
    PROTECTED = "protected"


@dataclass(frozen=True)
class ProductTarget:
    product_name: str
    relative_path: str


@dataclass(frozen=True)
class DealerCatalogEntry:
    dealer_id: str
    display_name: str
    base_url: str
    bot_mitigation: BotMitigationClass
    products: tuple[ProductTarget, ...]

    @property
    def is_protected(self) -> bool:
        return self.bot_mitigation is BotMitigationClass.PROTECTED


PAMP_FORTUNA = "1 oz Gold Bar PAMP Suisse Lady Fortuna"
RCM = "1 oz Gold Bar Royal Canadian Mint"
PERTH = "1 oz Gold Bar Perth Mint"
CREDIT_SUISSE = "1 oz Gold Bar Credit Suisse"
VALCAMBI = "1 oz Gold Bar Valcambi Suisse"
RAND = "1 oz Gold Bar Rand Refinery"
ASAHI = "1 oz Gold Bar Asahi"

# product name -> (metal, mint); used when seeding the product table
PRODUCT_DETAILS: dict[str, tuple[str, str]] = {
    PAMP_FORTUNA: ("GOLD", "PAMP Suisse"),
    RCM: ("GOLD", "Royal Canadian Mint"),
    PERTH: ("GOLD", "Perth Mint"),
    CREDIT_SUISSE: ("GOLD", "Credit Suisse"),
    VALCAMBI: ("GOLD", "Valcambi Suisse"),
    RAND: ("GOLD", "Rand Refinery"),
    ASAHI: ("GOLD", "Asahi"),
}


def _dealer(
    dealer_id: str,
    name: str,
    url: str,
    products: Iterable[tuple[str, str]],
    *,
    protected: bool = False,
) -> DealerCatalogEntry:
    return DealerCatalogEntry(
        dealer_id=dealer_id,
        display_name=name,
        base_url=url,
        bot_mitigation=BotMitigationClass.PROTECTED if protected else BotMitigationClass.NONE,
        products=tuple(ProductTarget(product, path) for product, path in products),
    )


DEALERS: tuple[DealerCatalogEntry, ...] = (
    _dealer(
        "new-york-gold-co",
        "New York Gold Co",
        "https://nygoldco.com",
        [
            (PAMP_FORTUNA, "/gold/gold-bars/1-oz-gold-bar-pamp-suisse-lady-fortuna-in-assay"),
            (RCM, "/gold/gold-bars/1-oz-gold-bar-royal-canadian-mint-new-style-in-assay"),
            (PERTH, "/gold/gold-bars/1-oz-gold-bar-perth-mint-in-assay"),
            (CREDIT_SUISSE, "/gold/gold-bars/1-oz-gold-bar-credit-suisse-in-assay"),
            (VALCAMBI, "/gold/gold-bars/1-oz-gold-bar-valcambi-suisse-in-assay"),
            (RAND, "/gold/gold-bars/1-oz-gold-bar-rand-refinery-new-w-black-assay"),
            (ASAHI, "/gold/gold-bars/1-oz-gold-bar-asahi-new-style-in-assay"),
        ],
    ),
    _dealer(
        "bullion-exchanges",
        "Bullion Exchanges",
        "https://bullionexchanges.com",
        [
            (PAMP_FORTUNA, "/1-oz-gold-bar-pamp-suisse-lady-fortuna-veriscan-carbon-neutral-in-assay"),
            (RCM, "/1-oz-gold-wafer-bar-rcm-in-assay-random-year"),
            (PERTH, "/1-oz-perth-mint-gold-bar-in-assay"),
            (CREDIT_SUISSE, "/1-oz-credit-suisse-gold-bar-in-assay"),
            (VALCAMBI, "/1-oz-gold-bar-valcambi-suisse-in-assay"),
            (RAND, "/1-oz-rand-refinery-gold-bar-9999-fine-in-assay"),
            (ASAHI, "/1-oz-asahi-gold-bar-9999-fine-in-assay"),
        ],
    ),
    _dealer(
        "nyc-bullion",
        "NYC Bullion",
        "https://www.nycbullion.com",
        [
            (PAMP_FORTUNA, "/1-oz-gold-bar-pamp-fortuna-1pampf"),
            (PERTH, "/1-oz-gold-bar-perth-1perth"),
            (CREDIT_SUISSE, "/1-oz-gold-bar-credit-suisse-1cs"),
            (VALCAMBI, "/1-oz-gold-bar-valcambi-1valg"),
            (ASAHI, "/1-oz-gold-bar-asahi-1gbas"),
        ],
    ),
    _dealer(
        "bullion-trading-llc",
        "Bullion Trading LLC",
        "https://bulliontradingllc.com",
        [
            (PAMP_FORTUNA, "/product/1-oz-pamp-suisse-gold-bar-lady-fortuna-in-assay"),
            (RCM, "/product/royal-canadian-mint-1-oz-gold-bar-classic-assay"),
            (PERTH, "/product/1-oz-gold-bar-perth-mint-in-assay"),
            (CREDIT_SUISSE, "/product/1-oz-credit-suisse-gold-barin-assay"),
            (VALCAMBI, "/product/1-oz-valcambi-gold-barin-assay"),
            (RAND, "/product/1-oz-rand-refinery-gold-barblack-assay"),
            (ASAHI, "/product/1-oz-asahi-gold-bar-9999-fine-in-assay"),
        ],
    ),
    _dealer(
        "jm-bullion",
        "JM Bullion",
        "https://www.jmbullion.com",
        [
            (PAMP_FORTUNA, "/1-oz-pamp-suisse-gold-bar-carbon-neutral"),
            (RCM, "/1-oz-rcm-gold-bar-proudly-canadian-assay"),
            (PERTH, "/1-oz-perth-mint-gold-bar"),
            (CREDIT_SUISSE, "/1-oz-credit-suisse-gold-bar"),
            (VALCAMBI, "/1-oz-valcambi-gold-bar-new-w-assay"),
            (RAND, "/1-oz-rand-refinery-gold-bar-black-assay"),
            (ASAHI, "/1-oz-asahi-gold-bar"),
        ],
        protected=True,
    ),
    _dealer(
        "apmex",
        "APMEX",
        "https://www.apmex.com",
        [
            (PAMP_FORTUNA, "/product/82236/1-oz-gold-bar-pamp-lady-fortuna-veriscan-in-assay"),
            (RCM, "/product/98353/1-oz-gold-bar-royal-canadian-mint-new-design-in-assay"),
            (PERTH, "/product/57159/1-oz-gold-bar-perth-mint-in-assay"),
            (CREDIT_SUISSE, "/product/11950/1-oz-gold-bar-credit-suisse-in-assay"),
            (VALCAMBI, "/product/81534/1-oz-gold-bar-valcambi-in-assay"),
            (RAND, "/product/217834/1-oz-gold-bar-rand-black-assay"),
            (ASAHI, "/product/97343/1-oz-gold-bar-asahi-in-assay"),
        ],
        protected=True,
    ),
    _dealer(
        "sd-bullion",
        "SD Bullion",
        "https://www.sdbullion.com",
        [
            (PAMP_FORTUNA, "/new-1-oz-pamp-suisse-gold-bar"),
            (CREDIT_SUISSE, "/1-oz-credit-suisse-gold-bar-in-assay"),
            (VALCAMBI, "/1oz-valcambi-gold-bar-in-assay"),
        ],
    ),
    _dealer(
        "bgasc",
        "BGASC",
        "https://www.bgasc.com",
        [
            (PAMP_FORTUNA, "/product/1-oz-pamp-suisse-gold-bar-carbon-neutral"),
            (RCM, "/product/1-oz-rcm-gold-bar-w-proudly-canadian"),
            (PERTH, "/product/1-oz-perth-mint-gold-bar"),
            (CREDIT_SUISSE, "/product/1-oz-credit-suisse-gold-bar"),
            (VALCAMBI, "/product/1-oz-valcambi-gold-bar"),
            (RAND, "/product/1-oz-rand-refinery-gold-bar"),
            (ASAHI, "/product/1-oz-asahi-gold-bar"),
        ],
    ),
    _dealer(
        "pimbex",
        "Pimbex",
        "https://www.pimbex.com",
        [
            (PAMP_FORTUNA, "/purchase-bullion/1-oz-gold-bar-pamp-fortuna"),
            (RCM, "/purchase-bullion/1-oz-gold-bar-royal-canadian-mint"),
            (PERTH, "/purchase-bullion/1-oz-gold-bar-perth-mint"),
            (VALCAMBI, "/purchase-bullion/1-oz-gold-bar-valcambi"),
            (RAND, "/purchase-bullion/1-oz-gold-bar-rand-refinery"),
            (ASAHI, "/purchase-bullion/1-oz-gold-bar-asahi"),
        ],
        protected=True,
    ),
    _dealer(
        "golddealercom",
        "GoldDealer.com",
        "https://www.golddealer.com",
        [
            (PAMP_FORTUNA, "/product/pamp-suisse-gold-bar-1-oz"),
            (RCM, "/product/1-oz-gold-bar-royal-canadian-mint-rcm-carded"),
            (PERTH, "/product/perth-gold-bar-1-oz"),
            (VALCAMBI, "/product/valcambi-suisse-gold-bar-1-oz"),
        ],
    ),
    _dealer(
        "hollywood-gold-exchange",
        "Hollywood Gold Exchange",
        "https://www.hollywoodgoldexchange.com",
        [
            (PAMP_FORTUNA, "/product/1-oz-gold-bar-pamp-fortuna-carded"),
            (PERTH, "/product/1-oz-gold-bar-perth-mint-carded"),
            (VALCAMBI, "/product/1-oz-gold-bar-valcambi-carded"),
        ],
    ),
)


def load_catalog(path: Path) -> tuple[DealerCatalogEntry, ...]:
    """Load a dealer catalog from a YAML file with a top-level ``dealers`` list."""

    if not path.exists():
        raise ConfigurationFault(f"Catalog file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    entries: list[DealerCatalogEntry] = []
    seen: set[str] = set()
    for raw in data.get("dealers") or []:
        raw = raw or {}
        dealer_id = str(raw.get("id") or raw.get("slug") or "").strip()
        name = str(raw.get("name") or "").strip()
        url = str(raw.get("url") or "").strip().rstrip("/")
        if not dealer_id or not name or not url:
            raise ConfigurationFault(f"Catalog entry missing id/name/url: {raw!r}")
        if dealer_id in seen:
            raise ConfigurationFault(f"Duplicate dealer id in catalog: {dealer_id}")
        seen.add(dealer_id)

        mitigation_raw = str(raw.get("bot_mitigation") or "none").strip().lower()
        try:
            mitigation = BotMitigationClass(mitigation_raw)
        except ValueError as exc:
            raise ConfigurationFault(
                f"Unknown bot_mitigation '{mitigation_raw}' for dealer {dealer_id}"
            ) from exc

        products = []
        for product in raw.get("products") or []:
            if not isinstance(product, dict):
                product = {"entry": product}
            product_name = str(product.get("name") or "").strip()
            product_path = str(product.get("path") or "").strip()
            if not product_name or not product_path:
                raise ConfigurationFault(
                    f"Product entry missing name/path for dealer {dealer_id}: {product!r}"
                )
            if any(existing.product_name == product_name for existing in products):
                raise ConfigurationFault(
                    f"Duplicate product '{product_name}' for dealer {dealer_id}"
                )
            products.append(ProductTarget(product_name, product_path))

        entries.append(
            DealerCatalogEntry(
                dealer_id=dealer_id,
                display_name=name,
                base_url=url,
                bot_mitigation=mitigation,
                products=tuple(products),
            )
        )

    if not entries:
        raise ConfigurationFault(f"No dealers defined in catalog: {path}")
    return tuple(entries)


def filter_dealers(
    dealers: Iterable[DealerCatalogEntry], pattern: re.Pattern[str] | None
) -> tuple[DealerCatalogEntry, ...]:
    """Keep dealers whose id or display name matches *pattern*, preserving order."""

    if pattern is None:
        return tuple(dealers)
    return tuple(
        dealer
        for dealer in dealers
        if pattern.search(dealer.dealer_id) or pattern.search(dealer.display_name)
    )


def total_products(dealers: Iterable[DealerCatalogEntry]) -> int:
    return sum(len(dealer.products) for dealer in dealers)
