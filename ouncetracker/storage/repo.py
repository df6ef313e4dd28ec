"""Repository helpers for interacting with persistent storage."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, sessionmaker

from ouncetracker.catalog import PRODUCT_DETAILS, DealerCatalogEntry
from ouncetracker.errors import ConfigurationFault, PersistenceFailure
from ouncetracker.logging_config import get_logger

from .models_sql import Dealer, DealerListing, Product

LOGGER = get_logger(__name__)

_CENT = Decimal("0.01")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def get_dealer_by_slug(session: Session, slug: str) -> Dealer | None:
    return session.scalars(select(Dealer).where(Dealer.slug == slug)).one_or_none()


def get_product_by_name(session: Session, name: str) -> Product | None:
    return session.scalars(select(Product).where(Product.name == name)).one_or_none()


def upsert_listing(
    session: Session,
    dealer_slug: str,
    product_name: str,
    price: Decimal,
    canonical_url: str,
    in_stock: bool = True,
    *,
    now: datetime | None = None,
) -> DealerListing:
    """Insert or update the listing keyed by (dealer, product)."""

    dealer = get_dealer_by_slug(session, dealer_slug)
    if dealer is None:
        raise ConfigurationFault(f"Dealer not found: {dealer_slug}")
    product = get_product_by_name(session, product_name)
    if product is None:
        raise ConfigurationFault(f"Product not found: {product_name}")

    stamp = now or _utcnow()
    amount = Decimal(price).quantize(_CENT)
    listing = session.scalars(
        select(DealerListing).where(
            DealerListing.dealer_id == dealer.id,
            DealerListing.product_id == product.id,
        )
    ).one_or_none()
    if listing is None:
        listing = DealerListing(
            dealer_id=dealer.id,
            product_id=product.id,
            price=amount,
            currency="USD",
            in_stock=in_stock,
            product_url=canonical_url,
            last_updated=stamp,
        )
        session.add(listing)
    else:
        listing.price = amount
        listing.currency = "USD"
        listing.in_stock = in_stock
        listing.product_url = canonical_url
        listing.last_updated = stamp
    session.flush()
    return listing


def seed_catalog(session: Session, catalog: Iterable[DealerCatalogEntry]) -> tuple[int, int]:
    """Create or refresh dealers and products named by *catalog*.

    Returns the number of dealers and products touched.
    """

    dealers = 0
    product_names: set[str] = set()
    for entry in catalog:
        dealer = get_dealer_by_slug(session, entry.dealer_id)
        if dealer is None:
            dealer = Dealer(slug=entry.dealer_id, name=entry.display_name)
            session.add(dealer)
        dealer.name = entry.display_name
        dealer.website_url = entry.base_url
        dealers += 1
        product_names.update(target.product_name for target in entry.products)

    for name in sorted(product_names):
        metal, mint = PRODUCT_DETAILS.get(name, (None, None))
        product = get_product_by_name(session, name)
        if product is None:
            session.add(Product(name=name, metal=metal, mint=mint))
        else:
            product.metal = metal or product.metal
            product.mint = mint or product.mint
    session.flush()
    return dealers, len(product_names)


def list_stale_listings(
    session: Session,
    older_than: timedelta,
    *,
    now: datetime | None = None,
) -> list[DealerListing]:
    cutoff = (now or _utcnow()) - older_than
    listings = session.scalars(
        select(DealerListing)
        .options(joinedload(DealerListing.dealer), joinedload(DealerListing.product))
        .order_by(DealerListing.last_updated)
    ).all()
    return [listing for listing in listings if _as_utc(listing.last_updated) < cutoff]


def get_listings_for_product(session: Session, product_name: str) -> list[DealerListing]:
    """Listings of *product_name* ordered from cheapest to most expensive."""

    return list(
        session.scalars(
            select(DealerListing)
            .join(Product, DealerListing.product_id == Product.id)
            .options(joinedload(DealerListing.dealer), joinedload(DealerListing.product))
            .where(Product.name == product_name)
            .order_by(DealerListing.price, DealerListing.id)
        ).all()
    )


class SqlListingStore:
    """Listing sink used by the scrape cycle."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def upsert(
        self,
        dealer_id: str,
        product_name: str,
        price: Decimal,
        canonical_url: str,
        in_stock: bool = True,
    ) -> None:
        session = self._session_factory()
        try:
            upsert_listing(session, dealer_id, product_name, price, canonical_url, in_stock)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceFailure(
                f"Failed to update listing {dealer_id} / {product_name}: {exc}"
            ) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        LOGGER.info(
            "Listing updated | dealer=%s | product=%s | price=%.2f", dealer_id, product_name, price
        )
