from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from ouncetracker.catalog import DEALERS, PAMP_FORTUNA, RCM
from ouncetracker.errors import ConfigurationFault, PersistenceFailure
from ouncetracker.storage import repo
from ouncetracker.storage.db import get_engine, init_db_safe, make_session
from ouncetracker.storage.models_sql import Dealer, DealerListing, Product


@pytest.fixture()
def session_factory():
    engine = get_engine("sqlite:///:memory:")
    init_db_safe(engine)
    factory = make_session(engine)
    with factory() as session:
        repo.seed_catalog(session, DEALERS)
        session.commit()
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture()
def db_session(session_factory):
    with session_factory() as session:
        yield session


def test_seed_catalog_is_idempotent(db_session) -> None:
    repo.seed_catalog(db_session, DEALERS)
    db_session.commit()

    assert db_session.scalar(select(func.count()).select_from(Dealer)) == len(DEALERS)
    assert db_session.scalar(select(func.count()).select_from(Product)) == 7
    fortuna = repo.get_product_by_name(db_session, PAMP_FORTUNA)
    assert fortuna.metal == "GOLD"
    assert fortuna.mint == "PAMP Suisse"


def test_upsert_listing_is_idempotent(db_session) -> None:
    for _ in range(2):
        repo.upsert_listing(
            db_session, "sd-bullion", PAMP_FORTUNA, Decimal("4170.49"), "https://x/1", True
        )
    db_session.commit()

    listings = db_session.scalars(select(DealerListing)).all()
    assert len(listings) == 1
    assert listings[0].price == Decimal("4170.49")
    assert listings[0].currency == "USD"


def test_upsert_listing_updates_existing_row(db_session) -> None:
    repo.upsert_listing(db_session, "bgasc", RCM, Decimal("4100"), "https://x/old", True)
    repo.upsert_listing(db_session, "bgasc", RCM, Decimal("4050.5"), "https://x/new", False)
    db_session.commit()

    listing = db_session.scalars(select(DealerListing)).one()
    assert listing.price == Decimal("4050.50")
    assert listing.product_url == "https://x/new"
    assert listing.in_stock is False


def test_upsert_listing_unknown_dealer_or_product(db_session) -> None:
    with pytest.raises(ConfigurationFault):
        repo.upsert_listing(db_session, "nope", PAMP_FORTUNA, Decimal("1"), "https://x")
    with pytest.raises(ConfigurationFault):
        repo.upsert_listing(db_session, "bgasc", "1 oz Unobtainium", Decimal("1"), "https://x")


def test_listings_for_product_sorted_by_price(db_session) -> None:
    repo.upsert_listing(db_session, "bgasc", PAMP_FORTUNA, Decimal("4200"), "https://b")
    repo.upsert_listing(db_session, "sd-bullion", PAMP_FORTUNA, Decimal("4150"), "https://s")
    db_session.commit()

    listings = repo.get_listings_for_product(db_session, PAMP_FORTUNA)

    assert [listing.dealer.slug for listing in listings] == ["sd-bullion", "bgasc"]


def test_list_stale_listings(db_session) -> None:
    now = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
    repo.upsert_listing(
        db_session, "bgasc", RCM, Decimal("1"), "https://b", now=now - timedelta(hours=8)
    )
    repo.upsert_listing(
        db_session, "sd-bullion", RCM, Decimal("1"), "https://s", now=now - timedelta(hours=1)
    )
    db_session.commit()

    stale = repo.list_stale_listings(db_session, timedelta(hours=6), now=now)

    assert [listing.dealer.slug for listing in stale] == ["bgasc"]


def test_store_commits_and_wraps_database_errors(session_factory) -> None:
    store = repo.SqlListingStore(session_factory)
    store.upsert("apmex", RCM, Decimal("4000"), "https://a", True)

    with session_factory() as session:
        assert session.scalars(select(DealerListing)).one().price == Decimal("4000.00")

    with pytest.raises(ConfigurationFault):
        store.upsert("ghost", RCM, Decimal("1"), "https://g", True)

    with session_factory() as session:
        session.connection().exec_driver_sql("DROP TABLE dealer_listings")
        session.commit()
    with pytest.raises(PersistenceFailure):
        store.upsert("apmex", RCM, Decimal("4000"), "https://a", True)
