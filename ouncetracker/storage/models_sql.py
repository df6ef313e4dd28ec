"""SQLAlchemy ORM models for dealer listings."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Declarative base class for ORM models."""


class Dealer(Base):
    __tablename__ = "dealers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    website_url: Mapped[str | None] = mapped_column(String, nullable=True)


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    metal: Mapped[str | None] = mapped_column(String, nullable=True)
    mint: Mapped[str | None] = mapped_column(String, nullable=True)


class DealerListing(Base):
    """Latest observed price of a product at a dealer."""

    __tablename__ = "dealer_listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dealer_id: Mapped[int] = mapped_column(ForeignKey("dealers.id"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    in_stock: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    product_url: Mapped[str] = mapped_column(String, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    dealer: Mapped[Dealer] = relationship()
    product: Mapped[Product] = relationship()

    __table_args__ = (
        UniqueConstraint("dealer_id", "product_id", name="uq_dealer_listings_dealer_product"),
        Index("ix_dealer_listings_last_updated", "last_updated"),
    )
