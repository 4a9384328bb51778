"""
MODULE: INVENTORY
Product conversions (fractioning one stocked product into derived units) and
the on-hand balances the availability checker reads
"""

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import String, Numeric, Boolean, Text, CheckConstraint, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt


class ProductConversion(Base, HasId, HasCreatedAt, HasUpdatedAt):
    """Declared ratio turning one source unit into `conversion_factor` destination units.

    e.g. one 50 kg flour sack -> 50 x 1 kg bags, with `waste_percentage` of
    the output lost while fractioning.
    """
    __tablename__ = "inventory_product_conversion"
    __table_args__ = (
        CheckConstraint("source_product_id <> destination_product_id", name="ck_conversion_distinct_products"),
        CheckConstraint("conversion_factor > 0", name="ck_conversion_factor_positive"),
        CheckConstraint("waste_percentage >= 0 AND waste_percentage <= 100", name="ck_conversion_waste_range"),
    )

    source_product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    destination_product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    conversion_factor: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    waste_percentage: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def waste_ratio(self) -> Decimal:
        return Decimal(self.waste_percentage or 0) / 100

    @property
    def net_factor(self) -> Decimal:
        return Decimal(self.conversion_factor) * (1 - self.waste_ratio)

    @property
    def waste_factor(self) -> Decimal:
        return Decimal(self.conversion_factor) * self.waste_ratio


Index(
    "ix_conversion_pair_active",
    ProductConversion.source_product_id,
    ProductConversion.destination_product_id,
    ProductConversion.is_active,
)


class InventoryBalance(Base, HasId, HasCreatedAt, HasUpdatedAt):
    """On-hand quantity of a product at one location, by state."""
    __tablename__ = "inventory_balance"
    __table_args__ = (
        UniqueConstraint("product_id", "location_code", "state", name="uq_balance_product_location_state"),
    )

    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    location_code: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[str] = mapped_column(String(16), default="AVAILABLE", nullable=False)
    # AVAILABLE|RESERVED|QC_HOLD
    qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=Decimal("0"), nullable=False)
