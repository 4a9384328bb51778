"""
MODULE: SALES
Quotes (cotizaciones), their line items, and the sales orders they convert into
"""

from __future__ import annotations

import enum
from datetime import datetime, date
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import String, DateTime, Date, Integer, Numeric, ForeignKey, JSON, Index, Text, Enum, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasUpdatedAt

CENT = Decimal("0.01")
ZERO = Decimal("0")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class QuoteStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    CONVERTED = "converted"


def _enum_values(e):
    return [m.value for m in e]


# ============= SALES QUOTES =============

class Quote(Base, HasId, HasCreatedAt, HasUpdatedAt):
    """Sales quotation.

    The aggregate root for pricing: amounts are derived from the line items by
    `recalculate_totals` and never written directly.
    """
    __tablename__ = "sales_quote"

    quote_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    status: Mapped[QuoteStatus] = mapped_column(
        Enum(QuoteStatus, native_enum=False, length=16, values_callable=_enum_values),
        default=QuoteStatus.DRAFT,
        nullable=False,
        index=True,
    )

    quote_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    valid_until: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    estimated_eta: Mapped[str | None] = mapped_column(String(128), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms_and_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)
    shipping_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    billing_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Amounts (derived)
    subtotal_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=ZERO, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=ZERO, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=ZERO, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=ZERO, nullable=False)
    items_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=ZERO, nullable=False)

    # Lifecycle timestamps, each set once by its transition
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    converted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Downstream documents
    sales_order_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    purchase_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    duplicated_from_id: Mapped[str | None] = mapped_column(ForeignKey("sales_quote.id", ondelete="SET NULL"), nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    items: Mapped[list["QuoteLineItem"]] = relationship(
        back_populates="quote",
        cascade="all, delete-orphan",
        order_by="QuoteLineItem.line_number",
    )

    def recalculate_totals(self) -> None:
        subtotal = discount = tax = ZERO
        quantity = ZERO
        for it in self.items:
            it.recalculate()
            subtotal += it.subtotal_before_discount
            discount += it.discount_amount
            tax += it.tax_amount
            quantity += Decimal(it.quantity)
        self.subtotal_amount = subtotal
        self.discount_amount = discount
        self.tax_amount = tax
        self.total_amount = subtotal - discount + tax
        self.items_count = len(self.items)
        self.total_quantity = quantity


class QuoteLineItem(Base, HasId, HasCreatedAt, HasUpdatedAt):
    """Quote line items"""
    __tablename__ = "sales_quote_line"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_quote_line_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_quote_line_price_non_negative"),
        CheckConstraint("list_price >= 0", name="ck_quote_line_list_price_non_negative"),
    )

    quote_id: Mapped[str] = mapped_column(ForeignKey("sales_quote.id", ondelete="CASCADE"), nullable=False, index=True)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    # Item
    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    product_sku: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Quantity & Price
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    # Catalog price when the line was added; fixed for the life of the line
    list_price: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    # Negotiated price the line is charged at
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=ZERO, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=ZERO, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), default=ZERO, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=ZERO, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=ZERO, nullable=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    quote: Mapped[Quote] = relationship(back_populates="items")

    @property
    def subtotal_before_discount(self) -> Decimal:
        return money(Decimal(self.quantity) * Decimal(self.unit_price))

    @property
    def price_variance(self) -> Decimal:
        return Decimal(self.unit_price) - Decimal(self.list_price)

    @property
    def effective_discount_percentage(self) -> Decimal:
        """Discount against the catalog price, negotiated price and line discount combined."""
        catalog = money(Decimal(self.quantity) * Decimal(self.list_price))
        if catalog <= 0:
            return ZERO
        return ((catalog - Decimal(self.line_total)) / catalog * 100).quantize(CENT, rounding=ROUND_HALF_UP)

    def recalculate(self) -> None:
        gross = self.subtotal_before_discount
        self.discount_amount = money(gross * Decimal(self.discount_percentage or 0) / 100)
        net = gross - self.discount_amount
        self.tax_amount = money(net * Decimal(self.tax_rate or 0) / 100)
        self.line_total = net


# ============= SALES ORDERS =============

class SalesOrder(Base, HasId, HasCreatedAt):
    """Sales order created from an accepted quote"""
    __tablename__ = "sales_order"

    order_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    order_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    contact_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    subtotal_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=ZERO, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=ZERO, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    status: Mapped[str] = mapped_column(String(16), default="PENDING", nullable=False)
    # PENDING|CONFIRMED|CANCELLED

    source_type: Mapped[str] = mapped_column(String(32), default="QUOTE_CONVERSION", nullable=False)
    # One order per quote
    quote_id: Mapped[str | None] = mapped_column(String(36), unique=True, nullable=True, index=True)

    shipping_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    billing_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    lines: Mapped[list["SalesOrderLine"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="SalesOrderLine.line_number",
    )


class SalesOrderLine(Base, HasId, HasCreatedAt):
    """Sales order line items"""
    __tablename__ = "sales_order_line"

    order_id: Mapped[str] = mapped_column(ForeignKey("sales_order.id", ondelete="CASCADE"), nullable=False, index=True)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(18, 4), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=ZERO, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), default=ZERO, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    order: Mapped[SalesOrder] = relationship(back_populates="lines")


Index("ix_sales_quote_status_valid", Quote.status, Quote.valid_until)
