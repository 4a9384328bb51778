"""
MODULE: PURCHASING
Purchase orders drafted to cover stock shortfalls against quotes
"""

from __future__ import annotations

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt
from datetime import date
from decimal import Decimal
from sqlalchemy import String, Date, Integer, Numeric, ForeignKey, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship


class PurchaseOrder(Base, HasId, HasCreatedAt):
    """Purchase order header"""
    __tablename__ = "purchase_order"

    po_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    po_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    status: Mapped[str] = mapped_column(String(16), default="DRAFT", nullable=False)
    # DRAFT|SUBMITTED|RECEIVED|CANCELLED

    source_type: Mapped[str] = mapped_column(String(32), default="QUOTE_SHORTFALL", nullable=False)
    quote_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    lines: Mapped[list["PurchaseOrderLine"]] = relationship(
        back_populates="purchase_order",
        cascade="all, delete-orphan",
        order_by="PurchaseOrderLine.line_number",
    )


class PurchaseOrderLine(Base, HasId, HasCreatedAt):
    """PO line items"""
    __tablename__ = "purchase_order_line"

    purchase_order_id: Mapped[str] = mapped_column(ForeignKey("purchase_order.id", ondelete="CASCADE"), nullable=False, index=True)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    product_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)

    # Context for the buyer: what the quote needed vs. what was on hand
    required_quantity: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    available_quantity: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)

    purchase_order: Mapped[PurchaseOrder] = relationship(back_populates="lines")
