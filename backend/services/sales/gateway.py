"""Sales-order collaborator used by quote conversion.

`LocalSalesOrderGateway` writes into the caller's session so the order and the
quote's status change commit (or roll back) together. `HttpSalesOrderGateway`
talks to a remote sales service and is two-phase: the order is created
provisional, confirmed once the quote transition has committed, and deleted if
anything in between fails.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

import httpx
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import DownstreamFailure, NotConvertible
from app.db.models.sales import SalesOrder, SalesOrderLine, money, ZERO

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SalesOrderRef:
    id: str
    order_number: str

    def to_dict(self) -> dict:
        return {"id": self.id, "order_number": self.order_number}


@dataclass(frozen=True)
class OrderLineIn:
    product_id: str
    quantity: Decimal
    unit_price: Decimal
    discount_amount: Decimal = ZERO
    tax_amount: Decimal = ZERO

    @property
    def line_total(self) -> Decimal:
        return money(self.quantity * self.unit_price) - self.discount_amount


@dataclass
class SalesOrderIn:
    quote_id: str
    contact_id: str
    currency: str
    lines: list[OrderLineIn] = field(default_factory=list)
    notes: str | None = None
    shipping_address: dict | None = None
    billing_address: dict | None = None


def _order_number() -> str:
    return f"SO-{str(uuid.uuid4())[:8].upper()}"


class LocalSalesOrderGateway:
    two_phase = False

    def create_sales_order(self, db: Session, order: SalesOrderIn) -> SalesOrderRef:
        subtotal = sum((money(ln.quantity * ln.unit_price) for ln in order.lines), ZERO)
        discount = sum((ln.discount_amount for ln in order.lines), ZERO)
        tax = sum((ln.tax_amount for ln in order.lines), ZERO)
        so = SalesOrder(
            order_number=_order_number(),
            order_date=date.today(),
            contact_id=order.contact_id,
            currency=order.currency,
            subtotal_amount=subtotal,
            discount_amount=discount,
            tax_amount=tax,
            total_amount=subtotal - discount + tax,
            status="CONFIRMED",
            source_type="QUOTE_CONVERSION",
            quote_id=order.quote_id,
            shipping_address=order.shipping_address,
            billing_address=order.billing_address,
            notes=order.notes,
            meta={},
        )
        for i, ln in enumerate(order.lines, start=1):
            so.lines.append(SalesOrderLine(
                line_number=i,
                product_id=ln.product_id,
                quantity=ln.quantity,
                unit_price=ln.unit_price,
                discount_amount=ln.discount_amount,
                tax_amount=ln.tax_amount,
                line_total=ln.line_total,
            ))
        try:
            db.add(so)
            db.flush()
        except IntegrityError as e:
            # sales_order.quote_id is unique: another caller already ordered this quote
            raise NotConvertible(f"Quote {order.quote_id} already has a sales order", quote_id=order.quote_id) from e
        except SQLAlchemyError as e:
            raise DownstreamFailure(f"Sales order could not be created: {e}", quote_id=order.quote_id) from e
        return SalesOrderRef(id=so.id, order_number=so.order_number)

    def finalize(self, ref: SalesOrderRef) -> None:
        # committed together with the quote
        return None

    def discard(self, ref: SalesOrderRef) -> None:
        # removed by the caller's rollback
        return None


class HttpSalesOrderGateway:
    two_phase = True

    def __init__(self, base_url: str, *, timeout: float = 10.0, client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def _call(self, method: str, path: str, *, json: dict | None = None, what: str) -> dict:
        try:
            resp = self.client.request(method, f"{self.base_url}{path}", json=json)
        except httpx.HTTPError as e:
            raise DownstreamFailure(f"Sales service unreachable while trying to {what}: {e}") from e
        if not (200 <= resp.status_code < 300):
            raise DownstreamFailure(f"Sales service refused to {what}: HTTP {resp.status_code}: {resp.text[:300]}",
                                    status_code=resp.status_code)
        return resp.json() if resp.content else {}

    def create_sales_order(self, db: Session, order: SalesOrderIn) -> SalesOrderRef:
        body = {
            "status": "provisional",
            "source_type": "QUOTE_CONVERSION",
            "quote_id": order.quote_id,
            "contact_id": order.contact_id,
            "currency": order.currency,
            "notes": order.notes,
            "shipping_address": order.shipping_address,
            "billing_address": order.billing_address,
            "lines": [
                {
                    "product_id": ln.product_id,
                    "quantity": str(ln.quantity),
                    "unit_price": str(ln.unit_price),
                    "discount_amount": str(ln.discount_amount),
                    "tax_amount": str(ln.tax_amount),
                }
                for ln in order.lines
            ],
        }
        data = self._call("POST", "/sales-orders", json=body, what="create the sales order")
        try:
            return SalesOrderRef(id=str(data["id"]), order_number=str(data["order_number"]))
        except KeyError as e:
            raise DownstreamFailure(f"Sales service response is missing {e}") from e

    def finalize(self, ref: SalesOrderRef) -> None:
        self._call("POST", f"/sales-orders/{ref.id}/confirm", what=f"confirm sales order {ref.order_number}")

    def discard(self, ref: SalesOrderRef) -> None:
        self._call("DELETE", f"/sales-orders/{ref.id}", what=f"discard sales order {ref.order_number}")
