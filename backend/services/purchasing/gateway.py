"""Purchase-order collaborator used to cover quote shortfalls."""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import DownstreamFailure
from app.db.models.purchasing import PurchaseOrder, PurchaseOrderLine


@dataclass(frozen=True)
class PurchaseOrderRef:
    id: str
    po_number: str

    def to_dict(self) -> dict:
        return {"id": self.id, "po_number": self.po_number}


@dataclass(frozen=True)
class PurchaseLineIn:
    product_id: str
    quantity: Decimal
    required_quantity: Decimal | None = None
    available_quantity: Decimal | None = None


@dataclass
class PurchaseOrderIn:
    quote_id: str
    lines: list[PurchaseLineIn] = field(default_factory=list)
    notes: str | None = None


def _po_number() -> str:
    return f"PO-{str(uuid.uuid4())[:8].upper()}"


class LocalPurchaseOrderGateway:
    def create_purchase_order(self, db: Session, order: PurchaseOrderIn) -> PurchaseOrderRef:
        po = PurchaseOrder(
            po_number=_po_number(),
            po_date=date.today(),
            status="DRAFT",
            source_type="QUOTE_SHORTFALL",
            quote_id=order.quote_id,
            notes=order.notes,
            meta={},
        )
        for i, ln in enumerate(order.lines, start=1):
            po.lines.append(PurchaseOrderLine(
                line_number=i,
                product_id=ln.product_id,
                quantity=ln.quantity,
                required_quantity=ln.required_quantity,
                available_quantity=ln.available_quantity,
            ))
        try:
            db.add(po)
            db.flush()
        except SQLAlchemyError as e:
            raise DownstreamFailure(f"Purchase order could not be created: {e}", quote_id=order.quote_id) from e
        return PurchaseOrderRef(id=po.id, po_number=po.po_number)

    def discard(self, ref: PurchaseOrderRef) -> None:
        # removed by the caller's rollback
        return None


class HttpPurchaseOrderGateway:
    def __init__(self, base_url: str, *, timeout: float = 10.0, client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def create_purchase_order(self, db: Session, order: PurchaseOrderIn) -> PurchaseOrderRef:
        body = {
            "status": "draft",
            "source_type": "QUOTE_SHORTFALL",
            "quote_id": order.quote_id,
            "notes": order.notes,
            "lines": [{"product_id": ln.product_id, "quantity": str(ln.quantity)} for ln in order.lines],
        }
        try:
            resp = self.client.post(f"{self.base_url}/purchase-orders", json=body)
        except httpx.HTTPError as e:
            raise DownstreamFailure(f"Purchasing service unreachable: {e}", quote_id=order.quote_id) from e
        if not (200 <= resp.status_code < 300):
            raise DownstreamFailure(f"Purchasing service refused the order: HTTP {resp.status_code}: {resp.text[:300]}",
                                    quote_id=order.quote_id, status_code=resp.status_code)
        data = resp.json()
        try:
            return PurchaseOrderRef(id=str(data["id"]), po_number=str(data["po_number"]))
        except KeyError as e:
            raise DownstreamFailure(f"Purchasing service response is missing {e}") from e

    def discard(self, ref: PurchaseOrderRef) -> None:
        try:
            resp = self.client.delete(f"{self.base_url}/purchase-orders/{ref.id}")
        except httpx.HTTPError as e:
            raise DownstreamFailure(f"Purchasing service unreachable while discarding {ref.po_number}: {e}") from e
        if not (200 <= resp.status_code < 300):
            raise DownstreamFailure(f"Purchasing service refused to discard {ref.po_number}: HTTP {resp.status_code}")
