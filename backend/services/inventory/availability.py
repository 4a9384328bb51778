"""Stock availability checks against the inventory subsystem.

Reads are advisory: nothing here locks, reserves or decrements stock.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.db.models.inventory import InventoryBalance

ZERO = Decimal("0")


class Availability(str, enum.Enum):
    SUFFICIENT = "sufficient"
    INSUFFICIENT = "insufficient"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class LineAvailability:
    product_id: str
    required: Decimal
    available: Decimal
    status: Availability

    @property
    def shortfall(self) -> Decimal:
        if self.status == Availability.SUFFICIENT:
            return ZERO
        if self.status == Availability.UNAVAILABLE:
            return self.required
        return self.required - self.available

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "status": self.status.value,
            "required": str(self.required),
            "available": str(self.available),
            "shortfall": str(self.shortfall),
        }


def classify(product_id: str, required: Decimal, available: Decimal | None) -> LineAvailability:
    available = available if available is not None else ZERO
    if available <= 0:
        status = Availability.UNAVAILABLE
    elif available >= required:
        status = Availability.SUFFICIENT
    else:
        status = Availability.INSUFFICIENT
    return LineAvailability(product_id=product_id, required=required, available=max(available, ZERO), status=status)


class LocalInventoryGateway:
    """Available quantity summed across locations from this service's balances."""

    def available_quantities(self, db: Session, product_ids: Iterable[str]) -> dict[str, Decimal]:
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        rows = (db.query(InventoryBalance.product_id, func.sum(InventoryBalance.qty))
                .filter(InventoryBalance.product_id.in_(ids), InventoryBalance.state == "AVAILABLE")
                .group_by(InventoryBalance.product_id)
                .all())
        return {pid: Decimal(str(total)) for pid, total in rows if total is not None}

    def available_quantity(self, db: Session, product_id: str) -> Decimal:
        return self.available_quantities(db, [product_id]).get(product_id, ZERO)


class StockAvailabilityChecker:
    def __init__(self, inventory: LocalInventoryGateway | None = None):
        self.inventory = inventory or LocalInventoryGateway()

    def check(self, db: Session, requirements: Iterable[tuple[str, Decimal]]) -> list[LineAvailability]:
        """Classify each (product_id, quantity) requirement.

        Lines are independent: two lines for the same product are each
        compared with the full available quantity.
        """
        reqs = [(pid, Decimal(str(qty))) for pid, qty in requirements]
        stock = self.inventory.available_quantities(db, [pid for pid, _ in reqs])
        return [classify(pid, qty, stock.get(pid)) for pid, qty in reqs]


def set_balance(db: Session, *, product_id: str, location_code: str, qty, state: str = "AVAILABLE") -> InventoryBalance:
    """Upsert an on-hand balance (used by inventory sync and fixtures)."""
    bal = (db.query(InventoryBalance)
           .filter(InventoryBalance.product_id == product_id,
                   InventoryBalance.location_code == location_code,
                   InventoryBalance.state == state)
           .first())
    if not bal:
        bal = InventoryBalance(product_id=product_id, location_code=location_code, state=state)
        db.add(bal)
    bal.qty = Decimal(str(qty))
    db.commit()
    db.refresh(bal)
    return bal
