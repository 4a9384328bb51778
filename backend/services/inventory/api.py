from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.security import get_principal
from app.db.models.inventory import ProductConversion
from app.db.session import get_db
from services.inventory import conversions
from services.inventory.availability import StockAvailabilityChecker, set_balance

router = APIRouter(tags=["inventory"])


class ConversionIn(BaseModel):
    source_product_id: str = Field(..., max_length=64)
    destination_product_id: str = Field(..., max_length=64)
    conversion_factor: Decimal = Field(..., gt=0)
    waste_percentage: Decimal | None = Field(default=None, ge=0, le=100)
    is_active: bool = True
    notes: str | None = None


class ConversionUpdate(BaseModel):
    source_product_id: str | None = Field(default=None, max_length=64)
    destination_product_id: str | None = Field(default=None, max_length=64)
    conversion_factor: Decimal | None = Field(default=None, gt=0)
    waste_percentage: Decimal | None = Field(default=None, ge=0, le=100)
    is_active: bool | None = None
    notes: str | None = None


class BalanceIn(BaseModel):
    product_id: str = Field(..., max_length=64)
    location_code: str = Field(..., max_length=64)
    qty: Decimal = Field(..., ge=0)
    state: str = Field(default="AVAILABLE", max_length=16)


def conversion_out(c: ProductConversion) -> dict:
    return {
        "id": c.id,
        "source_product_id": c.source_product_id,
        "destination_product_id": c.destination_product_id,
        "conversion_factor": str(c.conversion_factor),
        "waste_percentage": str(c.waste_percentage or 0),
        "net_factor": str(conversions.truncate_for_display(c.net_factor)),
        "waste_factor": str(conversions.truncate_for_display(c.waste_factor)),
        "is_active": c.is_active,
        "notes": c.notes,
    }


# ---- Product conversions ----
@router.get("/product-conversions")
def list_conversions(source_product_id: str | None = None, destination_product_id: str | None = None,
                     active_only: bool = False, limit: int = 200, db: Session = Depends(get_db)):
    rows = conversions.list_conversions(db, source_product_id=source_product_id,
                                        destination_product_id=destination_product_id,
                                        active_only=active_only, limit=limit)
    return [conversion_out(c) for c in rows]


@router.post("/product-conversions")
def create_conversion(payload: ConversionIn, db: Session = Depends(get_db), p=Depends(get_principal)):
    c = conversions.create_conversion(db, **payload.model_dump(), actor=p.username)
    return conversion_out(c)


@router.get("/product-conversions/resolve")
def resolve_conversion(source_product_id: str, destination_product_id: str, db: Session = Depends(get_db)):
    return conversion_out(conversions.resolve(db, source_product_id, destination_product_id))


@router.get("/product-conversions/{conversion_id}")
def get_conversion(conversion_id: str, db: Session = Depends(get_db)):
    return conversion_out(conversions.get_conversion(db, conversion_id))


@router.patch("/product-conversions/{conversion_id}")
def update_conversion(conversion_id: str, payload: ConversionUpdate, db: Session = Depends(get_db),
                      p=Depends(get_principal)):
    c = conversions.update_conversion(db, conversion_id, payload.model_dump(exclude_unset=True), actor=p.username)
    return conversion_out(c)


@router.delete("/product-conversions/{conversion_id}")
def delete_conversion(conversion_id: str, db: Session = Depends(get_db), p=Depends(get_principal)):
    conversions.delete_conversion(db, conversion_id, actor=p.username)
    return {"ok": True}


@router.get("/product-conversions/{conversion_id}/preview")
def preview(conversion_id: str, source_quantity: Decimal | None = Query(default=None, ge=0),
            destination_quantity: Decimal | None = Query(default=None, ge=0), db: Session = Depends(get_db)):
    c = conversions.get_conversion(db, conversion_id)
    out = {"conversion": conversion_out(c)}
    if source_quantity is not None:
        y = conversions.yield_from_source(source_quantity, c)
        out["yield"] = {
            "source_quantity": str(source_quantity),
            "net_quantity": str(conversions.truncate_for_display(y.net_quantity)),
            "waste_quantity": str(conversions.truncate_for_display(y.waste_quantity)),
        }
    if destination_quantity is not None:
        out["required_source"] = {
            "destination_quantity": str(destination_quantity),
            "source_quantity": str(conversions.truncate_for_display(conversions.required_source(destination_quantity, c))),
        }
    return out


# ---- Stock ----
@router.get("/inventory/availability")
def availability(product_id: list[str] = Query(...), db: Session = Depends(get_db)):
    checker = StockAvailabilityChecker()
    stock = checker.inventory.available_quantities(db, product_id)
    return [{"product_id": pid, "available": str(stock.get(pid, Decimal("0")))} for pid in product_id]


@router.post("/inventory/balances")
def upsert_balance(payload: BalanceIn, db: Session = Depends(get_db)):
    b = set_balance(db, product_id=payload.product_id, location_code=payload.location_code,
                    qty=payload.qty, state=payload.state)
    return {"id": b.id, "product_id": b.product_id, "location_code": b.location_code, "state": b.state, "qty": str(b.qty)}
