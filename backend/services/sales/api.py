from __future__ import annotations
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.core.errors import NotFound
from app.db.session import get_db
from app.db.models.sales import SalesOrder

router = APIRouter(prefix="/sales", tags=["sales"])

@router.get("/orders")
def list_orders(db: Session = Depends(get_db), limit: int = 200):
    os_ = db.query(SalesOrder).order_by(SalesOrder.created_at.desc()).limit(limit).all()
    return [{"id": o.id, "order_number": o.order_number, "contact_id": o.contact_id, "status": o.status, "quote_id": o.quote_id} for o in os_]

@router.get("/orders/{order_id}")
def get_order(order_id: str, db: Session = Depends(get_db)):
    o = db.query(SalesOrder).filter(SalesOrder.id == order_id).first()
    if not o:
        raise NotFound(f"Sales order {order_id} not found", order_id=order_id)
    return {
        "id": o.id,
        "order_number": o.order_number,
        "contact_id": o.contact_id,
        "status": o.status,
        "currency": o.currency,
        "quote_id": o.quote_id,
        "shipping_address": o.shipping_address,
        "billing_address": o.billing_address,
        "subtotal_amount": str(o.subtotal_amount),
        "discount_amount": str(o.discount_amount),
        "tax_amount": str(o.tax_amount),
        "total_amount": str(o.total_amount),
        "lines": [{"id": ln.id, "product_id": ln.product_id, "quantity": str(ln.quantity), "unit_price": str(ln.unit_price), "line_total": str(ln.line_total)} for ln in o.lines],
    }
