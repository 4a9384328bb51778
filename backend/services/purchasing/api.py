from __future__ import annotations
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.core.errors import NotFound
from app.db.session import get_db
from app.db.models.purchasing import PurchaseOrder

router = APIRouter(prefix="/purchasing", tags=["purchasing"])

@router.get("/purchase-orders")
def list_purchase_orders(db: Session = Depends(get_db), limit: int = 200):
    pos = db.query(PurchaseOrder).order_by(PurchaseOrder.created_at.desc()).limit(limit).all()
    return [{"id": po.id, "po_number": po.po_number, "status": po.status, "quote_id": po.quote_id} for po in pos]

@router.get("/purchase-orders/{po_id}")
def get_purchase_order(po_id: str, db: Session = Depends(get_db)):
    po = db.query(PurchaseOrder).filter(PurchaseOrder.id == po_id).first()
    if not po:
        raise NotFound(f"Purchase order {po_id} not found", po_id=po_id)
    return {
        "id": po.id,
        "po_number": po.po_number,
        "status": po.status,
        "quote_id": po.quote_id,
        "lines": [{"id": ln.id, "product_id": ln.product_id, "quantity": str(ln.quantity), "required_quantity": str(ln.required_quantity), "available_quantity": str(ln.available_quantity)} for ln in po.lines],
    }
