from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.core.security import get_principal
from app.db.models.common import utcnow
from app.db.models.sales import Quote, QuoteLineItem, QuoteStatus
from app.db.session import get_db
from services.quotes import service
from services.quotes import state_machine as sm
from services.quotes.orchestrator import ConversionOrchestrator, NoActionNeeded, default_orchestrator

router = APIRouter(tags=["quotes"])

_orchestrator: ConversionOrchestrator | None = None


def get_orchestrator() -> ConversionOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = default_orchestrator()
    return _orchestrator


def get_deadline(x_deadline_ms: int | None = Header(default=None, alias="X-Deadline-Ms")):
    if x_deadline_ms is None:
        return None
    return utcnow() + timedelta(milliseconds=x_deadline_ms)


# ---- Schemas ----
class Address(BaseModel):
    model_config = ConfigDict(extra="allow")

    street: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None


class QuoteLineIn(BaseModel):
    product_id: str = Field(..., max_length=64)
    quantity: Decimal = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)
    list_price: Decimal | None = Field(default=None, ge=0)
    discount_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0)
    product_name: str | None = Field(default=None, max_length=256)
    product_sku: str | None = Field(default=None, max_length=64)
    notes: str | None = None


class QuoteLineUpdate(BaseModel):
    quantity: Decimal | None = Field(default=None, gt=0)
    unit_price: Decimal | None = Field(default=None, ge=0)
    discount_percentage: Decimal | None = Field(default=None, ge=0, le=100)
    tax_rate: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None


class QuoteLineBulkItem(QuoteLineUpdate):
    id: str


class QuoteLineBulkUpdate(BaseModel):
    items: list[QuoteLineBulkItem] = Field(..., min_length=1)


class QuoteIn(BaseModel):
    contact_id: str = Field(..., max_length=64)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    quote_date: date | None = None
    valid_until: date | None = None
    estimated_eta: str | None = Field(default=None, max_length=128)
    notes: str | None = None
    internal_notes: str | None = None
    terms_and_conditions: str | None = None
    shipping_address: Address | None = None
    billing_address: Address | None = None
    lines: list[QuoteLineIn] = Field(default_factory=list)


class QuoteHeaderUpdate(BaseModel):
    estimated_eta: str | None = Field(default=None, max_length=128)
    notes: str | None = None
    internal_notes: str | None = None
    terms_and_conditions: str | None = None
    valid_until: date | None = None
    shipping_address: Address | None = None
    billing_address: Address | None = None


class RejectIn(BaseModel):
    reason: str | None = None


class ConvertIn(BaseModel):
    shipping_address: Address | None = None
    billing_address: Address | None = None


# ---- Serialization ----
def _s(v):
    return str(v) if v is not None else None


def _iso(v):
    return v.isoformat() if v is not None else None


def item_out(it: QuoteLineItem) -> dict:
    return {
        "id": it.id,
        "line_number": it.line_number,
        "product_id": it.product_id,
        "product_name": it.product_name,
        "product_sku": it.product_sku,
        "quantity": _s(it.quantity),
        "list_price": _s(it.list_price),
        "unit_price": _s(it.unit_price),
        "price_variance": _s(it.price_variance),
        "effective_discount_percentage": _s(it.effective_discount_percentage),
        "discount_percentage": _s(it.discount_percentage),
        "discount_amount": _s(it.discount_amount),
        "tax_rate": _s(it.tax_rate),
        "tax_amount": _s(it.tax_amount),
        "line_total": _s(it.line_total),
        "notes": it.notes,
    }


def quote_out(q: Quote, *, include_items: bool = True) -> dict:
    out = {
        "id": q.id,
        "quote_number": q.quote_number,
        "contact_id": q.contact_id,
        "status": q.status.value,
        "currency": q.currency,
        "quote_date": _iso(q.quote_date),
        "valid_until": _iso(q.valid_until),
        "estimated_eta": q.estimated_eta,
        "notes": q.notes,
        "internal_notes": q.internal_notes,
        "terms_and_conditions": q.terms_and_conditions,
        "shipping_address": q.shipping_address,
        "billing_address": q.billing_address,
        "subtotal_amount": _s(q.subtotal_amount),
        "discount_amount": _s(q.discount_amount),
        "tax_amount": _s(q.tax_amount),
        "total_amount": _s(q.total_amount),
        "items_count": q.items_count,
        "total_quantity": _s(q.total_quantity),
        "sent_at": _iso(q.sent_at),
        "accepted_at": _iso(q.accepted_at),
        "rejected_at": _iso(q.rejected_at),
        "converted_at": _iso(q.converted_at),
        "rejection_reason": q.rejection_reason,
        "sales_order_id": q.sales_order_id,
        "purchase_order_id": q.purchase_order_id,
        "duplicated_from_id": q.duplicated_from_id,
        "created_at": _iso(q.created_at),
        "is_expired": sm.is_expired(q),
        "can_edit": sm.can_edit(q),
        "allowed_actions": [e.value for e in sm.allowed_events(q)],
    }
    if include_items:
        out["items"] = [item_out(it) for it in q.items]
    return out


# ---- Quotes ----
@router.post("/quotes")
def create_quote(payload: QuoteIn, db: Session = Depends(get_db), p=Depends(get_principal)):
    data = payload.model_dump(exclude={"lines"})
    q = service.create_quote(db, **data, lines=[ln.model_dump() for ln in payload.lines], actor=p.username)
    return quote_out(q)


@router.get("/quotes")
def list_quotes(status: list[QuoteStatus] | None = Query(default=None), contact_id: str | None = None,
                search: str | None = None, date_from: date | None = None, date_to: date | None = None,
                limit: int = 200, db: Session = Depends(get_db)):
    qs = service.list_quotes(db, status=status, contact_id=contact_id, search=search, date_from=date_from,
                             date_to=date_to, limit=limit)
    return [quote_out(q, include_items=False) for q in qs]


@router.get("/quotes/expiring-soon")
def expiring_soon(days: int = Query(default=7, ge=0, le=365), db: Session = Depends(get_db)):
    qs = service.expiring_soon(db, days=days)
    return {"data": [quote_out(q, include_items=False) for q in qs], "meta": {"count": len(qs), "days": days}}


@router.get("/quotes/summary")
def summary(db: Session = Depends(get_db)):
    return service.quote_summary(db)


@router.get("/quotes/{quote_id}")
def get_quote(quote_id: str, db: Session = Depends(get_db)):
    return quote_out(service.get_quote(db, quote_id))


@router.patch("/quotes/{quote_id}")
def update_quote(quote_id: str, payload: QuoteHeaderUpdate, db: Session = Depends(get_db), p=Depends(get_principal)):
    q = service.update_header(db, quote_id, payload.model_dump(exclude_unset=True), actor=p.username)
    return quote_out(q)


@router.delete("/quotes/{quote_id}")
def delete_quote(quote_id: str, db: Session = Depends(get_db), p=Depends(get_principal)):
    service.delete_quote(db, quote_id, actor=p.username)
    return {"ok": True}


# ---- Line items ----
@router.post("/quotes/{quote_id}/items")
def add_item(quote_id: str, payload: QuoteLineIn, db: Session = Depends(get_db), p=Depends(get_principal)):
    it = service.add_line_item(db, quote_id, payload.model_dump(), actor=p.username)
    return {"item": item_out(it), "quote": quote_out(it.quote, include_items=False)}


@router.patch("/quotes/{quote_id}/items")
def bulk_update_items(quote_id: str, payload: QuoteLineBulkUpdate, db: Session = Depends(get_db),
                      p=Depends(get_principal)):
    updates = [it.model_dump(exclude_unset=True) for it in payload.items]
    q = service.bulk_update_line_items(db, quote_id, updates, actor=p.username)
    return {"data": quote_out(q), "message": f"{len(updates)} items updated"}


@router.patch("/quote-items/{item_id}")
def update_item(item_id: str, payload: QuoteLineUpdate, db: Session = Depends(get_db), p=Depends(get_principal)):
    it = service.update_line_item(db, item_id, payload.model_dump(exclude_unset=True), actor=p.username)
    return {"item": item_out(it), "quote": quote_out(it.quote, include_items=False)}


@router.delete("/quote-items/{item_id}")
def delete_item(item_id: str, db: Session = Depends(get_db), p=Depends(get_principal)):
    q = service.remove_line_item(db, item_id, actor=p.username)
    return {"ok": True, "quote": quote_out(q, include_items=False)}


# ---- Lifecycle ----
@router.post("/quotes/{quote_id}/send")
def send(quote_id: str, db: Session = Depends(get_db), p=Depends(get_principal)):
    return {"data": quote_out(service.send_quote(db, quote_id, actor=p.username)), "message": "Quote sent"}


@router.post("/quotes/{quote_id}/accept")
def accept(quote_id: str, db: Session = Depends(get_db), p=Depends(get_principal)):
    return {"data": quote_out(service.accept_quote(db, quote_id, actor=p.username)), "message": "Quote accepted"}


@router.post("/quotes/{quote_id}/reject")
def reject(quote_id: str, payload: RejectIn | None = None, db: Session = Depends(get_db), p=Depends(get_principal)):
    reason = payload.reason if payload else None
    return {"data": quote_out(service.reject_quote(db, quote_id, reason, actor=p.username)), "message": "Quote rejected"}


@router.post("/quotes/{quote_id}/cancel")
def cancel(quote_id: str, db: Session = Depends(get_db), p=Depends(get_principal)):
    return {"data": quote_out(service.cancel_quote(db, quote_id, actor=p.username)), "message": "Quote cancelled"}


@router.post("/quotes/{quote_id}/duplicate")
def duplicate(quote_id: str, db: Session = Depends(get_db), p=Depends(get_principal)):
    return {"data": quote_out(service.duplicate_quote(db, quote_id, actor=p.username)), "message": "Quote duplicated"}


@router.post("/quotes/{quote_id}/convert")
def convert(quote_id: str, payload: ConvertIn | None = None, db: Session = Depends(get_db), p=Depends(get_principal),
            orchestrator: ConversionOrchestrator = Depends(get_orchestrator), deadline=Depends(get_deadline)):
    addresses = payload.model_dump(exclude_none=True) if payload else {}
    ref = orchestrator.convert(db, quote_id, actor=p.username, deadline=deadline, **addresses)
    q = service.get_quote(db, quote_id)
    return {"data": {"quote": quote_out(q), "sales_order": ref.to_dict()}, "message": "Quote converted to sales order"}


@router.post("/quotes/{quote_id}/generate-purchase-order")
def generate_purchase_order(quote_id: str, db: Session = Depends(get_db), p=Depends(get_principal),
                            orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
                            deadline=Depends(get_deadline)):
    res = orchestrator.generate_purchase_order(db, quote_id, actor=p.username, deadline=deadline)
    if isinstance(res, NoActionNeeded):
        return {"data": res.to_dict(), "message": res.reason}
    return {"data": {"purchase_order": res.to_dict(), "quote_id": quote_id}, "message": "Purchase order created"}


@router.get("/quotes/{quote_id}/fulfillment-plan")
def fulfillment_plan(quote_id: str, db: Session = Depends(get_db),
                     orchestrator: ConversionOrchestrator = Depends(get_orchestrator)):
    return {"quote_id": quote_id, "lines": [ln.to_dict() for ln in orchestrator.plan_fulfillment(db, quote_id)]}
