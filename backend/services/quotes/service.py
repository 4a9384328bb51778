from __future__ import annotations

import logging
import uuid
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.config import DEFAULT_CURRENCY, QUOTE_NUMBER_PREFIX, QUOTE_VALIDITY_DAYS
from app.core.errors import InvalidState, NotFound, QuoteEngineError, ValidationFailed
from app.db.models.sales import Quote, QuoteLineItem, QuoteStatus, ZERO
from app.events.bus import publish
from services.quotes import state_machine as sm
from services.quotes.state_machine import QuoteEvent

logger = logging.getLogger(__name__)

HEADER_FIELDS = ("estimated_eta", "notes", "internal_notes", "terms_and_conditions", "valid_until",
                 "shipping_address", "billing_address")
LINE_FIELDS = ("quantity", "unit_price", "discount_percentage", "tax_rate", "product_name", "product_sku", "notes")
NUMERIC_LINE_FIELDS = ("quantity", "unit_price", "discount_percentage", "tax_rate")

_TOPICS = {
    QuoteEvent.SEND: "sales.quote.sent",
    QuoteEvent.ACCEPT: "sales.quote.accepted",
    QuoteEvent.REJECT: "sales.quote.rejected",
    QuoteEvent.CANCEL: "sales.quote.cancelled",
}


def _dec(value, field: str) -> Decimal:
    try:
        return value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValidationFailed(f"{field} must be a number", field=field) from e


def next_quote_number() -> str:
    return f"{QUOTE_NUMBER_PREFIX}-{str(uuid.uuid4())[:8].upper()}"


def get_quote(db: Session, quote_id: str, *, lock: bool = False) -> Quote:
    """Load a quote; with `lock` the row is held FOR UPDATE until commit/rollback
    and any stale copy in the session is overwritten."""
    q = db.query(Quote).filter(Quote.id == quote_id)
    if lock:
        q = q.with_for_update().populate_existing()
    quote = q.first()
    if not quote:
        raise NotFound(f"Quote {quote_id} not found", quote_id=quote_id)
    return quote


def get_line_item(db: Session, item_id: str) -> QuoteLineItem:
    it = db.query(QuoteLineItem).filter(QuoteLineItem.id == item_id).first()
    if not it:
        raise NotFound(f"Quote item {item_id} not found", item_id=item_id)
    return it


def list_quotes(db: Session, *, status: list[QuoteStatus] | None = None, contact_id: str | None = None,
                search: str | None = None, date_from: date | None = None, date_to: date | None = None,
                limit: int = 200) -> list[Quote]:
    q = db.query(Quote)
    if status:
        q = q.filter(Quote.status.in_(status))
    if contact_id:
        q = q.filter(Quote.contact_id == contact_id)
    if search:
        q = q.filter(Quote.quote_number.ilike(f"%{search.strip()}%"))
    if date_from:
        q = q.filter(Quote.quote_date >= date_from)
    if date_to:
        q = q.filter(Quote.quote_date <= date_to)
    return q.order_by(Quote.created_at.desc()).limit(limit).all()


def _check_line(values: dict) -> None:
    if "quantity" in values and values["quantity"] <= 0:
        raise ValidationFailed("quantity must be greater than 0", field="quantity")
    if "unit_price" in values and values["unit_price"] < 0:
        raise ValidationFailed("unit_price cannot be negative", field="unit_price")
    if "list_price" in values and values["list_price"] < 0:
        raise ValidationFailed("list_price cannot be negative", field="list_price")
    pct = values.get("discount_percentage")
    if pct is not None and (pct < 0 or pct > 100):
        raise ValidationFailed("discount_percentage must be between 0 and 100", field="discount_percentage")
    rate = values.get("tax_rate")
    if rate is not None and rate < 0:
        raise ValidationFailed("tax_rate cannot be negative", field="tax_rate")


def _line_values(data: dict) -> dict:
    """Parse the editable line fields present in `data`. A numeric field that
    is present must carry a value; absent fields are left alone."""
    if "list_price" in data:
        raise InvalidState("list_price is fixed when the line is added", field="list_price")
    values = {}
    for key in LINE_FIELDS:
        if key not in data:
            continue
        value = data[key]
        if key in NUMERIC_LINE_FIELDS:
            if value is None:
                raise ValidationFailed(f"{key} cannot be null", field=key)
            value = _dec(value, key)
        values[key] = value
    _check_line(values)
    return values


def _build_line(quote: Quote, data: dict) -> QuoteLineItem:
    if not data.get("product_id"):
        raise ValidationFailed("product_id required", field="product_id")
    if "quantity" not in data or "unit_price" not in data:
        raise ValidationFailed("quantity and unit_price are required")
    data = dict(data)
    list_price = data.pop("list_price", None)
    values = _line_values(data)
    # the catalog price defaults to the price the line is first quoted at
    values["list_price"] = _dec(list_price, "list_price") if list_price is not None else values["unit_price"]
    _check_line(values)
    values.setdefault("discount_percentage", ZERO)
    values.setdefault("tax_rate", ZERO)
    line_number = max((it.line_number for it in quote.items), default=0) + 1
    it = QuoteLineItem(product_id=str(data["product_id"]), line_number=line_number, meta={}, **values)
    quote.items.append(it)
    return it


def create_quote(db: Session, *, contact_id: str, currency: str | None = None, quote_date: date | None = None,
                 valid_until: date | None = None, estimated_eta: str | None = None, notes: str | None = None,
                 internal_notes: str | None = None, terms_and_conditions: str | None = None,
                 shipping_address: dict | None = None, billing_address: dict | None = None,
                 quote_number: str | None = None, lines: list[dict] | None = None, actor: str = "system") -> Quote:
    if not contact_id:
        raise ValidationFailed("contact_id required", field="contact_id")
    today = quote_date or date.today()
    quote = Quote(
        quote_number=quote_number or next_quote_number(),
        contact_id=str(contact_id),
        currency=(currency or DEFAULT_CURRENCY).upper(),
        status=QuoteStatus.DRAFT,
        quote_date=today,
        valid_until=valid_until or (today + timedelta(days=QUOTE_VALIDITY_DAYS)),
        estimated_eta=estimated_eta,
        notes=notes,
        internal_notes=internal_notes,
        terms_and_conditions=terms_and_conditions,
        shipping_address=shipping_address,
        billing_address=billing_address,
        meta={},
    )
    for ln in lines or []:
        _build_line(quote, ln)
    quote.recalculate_totals()
    db.add(quote)
    db.flush()
    audit(db, actor=actor, action="QUOTE_CREATE", entity_type="Quote", entity_id=quote.id,
          payload={"quote_number": quote.quote_number, "contact_id": quote.contact_id})
    publish(db, "sales.quote.created", {"quote_id": quote.id, "quote_number": quote.quote_number})
    db.commit()
    db.refresh(quote)
    logger.info("quote %s created (%s) with %d lines", quote.id, quote.quote_number, quote.items_count)
    return quote


def update_header(db: Session, quote_id: str, changes: dict, *, actor: str = "system") -> Quote:
    quote = get_quote(db, quote_id, lock=True)
    try:
        unknown = [k for k in changes if k not in HEADER_FIELDS]
        if unknown:
            raise InvalidState(f"Field '{unknown[0]}' cannot be changed after creation", field=unknown[0])
        sm.ensure_editable(quote)
    except QuoteEngineError:
        db.rollback()
        raise
    for key, value in changes.items():
        setattr(quote, key, value)
    audit(db, actor=actor, action="QUOTE_UPDATE", entity_type="Quote", entity_id=quote.id,
          payload={k: (str(v) if v is not None else None) for k, v in changes.items()})
    db.commit()
    db.refresh(quote)
    return quote


def delete_quote(db: Session, quote_id: str, *, actor: str = "system") -> None:
    quote = get_quote(db, quote_id, lock=True)
    if quote.status != QuoteStatus.DRAFT:
        db.rollback()
        raise InvalidState(f"Only draft quotes can be deleted, {quote.quote_number} is '{quote.status.value}'",
                           quote_id=quote_id, status=quote.status.value)
    db.delete(quote)
    audit(db, actor=actor, action="QUOTE_DELETE", entity_type="Quote", entity_id=quote_id)
    db.commit()


# ---- Line items ----

def add_line_item(db: Session, quote_id: str, data: dict, *, actor: str = "system") -> QuoteLineItem:
    quote = get_quote(db, quote_id, lock=True)
    try:
        sm.ensure_editable(quote)
        it = _build_line(quote, data)
    except QuoteEngineError:
        db.rollback()
        raise
    quote.recalculate_totals()
    db.flush()
    audit(db, actor=actor, action="QUOTE_ITEM_ADD", entity_type="Quote", entity_id=quote.id,
          payload={"item_id": it.id, "product_id": it.product_id, "quantity": str(it.quantity)})
    db.commit()
    db.refresh(it)
    return it


def update_line_item(db: Session, item_id: str, data: dict, *, actor: str = "system") -> QuoteLineItem:
    it = get_line_item(db, item_id)
    quote = get_quote(db, it.quote_id, lock=True)
    try:
        sm.ensure_editable(quote)
        values = _line_values(data)
    except QuoteEngineError:
        db.rollback()
        raise
    for key, value in values.items():
        setattr(it, key, value)
    quote.recalculate_totals()
    audit(db, actor=actor, action="QUOTE_ITEM_UPDATE", entity_type="Quote", entity_id=quote.id,
          payload={"item_id": it.id, **{k: str(v) for k, v in values.items()}})
    db.commit()
    db.refresh(it)
    return it


def bulk_update_line_items(db: Session, quote_id: str, updates: list[dict], *, actor: str = "system") -> Quote:
    """Apply several line edits to one quote. Every update is checked before
    any is applied; one bad entry leaves all lines untouched."""
    quote = get_quote(db, quote_id, lock=True)
    try:
        sm.ensure_editable(quote)
        by_id = {it.id: it for it in quote.items}
        planned = []
        for upd in updates:
            upd = dict(upd)
            item_id = upd.pop("id", None)
            if not item_id:
                raise ValidationFailed("id required for each item", field="id")
            if item_id not in by_id:
                raise NotFound(f"Quote item {item_id} not found on quote {quote.quote_number}",
                               item_id=item_id, quote_id=quote_id)
            planned.append((by_id[item_id], _line_values(upd)))
    except QuoteEngineError:
        db.rollback()
        raise
    for it, values in planned:
        for key, value in values.items():
            setattr(it, key, value)
    quote.recalculate_totals()
    audit(db, actor=actor, action="QUOTE_ITEM_BULK_UPDATE", entity_type="Quote", entity_id=quote.id,
          payload={"items": [{"item_id": it.id, **{k: str(v) for k, v in values.items()}} for it, values in planned]})
    db.commit()
    db.refresh(quote)
    logger.info("quote %s: %d line items updated", quote.id, len(planned))
    return quote


def remove_line_item(db: Session, item_id: str, *, actor: str = "system") -> Quote:
    it = get_line_item(db, item_id)
    quote = get_quote(db, it.quote_id, lock=True)
    try:
        sm.ensure_editable(quote)
    except QuoteEngineError:
        db.rollback()
        raise
    quote.items.remove(it)
    quote.recalculate_totals()
    audit(db, actor=actor, action="QUOTE_ITEM_REMOVE", entity_type="Quote", entity_id=quote.id,
          payload={"item_id": item_id, "product_id": it.product_id})
    db.commit()
    db.refresh(quote)
    return quote


# ---- Transitions ----

def _transition(db: Session, quote_id: str, event: QuoteEvent, *, actor: str, reason: str | None = None) -> Quote:
    quote = get_quote(db, quote_id, lock=True)
    previous = quote.status
    try:
        sm.apply(quote, event, reason=reason)
    except QuoteEngineError:
        db.rollback()
        raise
    audit(db, actor=actor, action=f"QUOTE_{event.value.upper()}", entity_type="Quote", entity_id=quote.id,
          payload={"from": previous.value, "to": quote.status.value, "reason": reason})
    publish(db, _TOPICS[event], {
        "quote_id": quote.id,
        "quote_number": quote.quote_number,
        "from": previous.value,
        "to": quote.status.value,
    })
    db.commit()
    db.refresh(quote)
    return quote


def send_quote(db: Session, quote_id: str, *, actor: str = "system") -> Quote:
    return _transition(db, quote_id, QuoteEvent.SEND, actor=actor)


def accept_quote(db: Session, quote_id: str, *, actor: str = "system") -> Quote:
    return _transition(db, quote_id, QuoteEvent.ACCEPT, actor=actor)


def reject_quote(db: Session, quote_id: str, reason: str | None = None, *, actor: str = "system") -> Quote:
    return _transition(db, quote_id, QuoteEvent.REJECT, actor=actor, reason=reason)


def cancel_quote(db: Session, quote_id: str, *, actor: str = "system") -> Quote:
    return _transition(db, quote_id, QuoteEvent.CANCEL, actor=actor)


def duplicate_quote(db: Session, quote_id: str, *, actor: str = "system") -> Quote:
    """Copy contact, currency and lines into a fresh draft; status and
    lifecycle timestamps start over."""
    source = get_quote(db, quote_id)
    sm.transition_for(source.status, QuoteEvent.DUPLICATE)
    today = date.today()
    copy = Quote(
        quote_number=next_quote_number(),
        contact_id=source.contact_id,
        currency=source.currency,
        status=QuoteStatus.DRAFT,
        quote_date=today,
        valid_until=today + timedelta(days=QUOTE_VALIDITY_DAYS),
        estimated_eta=source.estimated_eta,
        notes=source.notes,
        terms_and_conditions=source.terms_and_conditions,
        shipping_address=source.shipping_address,
        billing_address=source.billing_address,
        duplicated_from_id=source.id,
        meta={},
    )
    for it in source.items:
        copy.items.append(QuoteLineItem(
            line_number=it.line_number,
            product_id=it.product_id,
            product_name=it.product_name,
            product_sku=it.product_sku,
            quantity=it.quantity,
            list_price=it.list_price,
            unit_price=it.unit_price,
            discount_percentage=it.discount_percentage,
            tax_rate=it.tax_rate,
            notes=it.notes,
            meta={},
        ))
    copy.recalculate_totals()
    db.add(copy)
    db.flush()
    audit(db, actor=actor, action="QUOTE_DUPLICATE", entity_type="Quote", entity_id=copy.id,
          payload={"duplicated_from": source.id})
    publish(db, "sales.quote.duplicated", {"quote_id": copy.id, "duplicated_from": source.id})
    db.commit()
    db.refresh(copy)
    logger.info("quote %s duplicated as %s", source.id, copy.id)
    return copy


# ---- Reporting ----

def expiring_soon(db: Session, *, days: int = 7, today: date | None = None) -> list[Quote]:
    today = today or date.today()
    return (db.query(Quote)
            .filter(Quote.status == QuoteStatus.SENT,
                    Quote.valid_until.isnot(None),
                    Quote.valid_until >= today,
                    Quote.valid_until <= today + timedelta(days=days))
            .order_by(Quote.valid_until.asc())
            .all())


def quote_summary(db: Session, *, today: date | None = None) -> dict:
    today = today or date.today()
    counts = {s.value: 0 for s in QuoteStatus}
    for status, n in db.query(Quote.status, func.count(Quote.id)).group_by(Quote.status).all():
        counts[QuoteStatus(status).value] = n
    expired = (db.query(func.count(Quote.id))
               .filter(Quote.status == QuoteStatus.SENT, Quote.valid_until < today)
               .scalar()) or 0
    total = sum(counts.values())
    total_value = db.query(func.coalesce(func.sum(Quote.total_amount), 0)).scalar()
    total_value = Decimal(str(total_value or 0))
    left_draft = total - counts[QuoteStatus.DRAFT.value]
    return {
        "total": total,
        **counts,
        "expired": expired,
        "total_value": str(total_value),
        "average_value": str((total_value / total).quantize(Decimal("0.01")) if total else ZERO),
        "conversion_rate": round(counts[QuoteStatus.CONVERTED.value] / left_draft, 4) if left_draft else 0.0,
    }
