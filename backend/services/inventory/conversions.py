"""Product conversion resolver and management.

All arithmetic is Decimal and unrounded; `truncate_for_display` mirrors the
4-decimal preview shown when editing a conversion.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.errors import DivisionByZero, NotFound, QuoteEngineError, ValidationFailed
from app.db.models.inventory import ProductConversion
from app.events.bus import publish

logger = logging.getLogger(__name__)

DISPLAY_QUANTUM = Decimal("0.0001")
HUNDRED = Decimal("100")


def _dec(x) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def _field_dec(value, field: str) -> Decimal:
    try:
        return _dec(value)
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValidationFailed(f"{field} must be a number", field=field) from e


@dataclass(frozen=True)
class ConversionYield:
    net_quantity: Decimal
    waste_quantity: Decimal

    @property
    def gross_quantity(self) -> Decimal:
        return self.net_quantity + self.waste_quantity


# ---- Resolver ----

def resolve(db: Session, source_product_id: str, destination_product_id: str) -> ProductConversion:
    rows = (db.query(ProductConversion)
            .filter(ProductConversion.source_product_id == source_product_id,
                    ProductConversion.destination_product_id == destination_product_id,
                    ProductConversion.is_active == True)  # noqa: E712
            .order_by(ProductConversion.updated_at.desc())
            .all())
    if not rows:
        raise NotFound(
            f"No active conversion from {source_product_id} to {destination_product_id}",
            source_product_id=source_product_id,
            destination_product_id=destination_product_id,
        )
    if len(rows) > 1:
        logger.warning("%d active conversions for %s -> %s, using most recently updated %s",
                       len(rows), source_product_id, destination_product_id, rows[0].id)
    # unset waste reads as 0 through ProductConversion.waste_ratio
    return rows[0]


def sources_for(db: Session, destination_product_id: str) -> list[ProductConversion]:
    return (db.query(ProductConversion)
            .filter(ProductConversion.destination_product_id == destination_product_id,
                    ProductConversion.is_active == True)  # noqa: E712
            .order_by(ProductConversion.source_product_id.asc())
            .all())


def required_source(destination_quantity, conversion: ProductConversion) -> Decimal:
    """Source units needed to end up with `destination_quantity` net of waste."""
    net = conversion.net_factor
    if net <= 0:
        raise DivisionByZero(
            "Conversion yields nothing net of waste",
            conversion_id=conversion.id,
            waste_percentage=str(conversion.waste_percentage),
        )
    return _dec(destination_quantity) / net


def yield_from_source(source_quantity, conversion: ProductConversion) -> ConversionYield:
    q = _dec(source_quantity)
    return ConversionYield(net_quantity=q * conversion.net_factor, waste_quantity=q * conversion.waste_factor)


def truncate_for_display(value) -> Decimal:
    return _dec(value).quantize(DISPLAY_QUANTUM, rounding=ROUND_DOWN)


# ---- Management ----

def get_conversion(db: Session, conversion_id: str) -> ProductConversion:
    conv = db.query(ProductConversion).filter(ProductConversion.id == conversion_id).first()
    if not conv:
        raise NotFound(f"Product conversion {conversion_id} not found", conversion_id=conversion_id)
    return conv


def list_conversions(db: Session, *, source_product_id: str | None = None, destination_product_id: str | None = None,
                     active_only: bool = False, limit: int = 200) -> list[ProductConversion]:
    q = db.query(ProductConversion)
    if source_product_id:
        q = q.filter(ProductConversion.source_product_id == source_product_id)
    if destination_product_id:
        q = q.filter(ProductConversion.destination_product_id == destination_product_id)
    if active_only:
        q = q.filter(ProductConversion.is_active == True)  # noqa: E712
    return q.order_by(ProductConversion.created_at.desc()).limit(limit).all()


def _validate(db: Session, conv: ProductConversion) -> None:
    if conv.source_product_id == conv.destination_product_id:
        raise ValidationFailed("Source and destination products must differ",
                               source_product_id=conv.source_product_id)
    if _dec(conv.conversion_factor) <= 0:
        raise ValidationFailed("conversion_factor must be greater than 0")
    waste = _dec(conv.waste_percentage or 0)
    if waste < 0 or waste > HUNDRED:
        raise ValidationFailed("waste_percentage must be between 0 and 100")
    if conv.is_active:
        q = (db.query(ProductConversion)
             .filter(ProductConversion.source_product_id == conv.source_product_id,
                     ProductConversion.destination_product_id == conv.destination_product_id,
                     ProductConversion.is_active == True))  # noqa: E712
        if conv.id:
            q = q.filter(ProductConversion.id != conv.id)
        clash = q.first()
        if clash:
            raise ValidationFailed(
                "An active conversion already exists for this product pair",
                existing_conversion_id=clash.id,
            )


def create_conversion(db: Session, *, source_product_id: str, destination_product_id: str, conversion_factor,
                      waste_percentage=None, is_active: bool = True, notes: str | None = None,
                      actor: str = "system") -> ProductConversion:
    conv = ProductConversion(
        source_product_id=source_product_id,
        destination_product_id=destination_product_id,
        conversion_factor=_field_dec(conversion_factor, "conversion_factor"),
        waste_percentage=_field_dec(waste_percentage if waste_percentage is not None else 0, "waste_percentage"),
        is_active=is_active,
        notes=notes,
    )
    if not source_product_id or not destination_product_id:
        raise ValidationFailed("source_product_id and destination_product_id are required")
    _validate(db, conv)
    db.add(conv)
    db.flush()
    audit(db, actor=actor, action="CONVERSION_CREATE", entity_type="ProductConversion", entity_id=conv.id,
          payload={"source": source_product_id, "destination": destination_product_id,
                   "factor": str(conv.conversion_factor), "waste": str(conv.waste_percentage)})
    publish(db, "inventory.conversion.created", {"id": conv.id, "source_product_id": source_product_id,
                                                 "destination_product_id": destination_product_id})
    db.commit()
    db.refresh(conv)
    return conv


_EDITABLE = ("source_product_id", "destination_product_id", "conversion_factor", "waste_percentage", "is_active", "notes")
_REQUIRED = ("source_product_id", "destination_product_id", "conversion_factor", "is_active")


def _parse_changes(changes: dict) -> dict:
    parsed = {}
    for key, value in changes.items():
        if key not in _EDITABLE:
            raise ValidationFailed(f"Field '{key}' cannot be changed", field=key)
        if value is None and key in _REQUIRED:
            raise ValidationFailed(f"{key} cannot be null", field=key)
        if key in ("conversion_factor", "waste_percentage") and value is not None:
            value = _field_dec(value, key)
        parsed[key] = value
    return parsed


def update_conversion(db: Session, conversion_id: str, changes: dict, *, actor: str = "system") -> ProductConversion:
    """Apply `changes` to a conversion. Every key is checked before the row is
    touched; a failed check leaves the row as stored."""
    conv = get_conversion(db, conversion_id)
    try:
        parsed = _parse_changes(changes)
        for key, value in parsed.items():
            setattr(conv, key, value)
        _validate(db, conv)
    except QuoteEngineError:
        db.rollback()
        raise
    audit(db, actor=actor, action="CONVERSION_UPDATE", entity_type="ProductConversion", entity_id=conv.id,
          payload={k: str(v) for k, v in parsed.items()})
    db.commit()
    db.refresh(conv)
    return conv


def delete_conversion(db: Session, conversion_id: str, *, actor: str = "system") -> None:
    conv = get_conversion(db, conversion_id)
    db.delete(conv)
    audit(db, actor=actor, action="CONVERSION_DELETE", entity_type="ProductConversion", entity_id=conversion_id)
    db.commit()
