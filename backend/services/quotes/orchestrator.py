"""Quote -> downstream document conversion.

Convert: accepted quote -> sales order, quote marked converted.
GeneratePurchaseOrder: stock shortfalls on the quote's lines -> draft PO.
PlanFulfillment: read-only view of shortfalls and the conversions that could
cover them.

Guards run before any write. Either the whole sequence commits or the quote
is left as it was.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.config import DOWNSTREAM_TIMEOUT_SECONDS, PURCHASE_ORDER_SERVICE_URL, SALES_ORDER_SERVICE_URL
from app.core.errors import DeadlineExceeded, DownstreamFailure, EmptyQuote, NotConvertible, QuoteEngineError
from app.db.models.common import utcnow
from app.events.bus import publish
from services.inventory import conversions
from services.inventory.availability import Availability, LineAvailability, StockAvailabilityChecker
from services.purchasing.gateway import (
    HttpPurchaseOrderGateway,
    LocalPurchaseOrderGateway,
    PurchaseLineIn,
    PurchaseOrderIn,
    PurchaseOrderRef,
)
from services.quotes import state_machine as sm
from services.quotes.service import get_quote
from services.sales.gateway import (
    HttpSalesOrderGateway,
    LocalSalesOrderGateway,
    OrderLineIn,
    SalesOrderIn,
    SalesOrderRef,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoActionNeeded:
    quote_id: str
    reason: str = "All quoted quantities are covered by available stock"

    def to_dict(self) -> dict:
        return {"action": "none", "quote_id": self.quote_id, "reason": self.reason}


@dataclass(frozen=True)
class ConversionOption:
    conversion_id: str
    source_product_id: str
    source_quantity_required: Decimal
    source_quantity_available: Decimal

    @property
    def covered(self) -> bool:
        return self.source_quantity_available >= self.source_quantity_required

    def to_dict(self) -> dict:
        return {
            "conversion_id": self.conversion_id,
            "source_product_id": self.source_product_id,
            "source_quantity_required": str(conversions.truncate_for_display(self.source_quantity_required)),
            "source_quantity_available": str(self.source_quantity_available),
            "covered": self.covered,
        }


@dataclass(frozen=True)
class FulfillmentLine:
    item_id: str
    availability: LineAvailability
    options: list[ConversionOption] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"item_id": self.item_id, **self.availability.to_dict(), "conversions": [o.to_dict() for o in self.options]}


def _check_deadline(deadline: datetime | None, quote_id: str) -> None:
    if deadline is not None and utcnow() >= deadline:
        raise DeadlineExceeded("Deadline passed before any change was written", quote_id=quote_id)


class ConversionOrchestrator:
    def __init__(self, *, sales_orders=None, purchase_orders=None, checker: StockAvailabilityChecker | None = None):
        self.sales_orders = sales_orders or LocalSalesOrderGateway()
        self.purchase_orders = purchase_orders or LocalPurchaseOrderGateway()
        self.checker = checker or StockAvailabilityChecker()

    # ---- Convert ----

    def convert(self, db: Session, quote_id: str, *, actor: str = "system", deadline: datetime | None = None,
                shipping_address: dict | None = None, billing_address: dict | None = None) -> SalesOrderRef:
        """Addresses given here override the quote's own on the sales order only."""
        quote = get_quote(db, quote_id, lock=True)
        try:
            sm.ensure_convertible(quote)
            if not quote.items:
                raise EmptyQuote(f"Quote {quote.quote_number} has no line items", quote_id=quote.id)
            _check_deadline(deadline, quote.id)
        except QuoteEngineError:
            db.rollback()
            raise

        order = SalesOrderIn(
            quote_id=quote.id,
            contact_id=quote.contact_id,
            currency=quote.currency,
            notes=f"From quote {quote.quote_number}",
            shipping_address=shipping_address or quote.shipping_address,
            billing_address=billing_address or quote.billing_address,
            lines=[
                OrderLineIn(
                    product_id=it.product_id,
                    quantity=Decimal(it.quantity),
                    unit_price=Decimal(it.unit_price),
                    discount_amount=Decimal(it.discount_amount),
                    tax_amount=Decimal(it.tax_amount),
                )
                for it in quote.items
            ],
        )
        quote_number = quote.quote_number

        try:
            ref = self.sales_orders.create_sales_order(db, order)
        except QuoteEngineError as e:
            db.rollback()
            logger.warning("quote %s: sales order creation failed (%s), quote left accepted", quote_id, e.kind)
            raise

        try:
            claimed = sm.claim_conversion(db, quote_id, ref.id)
        except SQLAlchemyError as e:
            logger.warning("quote %s: conversion claim failed: %s", quote_id, e)
            claimed = False
        if not claimed:
            db.rollback()
            self._discard_order(ref, quote_id)
            logger.warning("quote %s: lost conversion race, order %s discarded", quote_id, ref.order_number)
            raise NotConvertible(f"Quote {quote_number} was converted concurrently", quote_id=quote_id)

        audit(db, actor=actor, action="QUOTE_CONVERT", entity_type="Quote", entity_id=quote_id,
              payload={"sales_order_id": ref.id, "order_number": ref.order_number})
        publish(db, "sales.quote.converted", {"quote_id": quote_id, "quote_number": quote_number,
                                              "sales_order_id": ref.id})
        publish(db, "sales.order.created", {"sales_order_id": ref.id, "order_number": ref.order_number,
                                            "quote_id": quote_id, "source_type": "QUOTE_CONVERSION"})
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            self._discard_order(ref, quote_id)
            raise DownstreamFailure(f"Conversion of quote {quote_number} could not be saved: {e}",
                                    quote_id=quote_id) from e

        if self.sales_orders.two_phase:
            try:
                self.sales_orders.finalize(ref)
            except DownstreamFailure:
                self._compensate_conversion(db, quote_id, ref, actor=actor)
                raise

        logger.info("quote %s converted to sales order %s", quote_id, ref.order_number)
        return ref

    def _discard_order(self, ref: SalesOrderRef, quote_id: str) -> None:
        try:
            self.sales_orders.discard(ref)
        except DownstreamFailure:
            # the provisional order is orphaned on the remote side; the quote is consistent
            logger.exception("quote %s: provisional sales order %s could not be discarded", quote_id, ref.id)

    def _compensate_conversion(self, db: Session, quote_id: str, ref: SalesOrderRef, *, actor: str) -> None:
        logger.warning("quote %s: sales order %s not finalized, reverting conversion", quote_id, ref.order_number)
        sm.revert_conversion(db, quote_id, ref.id)
        audit(db, actor=actor, action="QUOTE_CONVERT_REVERTED", entity_type="Quote", entity_id=quote_id,
              payload={"sales_order_id": ref.id})
        publish(db, "sales.quote.conversion_reverted", {"quote_id": quote_id, "sales_order_id": ref.id})
        db.commit()
        self._discard_order(ref, quote_id)

    # ---- Purchase orders ----

    def generate_purchase_order(self, db: Session, quote_id: str, *, actor: str = "system",
                                deadline: datetime | None = None) -> PurchaseOrderRef | NoActionNeeded:
        quote = get_quote(db, quote_id, lock=True)
        items = list(quote.items)
        results = self.checker.check(db, [(it.product_id, it.quantity) for it in items])
        short = [r for r in results if r.status != Availability.SUFFICIENT]
        if not short:
            db.rollback()
            return NoActionNeeded(quote_id=quote_id)
        try:
            _check_deadline(deadline, quote_id)
        except DeadlineExceeded:
            db.rollback()
            raise

        order = PurchaseOrderIn(
            quote_id=quote_id,
            notes=f"Shortfall for quote {quote.quote_number}",
            lines=[
                PurchaseLineIn(product_id=r.product_id, quantity=r.shortfall,
                               required_quantity=r.required, available_quantity=r.available)
                for r in short
            ],
        )
        try:
            ref = self.purchase_orders.create_purchase_order(db, order)
        except DownstreamFailure:
            db.rollback()
            raise

        quote.purchase_order_id = ref.id
        audit(db, actor=actor, action="QUOTE_GENERATE_PO", entity_type="Quote", entity_id=quote_id,
              payload={"purchase_order_id": ref.id, "lines": len(order.lines)})
        publish(db, "purchasing.po.created", {"purchase_order_id": ref.id, "po_number": ref.po_number,
                                              "quote_id": quote_id, "source_type": "QUOTE_SHORTFALL"})
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            try:
                self.purchase_orders.discard(ref)
            except DownstreamFailure:
                logger.exception("quote %s: purchase order %s could not be discarded", quote_id, ref.id)
            raise DownstreamFailure(f"Purchase order link for quote {quote_id} could not be saved: {e}",
                                    quote_id=quote_id) from e
        logger.info("quote %s: purchase order %s drafted with %d lines", quote_id, ref.po_number, len(order.lines))
        return ref

    # ---- Fulfillment planning ----

    def plan_fulfillment(self, db: Session, quote_id: str) -> list[FulfillmentLine]:
        quote = get_quote(db, quote_id)
        items = list(quote.items)
        results = self.checker.check(db, [(it.product_id, it.quantity) for it in items])
        plan = []
        for it, res in zip(items, results):
            options = []
            if res.shortfall > 0:
                candidates = [c for c in conversions.sources_for(db, it.product_id) if c.net_factor > 0]
                stock = self.checker.inventory.available_quantities(db, [c.source_product_id for c in candidates])
                for conv in candidates:
                    options.append(ConversionOption(
                        conversion_id=conv.id,
                        source_product_id=conv.source_product_id,
                        source_quantity_required=conversions.required_source(res.shortfall, conv),
                        source_quantity_available=stock.get(conv.source_product_id, Decimal("0")),
                    ))
            plan.append(FulfillmentLine(item_id=it.id, availability=res, options=options))
        return plan


def default_orchestrator() -> ConversionOrchestrator:
    sales = (HttpSalesOrderGateway(SALES_ORDER_SERVICE_URL, timeout=DOWNSTREAM_TIMEOUT_SECONDS)
             if SALES_ORDER_SERVICE_URL else LocalSalesOrderGateway())
    purchasing = (HttpPurchaseOrderGateway(PURCHASE_ORDER_SERVICE_URL, timeout=DOWNSTREAM_TIMEOUT_SECONDS)
                  if PURCHASE_ORDER_SERVICE_URL else LocalPurchaseOrderGateway())
    return ConversionOrchestrator(sales_orders=sales, purchase_orders=purchasing)
