"""Quote lifecycle.

Every status change goes through the single `TRANSITIONS` table below; the
UI's action buttons (`allowed_events`) and the engine's guards read the same
table, so they cannot drift apart.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.errors import EmptyQuote, IllegalTransition, InvalidState, NotConvertible
from app.db.models.common import utcnow
from app.db.models.sales import Quote, QuoteStatus

logger = logging.getLogger(__name__)


class QuoteEvent(str, enum.Enum):
    SEND = "send"
    ACCEPT = "accept"
    REJECT = "reject"
    CANCEL = "cancel"
    CONVERT = "convert"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class Transition:
    # None: the quote keeps its status (resend, duplicate)
    target: QuoteStatus | None
    # Timestamp column stamped by this transition, if any
    stamp: str | None = None


_S = QuoteStatus
_E = QuoteEvent

TRANSITIONS: dict[tuple[QuoteStatus, QuoteEvent], Transition] = {
    (_S.DRAFT, _E.SEND): Transition(_S.SENT, "sent_at"),
    (_S.SENT, _E.SEND): Transition(None),
    (_S.DRAFT, _E.ACCEPT): Transition(_S.ACCEPTED, "accepted_at"),
    (_S.SENT, _E.ACCEPT): Transition(_S.ACCEPTED, "accepted_at"),
    (_S.DRAFT, _E.REJECT): Transition(_S.REJECTED, "rejected_at"),
    (_S.SENT, _E.REJECT): Transition(_S.REJECTED, "rejected_at"),
    (_S.DRAFT, _E.CANCEL): Transition(_S.CANCELLED),
    (_S.SENT, _E.CANCEL): Transition(_S.CANCELLED),
    (_S.ACCEPTED, _E.CANCEL): Transition(_S.CANCELLED),
    (_S.ACCEPTED, _E.CONVERT): Transition(_S.CONVERTED, "converted_at"),
    (_S.DRAFT, _E.DUPLICATE): Transition(None),
    (_S.SENT, _E.DUPLICATE): Transition(None),
    (_S.ACCEPTED, _E.DUPLICATE): Transition(None),
}

TERMINAL_STATES = frozenset({_S.REJECTED, _S.CANCELLED, _S.CONVERTED})
EDITABLE_STATES = frozenset({_S.DRAFT, _S.SENT})


def transition_for(status: QuoteStatus, event: QuoteEvent) -> Transition:
    t = TRANSITIONS.get((QuoteStatus(status), QuoteEvent(event)))
    if t is None:
        raise IllegalTransition(QuoteStatus(status).value, QuoteEvent(event).value)
    return t


def allowed_events(quote: Quote) -> list[QuoteEvent]:
    events = [e for (s, e) in TRANSITIONS if s == quote.status]
    if QuoteEvent.SEND in events and quote.status == QuoteStatus.DRAFT and not quote.items:
        events.remove(QuoteEvent.SEND)
    if QuoteEvent.CONVERT in events and quote.sales_order_id is not None:
        events.remove(QuoteEvent.CONVERT)
    return events


def can_edit(quote: Quote) -> bool:
    return quote.status in EDITABLE_STATES


def ensure_editable(quote: Quote) -> None:
    if not can_edit(quote):
        raise InvalidState(
            f"Quote {quote.quote_number} cannot be edited in status '{quote.status.value}'",
            quote_id=quote.id,
            status=quote.status.value,
        )


def is_expired(quote: Quote, today: date | None = None) -> bool:
    """Display-only: a sent quote past its validity date. Never changes status."""
    if quote.status != QuoteStatus.SENT or quote.valid_until is None:
        return False
    return (today or date.today()) > quote.valid_until


def apply(quote: Quote, event: QuoteEvent, *, now: datetime | None = None, reason: str | None = None) -> Transition:
    """Validate and apply a status transition in memory.

    All guards run before the first attribute is touched, so a failure leaves
    the quote exactly as it was. Conversion is not applied here; it is claimed
    atomically in the database by `claim_conversion`.
    """
    event = QuoteEvent(event)
    if event in (QuoteEvent.CONVERT, QuoteEvent.DUPLICATE):
        raise ValueError(f"{event.value} is not an in-place transition")

    t = transition_for(quote.status, event)
    if event == QuoteEvent.SEND and quote.status == QuoteStatus.DRAFT and not quote.items:
        raise EmptyQuote(f"Quote {quote.quote_number} has no line items", quote_id=quote.id)

    now = now or utcnow()
    previous = quote.status
    if t.target is not None:
        quote.status = t.target
    if t.stamp and getattr(quote, t.stamp) is None:
        setattr(quote, t.stamp, now)
    if event == QuoteEvent.REJECT and reason:
        quote.rejection_reason = reason
    logger.info("quote %s: %s -> %s (%s)", quote.id, previous.value, quote.status.value, event.value)
    return t


def ensure_convertible(quote: Quote) -> None:
    try:
        transition_for(quote.status, QuoteEvent.CONVERT)
    except IllegalTransition as e:
        raise NotConvertible(
            f"Quote {quote.quote_number} is '{quote.status.value}', only accepted quotes can be converted",
            quote_id=quote.id,
            status=quote.status.value,
        ) from e
    if quote.sales_order_id is not None:
        raise NotConvertible(
            f"Quote {quote.quote_number} is already linked to sales order {quote.sales_order_id}",
            quote_id=quote.id,
            sales_order_id=quote.sales_order_id,
        )


def claim_conversion(db: Session, quote_id: str, sales_order_id: str, *, now: datetime | None = None) -> bool:
    """Compare-and-set the accepted -> converted transition on the quote row.

    Returns False when another caller already converted (or moved) the quote;
    the UPDATE then matches no row and nothing is written.
    """
    res = db.execute(
        update(Quote)
        .where(
            Quote.id == quote_id,
            Quote.status == QuoteStatus.ACCEPTED,
            Quote.sales_order_id.is_(None),
        )
        .values(
            status=QuoteStatus.CONVERTED,
            sales_order_id=sales_order_id,
            converted_at=now or utcnow(),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session="evaluate")
    )
    return res.rowcount == 1


def revert_conversion(db: Session, quote_id: str, sales_order_id: str) -> bool:
    """Undo a committed conversion whose sales order could not be finalized."""
    res = db.execute(
        update(Quote)
        .where(
            Quote.id == quote_id,
            Quote.status == QuoteStatus.CONVERTED,
            Quote.sales_order_id == sales_order_id,
        )
        .values(
            status=QuoteStatus.ACCEPTED,
            sales_order_id=None,
            converted_at=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session="evaluate")
    )
    return res.rowcount == 1
