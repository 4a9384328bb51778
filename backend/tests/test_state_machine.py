from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.core.errors import EmptyQuote, IllegalTransition, InvalidState, NotConvertible
from app.db.models.sales import Quote, QuoteLineItem, QuoteStatus
from services.quotes import state_machine as sm
from services.quotes.state_machine import QuoteEvent


def _quote(status=QuoteStatus.DRAFT, *, with_items=True, valid_until=None, sales_order_id=None):
    q = Quote(id="q-1", quote_number="Q-1", contact_id="c-1", status=status, quote_date=date(2026, 1, 1),
              valid_until=valid_until, sales_order_id=sales_order_id)
    if with_items:
        q.items.append(QuoteLineItem(line_number=1, product_id="p-1", quantity=Decimal("1"),
                                     list_price=Decimal("10"), unit_price=Decimal("10"), discount_percentage=Decimal("0"),
                                     tax_rate=Decimal("0")))
    return q


@pytest.mark.parametrize("status", [QuoteStatus.REJECTED, QuoteStatus.CANCELLED, QuoteStatus.CONVERTED])
@pytest.mark.parametrize("event", [QuoteEvent.SEND, QuoteEvent.ACCEPT, QuoteEvent.REJECT, QuoteEvent.CANCEL])
def test_terminal_states_accept_no_events(status, event):
    q = _quote(status)
    with pytest.raises(IllegalTransition) as exc:
        sm.apply(q, event)
    assert exc.value.from_status == status.value
    assert exc.value.event == event.value
    assert q.status == status


def test_accepted_quote_cannot_be_rejected_or_resent():
    q = _quote(QuoteStatus.ACCEPTED)
    with pytest.raises(IllegalTransition):
        sm.apply(q, QuoteEvent.REJECT)
    with pytest.raises(IllegalTransition):
        sm.apply(q, QuoteEvent.SEND)
    assert q.status == QuoteStatus.ACCEPTED


def test_send_stamps_once_and_resend_keeps_first_timestamp():
    q = _quote()
    first = datetime(2026, 3, 1, tzinfo=timezone.utc)
    sm.apply(q, QuoteEvent.SEND, now=first)
    assert q.status == QuoteStatus.SENT
    assert q.sent_at == first

    sm.apply(q, QuoteEvent.SEND, now=first + timedelta(days=2))
    assert q.status == QuoteStatus.SENT
    assert q.sent_at == first


def test_sending_empty_draft_fails_without_changes():
    q = _quote(with_items=False)
    with pytest.raises(EmptyQuote):
        sm.apply(q, QuoteEvent.SEND)
    assert q.status == QuoteStatus.DRAFT
    assert q.sent_at is None


def test_accept_straight_from_draft():
    q = _quote()
    sm.apply(q, QuoteEvent.ACCEPT)
    assert q.status == QuoteStatus.ACCEPTED
    assert q.accepted_at is not None
    assert q.sent_at is None


def test_reject_records_reason():
    q = _quote(QuoteStatus.SENT)
    sm.apply(q, QuoteEvent.REJECT, reason="price too high")
    assert q.status == QuoteStatus.REJECTED
    assert q.rejected_at is not None
    assert q.rejection_reason == "price too high"


def test_cancel_from_accepted():
    q = _quote(QuoteStatus.ACCEPTED)
    sm.apply(q, QuoteEvent.CANCEL)
    assert q.status == QuoteStatus.CANCELLED


def test_convert_is_not_applied_in_memory():
    with pytest.raises(ValueError):
        sm.apply(_quote(QuoteStatus.ACCEPTED), QuoteEvent.CONVERT)


def test_allowed_events_follow_the_table():
    assert set(sm.allowed_events(_quote())) == {
        QuoteEvent.SEND, QuoteEvent.ACCEPT, QuoteEvent.REJECT, QuoteEvent.CANCEL, QuoteEvent.DUPLICATE,
    }
    assert QuoteEvent.SEND not in sm.allowed_events(_quote(with_items=False))
    assert set(sm.allowed_events(_quote(QuoteStatus.ACCEPTED))) == {
        QuoteEvent.CANCEL, QuoteEvent.CONVERT, QuoteEvent.DUPLICATE,
    }
    assert sm.allowed_events(_quote(QuoteStatus.CONVERTED)) == []
    assert QuoteEvent.CONVERT not in sm.allowed_events(_quote(QuoteStatus.ACCEPTED, sales_order_id="so-1"))


@pytest.mark.parametrize("status,editable", [
    (QuoteStatus.DRAFT, True),
    (QuoteStatus.SENT, True),
    (QuoteStatus.ACCEPTED, False),
    (QuoteStatus.REJECTED, False),
    (QuoteStatus.CANCELLED, False),
    (QuoteStatus.CONVERTED, False),
])
def test_editability(status, editable):
    q = _quote(status)
    assert sm.can_edit(q) is editable
    if editable:
        sm.ensure_editable(q)
    else:
        with pytest.raises(InvalidState):
            sm.ensure_editable(q)


def test_expiry_is_display_only():
    today = date(2026, 5, 10)
    q = _quote(QuoteStatus.SENT, valid_until=today - timedelta(days=1))
    assert sm.is_expired(q, today)
    assert q.status == QuoteStatus.SENT
    assert not sm.is_expired(_quote(QuoteStatus.SENT, valid_until=today), today)
    assert not sm.is_expired(_quote(QuoteStatus.DRAFT, valid_until=today - timedelta(days=5)), today)


def test_ensure_convertible():
    sm.ensure_convertible(_quote(QuoteStatus.ACCEPTED))
    with pytest.raises(NotConvertible):
        sm.ensure_convertible(_quote(QuoteStatus.SENT))
    with pytest.raises(NotConvertible):
        sm.ensure_convertible(_quote(QuoteStatus.ACCEPTED, sales_order_id="so-1"))


def test_claim_conversion_is_compare_and_set(db, make_quote):
    q = make_quote(QuoteStatus.ACCEPTED)
    assert sm.claim_conversion(db, q.id, "so-1") is True
    db.commit()
    assert sm.claim_conversion(db, q.id, "so-2") is False
    db.rollback()

    db.expire_all()
    fresh = db.get(Quote, q.id)
    assert fresh.status == QuoteStatus.CONVERTED
    assert fresh.sales_order_id == "so-1"
    assert fresh.converted_at is not None


def test_revert_conversion_only_matches_the_linked_order(db, make_quote):
    q = make_quote(QuoteStatus.CONVERTED, sales_order_id="so-1")
    assert sm.revert_conversion(db, q.id, "so-other") is False
    assert sm.revert_conversion(db, q.id, "so-1") is True
    db.commit()
    db.expire_all()
    fresh = db.get(Quote, q.id)
    assert fresh.status == QuoteStatus.ACCEPTED
    assert fresh.sales_order_id is None
