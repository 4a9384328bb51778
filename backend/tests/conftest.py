import os
import tempfile
from datetime import date, timedelta
from decimal import Decimal

import pytest

# main.py builds the app engine at import; keep it off the default Postgres URL
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(tempfile.gettempdir(), 'quote-engine-tests.db')}")

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from app.db import models  # noqa: E402,F401
from app.db.base import Base  # noqa: E402
from app.db.models.common import utcnow  # noqa: E402
from app.db.models.sales import Quote, QuoteLineItem, QuoteStatus  # noqa: E402
from app.db.session import get_db  # noqa: E402
from services.inventory.availability import set_balance  # noqa: E402

_STAMPS = {
    QuoteStatus.SENT: ("sent_at",),
    QuoteStatus.ACCEPTED: ("sent_at", "accepted_at"),
    QuoteStatus.REJECTED: ("sent_at", "rejected_at"),
    QuoteStatus.CONVERTED: ("sent_at", "accepted_at", "converted_at"),
}


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'quotes.db'}", future=True)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def make_quote(db):
    """Persist a quote directly in any status, bypassing the lifecycle."""
    counter = {"n": 0}

    def _make(status=QuoteStatus.DRAFT, lines=(("prod-a", "2", "250.00"),), *, contact_id="contact-1",
              currency="USD", valid_until=None, tax_rate="0", sales_order_id=None,
              shipping_address=None, billing_address=None):
        counter["n"] += 1
        q = Quote(
            quote_number=f"Q-TEST-{counter['n']:04d}",
            contact_id=contact_id,
            currency=currency,
            status=status,
            quote_date=date.today(),
            valid_until=valid_until if valid_until is not None else date.today() + timedelta(days=30),
            sales_order_id=sales_order_id,
            shipping_address=shipping_address,
            billing_address=billing_address,
            meta={},
        )
        for stamp in _STAMPS.get(status, ()):
            setattr(q, stamp, utcnow())
        for i, (product_id, qty, price) in enumerate(lines, start=1):
            q.items.append(QuoteLineItem(line_number=i, product_id=product_id, quantity=Decimal(qty),
                                         list_price=Decimal(price), unit_price=Decimal(price),
                                         tax_rate=Decimal(tax_rate), meta={}))
        q.recalculate_totals()
        db.add(q)
        db.commit()
        db.refresh(q)
        return q

    return _make


@pytest.fixture
def stock(db):
    def _stock(product_id, qty, location_code="MAIN"):
        return set_balance(db, product_id=product_id, location_code=location_code, qty=qty)
    return _stock


@pytest.fixture
def client(session_factory):
    from main import app
    from services.quotes.api import get_orchestrator
    from services.quotes.orchestrator import ConversionOrchestrator

    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_orchestrator] = lambda: ConversionOrchestrator()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
