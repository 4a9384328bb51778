import json
from decimal import Decimal

import httpx
import pytest

from app.core.errors import DownstreamFailure
from services.purchasing.gateway import HttpPurchaseOrderGateway, PurchaseLineIn, PurchaseOrderIn
from services.sales.gateway import HttpSalesOrderGateway, OrderLineIn, SalesOrderIn, SalesOrderRef


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def _order():
    return SalesOrderIn(quote_id="q-1", contact_id="c-1", currency="USD", notes="From quote Q-1",
                        shipping_address={"street": "1 Dock Rd", "city": "Leith", "country": "GB"},
                        lines=[OrderLineIn(product_id="p-1", quantity=Decimal("2"), unit_price=Decimal("9.50"))])


def test_sales_order_created_provisional():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "so-77", "order_number": "SO-0077"})

    gw = HttpSalesOrderGateway("http://sales.local/api/", client=_client(handler))
    ref = gw.create_sales_order(None, _order())

    assert ref == SalesOrderRef(id="so-77", order_number="SO-0077")
    assert seen["method"] == "POST"
    assert seen["path"] == "/api/sales-orders"
    assert seen["body"]["status"] == "provisional"
    assert seen["body"]["quote_id"] == "q-1"
    assert seen["body"]["shipping_address"] == {"street": "1 Dock Rd", "city": "Leith", "country": "GB"}
    assert seen["body"]["billing_address"] is None
    assert seen["body"]["lines"][0] == {
        "product_id": "p-1", "quantity": "2", "unit_price": "9.50", "discount_amount": "0", "tax_amount": "0",
    }


def test_finalize_and_discard_paths():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        return httpx.Response(204)

    gw = HttpSalesOrderGateway("http://sales.local", client=_client(handler))
    ref = SalesOrderRef(id="so-1", order_number="SO-1")
    gw.finalize(ref)
    gw.discard(ref)
    assert calls == [("POST", "/sales-orders/so-1/confirm"), ("DELETE", "/sales-orders/so-1")]


def test_sales_error_status_is_downstream_failure():
    gw = HttpSalesOrderGateway("http://sales.local", client=_client(lambda r: httpx.Response(500, text="boom")))
    with pytest.raises(DownstreamFailure) as exc:
        gw.create_sales_order(None, _order())
    assert exc.value.context["status_code"] == 500


def test_sales_transport_error_is_downstream_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    gw = HttpSalesOrderGateway("http://sales.local", client=_client(handler))
    with pytest.raises(DownstreamFailure):
        gw.finalize(SalesOrderRef(id="so-1", order_number="SO-1"))


def test_sales_response_without_id():
    gw = HttpSalesOrderGateway("http://sales.local", client=_client(lambda r: httpx.Response(200, json={"ok": True})))
    with pytest.raises(DownstreamFailure):
        gw.create_sales_order(None, _order())


def test_purchase_order_created():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "po-5", "po_number": "PO-0005"})

    gw = HttpPurchaseOrderGateway("http://purchasing.local", client=_client(handler))
    ref = gw.create_purchase_order(None, PurchaseOrderIn(quote_id="q-1", lines=[
        PurchaseLineIn(product_id="p-1", quantity=Decimal("20")),
    ]))
    assert ref.id == "po-5"
    assert ref.po_number == "PO-0005"
    assert seen["path"] == "/purchase-orders"
    assert seen["body"]["lines"] == [{"product_id": "p-1", "quantity": "20"}]


def test_purchase_order_refused():
    gw = HttpPurchaseOrderGateway("http://purchasing.local", client=_client(lambda r: httpx.Response(409)))
    with pytest.raises(DownstreamFailure):
        gw.create_purchase_order(None, PurchaseOrderIn(quote_id="q-1"))
