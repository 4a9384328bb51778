from decimal import Decimal

from app.db.models.sales import QuoteStatus


def _create(client, **extra):
    body = {
        "contact_id": "c-1",
        "lines": [
            {"product_id": "prod-a", "quantity": "2", "unit_price": "250", "tax_rate": "16"},
            {"product_id": "prod-b", "quantity": "5", "unit_price": "100", "tax_rate": "16"},
        ],
        **extra,
    }
    r = client.post("/quotes", json=body, headers={"X-Actor": "alice"})
    assert r.status_code == 200, r.text
    return r.json()


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_quote_lifecycle_through_conversion(client):
    q = _create(client)
    assert q["status"] == "draft"
    assert Decimal(q["total_amount"]) == Decimal("1160")
    assert q["can_edit"] is True
    assert "send" in q["allowed_actions"]

    r = client.post(f"/quotes/{q['id']}/send")
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "sent"

    r = client.post(f"/quotes/{q['id']}/accept")
    assert r.json()["data"]["status"] == "accepted"
    assert r.json()["data"]["can_edit"] is False
    assert "convert" in r.json()["data"]["allowed_actions"]

    r = client.post(f"/quotes/{q['id']}/convert")
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    assert data["quote"]["status"] == "converted"
    assert data["quote"]["sales_order_id"] == data["sales_order"]["id"]
    assert data["quote"]["allowed_actions"] == []

    so = client.get(f"/sales/orders/{data['sales_order']['id']}").json()
    assert so["quote_id"] == q["id"]
    assert Decimal(so["total_amount"]) == Decimal("1160")

    r = client.post(f"/quotes/{q['id']}/convert")
    assert r.status_code == 409
    assert r.json()["error"] == "NotConvertible"


def test_error_mapping(client):
    r = client.get("/quotes/does-not-exist")
    assert r.status_code == 404
    assert r.json()["error"] == "NotFound"

    empty = _create(client, lines=[])
    r = client.post(f"/quotes/{empty['id']}/send")
    assert r.status_code == 422
    assert r.json()["error"] == "EmptyQuote"

    q = _create(client)
    client.post(f"/quotes/{q['id']}/reject", json={"reason": "too expensive"})
    r = client.post(f"/quotes/{q['id']}/accept")
    assert r.status_code == 409
    body = r.json()
    assert body["error"] == "IllegalTransition"
    assert body["from_status"] == "rejected"
    assert body["event"] == "accept"

    r = client.patch(f"/quotes/{q['id']}", json={"notes": "x"})
    assert r.status_code == 409
    assert r.json()["error"] == "InvalidState"


def test_request_validation(client):
    r = client.post("/quotes", json={"contact_id": "c-1", "lines": [{"product_id": "p", "quantity": "0",
                                                                     "unit_price": "1"}]})
    assert r.status_code == 422


def test_expired_deadline_header(client):
    q = _create(client)
    client.post(f"/quotes/{q['id']}/accept")
    r = client.post(f"/quotes/{q['id']}/convert", headers={"X-Deadline-Ms": "-1"})
    assert r.status_code == 504
    assert r.json()["error"] == "DeadlineExceeded"
    assert client.get(f"/quotes/{q['id']}").json()["status"] == "accepted"


def test_line_item_routes(client):
    q = _create(client)
    r = client.post(f"/quotes/{q['id']}/items", json={"product_id": "prod-c", "quantity": "1", "unit_price": "40"})
    assert r.status_code == 200
    item = r.json()["item"]
    assert item["line_number"] == 3
    assert Decimal(r.json()["quote"]["subtotal_amount"]) == Decimal("1040")

    r = client.patch(f"/quote-items/{item['id']}", json={"quantity": "3"})
    assert Decimal(r.json()["quote"]["subtotal_amount"]) == Decimal("1120")

    r = client.delete(f"/quote-items/{item['id']}")
    assert r.json()["quote"]["items_count"] == 2


def test_duplicate_route(client):
    q = _create(client)
    client.post(f"/quotes/{q['id']}/send")
    r = client.post(f"/quotes/{q['id']}/duplicate")
    copy = r.json()["data"]
    assert copy["id"] != q["id"]
    assert copy["status"] == "draft"
    assert copy["sent_at"] is None
    assert copy["duplicated_from_id"] == q["id"]
    assert len(copy["items"]) == 2


def test_purchase_order_route(client):
    q = _create(client, lines=[{"product_id": "prod-a", "quantity": "50", "unit_price": "1"}])
    client.post("/inventory/balances", json={"product_id": "prod-a", "location_code": "MAIN", "qty": "30"})
    client.post(f"/quotes/{q['id']}/accept")

    r = client.post(f"/quotes/{q['id']}/generate-purchase-order")
    assert r.status_code == 200, r.text
    po_ref = r.json()["data"]["purchase_order"]

    po = client.get(f"/purchasing/purchase-orders/{po_ref['id']}").json()
    assert [(ln["product_id"], Decimal(ln["quantity"])) for ln in po["lines"]] == [("prod-a", Decimal("20"))]
    assert client.get(f"/quotes/{q['id']}").json()["purchase_order_id"] == po_ref["id"]

    client.post("/inventory/balances", json={"product_id": "prod-a", "location_code": "MAIN", "qty": "80"})
    r = client.post(f"/quotes/{q['id']}/generate-purchase-order")
    assert r.json()["data"]["action"] == "none"


def test_conversion_routes(client):
    r = client.post("/product-conversions", json={
        "source_product_id": "flour-50kg", "destination_product_id": "flour-1kg",
        "conversion_factor": "50", "waste_percentage": "2",
    })
    assert r.status_code == 200, r.text
    conv = r.json()
    assert Decimal(conv["net_factor"]) == Decimal("49")
    assert Decimal(conv["waste_factor"]) == Decimal("1")

    r = client.get(f"/product-conversions/{conv['id']}/preview", params={"source_quantity": "10",
                                                                       "destination_quantity": "100"})
    body = r.json()
    assert Decimal(body["yield"]["net_quantity"]) == Decimal("490")
    assert Decimal(body["yield"]["waste_quantity"]) == Decimal("10")
    assert body["required_source"]["source_quantity"] == "2.0408"

    r = client.get("/product-conversions/resolve", params={"source_product_id": "flour-50kg",
                                                           "destination_product_id": "flour-1kg"})
    assert r.json()["id"] == conv["id"]

    r = client.post("/product-conversions", json={
        "source_product_id": "flour-50kg", "destination_product_id": "flour-1kg", "conversion_factor": "25",
    })
    assert r.status_code == 422
    assert r.json()["error"] == "ValidationFailed"

    r = client.get("/product-conversions/resolve", params={"source_product_id": "x", "destination_product_id": "y"})
    assert r.status_code == 404


def test_full_waste_preview_is_division_by_zero(client):
    conv = client.post("/product-conversions", json={
        "source_product_id": "log", "destination_product_id": "plank",
        "conversion_factor": "4", "waste_percentage": "100",
    }).json()
    r = client.get(f"/product-conversions/{conv['id']}/preview", params={"destination_quantity": "1"})
    assert r.status_code == 422
    assert r.json()["error"] == "DivisionByZero"


def test_summary_and_expiring(client):
    q = _create(client)
    client.post(f"/quotes/{q['id']}/send")
    _create(client)

    s = client.get("/quotes/summary").json()
    assert s["total"] == 2
    assert s[QuoteStatus.SENT.value] == 1
    assert s[QuoteStatus.DRAFT.value] == 1

    r = client.get("/quotes/expiring-soon", params={"days": 60}).json()
    assert [x["id"] for x in r["data"]] == [q["id"]]


def test_null_line_field_is_refused(client):
    q = _create(client)
    item = q["items"][0]
    r = client.patch(f"/quote-items/{item['id']}", json={"unit_price": None})
    assert r.status_code == 422
    assert r.json()["error"] == "ValidationFailed"
    assert r.json()["field"] == "unit_price"
    assert client.get(f"/quotes/{q['id']}").json()["items"][0]["unit_price"] == item["unit_price"]


def test_header_patch_on_missing_quote(client):
    r = client.patch("/quotes/nope", json={"notes": "x"})
    assert r.status_code == 404
    assert r.json()["error"] == "NotFound"


def test_line_prices_and_bulk_update(client):
    q = _create(client, lines=[
        {"product_id": "prod-a", "quantity": "4", "unit_price": "25", "list_price": "30"},
        {"product_id": "prod-b", "quantity": "1", "unit_price": "10"},
    ])
    first, second = q["items"]
    assert Decimal(first["list_price"]) == Decimal("30")
    assert Decimal(first["price_variance"]) == Decimal("-5")
    assert first["effective_discount_percentage"] == "16.67"
    assert Decimal(second["list_price"]) == Decimal("10")

    r = client.patch(f"/quotes/{q['id']}/items", json={"items": [
        {"id": first["id"], "unit_price": "30"},
        {"id": second["id"], "quantity": "2"},
    ]})
    assert r.status_code == 200, r.text
    assert Decimal(r.json()["data"]["subtotal_amount"]) == Decimal("140")

    r = client.patch(f"/quotes/{q['id']}/items", json={"items": [
        {"id": first["id"], "quantity": "9"},
        {"id": second["id"], "tax_rate": None},
    ]})
    assert r.status_code == 422
    assert Decimal(client.get(f"/quotes/{q['id']}").json()["subtotal_amount"]) == Decimal("140")


def test_convert_with_address_override(client):
    ship = {"street": "1 Dock Rd", "city": "Leith", "postal_code": "EH6", "country": "GB"}
    q = _create(client, shipping_address=ship, billing_address=ship)
    assert q["shipping_address"]["city"] == "Leith"
    client.post(f"/quotes/{q['id']}/accept")

    site = {"street": "Unit 7, North Quay", "city": "Aberdeen", "country": "GB", "gate": "3"}
    r = client.post(f"/quotes/{q['id']}/convert", json={"shipping_address": site})
    assert r.status_code == 200, r.text
    so = client.get(f"/sales/orders/{r.json()['data']['sales_order']['id']}").json()
    assert so["shipping_address"]["city"] == "Aberdeen"
    assert so["shipping_address"]["gate"] == "3"
    assert so["billing_address"]["city"] == "Leith"


def test_list_filters(client):
    old = _create(client, quote_date="2026-01-05")
    new = _create(client, quote_date="2026-03-20")

    r = client.get("/quotes", params={"search": new["quote_number"][-6:].lower()})
    assert [x["id"] for x in r.json()] == [new["id"]]

    r = client.get("/quotes", params={"date_from": "2026-01-01", "date_to": "2026-01-31"})
    assert [x["id"] for x in r.json()] == [old["id"]]

    r = client.get("/quotes", params={"date_from": "2026-02-01"})
    assert [x["id"] for x in r.json()] == [new["id"]]


def test_conversion_patch_with_null_factor(client):
    conv = client.post("/product-conversions", json={
        "source_product_id": "flour-50kg", "destination_product_id": "flour-1kg", "conversion_factor": "50",
    }).json()
    r = client.patch(f"/product-conversions/{conv['id']}", json={"conversion_factor": None})
    assert r.status_code == 422
    assert r.json()["error"] == "ValidationFailed"
    r = client.patch(f"/product-conversions/{conv['id']}", json={"is_active": None})
    assert r.status_code == 422
    assert client.get(f"/product-conversions/{conv['id']}").json()["conversion_factor"] == conv["conversion_factor"]
