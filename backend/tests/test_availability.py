from decimal import Decimal

from services.inventory.availability import (
    Availability,
    LocalInventoryGateway,
    StockAvailabilityChecker,
    classify,
    set_balance,
)


def test_classify():
    assert classify("p", Decimal("10"), Decimal("10")).status == Availability.SUFFICIENT
    assert classify("p", Decimal("10"), Decimal("25")).status == Availability.SUFFICIENT
    assert classify("p", Decimal("10"), Decimal("4")).status == Availability.INSUFFICIENT
    assert classify("p", Decimal("10"), Decimal("0")).status == Availability.UNAVAILABLE
    assert classify("p", Decimal("10"), None).status == Availability.UNAVAILABLE


def test_shortfall():
    assert classify("p", Decimal("50"), Decimal("30")).shortfall == Decimal("20")
    assert classify("p", Decimal("50"), Decimal("0")).shortfall == Decimal("50")
    assert classify("p", Decimal("50"), Decimal("60")).shortfall == Decimal("0")


def test_negative_balance_counts_as_unavailable():
    res = classify("p", Decimal("5"), Decimal("-3"))
    assert res.status == Availability.UNAVAILABLE
    assert res.available == Decimal("0")
    assert res.shortfall == Decimal("5")


def test_available_sums_locations_and_ignores_other_states(db, stock):
    stock("prod-a", "12", location_code="MAIN")
    stock("prod-a", "8", location_code="BACK")
    set_balance(db, product_id="prod-a", location_code="MAIN", qty="100", state="QC_HOLD")

    inv = LocalInventoryGateway()
    assert inv.available_quantity(db, "prod-a") == Decimal("20")
    assert inv.available_quantity(db, "prod-missing") == Decimal("0")


def test_set_balance_upserts(db, stock):
    first = stock("prod-a", "5")
    second = stock("prod-a", "9")
    assert first.id == second.id
    assert LocalInventoryGateway().available_quantity(db, "prod-a") == Decimal("9")


def test_checker_lines_are_independent(db, stock):
    stock("prod-a", "10")
    results = StockAvailabilityChecker().check(db, [("prod-a", "10"), ("prod-a", "10"), ("prod-b", "1")])
    assert [r.status for r in results] == [Availability.SUFFICIENT, Availability.SUFFICIENT, Availability.UNAVAILABLE]
    assert results[2].to_dict() == {
        "product_id": "prod-b", "status": "unavailable", "required": "1", "available": "0", "shortfall": "1",
    }
