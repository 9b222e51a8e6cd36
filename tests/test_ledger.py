"""Tests for order totals and the order state machine."""

from decimal import Decimal

import pytest

from settlement_service import ledger
from settlement_service.exceptions import BusinessRuleViolation, ResourceNotFound
from settlement_service.schemas import AppliedDiscount, AppliedMembership, CartLine, OrderStatus


def applied(amount, discount_id=1) -> AppliedDiscount:
    return AppliedDiscount(
        discount_id=discount_id,
        coupon_code=f"CODE{discount_id}",
        name="Test",
        discount_value=Decimal("10"),
        discount_amount=Decimal(amount),
    )


@pytest.fixture
def items(store):
    return ledger.price_lines(
        [CartLine(price_id=1, quantity=3), CartLine(price_id=2, quantity=4, option="sliced")], store.get_price
    )


def test_price_lines_freezes_catalog_prices(items):
    assert [i.product_name for i in items] == ["Croissant", "Baguette"]
    assert items[0].unit_price == Decimal("100000")
    assert items[1].subtotal == Decimal("200000")
    assert items[1].option == "sliced"


def test_price_lines_errors(store):
    with pytest.raises(BusinessRuleViolation, match="at least one product"):
        ledger.price_lines([], store.get_price)
    with pytest.raises(ResourceNotFound):
        ledger.price_lines([CartLine(price_id=99, quantity=1)], store.get_price)
    with pytest.raises(BusinessRuleViolation, match="not active"):
        ledger.price_lines([CartLine(price_id=3, quantity=1)], store.get_price)


def test_totals(items):
    totals = ledger.compute_totals(items, [applied("40000"), applied("25000", 2)])

    assert totals.subtotal == Decimal("500000")
    assert totals.discount_amount == Decimal("65000")
    assert totals.final_amount == totals.subtotal - totals.discount_amount


def test_final_amount_never_negative(items):
    totals = ledger.compute_totals(items, [applied("400000"), applied("400000", 2)])
    assert totals.final_amount == Decimal("0")


def test_open_order(items):
    order = ledger.open_order(7, items, [applied("40000")], customer_id=3, note="no sugar")

    assert order.status is OrderStatus.PROCESSING
    assert order.final_amount == Decimal("460000")
    assert order.product_count == 2
    assert order.created_at == order.updated_at


def test_open_order_without_items():
    with pytest.raises(BusinessRuleViolation):
        ledger.open_order(1, [])


def test_complete_records_amounts(items):
    order = ledger.open_order(1, items, [applied("40000")])

    completed = ledger.complete(order, Decimal("500000"), Decimal("40000"))

    assert completed.status is OrderStatus.COMPLETED
    assert completed.amount_paid == Decimal("500000")
    assert completed.change_amount == Decimal("40000")
    assert completed.final_amount == Decimal("460000")
    assert completed.completed_at is not None
    assert order.status is OrderStatus.PROCESSING


def test_terminal_states_are_immutable(items):
    order = ledger.open_order(1, items)
    completed = ledger.complete(order, order.final_amount)
    cancelled = ledger.cancel(order)

    with pytest.raises(BusinessRuleViolation, match="already completed"):
        ledger.complete(completed, completed.final_amount)
    with pytest.raises(BusinessRuleViolation, match="Cannot cancel a completed order"):
        ledger.cancel(completed)
    with pytest.raises(BusinessRuleViolation, match="already been cancelled"):
        ledger.cancel(cancelled)
    with pytest.raises(BusinessRuleViolation, match="already been cancelled"):
        ledger.complete(cancelled, cancelled.final_amount)


def test_membership_counts_toward_discount(items):
    gold = AppliedMembership(
        membership_type_id=1, type="Gold", discount_value=Decimal("5"), discount_amount=Decimal("25000")
    )

    totals = ledger.compute_totals(items, [applied("40000")], gold)
    order = ledger.open_order(1, items, [applied("40000")], membership=gold)

    assert totals.discount_amount == Decimal("65000")
    assert order.final_amount == Decimal("435000")
    assert order.membership.type == "Gold"
