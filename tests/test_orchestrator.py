"""Tests for the settlement orchestrator."""

import threading
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import stripe

from settlement_service.exceptions import (
    BusinessRuleViolation,
    ResourceNotFound,
    SecurityRejection,
    UpstreamFailure,
    ValidationFailure,
)
from settlement_service.orchestrator import SettlementOrchestrator
from settlement_service.schemas import (
    CalculateOrderRequest,
    CheckoutRequest,
    Confirmation,
    CreateOrderRequest,
    DiscountCreate,
    GatewayName,
    MembershipTypeCreate,
    ObligationStatus,
    OrderStatus,
    PaymentRequest,
    ValidateDiscountsRequest,
)
from settlement_service.stripe_gateway import StripeGateway

FAR_FUTURE = datetime(2099, 1, 1, tzinfo=timezone.utc)


def place(orchestrator, coupon_codes=("OPEN10",), customer_id=None, quantity=5):
    return orchestrator.place_order(
        CreateOrderRequest(
            items=[{"price_id": 1, "quantity": quantity}], coupon_codes=list(coupon_codes), customer_id=customer_id
        )
    )


def open_vnpay(orchestrator, order_id):
    return orchestrator.open_payment(order_id, PaymentRequest(gateway=GatewayName.VNPAY)).obligation


def open_stripe(orchestrator, order_id):
    return orchestrator.open_payment(order_id, PaymentRequest(gateway=GatewayName.STRIPE)).obligation


def paid(amount="460000", change="0", source="test") -> Confirmation:
    return Confirmation(
        status=ObligationStatus.PAID,
        amount_collected=Decimal(amount),
        change_amount=Decimal(change),
        source=source,
    )


def uses(store, code="OPEN10"):
    return store.find_discount_by_code(code).current_uses


def test_validate_discounts(orchestrator):
    result = orchestrator.validate_discounts(
        ValidateDiscountsRequest(coupon_codes=["open10", "NOPE"], total_amount=Decimal("500000"), product_count=5)
    )

    assert [r.coupon_code for r in result.valid] == ["OPEN10"]
    assert result.valid[0].discount_amount == Decimal("40000")
    assert [r.coupon_code for r in result.invalid] == ["NOPE"]


def test_calculate_does_not_persist(orchestrator, store):
    preview = orchestrator.calculate(
        CalculateOrderRequest(items=[{"price_id": 2, "quantity": 1}], coupon_codes=["OPEN10"])
    )

    assert preview.subtotal == Decimal("50000")
    assert preview.discounts == []
    assert preview.final_amount == Decimal("50000")
    assert "below minimum" in preview.rejected[0].reason
    assert store.list_orders() == []


def test_place_order_with_capped_discount(orchestrator, store):
    order = place(orchestrator)

    assert order.status is OrderStatus.PROCESSING
    assert order.subtotal == Decimal("500000")
    assert order.discount_amount == Decimal("40000")
    assert order.final_amount == Decimal("460000")
    assert order.applied_discounts[0].coupon_code == "OPEN10"
    assert uses(store) == 0


def test_place_order_rejects_invalid_coupon(orchestrator, store):
    with pytest.raises(BusinessRuleViolation) as exc_info:
        place(orchestrator, coupon_codes=("OPEN10", "GHOST"))

    assert exc_info.value.rule == "Invalid discount"
    assert {r["coupon_code"] for r in exc_info.value.detail["invalid"]} == {"GHOST"}
    assert store.list_orders() == []


def test_membership_discount_applied_before_coupons(orchestrator, store):
    """A 5% gold member buying 500,000 with OPEN10 gets 25,000 + 40,000 off."""
    gold = orchestrator.create_membership_type(
        MembershipTypeCreate(type="Gold", discount_value=Decimal("5"), valid_until=FAR_FUTURE)
    )
    orchestrator.assign_membership(9, gold.membership_type_id)

    order = place(orchestrator, customer_id=9)

    assert order.membership.type == "Gold"
    assert order.membership.discount_amount == Decimal("25000")
    assert order.discount_amount == Decimal("65000")
    assert order.final_amount == Decimal("435000")


def test_expired_or_inactive_membership_ignored(orchestrator):
    expired = orchestrator.create_membership_type(
        MembershipTypeCreate(type="Silver", discount_value=Decimal("5"), valid_until=datetime(2000, 1, 1))
    )
    inactive = orchestrator.create_membership_type(
        MembershipTypeCreate(type="Bronze", discount_value=Decimal("3"), is_active=False)
    )
    orchestrator.assign_membership(9, expired.membership_type_id)
    orchestrator.assign_membership(10, inactive.membership_type_id)

    for customer_id in (9, 10):
        preview = orchestrator.calculate(
            CalculateOrderRequest(items=[{"price_id": 1, "quantity": 5}], customer_id=customer_id)
        )
        assert preview.membership is None
        assert preview.final_amount == Decimal("500000")


def test_assign_unknown_membership(orchestrator):
    with pytest.raises(ResourceNotFound):
        orchestrator.assign_membership(9, 404)


def test_place_order_unknown_price(orchestrator):
    with pytest.raises(ResourceNotFound):
        orchestrator.place_order(CreateOrderRequest(items=[{"price_id": 404, "quantity": 1}]))


def test_cash_checkout_completes_order(orchestrator, store):
    """Tendering 500,000 against 460,000 settles the order with 40,000 change."""
    result = orchestrator.checkout(
        CheckoutRequest(
            items=[{"price_id": 1, "quantity": 5}],
            coupon_codes=["OPEN10"],
            gateway=GatewayName.CASH,
            amount_tendered=Decimal("500000"),
        )
    )

    assert result.obligation.status is ObligationStatus.PAID
    assert result.obligation.change_amount == Decimal("40000")
    assert result.obligation.amount_collected == Decimal("500000")
    assert result.order.status is OrderStatus.COMPLETED
    assert result.order.amount_paid == Decimal("500000")
    assert result.order.change_amount == Decimal("40000")
    assert result.order.final_amount == Decimal("460000")
    assert uses(store) == 1


def test_cash_checkout_insufficient_leaves_order_open(orchestrator, store):
    request = CheckoutRequest(
        items=[{"price_id": 1, "quantity": 5}],
        coupon_codes=["OPEN10"],
        gateway=GatewayName.CASH,
        amount_tendered=Decimal("400000"),
    )

    with pytest.raises(BusinessRuleViolation) as exc_info:
        orchestrator.checkout(request)

    order_id = exc_info.value.detail["order_id"]
    assert exc_info.value.rule == "insufficient amount"
    assert store.get_order(order_id).status is OrderStatus.PROCESSING
    assert store.obligations_for_order(order_id) == []

    retry = orchestrator.open_payment(
        order_id, PaymentRequest(gateway=GatewayName.CASH, amount_tendered=Decimal("460000"))
    )
    assert retry.order.status is OrderStatus.COMPLETED
    assert retry.obligation.change_amount == Decimal("0")


def test_cash_checkout_without_tender_places_no_order(orchestrator, store):
    request = CheckoutRequest(items=[{"price_id": 1, "quantity": 5}], gateway=GatewayName.CASH)

    with pytest.raises(ValidationFailure):
        orchestrator.checkout(request)

    assert store.list_orders() == []


def test_checkout_with_unconfigured_stripe_places_no_order(store, gateways):
    gateways[GatewayName.STRIPE] = StripeGateway(client=None, webhook_secret="whsec_x")
    orchestrator = SettlementOrchestrator(store, gateways)

    with pytest.raises(UpstreamFailure):
        orchestrator.checkout(CheckoutRequest(items=[{"price_id": 1, "quantity": 5}], gateway=GatewayName.STRIPE))

    assert store.list_orders() == []


def test_checkout_gateway_failure_reports_order_id(orchestrator, store, stripe_client):
    stripe_client.payment_intents.create.side_effect = stripe.APIConnectionError("connection reset")

    with pytest.raises(UpstreamFailure) as exc_info:
        orchestrator.checkout(CheckoutRequest(items=[{"price_id": 1, "quantity": 5}], gateway=GatewayName.STRIPE))

    order_id = exc_info.value.detail["order_id"]
    assert store.get_order(order_id).status is OrderStatus.PROCESSING
    assert store.obligations_for_order(order_id) == []


def test_fully_discounted_order_cannot_use_remote_gateway(orchestrator, store):
    store.add_discount(
        DiscountCreate(
            name="On the house",
            coupon_code="FREE100",
            discount_value=Decimal("100"),
            max_discount_amount=Decimal("1000000"),
            valid_until=FAR_FUTURE,
        )
    )
    request = CheckoutRequest(items=[{"price_id": 1, "quantity": 5}], coupon_codes=["FREE100"], gateway=GatewayName.VNPAY)

    with pytest.raises(BusinessRuleViolation, match="greater than 0") as exc_info:
        orchestrator.checkout(request)

    order_id = exc_info.value.detail["order_id"]
    assert store.get_order(order_id).final_amount == Decimal("0")
    assert store.obligations_for_order(order_id) == []

    settled = orchestrator.open_payment(order_id, PaymentRequest(gateway=GatewayName.CASH, amount_tendered=Decimal("0")))
    assert settled.order.status is OrderStatus.COMPLETED


def test_open_payment_on_terminal_order(orchestrator):
    order = place(orchestrator)
    orchestrator.open_payment(order.order_id, PaymentRequest(gateway=GatewayName.CASH, amount_tendered=Decimal("460000")))

    with pytest.raises(BusinessRuleViolation, match="already completed"):
        open_vnpay(orchestrator, order.order_id)


def test_unconfigured_gateway(store):
    orchestrator = SettlementOrchestrator(store, {})
    order = place(orchestrator)

    with pytest.raises(ValidationFailure):
        open_vnpay(orchestrator, order.order_id)


def test_confirmation_is_applied_once(orchestrator, store):
    order = place(orchestrator)
    obligation = open_vnpay(orchestrator, order.order_id)

    assert orchestrator.on_confirmation(obligation.obligation_id, paid()) is True
    assert orchestrator.on_confirmation(obligation.obligation_id, paid()) is False

    assert store.get_order(order.order_id).status is OrderStatus.COMPLETED
    assert store.get_obligation(obligation.obligation_id).status is ObligationStatus.PAID
    assert uses(store) == 1


def test_cancelled_confirmation_allows_retry(orchestrator, store):
    order = place(orchestrator)
    first = open_vnpay(orchestrator, order.order_id)

    abandoned = Confirmation(status=ObligationStatus.CANCELLED, source="test")
    assert orchestrator.on_confirmation(first.obligation_id, abandoned)
    assert store.get_order(order.order_id).status is OrderStatus.PROCESSING

    second = open_stripe(orchestrator, order.order_id)
    orchestrator.on_confirmation(second.obligation_id, paid())

    assert store.get_order(order.order_id).status is OrderStatus.COMPLETED
    assert orchestrator.on_confirmation(first.obligation_id, paid()) is False


def test_cancelled_confirmation_can_cancel_order(orchestrator, store):
    order = place(orchestrator)
    obligation = open_vnpay(orchestrator, order.order_id)

    orchestrator.on_confirmation(
        obligation.obligation_id, Confirmation(status=ObligationStatus.CANCELLED, source="test"), cancel_order=True
    )

    assert store.get_order(order.order_id).status is OrderStatus.CANCELLED


def test_completion_voids_other_pending_obligations(orchestrator, store):
    """A second PAID obligation can never settle an order twice."""
    order = place(orchestrator)
    vnpay_obligation = open_vnpay(orchestrator, order.order_id)
    stripe_obligation = open_stripe(orchestrator, order.order_id)

    orchestrator.on_confirmation(vnpay_obligation.obligation_id, paid())

    assert store.get_obligation(stripe_obligation.obligation_id).status is ObligationStatus.CANCELLED
    assert orchestrator.on_confirmation(stripe_obligation.obligation_id, paid()) is False

    statuses = {o.gateway: o.status for o in store.obligations_for_order(order.order_id)}
    assert statuses == {GatewayName.VNPAY: ObligationStatus.PAID, GatewayName.STRIPE: ObligationStatus.CANCELLED}
    assert uses(store) == 1


def test_cancel_order_voids_pending_obligations(orchestrator, store):
    order = place(orchestrator)
    obligation = open_vnpay(orchestrator, order.order_id)

    cancelled = orchestrator.cancel_order(order.order_id)

    assert cancelled.status is OrderStatus.CANCELLED
    assert store.get_obligation(obligation.obligation_id).status is ObligationStatus.CANCELLED
    assert orchestrator.on_confirmation(obligation.obligation_id, paid()) is False
    assert store.get_order(order.order_id).status is OrderStatus.CANCELLED
    assert uses(store) == 0


def test_cancel_completed_order_rejected(orchestrator):
    order = place(orchestrator)
    orchestrator.on_confirmation(open_vnpay(orchestrator, order.order_id).obligation_id, paid())

    with pytest.raises(BusinessRuleViolation, match="Cannot cancel a completed order"):
        orchestrator.cancel_order(order.order_id)


def test_usage_cap_holds_under_completion(orchestrator, store):
    """Two orders evaluated before either completes cannot push usage past max_uses."""
    store.add_discount(
        DiscountCreate(
            name="One shot",
            coupon_code="ONCE",
            discount_value=Decimal("5"),
            max_discount_amount=Decimal("100000"),
            max_uses=1,
            valid_until=datetime(2099, 1, 1, tzinfo=timezone.utc),
        )
    )
    first = place(orchestrator, coupon_codes=("ONCE",))
    second = place(orchestrator, coupon_codes=("ONCE",))

    for order in (first, second):
        orchestrator.on_confirmation(open_vnpay(orchestrator, order.order_id).obligation_id, paid("475000"))

    assert uses(store, "ONCE") == 1
    assert store.get_order(second.order_id).status is OrderStatus.COMPLETED


def test_per_customer_usage_recorded(orchestrator, store):
    order = place(orchestrator, customer_id=9)
    orchestrator.on_confirmation(open_vnpay(orchestrator, order.order_id).obligation_id, paid())

    assert store.customer_usage(9) == {1: 1}
    assert store.customer_usage(10) == {}


def test_vnpay_return_is_authoritative_without_ipn(orchestrator, store, vnpay_query):
    order = place(orchestrator)
    obligation = open_vnpay(orchestrator, order.order_id)
    query = vnpay_query(obligation)

    first = orchestrator.handle_vnpay_return(query)
    replay = orchestrator.handle_vnpay_return(query)

    assert first.processed is True
    assert first.order_status is OrderStatus.COMPLETED
    assert replay.processed is False
    assert replay.obligation_status is ObligationStatus.PAID
    assert uses(store) == 1


def test_vnpay_failed_return_keeps_order_open(orchestrator, store, vnpay_query):
    order = place(orchestrator)
    obligation = open_vnpay(orchestrator, order.order_id)

    outcome = orchestrator.handle_vnpay_return(vnpay_query(obligation, response_code="24", transaction_status="02"))

    assert outcome.message == "Payment failed"
    assert outcome.obligation_status is ObligationStatus.CANCELLED
    assert outcome.order_status is OrderStatus.PROCESSING


def test_vnpay_return_tampered(orchestrator, store, vnpay_query):
    order = place(orchestrator)
    obligation = open_vnpay(orchestrator, order.order_id)
    query = vnpay_query(obligation)
    query["vnp_ResponseCode"] = "24"

    with pytest.raises(SecurityRejection):
        orchestrator.handle_vnpay_return(query)

    assert store.get_obligation(obligation.obligation_id).status is ObligationStatus.PROCESSING


def test_vnpay_return_is_advisory_with_ipn(store, gateways, vnpay_query):
    orchestrator = SettlementOrchestrator(store, gateways, vnpay_ipn_enabled=True)
    order = place(orchestrator)
    obligation = open_vnpay(orchestrator, order.order_id)
    query = vnpay_query(obligation)

    advisory = orchestrator.handle_vnpay_return(query)
    assert advisory.processed is False
    assert advisory.order_status is OrderStatus.PROCESSING

    assert orchestrator.handle_vnpay_ipn(query) == {"RspCode": "00", "Message": "Confirm Success"}
    assert store.get_order(order.order_id).status is OrderStatus.COMPLETED
    assert orchestrator.handle_vnpay_ipn(query)["RspCode"] == "02"


def test_vnpay_ipn_error_codes(orchestrator, vnpay_query):
    order = place(orchestrator)
    obligation = open_vnpay(orchestrator, order.order_id)

    tampered = vnpay_query(obligation)
    tampered["vnp_Amount"] = "1"
    unknown = vnpay_query(obligation.model_copy(update={"reference": "ORDER_999_1"}))
    wrong_amount = vnpay_query(obligation, amount=100)

    assert orchestrator.handle_vnpay_ipn(tampered)["RspCode"] == "97"
    assert orchestrator.handle_vnpay_ipn(unknown)["RspCode"] == "01"
    assert orchestrator.handle_vnpay_ipn(wrong_amount)["RspCode"] == "04"
    assert orchestrator.get_order(order.order_id).status is OrderStatus.PROCESSING


def test_stripe_tampered_webhook_leaves_state_untouched(orchestrator, store, stripe_event):
    order = place(orchestrator)
    obligation = open_stripe(orchestrator, order.order_id)
    payload, signature = stripe_event(order_id=str(order.order_id))

    with pytest.raises(SecurityRejection):
        orchestrator.handle_stripe_webhook(payload.replace("succeeded", "canceled"), signature)

    assert store.get_order(order.order_id).status is OrderStatus.PROCESSING
    assert store.get_obligation(obligation.obligation_id).status is ObligationStatus.PROCESSING


def test_stripe_webhook_applied_once(orchestrator, store, stripe_event):
    order = place(orchestrator)
    open_stripe(orchestrator, order.order_id)
    payload, signature = stripe_event(order_id=str(order.order_id))

    first = orchestrator.handle_stripe_webhook(payload, signature)
    replay = orchestrator.handle_stripe_webhook(payload, signature)

    assert first.processed is True
    assert first.order_status is OrderStatus.COMPLETED
    assert replay.processed is False
    assert replay.message == "Event already processed"
    assert uses(store) == 1


def test_stripe_non_terminal_and_foreign_events(orchestrator, store, stripe_event):
    order = place(orchestrator)
    open_stripe(orchestrator, order.order_id)

    payload, signature = stripe_event(status="processing", event_type="payment_intent.processing", event_id="evt_2")
    outcome = orchestrator.handle_stripe_webhook(payload, signature)
    assert outcome.processed is False
    assert outcome.order_status is OrderStatus.PROCESSING

    payload, signature = stripe_event(intent_id="pi_unknown", event_id="evt_3")
    with pytest.raises(ResourceNotFound):
        orchestrator.handle_stripe_webhook(payload, signature)

    payload, signature = stripe_event(order_id="77", event_id="evt_4")
    with pytest.raises(BusinessRuleViolation, match="Order reference mismatch"):
        orchestrator.handle_stripe_webhook(payload, signature)


def test_concurrent_webhook_deliveries(orchestrator, store, stripe_event):
    """Concurrent deliveries of the same and of distinct events settle the order exactly once."""
    order = place(orchestrator)
    open_stripe(orchestrator, order.order_id)
    deliveries = [stripe_event(event_id=f"evt_{i % 3}") for i in range(12)]
    outcomes = []
    barrier = threading.Barrier(len(deliveries))

    def deliver(payload, signature):
        barrier.wait()
        outcomes.append(orchestrator.handle_stripe_webhook(payload, signature))

    threads = [threading.Thread(target=deliver, args=delivery) for delivery in deliveries]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for o in outcomes if o.processed) == 1
    assert len(outcomes) == 12
    assert store.get_order(order.order_id).status is OrderStatus.COMPLETED
    assert uses(store) == 1


def test_list_orders_and_payments(orchestrator):
    first = place(orchestrator)
    second = place(orchestrator)
    open_vnpay(orchestrator, first.order_id)
    orchestrator.cancel_order(second.order_id)

    listing = orchestrator.list_orders(page=1, limit=1)
    cancelled = orchestrator.list_orders(status=OrderStatus.CANCELLED)
    payments = orchestrator.list_payments(order_id=first.order_id)

    assert [o.order_id for o in listing["items"]] == [second.order_id]
    assert listing["pagination"]["total"] == 2
    assert listing["pagination"]["hasNext"] is True
    assert [o.order_id for o in cancelled["items"]] == [second.order_id]
    assert payments["pagination"]["total"] == 1


def test_events_published_on_completion(store, gateways):
    producer = MagicMock()
    orchestrator = SettlementOrchestrator(store, gateways, producer=producer)

    orchestrator.checkout(
        CheckoutRequest(items=[{"price_id": 2, "quantity": 1}], gateway=GatewayName.CASH, amount_tendered=Decimal("50000"))
    )

    published = [call.args[0].event_type for call in producer.publish.call_args_list]
    assert published == ["payment.confirmed", "order.completed"]


def test_publish_failure_does_not_roll_back(store, gateways):
    producer = MagicMock()
    producer.publish.side_effect = BufferError("queue full")
    orchestrator = SettlementOrchestrator(store, gateways, producer=producer)

    result = orchestrator.checkout(
        CheckoutRequest(items=[{"price_id": 2, "quantity": 1}], gateway=GatewayName.CASH, amount_tendered=Decimal("50000"))
    )

    assert result.order.status is OrderStatus.COMPLETED
