"""Settlement orchestration.

Composes the discount evaluator, the order ledger and the payment gateways:
carts become priced orders, orders get payment obligations, and confirmations
from any gateway are applied exactly once per obligation.
"""

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, Optional, Union

from . import ledger
from .discounts import apply_membership, evaluate, lookup_candidates, to_applied
from .exceptions import (
    BusinessRuleViolation,
    ResourceNotFound,
    SecurityRejection,
    SettlementError,
    ValidationFailure,
)
from .gateways import PaymentGateway
from .logger import get_logger
from .producer import SettlementEventProducer
from .schemas import (
    AppliedDiscount,
    AppliedMembership,
    CalculateOrderRequest,
    CheckoutRequest,
    CheckoutResult,
    Confirmation,
    ConfirmationOutcome,
    CreateOrderRequest,
    Discount,
    DiscountCreate,
    EvaluationResult,
    GatewayName,
    LineItem,
    MembershipType,
    MembershipTypeCreate,
    ObligationHandle,
    ObligationStatus,
    Order,
    OrderCalculation,
    OrderStatus,
    PaymentObligation,
    PaymentRequest,
    SettlementEvent,
    ValidateDiscountsRequest,
    VNPayCallback,
    paginate,
    utcnow,
)
from .store import SettlementStore
from .vnpay import (
    IPN_ALREADY_CONFIRMED,
    IPN_CONFIRMED,
    IPN_INVALID_AMOUNT,
    IPN_INVALID_SIGNATURE,
    IPN_ORDER_NOT_FOUND,
    IPN_UNKNOWN_ERROR,
    ipn_ack,
)

logger = get_logger("orchestrator")


class SettlementOrchestrator:
    """Drives orders from cart to settlement across all payment gateways.

    Attributes:
        store: Repository holding orders, obligations, discounts and prices
        gateways: Configured gateways keyed by name
        producer: Optional Kafka producer for settlement events
        vnpay_ipn_enabled: Whether the VNPay IPN channel is authoritative
    """

    def __init__(
        self,
        store: SettlementStore,
        gateways: Mapping[GatewayName, PaymentGateway],
        producer: Optional[SettlementEventProducer] = None,
        vnpay_ipn_enabled: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateways = dict(gateways)
        self.producer = producer
        self.vnpay_ipn_enabled = vnpay_ipn_enabled
        self.clock = clock

    def _gateway(self, name: GatewayName) -> Any:
        gateway = self.gateways.get(name)
        if gateway is None:
            raise ValidationFailure(
                f"Payment gateway '{name.value}' is not available",
                validation=[f"gateway: '{name.value}' is not configured"],
            )
        return gateway

    def create_discount(self, data: DiscountCreate) -> Discount:
        discount = self.store.add_discount(data)
        logger.info(f"Discount {discount.coupon_code} registered with id {discount.discount_id}")
        return discount

    def get_discount_by_code(self, coupon_code: str) -> Discount:
        discount = self.store.find_discount_by_code(coupon_code)
        if discount is None:
            raise ResourceNotFound("Discount", coupon_code.upper())
        return discount

    def create_membership_type(self, data: MembershipTypeCreate) -> MembershipType:
        membership = self.store.add_membership_type(data)
        logger.info(f"Membership type {membership.type} registered with id {membership.membership_type_id}")
        return membership

    def assign_membership(self, customer_id: int, membership_type_id: int) -> MembershipType:
        membership = self.store.assign_membership(customer_id, membership_type_id)
        logger.info(f"Customer {customer_id} assigned to membership {membership.type}")
        return membership

    def validate_discounts(self, request: ValidateDiscountsRequest) -> EvaluationResult:
        """Evaluate coupon codes against a cart total without consuming them."""
        found, missing = lookup_candidates(request.coupon_codes, self.store.find_discount_by_code)
        return evaluate(
            request.total_amount,
            request.product_count,
            request.customer_id,
            found,
            customer_usage=self.store.customer_usage(request.customer_id),
            now=self.clock(),
            not_found=missing,
        )

    def _price(
        self, request: CalculateOrderRequest
    ) -> tuple[list[LineItem], list[AppliedDiscount], Optional[AppliedMembership], EvaluationResult]:
        items = ledger.price_lines(request.items, self.store.get_price)
        subtotal = ledger.compute_totals(items, ()).subtotal
        membership = apply_membership(subtotal, self.store.membership_for(request.customer_id), self.clock())
        found, missing = lookup_candidates(request.coupon_codes, self.store.find_discount_by_code)
        result = evaluate(
            subtotal,
            len(items),
            request.customer_id,
            found,
            customer_usage=self.store.customer_usage(request.customer_id),
            now=self.clock(),
            not_found=missing,
        )
        return items, to_applied(result, found), membership, result

    def calculate(self, request: CalculateOrderRequest) -> OrderCalculation:
        """Price a cart and preview its discounts without persisting anything."""
        items, applied, membership, result = self._price(request)
        totals = ledger.compute_totals(items, applied, membership)
        return OrderCalculation(
            subtotal=totals.subtotal,
            discount_amount=totals.discount_amount,
            final_amount=totals.final_amount,
            items=items,
            discounts=applied,
            membership=membership,
            rejected=result.invalid,
        )

    def place_order(self, request: CreateOrderRequest) -> Order:
        """Open a PROCESSING order for a cart.

        Every selected coupon must be accepted; an order is never opened with a
        silently dropped discount.

        Raises:
            BusinessRuleViolation: If the cart is empty, a price is inactive or a coupon is rejected
            ResourceNotFound: If a price id is unknown
        """
        items, applied, membership, result = self._price(request)
        if result.invalid:
            reasons = [r.reason for r in result.invalid]
            raise BusinessRuleViolation(
                "Invalid discount",
                " ".join(reasons),
                detail={"invalid": [r.model_dump(mode="json") for r in result.invalid]},
            )

        order = ledger.open_order(
            self.store.next_order_id(),
            items,
            applied,
            customer_id=request.customer_id,
            employee_id=request.employee_id,
            note=request.note,
            now=self.clock(),
            membership=membership,
        )
        self.store.save_order(order)
        logger.info(
            f"Order {order.order_id} opened | subtotal={order.subtotal} | "
            f"discount={order.discount_amount} | final={order.final_amount}"
        )
        return order

    def get_order(self, order_id: int) -> Order:
        return self.store.get_order(order_id)

    def list_orders(self, status: Optional[OrderStatus] = None, page: int = 1, limit: int = 20) -> dict:
        return paginate(self.store.list_orders(status), page, limit)

    def list_payments(self, order_id: Optional[int] = None, page: int = 1, limit: int = 20) -> dict:
        return paginate(self.store.list_obligations(order_id), page, limit)

    def cancel_order(self, order_id: int) -> Order:
        """Cancel a PROCESSING order and void its pending obligations.

        Raises:
            BusinessRuleViolation: If the order is already COMPLETED or CANCELLED
        """
        with self.store.order_lock(order_id):
            now = self.clock()
            cancelled = ledger.cancel(self.store.get_order(order_id), now)
            self.store.save_order(cancelled)
            self._void_pending(order_id, now, "cancellation")

        logger.info(f"Order {order_id} cancelled")
        self._publish(SettlementEvent(event_type="order.cancelled", order_id=order_id, amount=cancelled.final_amount))
        return cancelled

    def open_payment(self, order_id: int, request: PaymentRequest) -> CheckoutResult:
        """Open a payment obligation on an existing PROCESSING order.

        Another gateway may be tried while no obligation of the order is PAID.
        When the gateway fails nothing is persisted and the order is left as is.

        Raises:
            ResourceNotFound: If the order does not exist
            BusinessRuleViolation: If the order is terminal, already paid, or the gateway refuses
            UpstreamFailure: If a remote gateway cannot be reached
        """
        gateway = self._gateway(request.gateway)

        with self.store.order_lock(order_id):
            order = self.store.get_order(order_id)
            ledger.ensure_processing(order)
            if any(o.status is ObligationStatus.PAID for o in self.store.obligations_for_order(order_id)):
                raise BusinessRuleViolation("Order has already been paid", detail={"order_id": order_id})

            handle: ObligationHandle = gateway.create_obligation(order, order.final_amount, request)
            obligation = self.store.add_obligation(order_id, handle)
            logger.info(
                f"Obligation {obligation.obligation_id} opened on {gateway.name.value} for order {order_id} | "
                f"amount_due={obligation.amount_due}"
            )

            if handle.status is ObligationStatus.PAID:
                confirmation = gateway.confirm(obligation, handle)
                if confirmation is not None:
                    self.on_confirmation(obligation.obligation_id, confirmation)

            return CheckoutResult(
                order=self.store.get_order(order_id),
                obligation=self.store.get_obligation(obligation.obligation_id),
            )

    def checkout(self, request: CheckoutRequest, client_ip: str = "127.0.0.1") -> CheckoutResult:
        """Place an order and open its payment in one step.

        A cash payment comes back PAID with the order COMPLETED; redirect and
        asynchronous gateways come back PROCESSING. Gateway input is checked
        before the order is placed. Any later failure leaves the order
        PROCESSING and carries its ``order_id`` so the payment can be retried.
        """
        payment = request.payment_request(client_ip)
        self._gateway(payment.gateway).check_request(payment)

        order = self.place_order(request)
        try:
            return self.open_payment(order.order_id, payment)
        except SettlementError as e:
            e.detail.setdefault("order_id", order.order_id)
            raise

    def on_confirmation(self, obligation_id: int, confirmation: Confirmation, cancel_order: bool = False) -> bool:
        """Apply a gateway confirmation to an obligation and its order.

        Args:
            obligation_id: The obligation being confirmed
            confirmation: Gateway-neutral outcome
            cancel_order: Also cancel the order when the payment was abandoned

        Returns:
            True if the obligation transitioned, False if it was already terminal
        """
        obligation = self.store.get_obligation(obligation_id)
        events: list[SettlementEvent] = []

        with self.store.order_lock(obligation.order_id):
            obligation = self.store.get_obligation(obligation_id)
            if obligation.is_terminal:
                logger.info(f"Obligation {obligation_id} already {obligation.status.value}, confirmation ignored")
                return False

            order = self.store.get_order(obligation.order_id)
            now = self.clock()

            if confirmation.status is ObligationStatus.PAID and order.status is not OrderStatus.PROCESSING:
                self.store.transition_obligation(
                    obligation_id, ObligationStatus.PROCESSING, status=ObligationStatus.CANCELLED, confirmed_at=now
                )
                logger.warning(
                    f"Payment for obligation {obligation_id} arrived after order {order.order_id} "
                    f"became {order.status.value}; obligation voided | reference={confirmation.reference}"
                )
                return True

            if confirmation.status is ObligationStatus.PAID:
                updated = self.store.transition_obligation(
                    obligation_id,
                    ObligationStatus.PROCESSING,
                    status=ObligationStatus.PAID,
                    amount_collected=confirmation.amount_collected,
                    change_amount=confirmation.change_amount,
                    confirmed_at=now,
                )
                if updated is None:
                    return False

                for applied in order.applied_discounts:
                    if not self.store.record_usage(applied.discount_id, order.customer_id):
                        logger.warning(
                            f"Usage cap of discount {applied.coupon_code} reached while settling order {order.order_id}"
                        )

                completed = ledger.complete(order, confirmation.amount_collected, confirmation.change_amount, now)
                self.store.save_order(completed)
                self._void_pending(order.order_id, now, "completion")
                logger.info(
                    f"Order {order.order_id} completed via {updated.gateway.value} | "
                    f"paid={completed.amount_paid} | change={completed.change_amount} | "
                    f"reference={confirmation.reference}"
                )
                events.append(
                    SettlementEvent(
                        event_type="payment.confirmed",
                        order_id=order.order_id,
                        obligation_id=obligation_id,
                        gateway=updated.gateway,
                        amount=updated.amount_collected,
                    )
                )
                events.append(
                    SettlementEvent(
                        event_type="order.completed",
                        order_id=order.order_id,
                        obligation_id=obligation_id,
                        gateway=updated.gateway,
                        amount=completed.final_amount,
                    )
                )
            else:
                updated = self.store.transition_obligation(
                    obligation_id, ObligationStatus.PROCESSING, status=ObligationStatus.CANCELLED, confirmed_at=now
                )
                if updated is None:
                    return False
                logger.info(f"Obligation {obligation_id} cancelled by {confirmation.source}")

                if cancel_order and order.status is OrderStatus.PROCESSING:
                    self.store.save_order(ledger.cancel(order, now))
                    self._void_pending(order.order_id, now, "cancellation")
                    logger.info(f"Order {order.order_id} cancelled after abandoned payment")
                    events.append(
                        SettlementEvent(event_type="order.cancelled", order_id=order.order_id, amount=order.final_amount)
                    )

        for event in events:
            self._publish(event)
        return True

    def _void_pending(self, order_id: int, now: datetime, cause: str) -> None:
        """Cancel every obligation of the order that is still PROCESSING."""
        for obligation in self.store.obligations_for_order(order_id):
            voided = self.store.transition_obligation(
                obligation.obligation_id,
                ObligationStatus.PROCESSING,
                status=ObligationStatus.CANCELLED,
                confirmed_at=now,
            )
            if voided is not None:
                logger.info(f"Obligation {voided.obligation_id} voided by {cause} of order {order_id}")

    def _outcome(self, processed: bool, message: str, obligation: PaymentObligation) -> ConfirmationOutcome:
        current = self.store.get_obligation(obligation.obligation_id)
        return ConfirmationOutcome(
            processed=processed,
            message=message,
            order_id=current.order_id,
            obligation_id=current.obligation_id,
            order_status=self.store.get_order(current.order_id).status,
            obligation_status=current.status,
        )

    def _apply_once(self, key: str, obligation: PaymentObligation, confirm: Callable[[], Optional[Confirmation]]):
        """Claim ``key`` on the idempotency ledger and apply the confirmation.

        The claim is released if applying fails so that a gateway retry can
        process the delivery again.

        Returns:
            (claimed, transitioned)
        """
        if not self.store.claim_event(key):
            logger.info(f"Duplicate delivery {key} ignored")
            return False, False
        try:
            confirmation = confirm()
            if confirmation is None:
                return True, False
            return True, self.on_confirmation(obligation.obligation_id, confirmation)
        except Exception:
            self.store.release_event(key)
            raise

    def _vnpay_obligation(self, callback: VNPayCallback) -> PaymentObligation:
        obligation = self.store.find_obligation(GatewayName.VNPAY, callback.txn_ref)
        if obligation is None:
            raise ResourceNotFound("Payment", callback.txn_ref)
        return obligation

    def _apply_vnpay(self, obligation: PaymentObligation, callback: VNPayCallback) -> ConfirmationOutcome:
        vnpay = self._gateway(GatewayName.VNPAY)
        key = f"vnpay:{callback.txn_ref}:{callback.transaction_no or callback.response_code}"
        _, transitioned = self._apply_once(key, obligation, lambda: vnpay.confirm(obligation, callback))
        if not transitioned:
            return self._outcome(False, "Payment already processed", obligation)
        current = self.store.get_obligation(obligation.obligation_id)
        message = "Payment successful" if current.status is ObligationStatus.PAID else "Payment failed"
        return self._outcome(True, message, obligation)

    def handle_vnpay_return(self, query: Mapping[str, Any]) -> ConfirmationOutcome:
        """Process the browser return from VNPay.

        When the IPN channel is enabled the return is advisory: it reports what
        VNPay said without changing any state.

        Raises:
            SecurityRejection: If the signature does not verify
            ResourceNotFound: If no obligation matches the transaction reference
        """
        vnpay = self._gateway(GatewayName.VNPAY)
        callback = vnpay.parse_callback(query)
        obligation = self._vnpay_obligation(callback)

        if self.vnpay_ipn_enabled:
            message = "Payment successful" if vnpay.is_successful(callback) else "Payment failed"
            return self._outcome(False, f"{message}, awaiting confirmation", obligation)
        return self._apply_vnpay(obligation, callback)

    def handle_vnpay_ipn(self, query: Mapping[str, Any]) -> dict[str, str]:
        """Process a VNPay IPN request and build its acknowledgement.

        VNPay expects a ``{RspCode, Message}`` answer for every request, so
        every failure is mapped onto one of its response codes.
        """
        try:
            vnpay = self._gateway(GatewayName.VNPAY)
            callback = vnpay.parse_callback(query)
        except SecurityRejection:
            return ipn_ack(IPN_INVALID_SIGNATURE)
        except ValidationFailure as e:
            logger.warning(f"Malformed VNPay IPN: {e.validation}")
            return ipn_ack(IPN_UNKNOWN_ERROR)

        obligation = self.store.find_obligation(GatewayName.VNPAY, callback.txn_ref)
        if obligation is None:
            logger.warning(f"VNPay IPN for unknown transaction {callback.txn_ref}")
            return ipn_ack(IPN_ORDER_NOT_FOUND)
        if obligation.is_terminal:
            return ipn_ack(IPN_ALREADY_CONFIRMED)

        try:
            outcome = self._apply_vnpay(obligation, callback)
        except BusinessRuleViolation:
            return ipn_ack(IPN_INVALID_AMOUNT)
        except Exception:
            logger.exception(f"VNPay IPN processing failed for {callback.txn_ref}")
            return ipn_ack(IPN_UNKNOWN_ERROR)

        return ipn_ack(IPN_CONFIRMED if outcome.processed else IPN_ALREADY_CONFIRMED)

    def handle_stripe_webhook(self, payload: Union[bytes, str], signature: Optional[str]) -> ConfirmationOutcome:
        """Verify and apply a Stripe webhook delivery.

        Raises:
            SecurityRejection: If the signature does not verify
            BusinessRuleViolation: If the intent's order reference is missing or inconsistent
            ResourceNotFound: If no obligation matches the PaymentIntent
        """
        stripe_gateway = self._gateway(GatewayName.STRIPE)
        event = stripe_gateway.parse_webhook(payload, signature)
        if not event.is_payment_intent_event:
            logger.debug(f"Stripe event {event.id} of type {event.type} ignored")
            return ConfirmationOutcome(processed=False, message=f"Event type {event.type} ignored")

        intent = event.payment_intent()
        obligation = self.store.find_obligation(GatewayName.STRIPE, intent.id)
        if obligation is None:
            raise ResourceNotFound("Payment", intent.id)
        if obligation.order_id != stripe_gateway.order_id(event):
            raise BusinessRuleViolation(
                "Order reference mismatch",
                f"PaymentIntent {intent.id} belongs to order {obligation.order_id}",
            )

        claimed, transitioned = self._apply_once(
            f"stripe:{event.id}", obligation, lambda: stripe_gateway.confirm(obligation, event)
        )
        if not claimed:
            return self._outcome(False, "Event already processed", obligation)
        if not transitioned:
            return self._outcome(False, f"Event {event.type} caused no transition", obligation)
        return self._outcome(True, f"Event {event.type} applied", obligation)

    def _publish(self, event: SettlementEvent) -> None:
        if self.producer is None:
            return
        try:
            self.producer.publish(event)
        except Exception as e:
            logger.error(f"Failed to publish {event.event_type} for order {event.order_id}: {e}")
