"""Stripe asynchronous gateway.

A PaymentIntent is created up front and the client confirms it with the
returned client secret. The outcome arrives later as a signed webhook event.
"""

from decimal import Decimal
from typing import Optional, Union

import stripe
from pydantic import ValidationError

from .exceptions import BusinessRuleViolation, SecurityRejection, UpstreamFailure, ValidationFailure
from .gateways import require_positive_amount
from .logger import get_logger
from .schemas import (
    Confirmation,
    GatewayName,
    ObligationHandle,
    ObligationStatus,
    Order,
    PaymentObligation,
    PaymentRequest,
    StripeWebhookEvent,
)

logger = get_logger("gateway.stripe")

PAYMENT_FAILED_EVENT = "payment_intent.payment_failed"


def to_minor(amount: Decimal) -> int:
    return int(round(amount * 100))


def build_client(secret_key: str, timeout: float) -> stripe.StripeClient:
    """Create a StripeClient whose HTTP calls are bounded by ``timeout`` seconds."""
    return stripe.StripeClient(secret_key, http_client=stripe.RequestsClient(timeout=timeout))


class StripeGateway:
    """Gateway creating PaymentIntents and interpreting their webhook events."""

    name = GatewayName.STRIPE

    def __init__(
        self,
        client: Optional[stripe.StripeClient],
        webhook_secret: Optional[str],
        currency: str = "vnd",
        tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE,
    ):
        self.client = client
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.tolerance = tolerance

    @classmethod
    def from_settings(cls, settings) -> "StripeGateway":
        client = None
        if settings.stripe_secret_key:
            client = build_client(settings.stripe_secret_key, settings.gateway_timeout_seconds)
        return cls(
            client=client,
            webhook_secret=settings.stripe_webhook_secret,
            currency=settings.stripe_currency,
            tolerance=settings.stripe_webhook_tolerance,
        )

    def check_request(self, request: PaymentRequest) -> None:
        if self.client is None:
            raise UpstreamFailure("Stripe is not configured")

    def create_obligation(self, order: Order, amount_due: Decimal, request: PaymentRequest) -> ObligationHandle:
        """Create a PaymentIntent for the amount due.

        Raises:
            BusinessRuleViolation: If nothing is due on the order
            UpstreamFailure: If Stripe is not configured or the call fails
        """
        self.check_request(request)
        require_positive_amount(order, amount_due)

        params = {
            "amount": to_minor(amount_due),
            "currency": self.currency,
            "metadata": {"order_id": str(order.order_id)},
            "description": request.order_info or f"Order {order.order_id}",
        }
        if request.customer_email:
            params["receipt_email"] = request.customer_email

        try:
            intent = self.client.payment_intents.create(params=params)
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent creation failed for order {order.order_id}: {e}")
            raise UpstreamFailure(
                "Payment gateway unavailable",
                detail={"gateway": self.name.value, "order_id": order.order_id},
            ) from e

        logger.info(f"Stripe PaymentIntent {intent.id} created for order {order.order_id} | amount={params['amount']}")
        return ObligationHandle(
            gateway=self.name,
            amount_due=amount_due,
            reference=intent.id,
            client_secret=intent.client_secret,
        )

    def parse_webhook(self, payload: Union[bytes, str], signature: Optional[str]) -> StripeWebhookEvent:
        """Verify a webhook delivery and parse its event.

        Args:
            payload: Raw request body, exactly as received
            signature: Value of the ``Stripe-Signature`` header

        Returns:
            StripeWebhookEvent: The verified event

        Raises:
            SecurityRejection: If the signature cannot be verified
            ValidationFailure: If the body is not a well-formed event
            BusinessRuleViolation: If a PaymentIntent event lacks a valid order id
        """
        if not self.webhook_secret:
            logger.error("Stripe webhook received but no webhook secret is configured")
            raise SecurityRejection("Stripe webhook secret is not configured")
        if not signature:
            logger.warning("Stripe webhook rejected: missing signature header")
            raise SecurityRejection("Missing Stripe signature")

        try:
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe webhook rejected: {e}")
            raise SecurityRejection("Invalid Stripe signature") from e

        try:
            event = StripeWebhookEvent.model_validate_json(payload)
            intent = event.payment_intent() if event.is_payment_intent_event else None
        except ValidationError as e:
            messages = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationFailure("Invalid Stripe event", validation=messages) from e

        if intent is not None:
            order_id = intent.metadata.get("order_id", "")
            if not order_id.isdigit():
                raise BusinessRuleViolation(
                    "Missing order reference",
                    f"PaymentIntent {intent.id} has no valid metadata.order_id",
                )
        return event

    @staticmethod
    def order_id(event: StripeWebhookEvent) -> int:
        return int(event.payment_intent().metadata["order_id"])

    def confirm(self, obligation: PaymentObligation, evidence: StripeWebhookEvent) -> Optional[Confirmation]:
        """Map a PaymentIntent event onto a confirmation.

        Returns:
            PAID for ``succeeded``, CANCELLED for ``canceled`` or a failed payment,
            None for any other status

        Raises:
            BusinessRuleViolation: If a succeeded intent received a different amount
        """
        intent = evidence.payment_intent()

        if intent.status == "succeeded":
            received = intent.amount_received or intent.amount
            if received != to_minor(obligation.amount_due):
                logger.warning(
                    f"Stripe amount mismatch for obligation {obligation.obligation_id} | "
                    f"expected={to_minor(obligation.amount_due)} | received={received}"
                )
                raise BusinessRuleViolation(
                    "Invalid amount",
                    f"Stripe reported {received} but {to_minor(obligation.amount_due)} was due",
                    detail={"order_id": obligation.order_id},
                )
            return Confirmation(
                status=ObligationStatus.PAID,
                amount_collected=obligation.amount_due,
                reference=intent.id,
                source="stripe",
            )

        if intent.status == "canceled" or evidence.type == PAYMENT_FAILED_EVENT:
            return Confirmation(status=ObligationStatus.CANCELLED, reference=intent.id, source="stripe")

        logger.debug(f"Stripe event {evidence.id} ignored | intent={intent.id} | status={intent.status}")
        return None
