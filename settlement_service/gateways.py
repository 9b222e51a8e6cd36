"""Payment gateway protocol and the cash gateway.

A gateway opens an obligation for an order and later turns gateway evidence
into a gateway-neutral :class:`Confirmation`. Amounts cross this boundary in
the order's major currency unit; each gateway converts to its own convention.
"""

from decimal import Decimal
from typing import Any, Optional, Protocol

from .exceptions import BusinessRuleViolation, ValidationFailure
from .logger import get_logger
from .schemas import (
    Confirmation,
    GatewayName,
    ObligationHandle,
    ObligationStatus,
    Order,
    PaymentObligation,
    PaymentRequest,
)

logger = get_logger("gateway.cash")


class PaymentGateway(Protocol):
    """Protocol defining the interface for payment gateways."""

    name: GatewayName

    def check_request(self, request: PaymentRequest) -> None:
        """Reject payment input this gateway can never accept, before any order exists.

        Raises:
            ValidationFailure: If gateway-specific input is missing
        """
        ...

    def create_obligation(self, order: Order, amount_due: Decimal, request: PaymentRequest) -> ObligationHandle:
        """Open a payment obligation for an order.

        Args:
            order: The order being paid
            amount_due: Amount to collect, in the major currency unit
            request: Gateway-specific payment input

        Returns:
            ObligationHandle: Already PAID for synchronous gateways, PROCESSING otherwise
        """
        ...

    def confirm(self, obligation: PaymentObligation, evidence: Any) -> Optional[Confirmation]:
        """Interpret gateway evidence for an obligation.

        Returns:
            Confirmation for a terminal outcome, None when the evidence carries no transition
        """
        ...


def require_positive_amount(order: Order, amount_due: Decimal) -> None:
    """Remote gateways cannot collect a zero amount.

    Raises:
        BusinessRuleViolation: If nothing is due on the order
    """
    if amount_due <= 0:
        raise BusinessRuleViolation(
            "Payment amount must be greater than 0",
            detail={"order_id": order.order_id, "amount_due": amount_due},
        )


class CashGateway:
    """Cash tendered at the counter, confirmed locally and synchronously."""

    name = GatewayName.CASH

    def check_request(self, request: PaymentRequest) -> None:
        if request.amount_tendered is None:
            raise ValidationFailure(
                "amount_tendered is required for cash payments",
                validation=["amount_tendered: field required for cash payments"],
            )

    def create_obligation(self, order: Order, amount_due: Decimal, request: PaymentRequest) -> ObligationHandle:
        """Accept the tendered cash if it covers the amount due.

        Raises:
            ValidationFailure: If no tendered amount was given
            BusinessRuleViolation: If the tendered amount is below the amount due
        """
        self.check_request(request)
        tendered = request.amount_tendered
        if tendered < amount_due:
            logger.info(f"Cash refused for order {order.order_id} | due={amount_due} | tendered={tendered}")
            raise BusinessRuleViolation(
                "insufficient amount",
                f"Tendered {tendered:,.0f} is less than the amount due {amount_due:,.0f}",
                detail={"order_id": order.order_id, "amount_due": amount_due, "amount_tendered": tendered},
            )

        change = tendered - amount_due
        logger.info(f"Cash accepted for order {order.order_id} | due={amount_due} | change={change}")
        return ObligationHandle(
            gateway=self.name,
            amount_due=amount_due,
            status=ObligationStatus.PAID,
            reference=f"CASH-{order.order_id}",
            amount_collected=tendered,
            change_amount=change,
        )

    def confirm(self, obligation: PaymentObligation, evidence: ObligationHandle) -> Optional[Confirmation]:
        """Cash evidence is the handle produced at creation time."""
        if evidence.status is not ObligationStatus.PAID:
            return None
        return Confirmation(
            status=ObligationStatus.PAID,
            amount_collected=evidence.amount_collected,
            change_amount=evidence.change_amount,
            reference=evidence.reference,
            source="cash",
        )
