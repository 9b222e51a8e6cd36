"""Order ledger: totals and the order status state machine.

Status transitions::

    PROCESSING --complete()--> COMPLETED
    PROCESSING --cancel()----> CANCELLED

COMPLETED and CANCELLED are terminal; attempting to leave them raises a
BusinessRuleViolation rather than silently doing nothing.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .exceptions import BusinessRuleViolation, ResourceNotFound
from .schemas import (
    AppliedDiscount,
    AppliedMembership,
    CartLine,
    LineItem,
    Order,
    OrderStatus,
    ProductPrice,
    utcnow,
)

ZERO = Decimal("0")


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    discount_amount: Decimal
    final_amount: Decimal


def price_lines(lines: Sequence[CartLine], find_price) -> list[LineItem]:
    """Freeze catalog prices onto cart lines.

    Args:
        lines: Cart lines from the request
        find_price: Callable returning the ProductPrice for a price id, or None

    Raises:
        BusinessRuleViolation: If the cart is empty or a price is inactive
        ResourceNotFound: If a price id is unknown
    """
    if not lines:
        raise BusinessRuleViolation("Order must contain at least one product")

    items = []
    for line in lines:
        price: Optional[ProductPrice] = find_price(line.price_id)
        if price is None:
            raise ResourceNotFound("Product price", line.price_id)
        if not price.is_active:
            raise BusinessRuleViolation(f"Product price with ID {line.price_id} is not active")
        items.append(
            LineItem(
                price_id=price.price_id,
                product_name=price.product_name,
                size_name=price.size_name,
                quantity=line.quantity,
                unit_price=price.price,
                subtotal=price.price * line.quantity,
                option=line.option,
            )
        )
    return items


def compute_totals(
    items: Sequence[LineItem],
    discounts: Sequence[AppliedDiscount],
    membership: Optional[AppliedMembership] = None,
) -> Totals:
    """Subtotal of the lines, membership plus coupon discounts, and the clamped final amount."""
    subtotal = sum((item.unit_price * item.quantity for item in items), ZERO)
    discount_amount = sum((d.discount_amount for d in discounts), ZERO)
    if membership is not None:
        discount_amount += membership.discount_amount
    return Totals(subtotal, discount_amount, max(ZERO, subtotal - discount_amount))


def open_order(
    order_id: int,
    items: Sequence[LineItem],
    discounts: Sequence[AppliedDiscount] = (),
    customer_id: Optional[int] = None,
    employee_id: Optional[int] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
    membership: Optional[AppliedMembership] = None,
) -> Order:
    """Create a PROCESSING order with its totals computed."""
    if not items:
        raise BusinessRuleViolation("Order must contain at least one product")
    now = now or utcnow()
    totals = compute_totals(items, discounts, membership)
    return Order(
        order_id=order_id,
        customer_id=customer_id,
        employee_id=employee_id,
        items=list(items),
        applied_discounts=list(discounts),
        membership=membership,
        subtotal=totals.subtotal,
        discount_amount=totals.discount_amount,
        final_amount=totals.final_amount,
        status=OrderStatus.PROCESSING,
        note=note,
        created_at=now,
        updated_at=now,
    )


def ensure_processing(order: Order) -> None:
    """Raise if the order has already reached a terminal state."""
    if order.status is OrderStatus.CANCELLED:
        raise BusinessRuleViolation("Order has already been cancelled", detail={"order_id": order.order_id})
    if order.status is OrderStatus.COMPLETED:
        raise BusinessRuleViolation("Order is already completed", detail={"order_id": order.order_id})


def complete(
    order: Order,
    amount_paid: Decimal,
    change_amount: Decimal = ZERO,
    now: Optional[datetime] = None,
) -> Order:
    """Return the order moved to COMPLETED with the amounts actually collected.

    The final amount becomes the net amount kept (collected minus change).
    """
    ensure_processing(order)
    now = now or utcnow()
    return order.model_copy(
        update={
            "status": OrderStatus.COMPLETED,
            "final_amount": amount_paid - change_amount,
            "amount_paid": amount_paid,
            "change_amount": change_amount,
            "completed_at": now,
            "updated_at": now,
        }
    )


def cancel(order: Order, now: Optional[datetime] = None) -> Order:
    """Return the order moved to CANCELLED."""
    if order.status is OrderStatus.COMPLETED:
        raise BusinessRuleViolation("Cannot cancel a completed order", detail={"order_id": order.order_id})
    ensure_processing(order)
    now = now or utcnow()
    return order.model_copy(update={"status": OrderStatus.CANCELLED, "updated_at": now})
