"""Discount eligibility evaluation.

Pure functions: nothing here touches the store or increments a counter. Usage
counters move only when the orchestrator settles an order.
"""

from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from .schemas import (
    AppliedDiscount,
    AppliedMembership,
    Discount,
    DiscountResult,
    EvaluationResult,
    EvaluationSummary,
    MembershipType,
    utcnow,
)

CURRENCY_UNIT = Decimal("0.01")


def _fmt(amount: Decimal) -> str:
    return f"{amount:,.0f}"


def normalize_codes(codes: Iterable[str]) -> list[str]:
    """Upper-case, strip and de-duplicate coupon codes, keeping their order."""
    seen: dict[str, None] = {}
    for code in codes:
        cleaned = code.strip().upper()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


def compute_amount(cart_total: Decimal, discount: Discount) -> Decimal:
    """Percentage of the cart total, capped by the discount's maximum."""
    raw = (cart_total * discount.discount_value / Decimal(100)).quantize(CURRENCY_UNIT, rounding=ROUND_DOWN)
    return min(raw, discount.max_discount_amount)


def apply_membership(
    cart_total: Decimal, membership: Optional[MembershipType], now: Optional[datetime] = None
) -> Optional[AppliedMembership]:
    """Price a customer's membership tier against the original cart total.

    Returns:
        The applied membership, or None when the customer has no tier or it is
        inactive or expired
    """
    if membership is None or not membership.is_active:
        return None
    now = now or utcnow()
    if membership.valid_until is not None and now > membership.valid_until:
        return None
    amount = (cart_total * membership.discount_value / Decimal(100)).quantize(CURRENCY_UNIT, rounding=ROUND_DOWN)
    return AppliedMembership(
        membership_type_id=membership.membership_type_id,
        type=membership.type,
        discount_value=membership.discount_value,
        discount_amount=amount,
    )


def check_discount(
    discount: Discount,
    cart_total: Decimal,
    product_count: int,
    customer_id: Optional[int],
    customer_uses: int,
    now: datetime,
) -> tuple[bool, Decimal, str]:
    """Run the eligibility rules for one discount, stopping at the first failure.

    Returns:
        (accepted, amount, reason)
    """
    name = discount.name
    if not discount.is_active:
        return False, Decimal("0"), f"Discount '{name}' is not active."

    if (discount.valid_from is not None and now < discount.valid_from) or now > discount.valid_until:
        return False, Decimal("0"), f"Discount '{name}' is no longer valid or not yet active."

    if cart_total < discount.min_required_order_value:
        return (
            False,
            Decimal("0"),
            f"Order value below minimum: order total ({_fmt(cart_total)}) does not meet the minimum "
            f"required value ({_fmt(discount.min_required_order_value)}) to apply discount '{name}'.",
        )

    if discount.min_required_product is not None and product_count < discount.min_required_product:
        return (
            False,
            Decimal("0"),
            f"Order has {product_count} products, but a minimum of {discount.min_required_product} "
            f"is required to apply discount '{name}'.",
        )

    if discount.max_uses is not None and discount.current_uses >= discount.max_uses:
        return (
            False,
            Decimal("0"),
            f"Discount '{name}' has reached its maximum usage limit ({discount.max_uses} times).",
        )

    if discount.max_uses_per_customer is not None:
        if customer_id is None:
            return (
                False,
                Decimal("0"),
                f"Discount '{name}' is limited per customer and requires a registered customer.",
            )
        if customer_uses >= discount.max_uses_per_customer:
            return (
                False,
                Decimal("0"),
                f"Customer has reached the maximum usage limit ({discount.max_uses_per_customer} times) "
                f"for discount '{name}'.",
            )

    amount = compute_amount(cart_total, discount)
    return True, amount, f"Discount '{name}' can be applied, reducing the total by {_fmt(amount)}."


def evaluate(
    cart_total: Decimal,
    product_count: int,
    customer_id: Optional[int],
    candidates: Iterable[Discount],
    customer_usage: Optional[Mapping[int, int]] = None,
    now: Optional[datetime] = None,
    not_found: Iterable[str] = (),
) -> EvaluationResult:
    """Partition candidate discounts into valid and invalid results.

    Every candidate is evaluated independently against the original cart total;
    accepted amounts are not stacked sequentially.

    Args:
        cart_total: Cart subtotal before any discount
        product_count: Number of order lines in the cart
        customer_id: Known customer, or None for a guest checkout
        candidates: Discounts to evaluate
        customer_usage: Completed uses per discount id for this customer
        now: Evaluation time, defaults to the current UTC time
        not_found: Requested coupon codes that did not resolve to a discount

    Returns:
        EvaluationResult with per-discount amounts, reasons and a summary
    """
    now = now or utcnow()
    usage = customer_usage or {}
    valid: list[DiscountResult] = []
    invalid: list[DiscountResult] = []

    for code in not_found:
        invalid.append(DiscountResult(coupon_code=code, reason=f"Discount with code '{code}' not found."))

    for discount in candidates:
        accepted, amount, reason = check_discount(
            discount, cart_total, product_count, customer_id, usage.get(discount.discount_id, 0), now
        )
        result = DiscountResult(
            discount_id=discount.discount_id,
            coupon_code=discount.coupon_code,
            discount_name=discount.name,
            discount_amount=amount,
            reason=reason,
        )
        (valid if accepted else invalid).append(result)

    total = sum((r.discount_amount for r in valid), Decimal("0"))
    summary = EvaluationSummary(
        total_checked=len(valid) + len(invalid),
        valid_count=len(valid),
        invalid_count=len(invalid),
        total_discount_amount=total,
    )
    return EvaluationResult(valid=valid, invalid=invalid, summary=summary)


def lookup_candidates(
    codes: Iterable[str], find: Callable[[str], Optional[Discount]]
) -> tuple[list[Discount], list[str]]:
    """Resolve coupon codes through ``find``.

    Returns:
        (found discounts, codes that did not resolve)
    """
    found, missing = [], []
    for code in normalize_codes(codes):
        discount = find(code)
        if discount is None:
            missing.append(code)
        else:
            found.append(discount)
    return found, missing


def to_applied(result: EvaluationResult, discounts: Iterable[Discount]) -> list[AppliedDiscount]:
    """Turn accepted results into the discounts recorded on an order."""
    by_id = {d.discount_id: d for d in discounts}
    return [
        AppliedDiscount(
            discount_id=r.discount_id,
            coupon_code=r.coupon_code,
            name=r.discount_name,
            discount_value=by_id[r.discount_id].discount_value,
            discount_amount=r.discount_amount,
        )
        for r in result.valid
    ]
