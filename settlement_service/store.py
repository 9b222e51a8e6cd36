"""In-process repository for orders, obligations, discounts and the catalog.

All mutations go through a store-wide lock. Settlement paths additionally take
the per-order lock from :meth:`SettlementStore.order_lock` so that concurrent
checkouts, callbacks and webhook deliveries for one order are serialised. Order
locks come from a fixed pool, so orders sharing a stripe also share a lock.
"""

import itertools
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Iterator, Optional

from .exceptions import DuplicateResource, ResourceNotFound
from .schemas import (
    Discount,
    DiscountCreate,
    GatewayName,
    MembershipType,
    MembershipTypeCreate,
    ObligationHandle,
    ObligationStatus,
    Order,
    OrderStatus,
    PaymentObligation,
    ProductPrice,
)

ORDER_LOCK_STRIPES = 64


class SettlementStore:
    """Class to manage settlement state."""

    def __init__(self, lock_stripes: int = ORDER_LOCK_STRIPES) -> None:
        """Initialize empty tables and counters."""
        self._lock = threading.RLock()
        self._order_locks = tuple(threading.RLock() for _ in range(lock_stripes))
        self._membership_ids = itertools.count(1)
        self._memberships: dict[int, MembershipType] = {}
        self._customer_memberships: dict[int, int] = {}
        self._order_ids = itertools.count(1)
        self._obligation_ids = itertools.count(1)
        self._discount_ids = itertools.count(1)

        self._prices: dict[int, ProductPrice] = {}
        self._discounts: dict[int, Discount] = {}
        self._codes: dict[str, int] = {}
        self._customer_uses: dict[tuple[int, int], int] = defaultdict(int)
        self._orders: dict[int, Order] = {}
        self._obligations: dict[int, PaymentObligation] = {}
        self._processed_events: set[str] = set()

    def lock_for(self, order_id: int):
        return self._order_locks[order_id % len(self._order_locks)]

    @contextmanager
    def order_lock(self, order_id: int) -> Iterator[None]:
        """Hold the mutual-exclusion lock of one order."""
        with self.lock_for(order_id):
            yield

    def add_price(self, price: ProductPrice) -> ProductPrice:
        with self._lock:
            self._prices[price.price_id] = price
        return price

    def get_price(self, price_id: int) -> Optional[ProductPrice]:
        return self._prices.get(price_id)

    def add_membership_type(self, data: MembershipTypeCreate) -> MembershipType:
        with self._lock:
            membership = MembershipType(membership_type_id=next(self._membership_ids), **data.model_dump())
            self._memberships[membership.membership_type_id] = membership
        return membership

    def get_membership_type(self, membership_type_id: int) -> MembershipType:
        membership = self._memberships.get(membership_type_id)
        if membership is None:
            raise ResourceNotFound("Membership type", membership_type_id)
        return membership

    def assign_membership(self, customer_id: int, membership_type_id: int) -> MembershipType:
        """Put a customer on a membership tier, replacing any previous one."""
        with self._lock:
            membership = self.get_membership_type(membership_type_id)
            self._customer_memberships[customer_id] = membership_type_id
        return membership

    def membership_for(self, customer_id: Optional[int]) -> Optional[MembershipType]:
        if customer_id is None:
            return None
        membership_type_id = self._customer_memberships.get(customer_id)
        return self._memberships.get(membership_type_id) if membership_type_id is not None else None

    def add_discount(self, data: DiscountCreate) -> Discount:
        """Register a discount.

        Raises:
            DuplicateResource: If the coupon code is already taken
        """
        with self._lock:
            if data.coupon_code in self._codes:
                raise DuplicateResource("discount", "coupon code", data.coupon_code)
            discount = Discount(discount_id=next(self._discount_ids), **data.model_dump())
            self._discounts[discount.discount_id] = discount
            self._codes[discount.coupon_code] = discount.discount_id
        return discount

    def get_discount(self, discount_id: int) -> Discount:
        discount = self._discounts.get(discount_id)
        if discount is None:
            raise ResourceNotFound("Discount", discount_id)
        return discount

    def find_discount_by_code(self, coupon_code: str) -> Optional[Discount]:
        discount_id = self._codes.get(coupon_code.upper())
        return self._discounts.get(discount_id) if discount_id is not None else None

    def customer_usage(self, customer_id: Optional[int]) -> dict[int, int]:
        """Completed uses of every discount by one customer."""
        if customer_id is None:
            return {}
        with self._lock:
            return {d: n for (c, d), n in self._customer_uses.items() if c == customer_id}

    def record_usage(self, discount_id: int, customer_id: Optional[int]) -> bool:
        """Compare-and-increment the usage counters of a discount.

        The global counter never passes ``max_uses`` and the per-customer
        counter never passes ``max_uses_per_customer``.

        Returns:
            True if the counters were incremented, False if a cap was already reached
        """
        with self._lock:
            discount = self.get_discount(discount_id)
            if discount.max_uses is not None and discount.current_uses >= discount.max_uses:
                return False
            key = (customer_id, discount_id)
            if (
                customer_id is not None
                and discount.max_uses_per_customer is not None
                and self._customer_uses[key] >= discount.max_uses_per_customer
            ):
                return False
            self._discounts[discount_id] = discount.model_copy(update={"current_uses": discount.current_uses + 1})
            if customer_id is not None:
                self._customer_uses[key] += 1
            return True

    def next_order_id(self) -> int:
        with self._lock:
            return next(self._order_ids)

    def save_order(self, order: Order) -> Order:
        with self._lock:
            self._orders[order.order_id] = order
        return order

    def get_order(self, order_id: int) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise ResourceNotFound("Order", order_id)
        return order

    def list_orders(self, status: Optional[OrderStatus] = None) -> list[Order]:
        with self._lock:
            orders = list(self._orders.values())
        if status is not None:
            orders = [o for o in orders if o.status is status]
        return sorted(orders, key=lambda o: o.order_id, reverse=True)

    def add_obligation(self, order_id: int, handle: ObligationHandle) -> PaymentObligation:
        with self._lock:
            obligation = PaymentObligation(
                obligation_id=next(self._obligation_ids),
                order_id=order_id,
                **handle.model_dump(exclude={"status", "amount_collected", "change_amount"}),
            )
            self._obligations[obligation.obligation_id] = obligation
        return obligation

    def get_obligation(self, obligation_id: int) -> PaymentObligation:
        obligation = self._obligations.get(obligation_id)
        if obligation is None:
            raise ResourceNotFound("Payment obligation", obligation_id)
        return obligation

    def find_obligation(self, gateway: GatewayName, reference: str) -> Optional[PaymentObligation]:
        with self._lock:
            for obligation in self._obligations.values():
                if obligation.gateway is gateway and obligation.reference == reference:
                    return obligation
        return None

    def obligations_for_order(self, order_id: int) -> list[PaymentObligation]:
        with self._lock:
            return [o for o in self._obligations.values() if o.order_id == order_id]

    def list_obligations(self, order_id: Optional[int] = None) -> list[PaymentObligation]:
        with self._lock:
            obligations = list(self._obligations.values())
        if order_id is not None:
            obligations = [o for o in obligations if o.order_id == order_id]
        return sorted(obligations, key=lambda o: o.obligation_id, reverse=True)

    def transition_obligation(
        self, obligation_id: int, expected: ObligationStatus, **updates
    ) -> Optional[PaymentObligation]:
        """Conditionally update an obligation.

        The update is applied only while the obligation is still in the
        ``expected`` status.

        Returns:
            The updated obligation, or None when the status had already moved on
        """
        with self._lock:
            current = self.get_obligation(obligation_id)
            if current.status is not expected:
                return None
            updated = current.model_copy(update=updates)
            self._obligations[obligation_id] = updated
            return updated

    def claim_event(self, key: str) -> bool:
        """Atomically mark a delivery as processed; False if it already was."""
        with self._lock:
            if key in self._processed_events:
                return False
            self._processed_events.add(key)
            return True

    def release_event(self, key: str) -> None:
        """Forget a delivery so a gateway retry can process it again."""
        with self._lock:
            self._processed_events.discard(key)
