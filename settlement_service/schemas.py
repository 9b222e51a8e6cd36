"""Schemas for settlement service data models."""

import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money_json(value: Decimal) -> int | float:
    # Whole-unit amounts go out as integers, fractional ones as floats.
    return int(value) if value == value.to_integral_value() else float(value)


Money = Annotated[Decimal, PlainSerializer(_money_json, return_type=Any, when_used="json")]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OrderStatus(str, Enum):
    """Lifecycle states of an order."""

    PROCESSING = "PROCESSING"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class ObligationStatus(str, Enum):
    """Lifecycle states of a payment obligation."""

    PROCESSING = "PROCESSING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class GatewayName(str, Enum):
    """Payment gateways an obligation can be opened against."""

    CASH = "cash"
    VNPAY = "vnpay"
    STRIPE = "stripe"


class ProductPrice(BaseModel):
    """A sellable product/size combination and its current price."""

    price_id: int = Field(..., ge=1)
    product_name: str
    size_name: str = "Regular"
    price: Money = Field(..., ge=0)
    is_active: bool = True


class CartLine(BaseModel):
    """Represents an individual line of a cart as sent by the POS.

    Attributes:
        price_id (int): Reference to the product price being bought.
        quantity (int): Number of units, must be between 1 and 1000.
        option (str): Optional free-text customisation.
    """

    price_id: int = Field(..., ge=1)
    quantity: int = Field(..., gt=0, le=1000)
    option: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={"properties": {"price_id": {"example": 3}, "quantity": {"example": 2}}}
    )


class LineItem(BaseModel):
    """A priced order line; the unit price is frozen when the order is opened."""

    price_id: int
    product_name: str
    size_name: str
    quantity: int = Field(..., gt=0)
    unit_price: Money = Field(..., ge=0)
    subtotal: Money = Field(..., ge=0)
    option: Optional[str] = None


class DiscountCreate(BaseModel):
    """Back-office input for a percentage coupon."""

    name: str = Field(..., min_length=1, max_length=100)
    coupon_code: str = Field(..., min_length=3, max_length=32)
    discount_value: Money = Field(..., gt=0, le=100, description="Percentage off the cart total")
    min_required_order_value: Money = Field(Decimal("0"), ge=0)
    max_discount_amount: Money = Field(..., gt=0)
    min_required_product: Optional[int] = Field(None, ge=1)
    valid_from: Optional[datetime] = None
    valid_until: datetime
    max_uses: Optional[int] = Field(None, ge=1)
    max_uses_per_customer: Optional[int] = Field(None, ge=1)
    is_active: bool = True

    @field_validator("coupon_code")
    @classmethod
    def validate_coupon_code(cls, v: str) -> str:
        """Validate and normalize the coupon code.

        Raises:
            ValueError: If the code contains anything other than letters and digits.
        """
        if not v.isalnum() or not v.isascii():
            raise ValueError("coupon_code must be alphanumeric")
        return v.upper()

    @field_validator("valid_from", "valid_until")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @model_validator(mode="after")
    def check_window(self) -> "DiscountCreate":
        if self.valid_from is not None and self.valid_from > self.valid_until:
            raise ValueError("valid_from must not be after valid_until")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Grand opening",
                "coupon_code": "OPEN10",
                "discount_value": 10,
                "min_required_order_value": 100000,
                "max_discount_amount": 40000,
                "valid_until": "2030-01-01T00:00:00Z",
            }
        }
    )


class Discount(DiscountCreate):
    """A stored discount with its identity and usage counter."""

    discount_id: int
    current_uses: int = Field(0, ge=0)


class AppliedDiscount(BaseModel):
    """A discount accepted onto an order, with the amount it took off."""

    discount_id: int
    coupon_code: str
    name: str
    discount_value: Money
    discount_amount: Money


class MembershipTypeCreate(BaseModel):
    """A loyalty tier granting a percentage off every order of its members."""

    type: str = Field(..., min_length=1, max_length=50)
    discount_value: Money = Field(..., ge=0, le=100)
    valid_until: Optional[datetime] = None
    is_active: bool = True

    @field_validator("valid_until")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class MembershipType(MembershipTypeCreate):
    membership_type_id: int


class MembershipAssignment(BaseModel):
    membership_type_id: int = Field(..., ge=1)


class AppliedMembership(BaseModel):
    """The membership tier priced into an order."""

    membership_type_id: int
    type: str
    discount_value: Money
    discount_amount: Money


class DiscountResult(BaseModel):
    """Outcome of evaluating one candidate discount."""

    discount_id: Optional[int] = None
    coupon_code: str
    discount_name: str = ""
    discount_amount: Money = Decimal("0")
    reason: str


class EvaluationSummary(BaseModel):
    total_checked: int
    valid_count: int
    invalid_count: int
    total_discount_amount: Money


class EvaluationResult(BaseModel):
    """Candidates partitioned into accepted and rejected discounts."""

    valid: list[DiscountResult] = Field(default_factory=list)
    invalid: list[DiscountResult] = Field(default_factory=list)
    summary: EvaluationSummary


class ValidateDiscountsRequest(BaseModel):
    customer_id: Optional[int] = Field(None, ge=1)
    coupon_codes: list[str] = Field(..., min_length=1)
    total_amount: Money = Field(..., ge=0)
    product_count: int = Field(..., ge=1)


class Order(BaseModel):
    """The order aggregate owned by the ledger."""

    order_id: int
    customer_id: Optional[int] = None
    employee_id: Optional[int] = None
    items: list[LineItem]
    applied_discounts: list[AppliedDiscount] = Field(default_factory=list)
    membership: Optional[AppliedMembership] = None
    subtotal: Money
    discount_amount: Money = Decimal("0")
    final_amount: Money
    status: OrderStatus = OrderStatus.PROCESSING
    note: Optional[str] = None
    amount_paid: Optional[Money] = None
    change_amount: Optional[Money] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def product_count(self) -> int:
        return len(self.items)


class CalculateOrderRequest(BaseModel):
    """A cart to price, optionally with coupons and a known customer."""

    items: list[CartLine] = Field(..., min_length=1, description="At least one item required")
    coupon_codes: list[str] = Field(default_factory=list)
    customer_id: Optional[int] = Field(None, ge=1)


class CreateOrderRequest(CalculateOrderRequest):
    employee_id: Optional[int] = Field(None, ge=1)
    note: Optional[str] = Field(None, max_length=500)


class OrderCalculation(BaseModel):
    """Priced preview of a cart, not persisted."""

    subtotal: Money
    discount_amount: Money
    final_amount: Money
    items: list[LineItem]
    discounts: list[AppliedDiscount]
    membership: Optional[AppliedMembership] = None
    rejected: list[DiscountResult] = Field(default_factory=list)


class PaymentRequest(BaseModel):
    """Gateway selection and gateway-specific input for one payment attempt."""

    gateway: GatewayName
    amount_tendered: Optional[Money] = Field(None, ge=0, description="Cash handed over by the customer")
    return_url: Optional[str] = None
    order_info: Optional[str] = Field(None, max_length=255)
    customer_email: Optional[str] = None
    client_ip: str = "127.0.0.1"


class CheckoutRequest(CreateOrderRequest):
    """A cart plus the payment attempt that should settle it."""

    gateway: GatewayName
    amount_tendered: Optional[Money] = Field(None, ge=0)
    return_url: Optional[str] = None
    order_info: Optional[str] = Field(None, max_length=255)
    customer_email: Optional[str] = None

    def payment_request(self, client_ip: str = "127.0.0.1") -> PaymentRequest:
        return PaymentRequest(
            gateway=self.gateway,
            amount_tendered=self.amount_tendered,
            return_url=self.return_url,
            order_info=self.order_info,
            customer_email=self.customer_email,
            client_ip=client_ip,
        )


class ObligationHandle(BaseModel):
    """What a gateway returns when it opens an obligation."""

    gateway: GatewayName
    amount_due: Money
    status: ObligationStatus = ObligationStatus.PROCESSING
    reference: Optional[str] = None
    amount_collected: Money = Decimal("0")
    change_amount: Money = Decimal("0")
    payment_url: Optional[str] = None
    client_secret: Optional[str] = None


class PaymentObligation(BaseModel):
    """The payable amount tied to one order attempt on one gateway."""

    obligation_id: int
    order_id: int
    gateway: GatewayName
    amount_due: Money
    amount_collected: Money = Decimal("0")
    change_amount: Money = Decimal("0")
    status: ObligationStatus = ObligationStatus.PROCESSING
    reference: Optional[str] = None
    payment_url: Optional[str] = None
    client_secret: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not ObligationStatus.PROCESSING


class Confirmation(BaseModel):
    """Gateway-neutral evidence that an obligation was paid or abandoned."""

    status: Literal[ObligationStatus.PAID, ObligationStatus.CANCELLED]
    amount_collected: Money = Decimal("0")
    change_amount: Money = Decimal("0")
    reference: Optional[str] = None
    source: str


class CheckoutResult(BaseModel):
    order: Order
    obligation: PaymentObligation


class ConfirmationOutcome(BaseModel):
    """Result of processing a callback or webhook delivery."""

    processed: bool
    message: str
    order_id: Optional[int] = None
    obligation_id: Optional[int] = None
    order_status: Optional[OrderStatus] = None
    obligation_status: Optional[ObligationStatus] = None


class VNPayCallback(BaseModel):
    """Query parameters VNPay appends to the return URL and the IPN request."""

    tmn_code: str = Field(..., alias="vnp_TmnCode")
    amount: int = Field(..., alias="vnp_Amount", ge=0, description="Minor unit (amount x 100)")
    bank_code: Optional[str] = Field(None, alias="vnp_BankCode")
    bank_tran_no: Optional[str] = Field(None, alias="vnp_BankTranNo")
    card_type: Optional[str] = Field(None, alias="vnp_CardType")
    order_info: Optional[str] = Field(None, alias="vnp_OrderInfo")
    pay_date: Optional[str] = Field(None, alias="vnp_PayDate")
    response_code: str = Field(..., alias="vnp_ResponseCode")
    txn_ref: str = Field(..., alias="vnp_TxnRef")
    transaction_no: Optional[str] = Field(None, alias="vnp_TransactionNo")
    transaction_status: Optional[str] = Field(None, alias="vnp_TransactionStatus")
    secure_hash: str = Field(..., alias="vnp_SecureHash")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StripePaymentIntent(BaseModel):
    """The subset of a Stripe PaymentIntent the settlement flow relies on."""

    id: str
    status: str
    amount: int = Field(..., ge=0)
    amount_received: int = 0
    currency: str
    metadata: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")


class StripeEventData(BaseModel):
    object: dict[str, Any]


class StripeWebhookEvent(BaseModel):
    """A verified Stripe event envelope."""

    id: str
    type: str
    created: int = 0
    data: StripeEventData

    model_config = ConfigDict(extra="ignore")

    @property
    def is_payment_intent_event(self) -> bool:
        return self.type.startswith("payment_intent.")

    def payment_intent(self) -> StripePaymentIntent:
        return StripePaymentIntent.model_validate(self.data.object)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    totalPages: int
    hasNext: bool
    hasPrev: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = math.ceil(total / limit) if limit else 0
        return cls(
            page=page,
            limit=limit,
            total=total,
            totalPages=total_pages,
            hasNext=page < total_pages,
            hasPrev=page > 1,
        )


def paginate(items: list, page: int, limit: int) -> dict[str, Any]:
    """Slice ``items`` into one page shaped as ``{items, pagination}``."""
    start = (page - 1) * limit
    return {
        "items": items[start : start + limit],
        "pagination": Pagination.build(page, limit, len(items)).model_dump(),
    }


class SettlementEvent(BaseModel):
    """Domain event published after a settlement state change."""

    event_id: str = Field(default_factory=lambda: f"evt-{uuid.uuid4().hex[:12]}")
    event_type: Literal["order.completed", "order.cancelled", "payment.confirmed"]
    order_id: int
    obligation_id: Optional[int] = None
    gateway: Optional[GatewayName] = None
    amount: Money = Decimal("0")
    occurred_at: datetime = Field(default_factory=utcnow)

    @property
    def topic(self) -> str:
        return {
            "order.completed": "orders.completed",
            "order.cancelled": "orders.cancelled",
            "payment.confirmed": "payments.confirmed",
        }[self.event_type]
