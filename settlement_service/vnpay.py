"""VNPay redirect gateway.

The customer is redirected to a signed VNPay payment URL. VNPay later reports
the outcome twice: through the browser return URL and, when configured, through
a server-to-server IPN request. Both carry the same signed query parameters.
"""

import hashlib
import hmac
import time
import urllib.parse
from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from .exceptions import BusinessRuleViolation, SecurityRejection, ValidationFailure
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
    VNPayCallback,
)

logger = get_logger("gateway.vnpay")

VNPAY_VERSION = "2.1.0"
SUCCESS_CODE = "00"
UNSIGNED_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")

# IPN acknowledgement codes expected by VNPay
IPN_CONFIRMED = ("00", "Confirm Success")
IPN_ORDER_NOT_FOUND = ("01", "Order not found")
IPN_ALREADY_CONFIRMED = ("02", "Order already confirmed")
IPN_INVALID_AMOUNT = ("04", "Invalid amount")
IPN_INVALID_SIGNATURE = ("97", "Invalid signature")
IPN_UNKNOWN_ERROR = ("99", "Unknown error")


def ipn_ack(code: tuple[str, str]) -> dict[str, str]:
    """Build the ``{RspCode, Message}`` body VNPay expects from an IPN endpoint."""
    return {"RspCode": code[0], "Message": code[1]}


def to_minor(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


class VNPayGateway:
    """Redirect gateway signing requests and verifying callbacks with HMAC-SHA512."""

    name = GatewayName.VNPAY

    def __init__(
        self,
        tmn_code: str,
        hash_secret: str,
        payment_url: str,
        return_url: str,
        timezone: str = "Asia/Ho_Chi_Minh",
        currency: str = "VND",
    ):
        self.tmn_code = tmn_code
        self.hash_secret = hash_secret
        self.payment_url = payment_url
        self.return_url = return_url
        self.timezone = ZoneInfo(timezone)
        self.currency = currency

    @classmethod
    def from_settings(cls, settings) -> "VNPayGateway":
        return cls(
            tmn_code=settings.vnpay_tmn_code,
            hash_secret=settings.vnpay_hash_secret,
            payment_url=settings.vnpay_payment_url,
            return_url=settings.vnpay_return_url,
            timezone=settings.vnpay_timezone,
            currency=settings.currency,
        )

    @staticmethod
    def canonical_query(params: Mapping[str, Any]) -> str:
        """Sorted, URL-encoded ``key=value`` pairs, excluding the signature fields."""
        pairs = sorted(
            (key, str(value))
            for key, value in params.items()
            if key not in UNSIGNED_FIELDS and value is not None and value != ""
        )
        return "&".join(f"{key}={urllib.parse.quote_plus(value)}" for key, value in pairs)

    def sign(self, params: Mapping[str, Any]) -> str:
        data = self.canonical_query(params).encode("utf-8")
        return hmac.new(self.hash_secret.encode("utf-8"), data, hashlib.sha512).hexdigest()

    def verify(self, params: Mapping[str, Any]) -> bool:
        received = str(params.get("vnp_SecureHash", ""))
        return hmac.compare_digest(self.sign(params), received.lower())

    def build_params(self, order: Order, amount_due: Decimal, request: PaymentRequest) -> dict[str, str]:
        """Assemble the unsigned payment request parameters."""
        created = datetime.now(self.timezone)
        return {
            "vnp_Version": VNPAY_VERSION,
            "vnp_Command": "pay",
            "vnp_TmnCode": self.tmn_code,
            "vnp_Amount": str(to_minor(amount_due)),
            "vnp_CurrCode": self.currency,
            "vnp_TxnRef": f"ORDER_{order.order_id}_{int(time.time() * 1000)}",
            "vnp_OrderInfo": request.order_info or f"Thanh toan don hang {order.order_id}",
            "vnp_OrderType": "other",
            "vnp_Locale": "vn",
            "vnp_ReturnUrl": request.return_url or self.return_url,
            "vnp_IpAddr": request.client_ip,
            "vnp_CreateDate": created.strftime("%Y%m%d%H%M%S"),
        }

    def build_payment_url(self, params: Mapping[str, Any]) -> str:
        query = self.canonical_query(params)
        return f"{self.payment_url}?{query}&vnp_SecureHash={self.sign(params)}"

    def check_request(self, request: PaymentRequest) -> None:
        return None

    def create_obligation(self, order: Order, amount_due: Decimal, request: PaymentRequest) -> ObligationHandle:
        """Open a PROCESSING obligation with a signed redirect URL.

        Raises:
            BusinessRuleViolation: If nothing is due on the order
        """
        require_positive_amount(order, amount_due)
        params = self.build_params(order, amount_due, request)
        logger.info(f"VNPay payment URL created for order {order.order_id} | txn_ref={params['vnp_TxnRef']}")
        return ObligationHandle(
            gateway=self.name,
            amount_due=amount_due,
            reference=params["vnp_TxnRef"],
            payment_url=self.build_payment_url(params),
        )

    def parse_callback(self, query: Mapping[str, Any]) -> VNPayCallback:
        """Verify and parse VNPay callback parameters.

        Args:
            query: Query parameters of the return or IPN request

        Returns:
            VNPayCallback: The verified callback

        Raises:
            SecurityRejection: If the signature is missing or does not match
            ValidationFailure: If a required field is missing or malformed
        """
        if not query.get("vnp_SecureHash") or not self.verify(query):
            logger.warning(f"VNPay callback rejected: invalid signature | txn_ref={query.get('vnp_TxnRef')}")
            raise SecurityRejection("Invalid VNPay signature")
        try:
            return VNPayCallback.model_validate(dict(query))
        except ValidationError as e:
            messages = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationFailure("Invalid VNPay callback", validation=messages) from e

    @staticmethod
    def is_successful(callback: VNPayCallback) -> bool:
        if callback.response_code != SUCCESS_CODE:
            return False
        return callback.transaction_status is None or callback.transaction_status == SUCCESS_CODE

    def confirm(self, obligation: PaymentObligation, evidence: VNPayCallback) -> Optional[Confirmation]:
        """Turn a verified callback into a confirmation.

        Raises:
            BusinessRuleViolation: If the reported amount differs from the amount due
        """
        if evidence.amount != to_minor(obligation.amount_due):
            logger.warning(
                f"VNPay amount mismatch for obligation {obligation.obligation_id} | "
                f"expected={to_minor(obligation.amount_due)} | received={evidence.amount}"
            )
            raise BusinessRuleViolation(
                "Invalid amount",
                f"VNPay reported {evidence.amount} but {to_minor(obligation.amount_due)} was due",
                detail={"order_id": obligation.order_id},
            )

        if self.is_successful(evidence):
            return Confirmation(
                status=ObligationStatus.PAID,
                amount_collected=obligation.amount_due,
                reference=evidence.transaction_no or evidence.txn_ref,
                source="vnpay",
            )
        return Confirmation(
            status=ObligationStatus.CANCELLED,
            reference=evidence.transaction_no or evidence.txn_ref,
            source="vnpay",
        )
