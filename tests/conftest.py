"""Test fixtures for the settlement service tests."""

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from settlement_service.config import set_settings_for_test
from settlement_service.gateways import CashGateway
from settlement_service.orchestrator import SettlementOrchestrator
from settlement_service.schemas import DiscountCreate, GatewayName, ProductPrice
from settlement_service.server import app, state
from settlement_service.store import SettlementStore
from settlement_service.stripe_gateway import StripeGateway
from settlement_service.vnpay import VNPayGateway, to_minor

VNPAY_SECRET = "vnpay-test-secret"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
FAR_FUTURE = datetime(2099, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    """Settings with deterministic gateway credentials and no Kafka."""
    return set_settings_for_test(
        app_env="test",
        vnpay_tmn_code="TESTTMN1",
        vnpay_hash_secret=VNPAY_SECRET,
        vnpay_ipn_enabled=False,
        stripe_secret_key=None,
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        kafka_bootstrap_servers=None,
        pos_url="http://pos.test",
    )


@pytest.fixture
def store():
    """A store seeded with a small catalog and the OPEN10 coupon.

    OPEN10 takes 10% off orders of at least 100,000, capped at 40,000.
    """
    store = SettlementStore()
    store.add_price(ProductPrice(price_id=1, product_name="Croissant", price=Decimal("100000")))
    store.add_price(ProductPrice(price_id=2, product_name="Baguette", size_name="Large", price=Decimal("50000")))
    store.add_price(ProductPrice(price_id=3, product_name="Fruit tart", price=Decimal("80000"), is_active=False))
    store.add_discount(
        DiscountCreate(
            name="Grand opening",
            coupon_code="OPEN10",
            discount_value=Decimal("10"),
            min_required_order_value=Decimal("100000"),
            max_discount_amount=Decimal("40000"),
            valid_until=FAR_FUTURE,
        )
    )
    return store


@pytest.fixture
def stripe_client():
    """A mocked StripeClient whose PaymentIntent creation always succeeds."""
    client = MagicMock()
    client.payment_intents.create.return_value = SimpleNamespace(
        id="pi_test_123", client_secret="pi_test_123_secret_abc", status="requires_payment_method"
    )
    return client


@pytest.fixture
def vnpay_gateway():
    return VNPayGateway(
        tmn_code="TESTTMN1",
        hash_secret=VNPAY_SECRET,
        payment_url="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
        return_url="http://pos.test/payment/vnpay/callback",
    )


@pytest.fixture
def stripe_gateway(stripe_client):
    return StripeGateway(client=stripe_client, webhook_secret=STRIPE_WEBHOOK_SECRET)


@pytest.fixture
def gateways(vnpay_gateway, stripe_gateway):
    return {
        GatewayName.CASH: CashGateway(),
        GatewayName.VNPAY: vnpay_gateway,
        GatewayName.STRIPE: stripe_gateway,
    }


@pytest.fixture
def orchestrator(store, gateways):
    return SettlementOrchestrator(store, gateways)


@pytest.fixture
def test_client(settings, orchestrator):
    """Create a test client wired to the fixture orchestrator."""
    state.settings = settings
    state.orchestrator = orchestrator
    yield TestClient(app)
    state.settings = None
    state.orchestrator = None


@pytest.fixture
def cart():
    """Five croissants: a 500,000 cart."""
    return [{"price_id": 1, "quantity": 5}]


@pytest.fixture
def vnpay_query(vnpay_gateway):
    """Build signed VNPay callback parameters for an obligation."""

    def _build(obligation, response_code="00", transaction_status="00", amount=None, transaction_no="14000001"):
        params = {
            "vnp_TmnCode": "TESTTMN1",
            "vnp_Amount": str(amount if amount is not None else to_minor(obligation.amount_due)),
            "vnp_BankCode": "NCB",
            "vnp_BankTranNo": "VNP14000001",
            "vnp_CardType": "ATM",
            "vnp_OrderInfo": f"Thanh toan don hang {obligation.order_id}",
            "vnp_PayDate": "20250101120000",
            "vnp_ResponseCode": response_code,
            "vnp_TransactionNo": transaction_no,
            "vnp_TransactionStatus": transaction_status,
            "vnp_TxnRef": obligation.reference,
        }
        params["vnp_SecureHash"] = vnpay_gateway.sign(params)
        return params

    return _build


def sign_stripe_payload(payload: str, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Compute a ``Stripe-Signature`` header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def stripe_event():
    """Build a Stripe PaymentIntent webhook payload and its signature header."""

    def _build(
        intent_id="pi_test_123",
        order_id="1",
        status="succeeded",
        amount=46000000,
        event_type="payment_intent.succeeded",
        event_id="evt_test_1",
    ):
        metadata = {} if order_id is None else {"order_id": order_id}
        payload = json.dumps(
            {
                "id": event_id,
                "object": "event",
                "type": event_type,
                "created": int(time.time()),
                "data": {
                    "object": {
                        "id": intent_id,
                        "object": "payment_intent",
                        "status": status,
                        "amount": amount,
                        "amount_received": amount if status == "succeeded" else 0,
                        "currency": "vnd",
                        "metadata": metadata,
                    }
                },
            }
        )
        return payload, sign_stripe_payload(payload)

    return _build


@pytest.fixture
def sign_stripe():
    return sign_stripe_payload
