"""FastAPI server implementation for the Settlement Service."""

import urllib.parse
from contextlib import asynccontextmanager
from typing import Optional

from confluent_kafka.admin import AdminClient
from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from .config import Settings, get_settings
from .envelope import install_envelope_handlers, respond
from .exceptions import SettlementError
from .gateways import CashGateway
from .logger import configure_logging
from .orchestrator import SettlementOrchestrator
from .producer import SettlementEventProducer
from .schemas import (
    CalculateOrderRequest,
    CheckoutRequest,
    CreateOrderRequest,
    DiscountCreate,
    GatewayName,
    MembershipAssignment,
    MembershipTypeCreate,
    OrderStatus,
    PaymentRequest,
    ValidateDiscountsRequest,
)
from .store import SettlementStore
from .stripe_gateway import StripeGateway
from .vnpay import VNPayGateway

# Configure service logger
logger = configure_logging()


class SettlementState:
    """Class to manage settlement service state."""

    def __init__(self):
        """Initialize settlement state."""
        self.settings: Optional[Settings] = None
        self.orchestrator: Optional[SettlementOrchestrator] = None
        self.producer: Optional[SettlementEventProducer] = None

    def build(self, settings: Settings) -> SettlementOrchestrator:
        """Construct the store, gateways and producer from settings.

        Args:
            settings: Service configuration

        Returns:
            SettlementOrchestrator: The wired orchestrator
        """
        self.settings = settings
        if settings.kafka_bootstrap_servers:
            self.producer = SettlementEventProducer(settings.kafka_bootstrap_servers)

        gateways = {
            GatewayName.CASH: CashGateway(),
            GatewayName.VNPAY: VNPayGateway.from_settings(settings),
            GatewayName.STRIPE: StripeGateway.from_settings(settings),
        }
        self.orchestrator = SettlementOrchestrator(
            SettlementStore(),
            gateways,
            producer=self.producer,
            vnpay_ipn_enabled=settings.vnpay_ipn_enabled,
        )
        return self.orchestrator

    @property
    def service(self) -> SettlementOrchestrator:
        if self.orchestrator is None:
            self.build(get_settings())
        return self.orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage the lifecycle of the FastAPI application.

    Args:
        app: The FastAPI application instance
    """
    if state.orchestrator is None:
        state.build(get_settings())
    logger.info(f"Settlement service started | gateways={[g.value for g in state.orchestrator.gateways]}")

    yield

    logger.info("Shutting down settlement service...")
    if state.producer:
        state.producer.close()
    logger.info("Shutdown complete")


# Initialize FastAPI app and state
app = FastAPI(title="Settlement Service", lifespan=lifespan)
state = SettlementState()
install_envelope_handlers(app, expose_detail=not get_settings().is_production)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "127.0.0.1"


def _check_kafka_connection(bootstrap_servers: str) -> bool:
    """Check if Kafka connection is available.

    Returns:
        bool: True if Kafka is accessible, False otherwise.
    """
    try:
        admin = AdminClient({"bootstrap.servers": bootstrap_servers})
        return bool(admin.list_topics(timeout=5))
    except Exception as e:
        logger.error(f"Kafka connection failed: {e}")
        return False


@app.get("/health")
def health_check():
    """Basic health check endpoint."""
    return respond({"status": "healthy"})


@app.get("/health/ready")
def readiness_check():
    """Check if the service is ready to handle requests.

    Kafka is only checked when a bootstrap server is configured.
    """
    settings = state.settings or get_settings()
    if not settings.kafka_bootstrap_servers:
        return respond({"status": "ready", "kafka": "disabled"})
    kafka_ok = _check_kafka_connection(settings.kafka_bootstrap_servers)
    return respond(
        {"status": "ready" if kafka_ok else "not_ready", "kafka": "connected" if kafka_ok else "disconnected"}
    )


@app.post("/discounts")
def create_discount(discount: DiscountCreate):
    return respond(state.service.create_discount(discount), status_code=201)


@app.post("/discounts/validate")
def validate_discounts(request: ValidateDiscountsRequest):
    """Check coupon codes against a cart without consuming them.

    Returns:
        Valid and invalid discounts with amounts, reasons and a summary.
    """
    return respond(state.service.validate_discounts(request))


@app.get("/discounts/{coupon_code}")
def get_discount(coupon_code: str):
    return respond(state.service.get_discount_by_code(coupon_code))


@app.post("/memberships")
def create_membership_type(membership: MembershipTypeCreate):
    return respond(state.service.create_membership_type(membership), status_code=201)


@app.put("/customers/{customer_id}/membership")
def assign_membership(customer_id: int, assignment: MembershipAssignment):
    """Put a customer on a membership tier; later orders get its discount."""
    return respond(state.service.assign_membership(customer_id, assignment.membership_type_id))


@app.post("/orders/calculate")
def calculate_order(request: CalculateOrderRequest):
    """Price a cart and preview its discounts without creating an order."""
    return respond(state.service.calculate(request))


@app.post("/orders")
def create_order(request: CreateOrderRequest):
    """Create a PROCESSING order.

    Args:
        request: Cart, coupon codes and the customer placing the order

    Returns:
        The created order wrapped in a success envelope.
    """
    order = state.service.place_order(request)
    return respond(order, status_code=201)


@app.get("/orders")
def list_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    return respond(state.service.list_orders(status, page, limit))


@app.get("/orders/{order_id}")
def get_order(order_id: int):
    return respond(state.service.get_order(order_id))


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: int):
    """Cancel a PROCESSING order and void its pending payments."""
    return respond(state.service.cancel_order(order_id))


@app.post("/orders/{order_id}/payments")
def open_payment(order_id: int, payment: PaymentRequest, request: Request):
    """Open a payment on an existing order, for instance after a failed attempt."""
    payment = payment.model_copy(update={"client_ip": _client_ip(request)})
    return respond(state.service.open_payment(order_id, payment), status_code=201)


@app.post("/checkout")
def checkout(checkout_request: CheckoutRequest, request: Request):
    """Create an order and open its payment in one call.

    Returns:
        The order and its payment obligation. Cash payments come back settled;
        VNPay carries a payment URL and Stripe a client secret.
    """
    result = state.service.checkout(checkout_request, client_ip=_client_ip(request))
    return respond(result, status_code=201)


@app.get("/payments")
def list_payments(
    order_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    return respond(state.service.list_payments(order_id, page, limit))


@app.get("/payments/vnpay/callback")
def vnpay_callback(request: Request, redirect: bool = False):
    """Handle the browser return from VNPay.

    With ``redirect=true`` the browser is sent on to the POS success or failure
    page instead of receiving an envelope.
    """
    query = {k: v for k, v in request.query_params.items() if k != "redirect"}
    if not redirect:
        return respond(state.service.handle_vnpay_return(query))

    pos_url = (state.settings or get_settings()).pos_url
    try:
        outcome = state.service.handle_vnpay_return(query)
    except SettlementError as e:
        logger.warning(f"VNPay return rejected: {e.message}")
        return RedirectResponse(f"{pos_url}/payment/failure?message={urllib.parse.quote(e.message)}")

    if outcome.message.startswith("Payment successful") or outcome.order_status is OrderStatus.COMPLETED:
        return RedirectResponse(f"{pos_url}/payment/success?orderId={outcome.order_id}")
    return RedirectResponse(f"{pos_url}/payment/failure?message={urllib.parse.quote(outcome.message)}")


@app.get("/payments/vnpay/ipn")
def vnpay_ipn(request: Request):
    """Handle a VNPay IPN request; answers in the format VNPay dictates."""
    return JSONResponse(state.service.handle_vnpay_ipn(dict(request.query_params)))


@app.post("/payments/stripe/webhook")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
    """Handle a Stripe webhook delivery.

    Any non-2xx answer makes Stripe retry the delivery later.
    """
    payload = await request.body()
    outcome = await run_in_threadpool(state.service.handle_stripe_webhook, payload, stripe_signature)
    return respond(outcome)
