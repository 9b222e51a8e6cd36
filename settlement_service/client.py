"""HTTP client for the settlement API, used by the POS and dashboard backends."""

from typing import Any, Iterable, Optional

import requests

from .envelope import EnvelopeError, decode, safe_decode
from .logger import get_logger

logger = get_logger("client")


class SettlementClient:
    """Thin client that calls the settlement API and unwraps its envelopes.

    Every method returns the ``data`` of a success envelope. A ``fail`` envelope
    raises :class:`EnvelopeFailError`, an ``error`` envelope raises
    :class:`EnvelopeServerError`. The ``safe_*`` methods return None instead.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _send(self, method: str, path: str, **kwargs) -> Any:
        response = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise EnvelopeError(f"Non-JSON response from {path} ({response.status_code})") from e

    def _request(self, method: str, path: str, **kwargs) -> Any:
        return decode(self._send(method, path, **kwargs))

    def _safe_request(self, method: str, path: str, **kwargs) -> Any:
        try:
            return safe_decode(self._send(method, path, **kwargs))
        except (requests.RequestException, EnvelopeError) as e:
            logger.warning(f"{method} {path} failed: {e}")
            return None

    def get_discount(self, coupon_code: str) -> dict:
        return self._request("GET", f"/discounts/{coupon_code}")

    def validate_discounts(
        self,
        coupon_codes: Iterable[str],
        total_amount: float,
        product_count: int,
        customer_id: Optional[int] = None,
    ) -> dict:
        payload = {
            "coupon_codes": list(coupon_codes),
            "total_amount": total_amount,
            "product_count": product_count,
            "customer_id": customer_id,
        }
        return self._request("POST", "/discounts/validate", json=payload)

    def calculate(self, items: list[dict], coupon_codes: Iterable[str] = (), customer_id: Optional[int] = None) -> dict:
        payload = {"items": items, "coupon_codes": list(coupon_codes), "customer_id": customer_id}
        return self._request("POST", "/orders/calculate", json=payload)

    def create_order(self, payload: dict) -> dict:
        return self._request("POST", "/orders", json=payload)

    def get_order(self, order_id: int) -> dict:
        return self._request("GET", f"/orders/{order_id}")

    def list_orders(self, status: Optional[str] = None, page: int = 1, limit: int = 20) -> dict:
        params = {"page": page, "limit": limit}
        if status:
            params["status"] = status
        return self._request("GET", "/orders", params=params)

    def cancel_order(self, order_id: int) -> dict:
        return self._request("POST", f"/orders/{order_id}/cancel")

    def checkout(self, payload: dict) -> dict:
        """Place an order and open its payment.

        Args:
            payload: Cart, coupon codes, gateway and gateway input

        Returns:
            dict: ``{"order": ..., "obligation": ...}``
        """
        return self._request("POST", "/checkout", json=payload)

    def open_payment(self, order_id: int, payload: dict) -> dict:
        return self._request("POST", f"/orders/{order_id}/payments", json=payload)

    def list_payments(self, order_id: Optional[int] = None, page: int = 1, limit: int = 20) -> dict:
        params = {"page": page, "limit": limit}
        if order_id is not None:
            params["order_id"] = order_id
        return self._request("GET", "/payments", params=params)

    def safe_get_order(self, order_id: int) -> Optional[dict]:
        return self._safe_request("GET", f"/orders/{order_id}")

    def safe_get_discount(self, coupon_code: str) -> Optional[dict]:
        return self._safe_request("GET", f"/discounts/{coupon_code}")

    def safe_list_orders(self, status: Optional[str] = None, page: int = 1, limit: int = 20) -> Optional[dict]:
        params = {"page": page, "limit": limit}
        if status:
            params["status"] = status
        return self._safe_request("GET", "/orders", params=params)

    def safe_list_payments(self, order_id: Optional[int] = None, page: int = 1, limit: int = 20) -> Optional[dict]:
        params = {"page": page, "limit": limit}
        if order_id is not None:
            params["order_id"] = order_id
        return self._safe_request("GET", "/payments", params=params)
