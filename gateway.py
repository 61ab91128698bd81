import logging
import random
import string
from typing import Any, Dict, Optional, Protocol

import requests

from errors import PaymentGatewayError

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    def create_order(self, amount: int, currency: str, receipt: str,
                     notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]: ...

    def refund(self, payment_id: str, amount: Optional[int] = None) -> Dict[str, Any]: ...


class RazorpayClient:
    """Thin client for the Razorpay REST API. Amounts are in minor units."""

    def __init__(self, key_id: str, key_secret: str, base_url: str = "https://api.razorpay.com/v1",
                 session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.key_id = key_id
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.auth = (key_id, key_secret)

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = self._session.post(url, json=payload, timeout=self._timeout)
        except requests.RequestException as exc:
            logger.error("Razorpay request to %s failed: %s", path, exc)
            raise PaymentGatewayError("Payment gateway unreachable") from exc
        if response.status_code >= 400:
            logger.error("Razorpay %s returned %s: %s", path, response.status_code, response.text)
            raise PaymentGatewayError(f"Payment gateway rejected the request ({response.status_code})")
        return response.json()

    def create_order(self, amount: int, currency: str, receipt: str,
                     notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return self._post("/orders", {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        })

    def refund(self, payment_id: str, amount: Optional[int] = None) -> Dict[str, Any]:
        payload = {} if amount is None else {"amount": amount}
        return self._post(f"/payments/{payment_id}/refund", payload)


def _ref(prefix: str) -> str:
    return prefix + "".join(random.choices(string.ascii_letters + string.digits, k=14))


class MockGateway:
    """Offline stand-in used when no Razorpay key is configured."""

    key_id = "rzp_test_mock"

    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.refunds: Dict[str, Dict[str, Any]] = {}

    def create_order(self, amount: int, currency: str, receipt: str,
                     notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        order = {
            "id": _ref("order_"),
            "entity": "order",
            "amount": amount,
            "amount_paid": 0,
            "currency": currency,
            "receipt": receipt,
            "status": "created",
            "notes": notes or {},
        }
        self.orders[order["id"]] = order
        return order

    def refund(self, payment_id: str, amount: Optional[int] = None) -> Dict[str, Any]:
        refund = {
            "id": _ref("rfnd_"),
            "entity": "refund",
            "payment_id": payment_id,
            "amount": amount,
            "status": "processed",
        }
        self.refunds[refund["id"]] = refund
        return refund
