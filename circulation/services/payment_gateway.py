import hashlib
import hmac
import logging
from typing import Optional, Protocol

import httpx

from circulation.errors import GatewayError
from circulation.services.http_client import HTTPClient

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    def create_order(self, amount: float, reference: str) -> str:
        ...

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        ...


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    """HMAC-SHA256 of ``"<order_id>|<payment_id>"`` as Razorpay signs it."""
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayGateway:
    """Order creation and checkout signature verification against Razorpay."""

    def __init__(self, key_id: str, key_secret: str, base_url: str = "https://api.razorpay.com/v1",
                 currency: str = "INR", timeout: float = 10.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.currency = currency
        self._http = HTTPClient(
            timeout=timeout,
            auth=httpx.BasicAuth(key_id, key_secret),
            transport=transport,
            base_url=base_url,
        )

    def create_order(self, amount: float, reference: str) -> str:
        payload = {
            "amount": int(round(amount * 100)),  # paise
            "currency": self.currency,
            "receipt": reference,
            "payment_capture": 1,
        }
        try:
            response = self._http.post("/orders", json=payload)
        except httpx.RequestError as e:
            logger.error(f"Razorpay order creation failed for {reference}: {e}")
            raise GatewayError("Payment gateway unreachable") from e

        if response.status_code not in (200, 201):
            logger.error(f"Razorpay rejected order {reference}: HTTP {response.status_code} {response.text}")
            raise GatewayError(f"Payment gateway returned HTTP {response.status_code}")

        order_id = response.json().get("id")
        if not order_id:
            raise GatewayError("Payment gateway response had no order id")
        return order_id

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not self.key_secret:
            logger.error("RAZORPAY_KEY_SECRET is not configured; rejecting signature")
            return False
        expected = compute_signature(self.key_secret, order_id, payment_id)
        return hmac.compare_digest(expected, signature or "")

    def close(self) -> None:
        self._http.close()
