"""Async HTTP client for the Razorpay Orders/Payments REST API."""

import hashlib
import hmac
import logging
import time

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from collab.core.config import settings
from collab.core.errors import ErrorKind, FlowError

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Upstream payment API failed after retries."""


def _hmac_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_payment_signature(
    order_id: str, payment_id: str, signature: str, secret: str | None = None,
) -> bool:
    """Check the checkout signature: HMAC-SHA256 of ``order_id|payment_id``."""
    secret = secret if secret is not None else settings.razorpay_key_secret
    if not secret or not signature:
        return False
    expected = _hmac_hex(secret, f"{order_id}|{payment_id}".encode())
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(
    body: bytes, signature: str | None, secret: str | None = None,
) -> bool:
    """Check ``X-Razorpay-Signature``: HMAC-SHA256 over the raw body."""
    secret = secret if secret is not None else settings.razorpay_webhook_secret
    if not secret or not signature:
        return False
    return hmac.compare_digest(_hmac_hex(secret, body), signature)


def make_receipt(conversation_id: int) -> str:
    # Gateway caps receipts at 40 chars
    return f"conv_{conversation_id}_{int(time.time())}"[:40]


class RazorpayClient:
    """Thin async wrapper around the Razorpay REST API."""

    def __init__(
        self,
        key_id: str | None = None,
        key_secret: str | None = None,
        base_url: str | None = None,
    ) -> None:
        self.key_id = key_id or settings.razorpay_key_id
        self.key_secret = key_secret or settings.razorpay_key_secret
        self.base_url = (base_url or settings.razorpay_api_base_url).rstrip("/")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException, GatewayError)),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> dict:
        """Execute HTTP request with tenacity retry on transport and 5xx errors."""
        req_timeout = kwargs.pop("timeout", 15)
        async with httpx.AsyncClient(
            timeout=req_timeout, auth=(self.key_id, self.key_secret),
        ) as client:
            resp = await client.request(method, f"{self.base_url}{path}", **kwargs)
        if resp.status_code >= 500:
            raise GatewayError(f"{method} {path} -> {resp.status_code}")
        resp.raise_for_status()
        return resp.json()

    async def _call(self, method: str, path: str, **kwargs) -> dict:
        try:
            return await self._request(method, path, **kwargs)
        except (httpx.HTTPError, GatewayError) as exc:
            logger.warning("Razorpay %s %s failed: %s", method, path, exc)
            raise FlowError(ErrorKind.GATEWAY_UNAVAILABLE, "Payment gateway request failed") from exc

    async def create_order(
        self, amount_paise: int, currency: str, receipt: str, notes: dict | None = None,
    ) -> dict:
        """Create an order; returns the gateway's order object (``id``, ``status``, …)."""
        return await self._call(
            "POST",
            "/orders",
            json={
                "amount": amount_paise,
                "currency": currency,
                "receipt": receipt,
                "notes": {k: str(v) for k, v in (notes or {}).items()},
            },
        )

    async def fetch_order(self, order_id: str) -> dict:
        return await self._call("GET", f"/orders/{order_id}")

    async def fetch_order_payments(self, order_id: str) -> list[dict]:
        data = await self._call("GET", f"/orders/{order_id}/payments")
        return data.get("items", [])

    async def fetch_payment(self, payment_id: str) -> dict:
        return await self._call("GET", f"/payments/{payment_id}")


_client: RazorpayClient | None = None


def get_gateway() -> RazorpayClient:
    global _client
    if _client is None:
        _client = RazorpayClient()
    return _client


def set_gateway(client: RazorpayClient | None) -> None:
    """Swap the process-wide client (tests inject fakes here)."""
    global _client
    _client = client
