"""Test doubles and signing helpers shared by the test modules."""

import hashlib
import hmac
import json

from collab.core.config import settings
from collab.core.errors import ErrorKind, FlowError
from collab.core.security import create_access_token
from collab.models.user import User
from collab.services.gateway.client import RazorpayClient


class FakeGateway(RazorpayClient):
    """In-memory stand-in for the Razorpay Orders/Payments API."""

    def __init__(self) -> None:
        super().__init__(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            base_url="https://gateway.invalid/v1",
        )
        self.orders: dict[str, dict] = {}
        self.payments: dict[str, dict] = {}
        self.created = 0
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise FlowError(ErrorKind.GATEWAY_UNAVAILABLE, "Payment gateway request failed")

    async def create_order(self, amount_paise, currency, receipt, notes=None) -> dict:
        self._check()
        self.created += 1
        order = {
            "id": f"order_{self.created:06d}",
            "amount": amount_paise,
            "currency": currency,
            "receipt": receipt,
            "status": "created",
            "notes": {k: str(v) for k, v in (notes or {}).items()},
        }
        self.orders[order["id"]] = order
        return order

    async def fetch_order(self, order_id: str) -> dict:
        self._check()
        return self.orders[order_id]

    async def fetch_order_payments(self, order_id: str) -> list[dict]:
        self._check()
        return [p for p in self.payments.values() if p["order_id"] == order_id]

    async def fetch_payment(self, payment_id: str) -> dict:
        self._check()
        return self.payments[payment_id]

    def pay(self, order_id: str, payment_id: str | None = None) -> dict:
        """Simulate the payer completing checkout."""
        order = self.orders[order_id]
        order["status"] = "paid"
        payment = {
            "id": payment_id or f"pay_{len(self.payments) + 1:06d}",
            "order_id": order_id,
            "amount": order["amount"],
            "currency": order["currency"],
            "status": "captured",
        }
        self.payments[payment["id"]] = payment
        return payment


class FakeSocket:
    """Connection double that records every frame sent to it."""

    def __init__(self, fail: bool = False) -> None:
        self.frames: list[dict] = []
        self.fail = fail

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.frames.append(json.loads(data))

    def events(self, name: str | None = None) -> list[dict]:
        return [f for f in self.frames if name is None or f["event"] == name]


def sign_payment(order_id: str, payment_id: str) -> str:
    return hmac.new(
        settings.razorpay_key_secret.encode(),
        f"{order_id}|{payment_id}".encode(),
        hashlib.sha256,
    ).hexdigest()


def sign_webhook(body: bytes) -> str:
    return hmac.new(
        settings.razorpay_webhook_secret.encode(), body, hashlib.sha256,
    ).hexdigest()


def webhook_body(order_id: str, payment: dict, event: str = "payment.captured") -> bytes:
    return json.dumps(
        {
            "event": event,
            "payload": {
                "payment": {
                    "entity": {
                        "id": payment["id"],
                        "order_id": order_id,
                        "amount": payment["amount"],
                        "status": "captured",
                    }
                }
            },
        }
    ).encode()


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}
