# Overview: HTTP client for the hosted card payment gateway, plus webhook signature checks.

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime

import httpx
from flask import current_app

from ..time_utils import parse_iso_datetime
from .pricing_service import format_cents


GATEWAY_COMPLETED = "completed"
GATEWAY_FAILED = "failed"
GATEWAY_CANCELLED = "cancelled"
GATEWAY_PENDING = "pending"

GATEWAY_STATUSES = {GATEWAY_COMPLETED, GATEWAY_FAILED, GATEWAY_CANCELLED, GATEWAY_PENDING}


class PaymentGatewayError(Exception):
    """Gateway unreachable, non-2xx, or refused the request."""
    pass


@dataclass(frozen=True)
class GatewaySession:
    session_id: str
    payment_url: str


@dataclass(frozen=True)
class GatewayVerification:
    status: str
    transaction_id: str | None = None
    paid_at: datetime | None = None
    card_last4: str | None = None
    card_brand: str | None = None


class HttpPaymentGateway:
    """
    Hosted-checkout gateway over JSON/HTTP.

    initiate() opens a payment session the customer is redirected to; verify()
    asks for the session's current status. Every failure surfaces as
    PaymentGatewayError so callers handle a single exception type.
    """

    def __init__(
        self,
        base_url: str,
        *,
        merchant_id: str,
        api_key: str,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.merchant_id = merchant_id
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _post(self, path: str, body: dict) -> dict:
        headers = {"Content-Type": "application/json", "X-API-Key": self.api_key}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(f"{self.base_url}{path}", json=body, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise PaymentGatewayError(f"Payment gateway returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Payment gateway unreachable: {e}") from e
        except ValueError as e:
            raise PaymentGatewayError("Payment gateway returned an invalid response") from e

        if not isinstance(data, dict) or not data.get("success"):
            error = data.get("error") if isinstance(data, dict) else None
            raise PaymentGatewayError(error or "Payment gateway rejected the request")
        return data

    def initiate(
        self,
        *,
        amount_cents: int,
        currency: str,
        order_ref: str,
        return_url: str,
        cancel_url: str,
        notify_url: str,
        customer: dict | None = None,
    ) -> GatewaySession:
        customer = customer or {}
        data = self._post("/api/v1/payment/initiate", {
            "merchantId": self.merchant_id,
            "amount": format_cents(amount_cents),
            "currency": currency,
            "orderId": order_ref,
            "description": f"Order {order_ref}",
            "customerEmail": customer.get("email") or "",
            "customerPhone": customer.get("phone") or "",
            "customerName": customer.get("name") or "",
            "returnUrl": return_url,
            "cancelUrl": cancel_url,
            "notifyUrl": notify_url,
        })
        session_id = data.get("sessionId")
        payment_url = data.get("paymentUrl")
        if not session_id or not payment_url:
            raise PaymentGatewayError("Payment gateway response missing session")
        return GatewaySession(session_id=session_id, payment_url=payment_url)

    def verify(self, session_id: str) -> GatewayVerification:
        data = self._post("/api/v1/payment/verify", {"sessionId": session_id})
        status = data.get("status")
        if status not in GATEWAY_STATUSES:
            raise PaymentGatewayError(f"Unknown payment status from gateway: {status}")
        try:
            paid_at = parse_iso_datetime(data.get("paidAt"))
        except ValueError:
            paid_at = None
        return GatewayVerification(
            status=status,
            transaction_id=data.get("transactionId"),
            paid_at=paid_at,
            card_last4=data.get("cardLast4"),
            card_brand=data.get("cardBrand"),
        )


def get_payment_gateway():
    gateway = current_app.extensions.get("payment_gateway")
    if gateway is not None:
        return gateway
    config = current_app.config
    return HttpPaymentGateway(
        config["PAYMENT_GATEWAY_URL"],
        merchant_id=config["PAYMENT_MERCHANT_ID"],
        api_key=config["PAYMENT_API_KEY"],
        timeout=config["PAYMENT_GATEWAY_TIMEOUT"],
    )


# =============================================================================
# WEBHOOK SIGNATURES
# =============================================================================

def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature.strip())
