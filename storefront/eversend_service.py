import hashlib
import hmac
import json
from typing import Mapping, Optional

from storefront.errors import GatewayError
from storefront.logging_config import get_logger
from storefront.models import NormalizedStatus
from storefront.payment_gateway import EversendPayload, HttpPaymentGateway, InitiatedPayment, PaymentMethod, ProviderEvent

log = get_logger(__name__)

SIGNATURE_HEADER = "x-webhook-signature"

STATUS_MAP = {
    "created": NormalizedStatus.INITIATED,
    "initiated": NormalizedStatus.INITIATED,
    "pending": NormalizedStatus.PROCESSING,
    "successful": NormalizedStatus.COMPLETED,
    "failed": NormalizedStatus.FAILED,
    "cancelled": NormalizedStatus.CANCELED,
    "canceled": NormalizedStatus.CANCELED,
}


def normalize_status(raw_status: Optional[str]) -> Optional[NormalizedStatus]:
    return STATUS_MAP.get((raw_status or "").lower())


def to_major_units(amount: int) -> float:
    return round(amount / 100, 2)


class EversendGateway(HttpPaymentGateway):
    """Card and mobile-money payments through Eversend's hosted checkout."""

    name = "eversend"

    def __init__(self, settings, client=None):
        super().__init__(settings.eversend_base_url, settings.payment_timeout, client)
        self.api_key = settings.eversend_api_key
        self.webhook_secret = settings.eversend_webhook_secret
        self.callback_url = settings.callback_url

    @property
    def _auth(self):
        return {"Authorization": f"Bearer {self.api_key}"}

    def initiate(self, amount, currency, order_ref, redirect_url, attempt_id, payment_method=None):
        body = {
            "amount": to_major_units(amount),
            "currency": currency,
            "description": f"Payment for order {order_ref}",
            "payment_type": "mobile_money" if payment_method == "eversend_mobile" else "card",
            "metadata": {"payment_id": attempt_id, "order_id": order_ref},
            "callback_url": self.callback_url,
            "redirect_url": redirect_url,
        }
        data = self._json(self._request("POST", "/payments", json=body, headers=self._auth))
        if not data.get("success"):
            raise GatewayError(self.name, data.get("message") or "payment creation failed")

        payment = data.get("data") or {}
        if not payment.get("id"):
            raise GatewayError(self.name, "response carries no payment id")
        return InitiatedPayment(
            provider_payment_id=payment["id"],
            payment_url=payment.get("payment_url"),
            status=normalize_status(payment.get("status")) or NormalizedStatus.INITIATED,
        )

    def get_status(self, provider_payment_id):
        data = self._json(self._request("GET", f"/payments/{provider_payment_id}", headers=self._auth))
        if not data.get("success"):
            raise GatewayError(self.name, "status lookup returned an unsuccessful response")
        raw = (data.get("data") or {}).get("status")
        status = normalize_status(raw)
        if status is None:
            log.warning(f"Eversend payment {provider_payment_id} reported unknown status {raw!r}")
        return status

    def cancel(self, provider_payment_id):
        self._request("POST", f"/payments/{provider_payment_id}/cancel", headers=self._auth)

    def refund(self, provider_payment_id):
        self._request("POST", f"/payments/{provider_payment_id}/refund", headers=self._auth)

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        signature = headers.get(SIGNATURE_HEADER)
        if not self.webhook_secret or not signature:
            return False
        expected = hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    def parse_webhook(self, body: bytes) -> Optional[ProviderEvent]:
        try:
            raw = json.loads(body)
            data = raw.get("data") or {}
            payload = EversendPayload(
                event_type=raw.get("event_type", ""),
                payment_id=data.get("id", ""),
                status=data.get("status", ""),
                metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
            )
        except (ValueError, AttributeError) as e:
            raise ValueError(f"Invalid Eversend webhook payload: {e}") from e

        if payload.event_type != "payment.update":
            return None
        if not payload.payment_id:
            raise ValueError("Eversend webhook carries no payment id")
        return ProviderEvent(
            provider=self.name,
            provider_payment_id=payload.payment_id,
            status=normalize_status(payload.status),
            attempt_id=payload.metadata.get("payment_id"),
            payload=payload,
        )

    def payment_methods(self):
        return [
            PaymentMethod("eversend_card", "Credit/Debit Card",
                          "Pay with Visa, Mastercard, or other credit/debit cards", self.name),
            PaymentMethod("eversend_mobile", "Mobile Money", "Pay with Mobile Money", self.name),
        ]
