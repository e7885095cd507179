import json
from dataclasses import replace
from typing import Mapping, Optional

from storefront.errors import GatewayError
from storefront.logging_config import get_logger
from storefront.models import NormalizedStatus
from storefront.payment_gateway import HttpPaymentGateway, InitiatedPayment, PaymentMethod, PayPalPayload, ProviderEvent

log = get_logger(__name__)

STATUS_MAP = {
    "CREATED": NormalizedStatus.INITIATED,
    "SAVED": NormalizedStatus.INITIATED,
    "PAYER_ACTION_REQUIRED": NormalizedStatus.INITIATED,
    "APPROVED": NormalizedStatus.PROCESSING,
    "PENDING": NormalizedStatus.PROCESSING,
    "COMPLETED": NormalizedStatus.COMPLETED,
    "VOIDED": NormalizedStatus.CANCELED,
    "DECLINED": NormalizedStatus.FAILED,
    "DENIED": NormalizedStatus.FAILED,
    "FAILED": NormalizedStatus.FAILED,
}

HANDLED_EVENTS = frozenset({
    "CHECKOUT.ORDER.APPROVED",
    "CHECKOUT.ORDER.COMPLETED",
    "CHECKOUT.ORDER.VOIDED",
    "PAYMENT.CAPTURE.COMPLETED",
    "PAYMENT.CAPTURE.PENDING",
    "PAYMENT.CAPTURE.DENIED",
    "PAYMENT.CAPTURE.DECLINED",
})

# Headers PayPal signs every webhook delivery with, as named by the verification API.
VERIFICATION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def normalize_status(raw_status: Optional[str]) -> Optional[NormalizedStatus]:
    return STATUS_MAP.get((raw_status or "").upper())


def format_amount(amount: int) -> str:
    return f"{amount // 100}.{amount % 100:02d}"


class PayPalGateway(HttpPaymentGateway):
    """PayPal Orders v2 redirect checkout."""

    name = "paypal"

    def __init__(self, settings, client=None):
        super().__init__(settings.paypal_base_url, settings.payment_timeout, client)
        self.client_id = settings.paypal_client_id
        self.secret = settings.paypal_secret
        self.webhook_id = settings.paypal_webhook_id

    def _access_token(self) -> str:
        response = self._request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.secret),
        )
        token = self._json(response).get("access_token")
        if not token:
            raise GatewayError(self.name, "failed to get PayPal access token")
        return token

    def _auth(self):
        return {"Authorization": f"Bearer {self._access_token()}"}

    def initiate(self, amount, currency, order_ref, redirect_url, attempt_id, payment_method=None):
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": order_ref,
                "amount": {"currency_code": currency, "value": format_amount(amount)},
                "description": f"Payment for order {order_ref}",
                "custom_id": attempt_id,
            }],
            "application_context": {"return_url": redirect_url, "cancel_url": redirect_url},
        }
        data = self._json(self._request("POST", "/v2/checkout/orders", json=body, headers=self._auth()))

        approval_url = next((link["href"] for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")), None)
        if not data.get("id") or not approval_url:
            raise GatewayError(self.name, "no approval URL found in PayPal response")
        return InitiatedPayment(
            provider_payment_id=data["id"],
            payment_url=approval_url,
            status=normalize_status(data.get("status")) or NormalizedStatus.INITIATED,
        )

    def get_status(self, provider_payment_id):
        data = self._json(self._request("GET", f"/v2/checkout/orders/{provider_payment_id}", headers=self._auth()))
        if (data.get("status") or "").upper() == "APPROVED":
            return self.capture(provider_payment_id)
        status = normalize_status(data.get("status"))
        if status is None:
            log.warning(f"PayPal order {provider_payment_id} reported unknown status {data.get('status')!r}")
        return status

    def capture(self, provider_payment_id) -> Optional[NormalizedStatus]:
        """Takes the money for an approved order; returns the status of the resulting capture."""
        headers = {**self._auth(), "PayPal-Request-Id": f"capture-{provider_payment_id}"}
        data = self._json(self._request(
            "POST", f"/v2/checkout/orders/{provider_payment_id}/capture", json={}, headers=headers
        ))
        captures = [
            capture
            for unit in data.get("purchase_units", [])
            for capture in (unit.get("payments") or {}).get("captures", [])
        ]
        raw_status = captures[0].get("status") if captures else data.get("status")
        log.info(f"PayPal order {provider_payment_id} captured with status {raw_status!r}")
        return normalize_status(raw_status)

    def settle(self, event: ProviderEvent) -> ProviderEvent:
        if event.payload.event_type != "CHECKOUT.ORDER.APPROVED" or not event.provider_payment_id:
            return event
        return replace(event, status=self.capture(event.provider_payment_id))

    def cancel(self, provider_payment_id):
        self._request("POST", f"/v2/checkout/orders/{provider_payment_id}/cancel", headers=self._auth())

    def refund(self, provider_payment_id):
        headers = self._auth()
        order = self._json(self._request("GET", f"/v2/checkout/orders/{provider_payment_id}", headers=headers))
        captures = [
            capture
            for unit in order.get("purchase_units", [])
            for capture in (unit.get("payments") or {}).get("captures", [])
        ]
        if not captures:
            raise GatewayError(self.name, f"order {provider_payment_id} has no capture to refund")
        for capture in captures:
            self._request("POST", f"/v2/payments/captures/{capture['id']}/refund", json={}, headers=headers)

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_id:
            return False
        fields = {name: headers.get(header) for name, header in VERIFICATION_HEADERS.items()}
        if not all(fields.values()):
            return False
        try:
            event = json.loads(body)
        except ValueError:
            return False

        verification = {**fields, "webhook_id": self.webhook_id, "webhook_event": event}
        data = self._json(self._request(
            "POST", "/v1/notifications/verify-webhook-signature", json=verification, headers=self._auth()
        ))
        return data.get("verification_status") == "SUCCESS"

    def parse_webhook(self, body: bytes) -> Optional[ProviderEvent]:
        try:
            raw = json.loads(body)
            resource = raw.get("resource") or {}
            units = resource.get("purchase_units") or [{}]
            related = ((resource.get("supplementary_data") or {}).get("related_ids") or {})
            payload = PayPalPayload(
                event_type=raw.get("event_type", ""),
                resource_id=resource.get("id", ""),
                status=resource.get("status", ""),
                custom_id=resource.get("custom_id") or units[0].get("custom_id"),
                order_reference=related.get("order_id"),
            )
        except (ValueError, AttributeError, IndexError) as e:
            raise ValueError(f"Invalid PayPal webhook payload: {e}") from e

        if payload.event_type not in HANDLED_EVENTS:
            return None

        # Capture events carry the capture id; the payment reference we stored is the order id.
        reference = payload.order_reference or payload.resource_id
        if not reference and not payload.custom_id:
            raise ValueError("PayPal webhook carries no payment identifier")
        status = normalize_status(payload.status)
        if payload.event_type == "CHECKOUT.ORDER.VOIDED":
            status = NormalizedStatus.CANCELED
        return ProviderEvent(
            provider=self.name,
            provider_payment_id=reference,
            status=status,
            attempt_id=payload.custom_id,
            payload=payload,
        )

    def payment_methods(self):
        return [PaymentMethod("paypal", "PayPal", "Pay with your PayPal account", self.name)]
