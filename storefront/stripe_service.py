import json
from typing import Mapping, Optional

import stripe

from storefront.errors import GatewayError
from storefront.logging_config import get_logger
from storefront.models import NormalizedStatus
from storefront.payment_gateway import InitiatedPayment, PaymentGateway, PaymentMethod, ProviderEvent, StripePayload

log = get_logger(__name__)

STATUS_MAP = {
    "requires_payment_method": NormalizedStatus.INITIATED,
    "requires_confirmation": NormalizedStatus.INITIATED,
    "requires_action": NormalizedStatus.INITIATED,
    "processing": NormalizedStatus.PROCESSING,
    "requires_capture": NormalizedStatus.PROCESSING,
    "succeeded": NormalizedStatus.COMPLETED,
    "canceled": NormalizedStatus.CANCELED,
}

EVENT_STATUS = {
    "payment_intent.processing": NormalizedStatus.PROCESSING,
    "payment_intent.succeeded": NormalizedStatus.COMPLETED,
    "payment_intent.payment_failed": NormalizedStatus.FAILED,
    "payment_intent.canceled": NormalizedStatus.CANCELED,
}


def normalize_status(raw_status: Optional[str]) -> Optional[NormalizedStatus]:
    return STATUS_MAP.get(raw_status or "")


class StripeGateway(PaymentGateway):
    """Card payments through Stripe PaymentIntents (client-side confirmation)."""

    name = "stripe"

    def __init__(self, settings, client: Optional[stripe.StripeClient] = None):
        self.webhook_secret = settings.stripe_webhook_secret
        self.http_client = None
        if client is None:
            # bounded like the httpx gateways; must stay inside the stale-initiation window
            self.http_client = stripe.HTTPXClient(timeout=settings.payment_timeout, allow_sync_methods=True)
            client = stripe.StripeClient(settings.stripe_secret_key, http_client=self.http_client,
                                         max_network_retries=0)
        self.client = client

    def close(self):
        if self.http_client is not None:
            self.http_client.close()

    def _call(self, action, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as e:
            log.error(f"Stripe {action} failed: {e}")
            raise GatewayError(self.name, str(e)) from e

    def initiate(self, amount, currency, order_ref, redirect_url, attempt_id, payment_method=None):
        intent = self._call(
            "payment creation",
            self.client.v1.payment_intents.create,
            params={
                "amount": amount,
                "currency": currency.lower(),
                "automatic_payment_methods": {"enabled": True},
                "metadata": {"payment_attempt_id": attempt_id, "order_id": order_ref},
            },
            options={"idempotency_key": attempt_id},
        )
        return InitiatedPayment(
            provider_payment_id=intent.id,
            client_secret=intent.client_secret,
            status=normalize_status(getattr(intent, "status", None)) or NormalizedStatus.INITIATED,
        )

    def get_status(self, provider_payment_id):
        intent = self._call("status lookup", self.client.v1.payment_intents.retrieve, provider_payment_id)
        if intent.status == "requires_payment_method" and getattr(intent, "last_payment_error", None):
            return NormalizedStatus.FAILED
        status = normalize_status(intent.status)
        if status is None:
            log.warning(f"Stripe intent {provider_payment_id} reported unknown status {intent.status!r}")
        return status

    def cancel(self, provider_payment_id):
        self._call("cancellation", self.client.v1.payment_intents.cancel, provider_payment_id)

    def refund(self, provider_payment_id):
        self._call("refund", self.client.v1.refunds.create, params={"payment_intent": provider_payment_id})

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        signature = headers.get("stripe-signature")
        if not self.webhook_secret or not signature:
            return False
        try:
            stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except ValueError:
            return False
        except stripe.SignatureVerificationError:
            return False
        return True

    def parse_webhook(self, body: bytes) -> Optional[ProviderEvent]:
        try:
            raw = json.loads(body)
            intent = raw["data"]["object"]
            payload = StripePayload(
                event_type=raw.get("type", ""),
                intent_id=intent.get("id", ""),
                status=intent.get("status", ""),
                metadata={str(k): str(v) for k, v in (intent.get("metadata") or {}).items()},
            )
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Invalid Stripe webhook payload: {e}") from e

        if payload.event_type not in EVENT_STATUS:
            return None
        if not payload.intent_id:
            raise ValueError("Stripe webhook carries no payment intent id")
        return ProviderEvent(
            provider=self.name,
            provider_payment_id=payload.intent_id,
            status=EVENT_STATUS[payload.event_type],
            attempt_id=payload.metadata.get("payment_attempt_id"),
            payload=payload,
        )

    def payment_methods(self):
        return [PaymentMethod("stripe_card", "Card", "Pay by card with Stripe", self.name)]
