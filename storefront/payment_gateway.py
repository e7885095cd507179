"""
Common contract for external payment providers.

Every provider adapter turns its own wire format into the types below at the
boundary, so the checkout and reconciliation code only ever sees
``NormalizedStatus`` values and ``ProviderEvent`` objects.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Union

import httpx

from storefront.errors import GatewayError, UnknownProvider
from storefront.logging_config import get_logger
from storefront.models import NormalizedStatus

log = get_logger(__name__)


@dataclass(frozen=True)
class InitiatedPayment:
    provider_payment_id: str
    payment_url: Optional[str] = None
    client_secret: Optional[str] = None
    status: NormalizedStatus = NormalizedStatus.INITIATED


@dataclass(frozen=True)
class PaymentMethod:
    id: str
    name: str
    description: str
    provider: str


@dataclass(frozen=True)
class EversendPayload:
    event_type: str
    payment_id: str
    status: str
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PayPalPayload:
    event_type: str
    resource_id: str
    status: str
    custom_id: Optional[str] = None
    order_reference: Optional[str] = None


@dataclass(frozen=True)
class StripePayload:
    event_type: str
    intent_id: str
    status: str
    metadata: Dict[str, str] = field(default_factory=dict)


ProviderPayload = Union[EversendPayload, PayPalPayload, StripePayload]


@dataclass(frozen=True)
class ProviderEvent:
    """A webhook decoded and normalized by its adapter.

    ``status`` is None when the provider reported something we do not
    recognise; such events change nothing.
    """

    provider: str
    provider_payment_id: str
    status: Optional[NormalizedStatus]
    attempt_id: Optional[str]
    payload: ProviderPayload


class PaymentGateway(ABC):
    name: str = ""

    @abstractmethod
    def initiate(self, amount: int, currency: str, order_ref: str, redirect_url: str, attempt_id: str,
                 payment_method: Optional[str] = None) -> InitiatedPayment:
        """Opens a payment session. ``amount`` is in minor units."""

    @abstractmethod
    def get_status(self, provider_payment_id: str) -> Optional[NormalizedStatus]:
        """Returns the provider's current status, or None if it is not one we map."""

    @abstractmethod
    def cancel(self, provider_payment_id: str):
        ...

    @abstractmethod
    def refund(self, provider_payment_id: str):
        ...

    @abstractmethod
    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        ...

    @abstractmethod
    def parse_webhook(self, body: bytes) -> Optional[ProviderEvent]:
        """Decodes a verified webhook body; None for event types we ignore."""

    @abstractmethod
    def payment_methods(self) -> List[PaymentMethod]:
        ...

    def settle(self, event: ProviderEvent) -> ProviderEvent:
        """
        Finishes a payment the provider reports as authorised but not yet
        taken, returning the event as it stands afterwards.

        Called only while the order still awaits payment. Most providers
        capture on their own, so by default the event is returned unchanged.
        """
        return event

    def close(self):
        pass


class HttpPaymentGateway(PaymentGateway):
    """Base for providers spoken to over plain JSON/HTTP."""

    def __init__(self, base_url: str, timeout: float, client: Optional[httpx.Client] = None):
        self.client = client or httpx.Client(base_url=base_url, timeout=httpx.Timeout(timeout))

    def close(self):
        self.client.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
            return response
        except httpx.TimeoutException as e:
            log.error(f"{self.name} request {method} {path} timed out: {e}")
            raise GatewayError(self.name, "request timed out") from e
        except httpx.HTTPStatusError as e:
            log.error(f"{self.name} request {method} {path} failed with HTTP {e.response.status_code}")
            raise GatewayError(self.name, f"HTTP {e.response.status_code}: {e.response.text}") from e
        except httpx.HTTPError as e:
            log.error(f"{self.name} request {method} {path} failed: {e}")
            raise GatewayError(self.name, str(e)) from e

    def _json(self, response: httpx.Response) -> dict:
        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(self.name, "response is not valid JSON") from e


class GatewayRegistry:
    """The configured adapters, keyed by provider name."""

    def __init__(self, gateways=None):
        self._gateways: Dict[str, PaymentGateway] = {}
        for gateway in gateways or []:
            self._gateways[gateway.name] = gateway

    def get(self, provider: Optional[str]) -> PaymentGateway:
        gateway = self._gateways.get(provider or "")
        if gateway is None:
            raise UnknownProvider(provider)
        return gateway

    def names(self):
        return list(self._gateways)

    def for_payment_method(self, payment_method: str) -> PaymentGateway:
        """Resolves a checkout payment method id such as ``eversend_card`` to its provider."""
        for gateway in self._gateways.values():
            if any(method.id == payment_method for method in gateway.payment_methods()):
                return gateway
        return self.get(payment_method)

    def payment_methods(self) -> List[PaymentMethod]:
        return [method for gateway in self._gateways.values() for method in gateway.payment_methods()]

    def close(self):
        for gateway in self._gateways.values():
            gateway.close()
