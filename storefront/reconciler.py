"""
Applies provider-reported payment state to orders.

Webhooks are delivered at least once and may race with polling and with a
user canceling the order, so every update here is idempotent:

    * an order that already left ``pending``/``payment_pending`` is never
      touched again (paid onward, failed, canceled and refunded are one-way);
    * status moves are guarded UPDATEs, so only one of two racing deliveries
      can win the transition;
    * the confirmation email is due only on the call that actually moved the
      order to ``paid``.
"""

import enum
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select

from storefront.errors import Forbidden, GatewayError, InvalidState, PaymentNotFound
from storefront.logging_config import get_logger
from storefront.models import ACTIVE_PAYMENT_STATUSES, NormalizedStatus, OrderStatus, PaymentAttempt
from storefront.orders import RECONCILABLE, lock_order, release_order_stock, transition_order

log = get_logger(__name__)


class ReconcileResult(str, enum.Enum):
    APPLIED = "processed"
    NOOP = "noop"


@dataclass(frozen=True)
class ReconcileOutcome:
    result: ReconcileResult
    order_id: Optional[int] = None
    order_status: Optional[str] = None
    confirmation_due: bool = False

    @classmethod
    def noop(cls, order=None):
        return cls(ReconcileResult.NOOP, order.id if order else None, order.status if order else None)


ORDER_STATUS_FOR = {
    NormalizedStatus.PROCESSING: OrderStatus.PAYMENT_PENDING.value,
    NormalizedStatus.COMPLETED: OrderStatus.PAID.value,
    NormalizedStatus.FAILED: OrderStatus.PAYMENT_FAILED.value,
    NormalizedStatus.CANCELED: OrderStatus.PAYMENT_CANCELED.value,
}


class PaymentReconciler:

    def __init__(self, session_factory, gateways):
        self.session_factory = session_factory
        self.gateways = gateways

    def apply_provider_update(self, provider: str, provider_payment_id: str,
                              status: Optional[NormalizedStatus], attempt_id: str = None) -> ReconcileOutcome:
        """
        Applies one provider-reported status to the matching payment and order.

        Raises:
            PaymentNotFound: Neither the provider reference nor the attempt id
                carried in the provider's metadata matches a payment.
        """
        with self.session_factory() as db, db.begin():
            attempt = self._find_attempt(db, provider, provider_payment_id, attempt_id)
            if attempt is None:
                log.warning(f"{provider} update for unknown payment {provider_payment_id} (attempt {attempt_id})")
                raise PaymentNotFound(provider_payment_id or attempt_id)

            order = lock_order(db, attempt.order_id)
            prefix = f"[Order: {order.id}]"

            if status is None:
                log.info(f"{prefix} Unrecognised {provider} status for {provider_payment_id}, ignoring")
                return ReconcileOutcome.noop(order)
            if order.status not in RECONCILABLE:
                if status == NormalizedStatus.COMPLETED and order.status != OrderStatus.PAID.value:
                    log.critical(f"{prefix} {provider} reports payment {provider_payment_id} completed but order is "
                                 f"{order.status}. Needs manual refund!")
                else:
                    log.info(f"{prefix} Discarding {status.value} for {provider_payment_id}, order already {order.status}")
                return ReconcileOutcome.noop(order)
            if attempt.status == status.value:
                return ReconcileOutcome.noop(order)
            if attempt.status not in ACTIVE_PAYMENT_STATUSES and status != NormalizedStatus.COMPLETED:
                # a superseded attempt; only a late success still matters
                log.info(f"{prefix} Discarding {status.value} for closed attempt {attempt.id} ({attempt.status})")
                return ReconcileOutcome.noop(order)
            if status == NormalizedStatus.INITIATED:
                return ReconcileOutcome.noop(order)

            if provider_payment_id and attempt.provider_reference is None:
                attempt.provider_reference = provider_payment_id

            new_status = ORDER_STATUS_FOR[status]
            note = f"{provider} payment {attempt.provider_reference} {status.value}"
            if order.status != new_status:
                moved = transition_order(db, order, RECONCILABLE, new_status, note=note,
                                         payment_reference=attempt.provider_reference)
                if not moved:
                    return ReconcileOutcome.noop(order)
            attempt.status = status.value
            if status == NormalizedStatus.COMPLETED:
                attempt.error_message = None

            if status in (NormalizedStatus.FAILED, NormalizedStatus.CANCELED):
                release_order_stock(db, order)

        log.info(f"{prefix} Applied {provider} {status.value} for payment {attempt.id}")
        return ReconcileOutcome(
            ReconcileResult.APPLIED,
            order.id,
            order.status,
            confirmation_due=status == NormalizedStatus.COMPLETED,
        )

    def apply_event(self, gateway, event) -> ReconcileOutcome:
        """
        Applies a verified webhook event, letting the gateway settle an
        authorised payment while the order is still waiting for it.
        """
        outcome = self.apply_provider_update(event.provider, event.provider_payment_id, event.status, event.attempt_id)
        if outcome.order_status not in RECONCILABLE or not self._is_open(event):
            return outcome

        settled = gateway.settle(event)
        if settled.status == event.status:
            return outcome
        log.info(f"[Order: {outcome.order_id}] {event.provider} payment {event.provider_payment_id} settled as "
                 f"{settled.status.value if settled.status else None}")
        return self.apply_provider_update(settled.provider, settled.provider_payment_id, settled.status,
                                          settled.attempt_id)

    def _is_open(self, event) -> bool:
        with self.session_factory() as db:
            attempt = self._find_attempt(db, event.provider, event.provider_payment_id, event.attempt_id)
            return attempt is not None and attempt.is_active

    def get_payment(self, attempt_id: str, user) -> PaymentAttempt:
        with self.session_factory() as db:
            attempt = db.get(PaymentAttempt, attempt_id)
            if attempt is None:
                raise PaymentNotFound(attempt_id)
            if attempt.order.user_id != user.user_id and not user.is_admin:
                raise Forbidden()
            return attempt

    def poll(self, attempt_id: str, user):
        """
        Returns a payment, first refreshing it from the provider when still open.

        Provider errors are transient here: they are logged and the stored
        state is returned unchanged.
        """
        attempt = self.get_payment(attempt_id, user)
        outcome = None
        if attempt.is_active and attempt.provider_reference:
            try:
                status = self.gateways.get(attempt.provider).get_status(attempt.provider_reference)
            except GatewayError as e:
                log.warning(f"[Order: {attempt.order_id}] Status poll for payment {attempt.id} failed: {e}")
            else:
                if status is not None:
                    outcome = self.apply_provider_update(attempt.provider, attempt.provider_reference, status, attempt.id)
                    attempt = self.get_payment(attempt_id, user)
        return attempt, outcome

    def cancel_payment(self, attempt_id: str, user) -> ReconcileOutcome:
        """User-initiated cancel of an open payment; the order becomes ``payment_canceled``."""
        attempt = self.get_payment(attempt_id, user)
        if not attempt.is_active:
            raise InvalidState(f"Payment cannot be canceled in its current state: {attempt.status}", attempt.status)

        if attempt.provider_reference:
            self.gateways.get(attempt.provider).cancel(attempt.provider_reference)
        log.info(f"[Order: {attempt.order_id}] Payment {attempt.id} canceled by user {user.user_id}")
        return self.apply_provider_update(attempt.provider, attempt.provider_reference, NormalizedStatus.CANCELED, attempt.id)

    @staticmethod
    def _find_attempt(db, provider, provider_payment_id, attempt_id):
        if provider_payment_id:
            attempt = db.scalars(
                select(PaymentAttempt).where(
                    PaymentAttempt.provider == provider,
                    PaymentAttempt.provider_reference == provider_payment_id,
                )
            ).first()
            if attempt is not None:
                return attempt
        if attempt_id:
            attempt = db.get(PaymentAttempt, attempt_id)
            if attempt is not None and attempt.provider == provider:
                return attempt
        return None
