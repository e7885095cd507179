"""
Use cases that turn a cart into a paid-for order.

Sequence:
    1. create_order: reserve stock for every cart line, snapshot the lines
       into an order in ``pending`` and empty the cart, all in one transaction.
    2. initiate_payment: open a payment session with the provider and move
       the order to ``payment_pending``.
    3. Provider updates arrive through the reconciler (see reconciler.py).

Each step is a short transaction of its own. No lock is held while a payment
provider is being called; a crash in between is recovered from the persisted
order and payment attempt rows alone.
"""

import uuid
from datetime import timedelta

from sqlalchemy import exists, select
from sqlalchemy.orm import selectinload

from storefront.cart import clear_cart
from storefront.errors import (
    ActivePaymentExists,
    EmptyCart,
    Forbidden,
    GatewayError,
    InvalidState,
    OrderNotFound,
    ProductUnavailable,
    StorefrontError,
    ValidationFailed,
)
from storefront.inventory import InventoryLedger
from storefront.logging_config import get_logger
from storefront.models import (
    CartItem,
    NormalizedStatus,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    PaymentAttempt,
    Product,
    utcnow,
)
from storefront.orders import (
    ADMIN_CANCELABLE,
    FULFILMENT_TRANSITIONS,
    PAYABLE,
    REFUNDABLE,
    USER_CANCELABLE,
    active_attempts,
    as_utc,
    lock_order,
    release_order_stock,
    transition_order,
)

log = get_logger(__name__)


class CheckoutService:

    def __init__(self, session_factory, gateways, default_currency: str = "USD", payment_timeout: float = 15.0):
        self.session_factory = session_factory
        self.gateways = gateways
        self.default_currency = default_currency
        # an attempt still without a provider reference after this long was cut off mid-initiation
        self.stale_initiation = timedelta(seconds=max(payment_timeout * 4, 60))

    # --- Orders -----------------------------------------------------------

    def create_order(self, user, shipping_address: str, payment_method: str,
                     billing_address: str = None, notes: str = None, currency: str = None) -> Order:
        """
        Checks out the caller's cart.

        All-or-nothing: if any line cannot be reserved the transaction rolls
        back, so no order row exists and every earlier reservation is undone.

        Raises:
            EmptyCart: The cart has no lines.
            InsufficientStock: A line asks for more than is in stock.
            ProductUnavailable: A line points at a product no longer sold.
        """
        if not shipping_address or not shipping_address.strip():
            raise ValidationFailed("shippingAddress is required")

        with self.session_factory() as db, db.begin():
            cart = list(db.scalars(
                select(CartItem).where(CartItem.user_id == user.user_id).order_by(CartItem.id)
            ))
            if not cart:
                raise EmptyCart()

            ledger = InventoryLedger(db)
            lines = []
            for item in cart:
                product = db.get(Product, item.product_id)
                if product is None or not product.is_active:
                    raise ProductUnavailable(item.product_id)
                ledger.reserve(product.id, item.quantity)
                lines.append(OrderItem(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=item.quantity,
                    unit_price=product.price,
                    total_price=product.price * item.quantity,
                ))

            order = Order(
                user_id=user.user_id,
                customer_email=user.email,
                total_amount=sum(line.total_price for line in lines),
                currency=(currency or self.default_currency).upper(),
                status=OrderStatus.PENDING.value,
                shipping_address=shipping_address,
                billing_address=billing_address or shipping_address,
                payment_method=payment_method,
                notes=notes,
                items=lines,
            )
            db.add(order)
            db.flush()
            db.add(OrderStatusHistory(order_id=order.id, to_status=order.status, note="checkout"))
            clear_cart(db, user.user_id)

        log.info(f"[Order: {order.id}] Created for user {user.user_id} with {len(lines)} line(s), "
                 f"total {order.total_amount} {order.currency}")
        return order

    def get_order(self, order_id: int, user) -> Order:
        with self.session_factory() as db:
            order = db.scalars(
                select(Order).options(selectinload(Order.payments)).where(Order.id == order_id)
            ).first()
            if order is None:
                raise OrderNotFound(order_id)
            if order.user_id != user.user_id and not user.is_admin:
                raise Forbidden()
            return order

    def load_order(self, order_id: int) -> Order:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            return order

    def list_orders(self, user):
        with self.session_factory() as db:
            return list(db.scalars(
                select(Order).where(Order.user_id == user.user_id).order_by(Order.created_at.desc(), Order.id.desc())
            ))

    def list_all_orders(self, status: str = None):
        query = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
        if status:
            query = query.where(Order.status == status)
        with self.session_factory() as db:
            return list(db.scalars(query))

    def find_resumable_orders(self):
        """Orders left in ``pending`` with no payment attempt at all, e.g. after a crash."""
        with self.session_factory() as db:
            return list(db.scalars(
                select(Order)
                .where(Order.status == OrderStatus.PENDING.value)
                .where(~exists().where(PaymentAttempt.order_id == Order.id))
                .order_by(Order.id)
            ))

    # --- Payment ----------------------------------------------------------

    def initiate_payment(self, order_id: int, user, redirect_url: str, currency: str = None,
                         provider: str = None):
        """
        Opens a payment session for an order.

        Returns the attempt together with what the provider handed back
        (payment URL or client secret).

        The attempt row is written before the provider is called, so a second
        concurrent call sees it and gets ActivePaymentExists. If the provider
        call fails or times out the attempt is marked failed, the order keeps
        its status and GatewayError is raised; the caller may simply retry.

        Retrying after ``payment_failed`` reserves the order lines again first;
        InsufficientStock is raised, before any provider call, if they are gone.
        """
        with self.session_factory() as db, db.begin():
            order = lock_order(db, order_id)
            if order.user_id != user.user_id:
                raise Forbidden()

            for attempt in active_attempts(db, order.id):
                if attempt.provider_reference is None and as_utc(attempt.created_at) < utcnow() - self.stale_initiation:
                    log.warning(f"[Order: {order.id}] Attempt {attempt.id} never got a provider reference, marking failed")
                    attempt.status = NormalizedStatus.FAILED.value
                    attempt.error_message = "initiation interrupted"
                    continue
                raise ActivePaymentExists(order.id, attempt.id)

            if order.status not in PAYABLE:
                raise InvalidState(f"Order is not in a valid state for payment: {order.status}", order.status)
            if currency and currency.upper() != order.currency:
                raise ValidationFailed(f"Order is priced in {order.currency}, not {currency.upper()}")
            if order.status == OrderStatus.PAYMENT_FAILED.value:
                self._reserve_again(db, order)

            gateway = self.gateways.get(provider) if provider else self.gateways.for_payment_method(order.payment_method)
            attempt = PaymentAttempt(
                id=str(uuid.uuid4()),
                order_id=order.id,
                provider=gateway.name,
                amount=order.total_amount,
                currency=order.currency,
                status=NormalizedStatus.INITIATED.value,
            )
            db.add(attempt)
            payment_method = order.payment_method

        log.info(f"[Order: {order_id}] Initiating {gateway.name} payment {attempt.id} for {attempt.amount} {attempt.currency}")
        try:
            result = gateway.initiate(attempt.amount, attempt.currency, str(order_id), redirect_url,
                                      attempt.id, payment_method=payment_method)
        except GatewayError as e:
            self._fail_attempt(attempt.id, e.message)
            raise

        with self.session_factory() as db, db.begin():
            attempt = db.get(PaymentAttempt, attempt.id)
            attempt.provider_reference = result.provider_payment_id
            attempt.payment_url = result.payment_url
            if attempt.status == NormalizedStatus.INITIATED.value and result.status == NormalizedStatus.PROCESSING:
                attempt.status = result.status.value
            order = lock_order(db, order_id)
            moved = transition_order(db, order, PAYABLE, OrderStatus.PAYMENT_PENDING.value,
                                     note=f"payment {attempt.id} initiated",
                                     payment_reference=result.provider_payment_id)
            if not moved:
                log.warning(f"[Order: {order_id}] Order left {sorted(PAYABLE)} while payment {attempt.id} was opening "
                            f"(now {order.status}); attempt kept for reconciliation")

        log.info(f"[Order: {order_id}] Payment {attempt.id} opened as {gateway.name} {result.provider_payment_id}")
        return attempt, result

    def _reserve_again(self, db, order):
        # payment_failed holds no stock
        ledger = InventoryLedger(db)
        for item in order.items:
            ledger.reserve(item.product_id, item.quantity)
        if not transition_order(db, order, {OrderStatus.PAYMENT_FAILED}, OrderStatus.PENDING.value,
                                note="payment retry"):
            raise InvalidState("Order status changed concurrently, retry", order.status)
        log.info(f"[Order: {order.id}] Stock reserved again for payment retry")

    def _fail_attempt(self, attempt_id: str, message: str):
        with self.session_factory() as db, db.begin():
            attempt = db.get(PaymentAttempt, attempt_id)
            attempt.status = NormalizedStatus.FAILED.value
            attempt.error_message = message
        log.error(f"Payment attempt {attempt_id} failed to initiate: {message}")

    # --- Cancellation, fulfilment, refunds -------------------------------

    def cancel_order(self, order_id: int, user) -> Order:
        """
        Cancels an order on behalf of its owner and returns its stock.

        Raises:
            Forbidden: The caller does not own the order.
            InvalidState: The order is past the point where it can be canceled.
        """
        with self.session_factory() as db, db.begin():
            order = lock_order(db, order_id)
            if order.user_id != user.user_id:
                raise Forbidden()
            to_cancel = self._cancel_locked(db, order, USER_CANCELABLE, f"canceled by user {user.user_id}")

        self._cancel_with_providers(order_id, to_cancel)
        return order

    def admin_update_status(self, order_id: int, status: str, tracking_id: str = None, notes: str = None) -> Order:
        valid = {s.value for s in OrderStatus}
        if status not in valid:
            raise ValidationFailed(f"Invalid order status: {status}")

        if status == OrderStatus.REFUNDED.value:
            return self.refund_order(order_id, notes)

        to_cancel = []
        with self.session_factory() as db, db.begin():
            order = lock_order(db, order_id)
            if status == OrderStatus.CANCELED.value:
                to_cancel = self._cancel_locked(db, order, ADMIN_CANCELABLE, notes or "canceled by admin")
            else:
                if status not in FULFILMENT_TRANSITIONS.get(order.status, set()):
                    raise InvalidState(f"Cannot move order from {order.status} to {status}", order.status)
                values = {}
                if tracking_id and status == OrderStatus.SHIPPED.value:
                    values["tracking_id"] = tracking_id
                if notes:
                    values["notes"] = notes
                if not transition_order(db, order, {order.status}, status, note=notes, **values):
                    raise InvalidState("Order status changed concurrently, retry", order.status)

        self._cancel_with_providers(order_id, to_cancel)
        return order

    def refund_order(self, order_id: int, notes: str = None) -> Order:
        """
        Refunds the whole order with the provider that took the money.

        The order is claimed as ``refunded`` before the provider is called, so
        of two racing refund requests only one reaches the provider. If the
        provider refuses, the order goes back to where it was and the
        GatewayError propagates.
        """
        with self.session_factory() as db, db.begin():
            order = lock_order(db, order_id)
            previous = order.status
            if previous not in REFUNDABLE:
                raise InvalidState(f"Order cannot be refunded from {previous}", previous)
            if not transition_order(db, order, {previous}, OrderStatus.REFUNDED.value, note=notes or "refunded"):
                raise InvalidState("Order status changed concurrently, retry", order.status)
            paid = db.scalars(
                select(PaymentAttempt)
                .where(PaymentAttempt.order_id == order_id,
                       PaymentAttempt.status == NormalizedStatus.COMPLETED.value)
                .order_by(PaymentAttempt.updated_at.desc())
            ).first()

        if paid is None or not paid.provider_reference:
            log.warning(f"[Order: {order_id}] No completed payment on file, marked refunded without provider call")
            return order

        try:
            self.gateways.get(paid.provider).refund(paid.provider_reference)
        except StorefrontError as e:
            with self.session_factory() as db, db.begin():
                restored = lock_order(db, order_id)
                if not transition_order(db, restored, {OrderStatus.REFUNDED}, previous, note=f"refund failed: {e}"):
                    log.critical(f"[Order: {order_id}] Refund failed but order is now {restored.status}. "
                                 f"Needs manual action!")
            log.error(f"[Order: {order_id}] {paid.provider} refused refund of {paid.provider_reference}: {e}")
            raise
        log.info(f"[Order: {order_id}] Refund issued with {paid.provider} for {paid.provider_reference}")
        return order

    def _cancel_locked(self, db, order, allowed, note):
        if order.status not in allowed:
            raise InvalidState(f"Order cannot be canceled from {order.status}", order.status)
        previous = order.status
        if not transition_order(db, order, {previous}, OrderStatus.CANCELED.value, note=note):
            raise InvalidState("Order status changed concurrently, retry", order.status)
        if previous != OrderStatus.PAYMENT_FAILED.value:
            release_order_stock(db, order)

        to_cancel = []
        for attempt in active_attempts(db, order.id):
            attempt.status = NormalizedStatus.CANCELED.value
            attempt.error_message = "order canceled"
            if attempt.provider_reference:
                to_cancel.append((attempt.provider, attempt.provider_reference))
        return to_cancel

    def _cancel_with_providers(self, order_id, to_cancel):
        # The order is already canceled locally; a late provider success is discarded by the reconciler.
        for provider, reference in to_cancel:
            try:
                self.gateways.get(provider).cancel(reference)
            except StorefrontError as e:
                log.warning(f"[Order: {order_id}] Could not cancel {provider} payment {reference}: {e}")
