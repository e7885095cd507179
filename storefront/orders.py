"""
Order locking, guarded status transitions and stock release, shared by the
checkout and reconciliation paths.

Status changes are compare-and-swap: the UPDATE only matches while the row
is still in one of the expected statuses, so a webhook and a user cancel
racing on the same order cannot both win.
"""

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm.attributes import set_committed_value

from storefront.errors import OrderNotFound
from storefront.inventory import InventoryLedger
from storefront.logging_config import get_logger
from storefront.models import ACTIVE_PAYMENT_STATUSES, Order, OrderStatus, OrderStatusHistory, PaymentAttempt, utcnow

log = get_logger(__name__)

TERMINAL_STATUSES = frozenset({
    OrderStatus.DELIVERED.value,
    OrderStatus.PAYMENT_FAILED.value,
    OrderStatus.PAYMENT_CANCELED.value,
    OrderStatus.CANCELED.value,
    OrderStatus.REFUNDED.value,
})

USER_CANCELABLE = frozenset({
    OrderStatus.PENDING.value,
    OrderStatus.PAYMENT_PENDING.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.PAYMENT_FAILED.value,
})

ADMIN_CANCELABLE = USER_CANCELABLE | {OrderStatus.PAID.value}

REFUNDABLE = frozenset({OrderStatus.PAID.value, OrderStatus.PROCESSING.value, OrderStatus.SHIPPED.value})

PAYABLE = frozenset({OrderStatus.PENDING.value, OrderStatus.PAYMENT_FAILED.value})

# Order statuses a provider update may still move; everything else is one-way for the reconciler.
RECONCILABLE = frozenset({OrderStatus.PENDING.value, OrderStatus.PAYMENT_PENDING.value})

# Fulfilment moves an admin may make by hand; cancel and refund have their own paths.
FULFILMENT_TRANSITIONS = {
    OrderStatus.PAID.value: {OrderStatus.PROCESSING.value},
    OrderStatus.PROCESSING.value: {OrderStatus.SHIPPED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value},
}


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def lock_order(db, order_id) -> Order:
    """Loads an order with a row lock held until the surrounding transaction ends."""
    order = db.execute(
        select(Order).where(Order.id == order_id).with_for_update()
    ).scalar_one_or_none()
    if order is None:
        raise OrderNotFound(order_id)
    return order


def transition_order(db, order: Order, expected, new_status: str, note: str = None, **values) -> bool:
    """
    Moves ``order`` to ``new_status`` if it is still in one of ``expected``.

    Returns False, leaving the row untouched, when another writer got there first.
    Extra ``values`` (tracking id, payment reference) are written in the same UPDATE.
    """
    expected = {s.value if isinstance(s, OrderStatus) else s for s in expected}
    previous = order.status
    result = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status.in_(sorted(expected)))
        .values(status=new_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        log.info(f"[Order: {order.id}] Transition to {new_status} skipped, status no longer in {sorted(expected)}")
        return False

    db.add(OrderStatusHistory(order_id=order.id, from_status=previous, to_status=new_status, note=note))
    set_committed_value(order, "status", new_status)
    for key, value in values.items():
        set_committed_value(order, key, value)
    log.info(f"[Order: {order.id}] {previous} -> {new_status}")
    return True


def release_order_stock(db, order: Order):
    ledger = InventoryLedger(db)
    for item in order.items:
        ledger.release(item.product_id, item.quantity)
    log.info(f"[Order: {order.id}] Released stock for {len(order.items)} line(s)")


def active_attempts(db, order_id):
    return list(db.scalars(
        select(PaymentAttempt)
        .where(PaymentAttempt.order_id == order_id, PaymentAttempt.status.in_(sorted(ACTIVE_PAYMENT_STATUSES)))
        .order_by(PaymentAttempt.created_at)
    ))
