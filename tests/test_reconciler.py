from dataclasses import replace

import pytest

from storefront.auth import CurrentUser
from storefront.errors import Forbidden, GatewayError, InsufficientStock, InvalidState, PaymentNotFound
from storefront.models import NormalizedStatus
from storefront.payment_gateway import EversendPayload, ProviderEvent
from storefront.reconciler import ReconcileResult

ALICE = CurrentUser(user_id=1, email="alice@example.com")
BOB = CurrentUser(user_id=2, email="bob@example.com")

RETURN_URL = "https://shop.example/checkout/return"


@pytest.fixture
def product_id(add_product):
    return add_product(stock=10)


@pytest.fixture
def opened(place_order, checkout, product_id):
    """An order of 2 units with an open Eversend payment."""
    order = place_order(ALICE, (product_id, 2))
    attempt, _ = checkout.initiate_payment(order.id, ALICE, redirect_url=RETURN_URL)
    return order, attempt


def payment_of(checkout, order):
    payments = checkout.get_order(order.id, ALICE).payments
    assert len(payments) == 1
    return payments[0]


def test_completed_marks_order_paid(reconciler, checkout, opened):
    order, attempt = opened

    outcome = reconciler.apply_provider_update("eversend", attempt.provider_reference, NormalizedStatus.COMPLETED)

    assert outcome.result == ReconcileResult.APPLIED
    assert outcome.order_status == "paid"
    assert outcome.confirmation_due
    assert checkout.get_order(order.id, ALICE).status == "paid"
    assert payment_of(checkout, order).status == "completed"


def test_duplicate_completion_is_a_noop(reconciler, history_of, opened):
    order, attempt = opened

    first = reconciler.apply_provider_update("eversend", attempt.provider_reference, NormalizedStatus.COMPLETED)
    second = reconciler.apply_provider_update("eversend", attempt.provider_reference, NormalizedStatus.COMPLETED)

    assert first.confirmation_due
    assert second.result == ReconcileResult.NOOP
    assert not second.confirmation_due
    assert [h for h in history_of(order.id) if h[1] == "paid"] == [("payment_pending", "paid")]


@pytest.mark.parametrize("terminal", ["paid", "shipped", "delivered", "canceled", "refunded", "payment_failed",
                                      "payment_canceled"])
@pytest.mark.parametrize("reported", [NormalizedStatus.FAILED, NormalizedStatus.CANCELED,
                                      NormalizedStatus.PROCESSING, NormalizedStatus.COMPLETED])
def test_settled_orders_never_move_again(reconciler, set_order_status, order_status, stock_of, product_id, opened,
                                         terminal, reported):
    order, attempt = opened
    set_order_status(order.id, terminal)

    outcome = reconciler.apply_provider_update("eversend", attempt.provider_reference, reported)

    assert outcome.result == ReconcileResult.NOOP
    assert not outcome.confirmation_due
    assert order_status(order.id) == terminal
    assert stock_of(product_id) == 8


def test_failed_payment_releases_stock(reconciler, order_status, stock_of, product_id, opened):
    order, attempt = opened

    outcome = reconciler.apply_provider_update("eversend", attempt.provider_reference, NormalizedStatus.FAILED)

    assert outcome.result == ReconcileResult.APPLIED
    assert outcome.order_status == "payment_failed"
    assert order_status(order.id) == "payment_failed"
    assert stock_of(product_id) == 10


def test_retry_after_failed_payment_reserves_stock_again(reconciler, checkout, history_of, stock_of, product_id,
                                                         opened):
    order, attempt = opened
    reconciler.apply_provider_update("eversend", attempt.provider_reference, NormalizedStatus.FAILED)

    retry, _ = checkout.initiate_payment(order.id, ALICE, redirect_url=RETURN_URL)

    assert retry.id != attempt.id
    assert stock_of(product_id) == 8
    assert checkout.get_order(order.id, ALICE).status == "payment_pending"
    assert history_of(order.id)[-2:] == [("payment_failed", "pending"), ("pending", "payment_pending")]


def test_retry_after_failed_payment_when_stock_is_gone(reconciler, checkout, gateway, set_stock, order_status,
                                                       stock_of, product_id, opened):
    order, attempt = opened
    reconciler.apply_provider_update("eversend", attempt.provider_reference, NormalizedStatus.FAILED)
    set_stock(product_id, 1)

    with pytest.raises(InsufficientStock):
        checkout.initiate_payment(order.id, ALICE, redirect_url=RETURN_URL)

    assert gateway.initiate.call_count == 1
    assert order_status(order.id) == "payment_failed"
    assert stock_of(product_id) == 1
    assert [p.id for p in checkout.get_order(order.id, ALICE).payments] == [attempt.id]


@pytest.mark.parametrize("by_admin", [False, True])
def test_cancel_after_failed_payment_does_not_release_twice(reconciler, checkout, order_status, stock_of, product_id,
                                                            opened, by_admin):
    order, attempt = opened
    reconciler.apply_provider_update("eversend", attempt.provider_reference, NormalizedStatus.FAILED)

    if by_admin:
        checkout.admin_update_status(order.id, "canceled")
    else:
        checkout.cancel_order(order.id, ALICE)

    assert order_status(order.id) == "canceled"
    assert stock_of(product_id) == 10


def test_provider_cancel_releases_stock_once(reconciler, order_status, stock_of, product_id, opened):
    order, attempt = opened

    first = reconciler.apply_provider_update("eversend", attempt.provider_reference, NormalizedStatus.CANCELED)
    second = reconciler.apply_provider_update("eversend", attempt.provider_reference, NormalizedStatus.CANCELED)

    assert first.result == ReconcileResult.APPLIED
    assert second.result == ReconcileResult.NOOP
    assert order_status(order.id) == "payment_canceled"
    assert stock_of(product_id) == 10


def test_processing_keeps_order_awaiting_payment(reconciler, checkout, opened):
    order, attempt = opened

    outcome = reconciler.apply_provider_update("eversend", attempt.provider_reference, NormalizedStatus.PROCESSING)

    assert outcome.result == ReconcileResult.APPLIED
    assert outcome.order_status == "payment_pending"
    assert payment_of(checkout, order).status == "processing"


def test_unrecognised_status_changes_nothing(reconciler, checkout, opened):
    order, attempt = opened

    outcome = reconciler.apply_provider_update("eversend", attempt.provider_reference, None)

    assert outcome.result == ReconcileResult.NOOP
    assert checkout.get_order(order.id, ALICE).status == "payment_pending"
    assert payment_of(checkout, order).status == "initiated"


def test_unknown_payment(reconciler, opened):
    with pytest.raises(PaymentNotFound):
        reconciler.apply_provider_update("eversend", "ev_nobody", NormalizedStatus.COMPLETED)


def test_reference_from_another_provider_is_unknown(reconciler, opened):
    _, attempt = opened

    with pytest.raises(PaymentNotFound):
        reconciler.apply_provider_update("paypal", attempt.provider_reference, NormalizedStatus.COMPLETED, attempt.id)


def test_success_after_timed_out_initiation_is_matched_by_attempt_id(reconciler, checkout, gateway, place_order,
                                                                      product_id):
    order = place_order(ALICE, (product_id, 1))
    gateway.initiate.side_effect = GatewayError("eversend", "request timed out")
    with pytest.raises(GatewayError):
        checkout.initiate_payment(order.id, ALICE, redirect_url=RETURN_URL)
    lost = payment_of(checkout, order)

    # the provider did open the session and the customer paid
    outcome = reconciler.apply_provider_update("eversend", "ev_late", NormalizedStatus.COMPLETED, lost.id)

    assert outcome.result == ReconcileResult.APPLIED
    assert outcome.confirmation_due
    recovered = payment_of(checkout, order)
    assert (recovered.status, recovered.provider_reference) == ("completed", "ev_late")
    assert checkout.get_order(order.id, ALICE).status == "paid"


def test_closed_attempt_ignores_anything_but_success(reconciler, checkout, gateway, place_order, stock_of, product_id):
    order = place_order(ALICE, (product_id, 1))
    gateway.initiate.side_effect = GatewayError("eversend", "HTTP 502")
    with pytest.raises(GatewayError):
        checkout.initiate_payment(order.id, ALICE, redirect_url=RETURN_URL)
    lost = payment_of(checkout, order)

    outcome = reconciler.apply_provider_update("eversend", "ev_late", NormalizedStatus.CANCELED, lost.id)

    assert outcome.result == ReconcileResult.NOOP
    assert checkout.get_order(order.id, ALICE).status == "pending"
    assert stock_of(product_id) == 9


def test_poll_refreshes_open_payment(reconciler, checkout, gateway, opened):
    order, attempt = opened
    gateway.get_status.return_value = NormalizedStatus.COMPLETED

    refreshed, outcome = reconciler.poll(attempt.id, ALICE)

    gateway.get_status.assert_called_once_with(attempt.provider_reference)
    assert refreshed.status == "completed"
    assert outcome.confirmation_due
    assert checkout.get_order(order.id, ALICE).status == "paid"


def test_poll_survives_provider_outage(reconciler, gateway, opened):
    _, attempt = opened
    gateway.get_status.side_effect = GatewayError("eversend", "request timed out")

    refreshed, outcome = reconciler.poll(attempt.id, ALICE)

    assert refreshed.status == "initiated"
    assert outcome is None


def test_poll_does_not_ask_provider_about_closed_payment(reconciler, gateway, opened):
    _, attempt = opened
    reconciler.apply_provider_update("eversend", attempt.provider_reference, NormalizedStatus.COMPLETED)

    refreshed, outcome = reconciler.poll(attempt.id, ALICE)

    assert refreshed.status == "completed"
    assert outcome is None
    gateway.get_status.assert_not_called()


def test_payment_is_private(reconciler, opened):
    _, attempt = opened

    with pytest.raises(Forbidden):
        reconciler.poll(attempt.id, BOB)
    with pytest.raises(PaymentNotFound):
        reconciler.get_payment("no-such-payment", ALICE)


def test_user_cancels_open_payment(reconciler, gateway, order_status, stock_of, product_id, opened):
    order, attempt = opened

    outcome = reconciler.cancel_payment(attempt.id, ALICE)

    gateway.cancel.assert_called_once_with(attempt.provider_reference)
    assert outcome.order_status == "payment_canceled"
    assert order_status(order.id) == "payment_canceled"
    assert stock_of(product_id) == 10

    with pytest.raises(InvalidState):
        reconciler.cancel_payment(attempt.id, ALICE)


def authorised(attempt):
    return ProviderEvent(
        provider="eversend",
        provider_payment_id=attempt.provider_reference,
        status=NormalizedStatus.PROCESSING,
        attempt_id=attempt.id,
        payload=EversendPayload("payment.update", attempt.provider_reference, "approved"),
    )


def test_authorised_payment_is_settled_while_order_awaits_it(reconciler, checkout, gateway, opened):
    order, attempt = opened
    gateway.settle.side_effect = lambda event: replace(event, status=NormalizedStatus.COMPLETED)

    outcome = reconciler.apply_event(gateway, authorised(attempt))

    assert outcome.result == ReconcileResult.APPLIED
    assert outcome.confirmation_due
    gateway.settle.assert_called_once()
    assert checkout.get_order(order.id, ALICE).status == "paid"
    assert payment_of(checkout, order).status == "completed"


def test_authorisation_for_canceled_order_is_never_settled(reconciler, checkout, gateway, order_status, opened):
    order, attempt = opened
    checkout.cancel_order(order.id, ALICE)

    outcome = reconciler.apply_event(gateway, authorised(attempt))

    assert outcome.result == ReconcileResult.NOOP
    gateway.settle.assert_not_called()
    assert order_status(order.id) == "canceled"


def test_event_without_settlement_is_applied_once(reconciler, checkout, gateway, opened):
    order, attempt = opened

    outcome = reconciler.apply_event(gateway, authorised(attempt))

    assert outcome.result == ReconcileResult.APPLIED
    assert not outcome.confirmation_due
    assert checkout.get_order(order.id, ALICE).status == "payment_pending"
    assert payment_of(checkout, order).status == "processing"
