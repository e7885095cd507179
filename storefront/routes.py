from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from storefront.auth import CurrentUser, require_admin, verify_token
from storefront.email_service import send_confirmation_safely
from storefront.schemas import (
    CartItemRequest,
    CartQuantityRequest,
    CheckoutRequest,
    InitiatePaymentRequest,
    OrderStatusRequest,
    cart_item_view,
    cart_view,
    order_view,
    payment_view,
)

router = APIRouter()


def get_cart(request: Request):
    return request.app.state.cart


def get_checkout(request: Request):
    return request.app.state.checkout


def get_reconciler(request: Request):
    return request.app.state.reconciler


def schedule_confirmation(request: Request, background_tasks: BackgroundTasks, outcome):
    if outcome is not None and outcome.confirmation_due:
        background_tasks.add_task(
            send_confirmation_safely,
            request.app.state.email_sender,
            request.app.state.checkout.load_order,
            outcome.order_id,
        )


# --- Cart -------------------------------------------------------------------

@router.get("/cart")
def read_cart(user: CurrentUser = Depends(verify_token), cart=Depends(get_cart)):
    return cart_view(cart.summary(user.user_id))


@router.get("/cart/count")
def cart_count(user: CurrentUser = Depends(verify_token), cart=Depends(get_cart)):
    return {"count": cart.count(user.user_id)}


@router.post("/cart/items")
def add_cart_item(body: CartItemRequest, user: CurrentUser = Depends(verify_token), cart=Depends(get_cart)):
    item = cart.add_or_update(user.user_id, body.productId, body.quantity)
    return cart_item_view(item)


@router.put("/cart/items/{item_id}")
def update_cart_item(item_id: int, body: CartQuantityRequest,
                     user: CurrentUser = Depends(verify_token), cart=Depends(get_cart)):
    item = cart.set_quantity(user.user_id, item_id, body.quantity)
    if item is None:
        return {"message": "Item removed from cart"}
    return cart_item_view(item)


@router.delete("/cart/items/{item_id}")
def remove_cart_item(item_id: int, user: CurrentUser = Depends(verify_token), cart=Depends(get_cart)):
    cart.remove(user.user_id, item_id)
    return {"message": "Item removed from cart"}


@router.delete("/cart")
def clear_cart(user: CurrentUser = Depends(verify_token), cart=Depends(get_cart)):
    cart.clear(user.user_id)
    return {"message": "Cart cleared"}


# --- Orders -----------------------------------------------------------------

@router.post("/orders", status_code=201)
def create_order(body: CheckoutRequest, user: CurrentUser = Depends(verify_token), checkout=Depends(get_checkout)):
    order = checkout.create_order(
        user,
        shipping_address=body.shippingAddress,
        billing_address=body.billingAddress,
        payment_method=body.paymentMethod,
        notes=body.notes,
        currency=body.currency,
    )
    return order_view(order)


@router.get("/orders")
def list_orders(user: CurrentUser = Depends(verify_token), checkout=Depends(get_checkout)):
    return {"orders": [order_view(order) for order in checkout.list_orders(user)]}


@router.get("/orders/{order_id}")
def read_order(order_id: int, user: CurrentUser = Depends(verify_token), checkout=Depends(get_checkout)):
    order = checkout.get_order(order_id, user)
    return order_view(order, payments=order.payments)


@router.post("/orders/{order_id}/cancel")
def cancel_order(order_id: int, user: CurrentUser = Depends(verify_token), checkout=Depends(get_checkout)):
    order = checkout.cancel_order(order_id, user)
    return {"message": "Order canceled successfully", "status": order.status}


# --- Payments ---------------------------------------------------------------

@router.get("/payments/methods")
def payment_methods(request: Request):
    return {
        "payment_methods": [
            {"id": m.id, "name": m.name, "description": m.description, "provider": m.provider, "enabled": True}
            for m in request.app.state.gateways.payment_methods()
        ]
    }


@router.post("/payments/initiate")
def initiate_payment(body: InitiatePaymentRequest, user: CurrentUser = Depends(verify_token),
                     checkout=Depends(get_checkout)):
    attempt, result = checkout.initiate_payment(
        body.orderId, user, redirect_url=body.redirectUrl, currency=body.currency, provider=body.provider
    )
    response = {"paymentId": attempt.id, "paymentUrl": attempt.payment_url, "status": attempt.status}
    if result.client_secret:
        response["clientSecret"] = result.client_secret
    return response


@router.get("/payments/{payment_id}")
def payment_status(payment_id: str, request: Request, background_tasks: BackgroundTasks,
                   user: CurrentUser = Depends(verify_token), reconciler=Depends(get_reconciler)):
    attempt, outcome = reconciler.poll(payment_id, user)
    schedule_confirmation(request, background_tasks, outcome)
    return {"payment": payment_view(attempt)}


@router.post("/payments/{payment_id}/cancel")
def cancel_payment(payment_id: str, user: CurrentUser = Depends(verify_token), reconciler=Depends(get_reconciler)):
    reconciler.cancel_payment(payment_id, user)
    return {"message": "Payment canceled successfully"}


# --- Admin ------------------------------------------------------------------

@router.get("/admin/orders")
def admin_list_orders(status: Optional[str] = None, admin: CurrentUser = Depends(require_admin),
                      checkout=Depends(get_checkout)):
    return {"orders": [order_view(order) for order in checkout.list_all_orders(status)]}


@router.put("/admin/orders/{order_id}/status")
def admin_update_order_status(order_id: int, body: OrderStatusRequest, admin: CurrentUser = Depends(require_admin),
                              checkout=Depends(get_checkout)):
    order = checkout.admin_update_status(order_id, body.status, tracking_id=body.trackingId, notes=body.notes)
    return {"message": "Order status updated successfully", "status": order.status}
