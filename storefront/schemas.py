"""
Request bodies and JSON views for the HTTP layer.

Request models validate incoming JSON with pydantic; the ``*_view``
functions turn ORM rows into the camelCase payloads clients receive.
"""

from typing import Optional

from pydantic import BaseModel, Field


class CartItemRequest(BaseModel):
    productId: int
    quantity: int = Field(..., gt=0)


class CartQuantityRequest(BaseModel):
    quantity: int = Field(..., ge=0)


class CheckoutRequest(BaseModel):
    shippingAddress: str = Field(..., min_length=1)
    billingAddress: Optional[str] = None
    paymentMethod: str = Field(..., min_length=1)
    notes: Optional[str] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class InitiatePaymentRequest(BaseModel):
    orderId: int
    currency: str = Field(..., min_length=3, max_length=3)
    redirectUrl: str = Field(..., min_length=1)
    provider: Optional[str] = None


class OrderStatusRequest(BaseModel):
    status: str
    trackingId: Optional[str] = None
    notes: Optional[str] = None


def _iso(value):
    return value.isoformat() if value else None


def cart_item_view(item):
    return {
        "id": item.id,
        "productId": item.product_id,
        "name": item.name,
        "price": item.unit_price,
        "quantity": item.quantity,
        "total": item.line_total,
    }


def cart_view(summary):
    return {
        "items": [cart_item_view(item) for item in summary["items"]],
        "total": summary["total"],
        "count": summary["count"],
    }


def order_item_view(item):
    return {
        "id": item.id,
        "productId": item.product_id,
        "productName": item.product_name,
        "quantity": item.quantity,
        "unitPrice": item.unit_price,
        "totalPrice": item.total_price,
    }


def payment_view(attempt):
    return {
        "paymentId": attempt.id,
        "orderId": attempt.order_id,
        "provider": attempt.provider,
        "providerReference": attempt.provider_reference,
        "amount": attempt.amount,
        "currency": attempt.currency,
        "status": attempt.status,
        "paymentUrl": attempt.payment_url,
        "errorMessage": attempt.error_message,
        "createdAt": _iso(attempt.created_at),
        "updatedAt": _iso(attempt.updated_at),
    }


def order_view(order, payments=None):
    view = {
        "id": order.id,
        "userId": order.user_id,
        "totalAmount": order.total_amount,
        "currency": order.currency,
        "status": order.status,
        "transactionId": order.payment_reference,
        "shippingAddress": order.shipping_address,
        "billingAddress": order.billing_address,
        "paymentMethod": order.payment_method,
        "notes": order.notes,
        "trackingId": order.tracking_id,
        "createdAt": _iso(order.created_at),
        "updatedAt": _iso(order.updated_at),
        "items": [order_item_view(item) for item in order.items],
    }
    if payments is not None:
        view["payments"] = [payment_view(attempt) for attempt in payments]
    return view
