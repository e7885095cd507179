"""Exceptions raised by the checkout and payment core.

Each carries the HTTP status code it surfaces as; ``main.py`` turns them
into ``{"error": message}`` responses.
"""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationFailed(StorefrontError):
    status_code = 400


class Forbidden(StorefrontError):
    status_code = 403

    def __init__(self, message: str = "Forbidden: you do not own this resource"):
        super().__init__(message)


class OrderNotFound(StorefrontError):
    status_code = 404

    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class PaymentNotFound(StorefrontError):
    status_code = 404

    def __init__(self, reference):
        self.reference = reference
        super().__init__(f"Payment not found: {reference}")


class ProductNotFound(StorefrontError):
    status_code = 404

    def __init__(self, product_id):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class CartItemNotFound(StorefrontError):
    status_code = 404

    def __init__(self, item_id):
        self.item_id = item_id
        super().__init__(f"Cart item not found: {item_id}")


class ProductUnavailable(StorefrontError):
    """Raised when a product is missing or no longer sold."""

    status_code = 409

    def __init__(self, product_id):
        self.product_id = product_id
        super().__init__(f"Product is not available: {product_id}")


class EmptyCart(StorefrontError):
    status_code = 409

    def __init__(self):
        super().__init__("Your cart is empty")


class InsufficientStock(StorefrontError):
    """Raised when a reservation would take stock below zero."""

    status_code = 409

    def __init__(self, product_id, requested: int | None = None):
        self.product_id = product_id
        self.requested = requested
        super().__init__(f"Not enough stock available for product: {product_id}")


class InvalidState(StorefrontError):
    status_code = 409

    def __init__(self, message: str, current: str | None = None):
        self.current = current
        super().__init__(message)


class ActivePaymentExists(StorefrontError):
    status_code = 409

    def __init__(self, order_id, attempt_id: str):
        self.order_id = order_id
        self.attempt_id = attempt_id
        super().__init__(f"Order {order_id} already has an active payment: {attempt_id}")


class UnknownProvider(StorefrontError):
    status_code = 400

    def __init__(self, provider):
        self.provider = provider
        super().__init__(f"Unknown payment provider: {provider}")


class GatewayError(StorefrontError):
    """Raised when a payment provider is unreachable, times out or rejects a call."""

    status_code = 500

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider} error: {message}")


class IntegrityViolation(StorefrontError):
    """Persisted data contradicts itself, e.g. an order line for a deleted product."""

    status_code = 500
