"""Errors raised by the storefront services.

Every error carries a ``category`` so that clients can tell "fix your input"
apart from "try again later" without parsing the message.
"""

from typing import Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    category = "internal"
    status_code = 500
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# ---------------------- Validation ----------------------

class ValidationFailedError(StorefrontError):
    category = "validation"
    status_code = 400


class InvalidIdError(ValidationFailedError):
    def __init__(self, value: str):
        self.value = value
        super().__init__("Invalid ID")


class EmptyOrderError(ValidationFailedError):
    def __init__(self):
        super().__init__("No order items")


# ---------------------- Lookups ----------------------

class NotFoundError(StorefrontError):
    category = "not_found"
    status_code = 404


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class CouponNotFoundError(NotFoundError):
    def __init__(self, coupon_id: str):
        self.coupon_id = coupon_id
        super().__init__(f"Coupon not found: {coupon_id}")


# ---------------------- Business rules ----------------------

class RejectedError(StorefrontError):
    category = "rejected"
    status_code = 409


class VariantNotFoundError(RejectedError):
    def __init__(self, product_id: str, size: Optional[str], color: Optional[str]):
        self.product_id = product_id
        self.size = size
        self.color = color
        super().__init__(f"Variant {size}/{color} not available for product {product_id}")


class InsufficientStockError(RejectedError):
    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: requested {requested}, available {available}"
        )


class StockConflictError(RejectedError):
    retryable = True

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Stock for product {product_id} is changing too fast, try again")


class CouponRejectedError(RejectedError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class TransitionNotAllowedError(RejectedError):
    def __init__(self, current: str, target: str, reason: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(reason or f"Cannot move order from {current} to {target}")


class DuplicateError(RejectedError):
    pass


class PaymentStateError(RejectedError):
    pass


# ---------------------- Integrity ----------------------

class IntegrityFailureError(StorefrontError):
    category = "integrity"
    status_code = 400


class InvalidSignatureError(IntegrityFailureError):
    def __init__(self, message: str = "Invalid payment signature"):
        super().__init__(message)


class PaymentMismatchError(IntegrityFailureError):
    def __init__(self, order_id: str, gateway_order_ref: str):
        self.order_id = order_id
        self.gateway_order_ref = gateway_order_ref
        super().__init__(f"Payment {gateway_order_ref} does not belong to order {order_id}")


# ---------------------- Access ----------------------

class NotAuthenticatedError(StorefrontError):
    category = "unauthorized"
    status_code = 401


class NotAuthorizedError(StorefrontError):
    category = "forbidden"
    status_code = 403


# ---------------------- Collaborators ----------------------

class PaymentGatewayError(StorefrontError):
    category = "unavailable"
    status_code = 502
    retryable = True
