"""Exceptions raised by the storefront services."""

from typing import Optional


class StoreError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500
    default_code = "SERVER_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code or self.default_code
        super().__init__(message)


class ValidationFailed(StoreError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class Conflict(StoreError):
    """A business rule refused the request (duplicate entry, wrong state...)."""

    status_code = 400
    default_code = "CONFLICT"


class InsufficientStock(Conflict):
    default_code = "INSUFFICIENT_STOCK"

    def __init__(self, product_name: str, available: int):
        self.product_name = product_name
        self.available = available
        super().__init__(f"Insufficient stock for {product_name}. Available: {available}")


class NotFound(StoreError):
    status_code = 404
    default_code = "NOT_FOUND"

    def __init__(self, what: str, ident: Optional[str] = None):
        self.what = what
        self.ident = ident
        super().__init__(f"{what} not found")


class AuthError(StoreError):
    status_code = 401
    default_code = "UNAUTHORIZED"


class Forbidden(StoreError):
    status_code = 403
    default_code = "FORBIDDEN"


class AccountLocked(StoreError):
    status_code = 423
    default_code = "ACCOUNT_LOCKED"


class PaymentProviderError(StoreError):
    status_code = 502
    default_code = "PAYMENT_PROVIDER_ERROR"


class PaymentsNotConfigured(StoreError):
    status_code = 500
    default_code = "PAYMENTS_NOT_CONFIGURED"

    def __init__(self):
        super().__init__("Stripe not configured")


class ServiceUnavailable(StoreError):
    status_code = 503
    default_code = "SERVICE_UNAVAILABLE"
