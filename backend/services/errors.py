# backend/services/errors.py
"""
Domain error taxonomy.

Every error carries a stable machine-readable ``code`` that clients switch on,
an HTTP status used by the API layer, and a ``details`` dict for structured
context (e.g. ``{"available": 2}``).

Validation errors are raised before anything is written. Consistency errors
are raised after re-validation at commit time, once any partial work of the
same attempt has been rolled back. Illegal-transition errors leave the order
exactly as it was.
"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    code = "DOMAIN_ERROR"
    status_code = 400
    message = "Request could not be processed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


# ---- Validation ----

class ValidationFailed(DomainError):
    code = "VALIDATION_ERROR"
    status_code = 422


class IncompleteSelection(ValidationFailed):
    code = "INCOMPLETE_SELECTION"
    message = "Please choose a value for every product option"


class InvalidQuantity(ValidationFailed):
    code = "INVALID_QUANTITY"
    message = "Quantity must be a positive integer"


class InvalidShippingFee(ValidationFailed):
    code = "INVALID_SHIPPING_FEE"
    message = "Shipping fee cannot be negative"


class MissingAddress(ValidationFailed):
    code = "MISSING_ADDRESS"
    message = "A shipping address is required"


class EmptyCart(ValidationFailed):
    code = "EMPTY_CART"
    message = "Cart is empty"


class DuplicateVariant(ValidationFailed):
    code = "DUPLICATE_VARIANT"
    status_code = 409
    message = "An active variant with these attributes already exists"


class IdempotencyKeyReused(ValidationFailed):
    code = "IDEMPOTENCY_KEY_REUSED"
    status_code = 409
    message = "Idempotency-Key was already used for a different request"


class EmailTaken(ValidationFailed):
    code = "EMAIL_TAKEN"
    status_code = 409
    message = "An account with this email already exists"


# ---- Lookup ----

class OrderNotFound(DomainError):
    code = "ORDER_NOT_FOUND"
    status_code = 404
    message = "Order not found"


class AlertNotFound(DomainError):
    code = "ALERT_NOT_FOUND"
    status_code = 404
    message = "Stock alert not found"


class CartItemNotFound(DomainError):
    code = "CART_ITEM_NOT_FOUND"
    status_code = 404
    message = "Cart item not found"


# ---- Consistency ----

class ConsistencyError(DomainError):
    status_code = 409


class InsufficientStock(ConsistencyError):
    code = "INSUFFICIENT_STOCK"
    message = "Not enough stock for the requested quantity"


class ProductInactiveOrMissing(ConsistencyError):
    code = "PRODUCT_NOT_FOUND_OR_INACTIVE"
    status_code = 404
    message = "Product does not exist or is no longer sold"


class VariantInactiveOrMissing(ConsistencyError):
    code = "VARIANT_NOT_FOUND_OR_INACTIVE"
    status_code = 404
    message = "Product option does not exist or is no longer sold"


# The resolver reports the same condition under the same code
VariantNotFound = VariantInactiveOrMissing


class StockNotAvailable(ConsistencyError):
    code = "STOCK_NOT_AVAILABLE"
    message = "Stock record is missing or corrupt"


class StockConflict(ConsistencyError):
    code = "STOCK_CONFLICT"
    message = "Stock changed concurrently too many times, please retry"


class LedgerImmutable(ConsistencyError):
    code = "LEDGER_IMMUTABLE"
    status_code = 500
    message = "Stock movements are append-only"


# ---- Lifecycle ----

class InvalidTransition(DomainError):
    code = "INVALID_TRANSITION"
    status_code = 409
    message = "Order status change is not allowed"


class PaymentAlreadyCaptured(DomainError):
    code = "PAYMENT_ALREADY_CAPTURED"
    status_code = 409
    message = "Order is already paid; start a refund instead of cancelling"


# ---- Dependencies (never surfaced as failures of the order itself) ----

class GatewayError(Exception):
    """A shipping or payment provider could not be used."""


class GatewayNotConfigured(GatewayError):
    pass
