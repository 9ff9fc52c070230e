"""Typed failures raised by the service core.

Each kind carries the HTTP status the web layer answers with, so callers get
a structured failure instead of an unstructured crash.
"""

from typing import Dict, List, Optional


class ServiceError(Exception):
    """Base class for every failure the core reports to its callers."""
    status_code = 500
    code = "service_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code

    def to_dict(self):
        return {"code": self.code, "detail": self.detail}


# ---------------------------- Identity ----------------------------
class Unauthenticated(ServiceError):
    status_code = 401
    code = "unauthenticated"


class Expired(ServiceError):
    """The credential was valid but is past its validity window."""
    status_code = 401
    code = "credential_expired"


class Forbidden(ServiceError):
    status_code = 403
    code = "forbidden"


# ---------------------------- Lookups -----------------------------
class ProductNotFound(ServiceError):
    status_code = 404
    code = "product_not_found"


class OrderNotFound(ServiceError):
    status_code = 404
    code = "order_not_found"


# --------------------------- Inventory ----------------------------
class InvalidQuantity(ServiceError):
    status_code = 422
    code = "invalid_quantity"


class InsufficientStock(ServiceError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, product_id: int, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class TokenExpired(ServiceError):
    """Commit attempted on a reservation that is no longer live."""
    status_code = 409
    code = "reservation_token_expired"

    def __init__(self, token: str):
        super().__init__(f"Reservation {token} is no longer live")
        self.token = token


# ----------------------------- Orders -----------------------------
class EmptyCart(ServiceError):
    status_code = 422
    code = "empty_cart"


class ReservationStale(ServiceError):
    """At least one cart line is not covered by live reservations."""
    status_code = 409
    code = "reservation_stale"

    def __init__(self, product_ids: List[int]):
        super().__init__(f"Reservations missing or expired for products {sorted(product_ids)}")
        self.product_ids = sorted(product_ids)


class InvalidTransition(ServiceError):
    status_code = 422
    code = "invalid_transition"

    def __init__(self, order_id: str, state: str, event: str):
        super().__init__(f"Order {order_id}: cannot apply '{event}' in state '{state}'")
        self.order_id = order_id
        self.state = state
        self.event = event


# ---------------------------- Payments ----------------------------
class PaymentDeclined(ServiceError):
    status_code = 402
    code = "payment_declined"


class PaymentErrored(ServiceError):
    """Transport failure or provider error; eligible for a bounded retry."""
    status_code = 502
    code = "payment_errored"
    retryable = True


class PaymentApprovalRequired(ServiceError):
    """The provider needs the buyer to approve the payment before it can be captured."""
    status_code = 409
    code = "payment_approval_required"


class PaymentNotFound(ServiceError):
    status_code = 404
    code = "payment_not_found"


class ReconciliationRequired(ServiceError):
    """Money was captured but inventory could not be committed for every line.

    Never resolved automatically; the order is flagged for manual handling.
    """
    status_code = 500
    code = "reconciliation_required"

    def __init__(self, order_id: str, committed: List[str], failed: List[str]):
        super().__init__(
            f"Order {order_id} captured payment but {len(failed)} reservation(s) could not be committed"
        )
        self.order_id = order_id
        self.committed = committed
        self.failed = failed


# --------------------------- Validation ---------------------------
class ValidationFailed(ServiceError):
    status_code = 422
    code = "validation_failed"

    def __init__(self, errors: Dict[str, str], detail: Optional[str] = None):
        super().__init__(detail or "; ".join(f"{k}: {v}" for k, v in errors.items()))
        self.errors = errors

    def to_dict(self):
        return {"code": self.code, "detail": self.detail, "errors": self.errors}
