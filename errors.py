"""Error taxonomy for the store backend.

Every error carries a stable machine-readable ``kind`` next to its message so
the HTTP layer can report failures without leaking internals.
"""
from typing import Optional


class StoreError(Exception):
    """Base exception for all store errors."""

    kind = "store_error"


class NotFoundError(StoreError):
    """Raised when a product or order doesn't exist."""

    kind = "not_found"


class ProductNotFoundError(NotFoundError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class OrderNotFoundError(NotFoundError):
    def __init__(self, ref: str):
        self.ref = ref
        super().__init__(f"Order not found: {ref}")


class ValidationFailedError(StoreError):
    """Raised when a request is malformed or misses required fields."""

    kind = "validation_failed"


class InsufficientStockError(StoreError):
    kind = "insufficient_stock"

    def __init__(self, product_name: str, available: int, requested: int):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {product_name}. "
            f"Available: {available}, Requested: {requested}"
        )


class InvalidSizeError(StoreError):
    kind = "invalid_size"

    def __init__(self, size: str, product_name: str):
        self.size = size
        self.product_name = product_name
        super().__init__(f"Invalid size {size} for product {product_name}")


class ProductInactiveError(StoreError):
    kind = "product_inactive"

    def __init__(self, product_name: str):
        self.product_name = product_name
        super().__init__(f"Product is not available: {product_name}")


class InvalidStateTransitionError(StoreError):
    """Raised when an order cannot move from its current status."""

    kind = "invalid_state_transition"

    def __init__(self, current: str, target: str, reason: Optional[str] = None):
        self.current = current
        self.target = target
        msg = f"Cannot move order from '{current}' to '{target}'"
        if reason:
            msg = reason
        super().__init__(msg)


class SignatureMismatchError(StoreError):
    """Raised when a payment or webhook signature does not verify."""

    kind = "signature_mismatch"

    def __init__(self, what: str = "Payment verification failed"):
        super().__init__(f"{what} - Invalid signature")


class TransientStoreFailureError(StoreError):
    """Raised when the data store fails; the message says whether anything was committed."""

    kind = "transient_store_failure"


class UpstreamFailureError(StoreError):
    """Raised when the payment gateway or the fulfillment API fails."""

    kind = "upstream_failure"

    def __init__(self, service: str, detail: str = ""):
        self.service = service
        msg = f"{service} request failed"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
