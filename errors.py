from __future__ import annotations
from typing import Any, Optional

# Store and order placement errors. Each carries the HTTP status it maps to.


class StoreError(Exception):
    status_code = 500
    code = "StoreError"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.context}


class PlacementError(StoreError):
    """Order placement failed as a whole; nothing was written."""

    code = "PlacementError"


class ValidationError(PlacementError):
    status_code = 400
    code = "ValidationError"


class ProductUnavailable(PlacementError):
    status_code = 404
    code = "ProductUnavailable"


class InsufficientStock(PlacementError):
    status_code = 409
    code = "InsufficientStock"

    def __init__(self, message: str, *, requested: int, available: int, **context: Any):
        super().__init__(message, requested=requested, available=available, **context)
        self.requested = requested
        self.available = available


class TransactionConflict(PlacementError):
    status_code = 409
    code = "TransactionConflict"


class OrderIdTaken(StoreError):
    """Raised by a store when an order key already exists at commit."""

    status_code = 409
    code = "OrderIdTaken"

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} already exists.", order_id=order_id)
        self.order_id = order_id


class OrderNotFound(StoreError):
    status_code = 404
    code = "OrderNotFound"

    def __init__(self, order_id: Optional[str]):
        super().__init__(f"Order {order_id} not found.", order_id=order_id)


class CommitOutcomeUnknown(StoreError):
    """The commit was sent but never acknowledged; the order may exist."""

    status_code = 503
    code = "CommitOutcomeUnknown"
