"""Exceptions raised by the order, inventory, catalog and payment services.

Routes map these to HTTP responses; services never raise HTTPException.
``AlreadyFinalizedError``, ``WrongStateError`` and ``AlreadyRedeemedError``
mean the caller's view of an order is stale, not that something broke.
"""


class OrderError(Exception):
    """Base class for every domain error"""

    reason = "order_error"


class ValidationError(OrderError):
    """Request rejected before any mutation"""

    reason = "validation_error"


class NotFoundError(OrderError):
    reason = "not_found"


class InsufficientStockError(OrderError):
    reason = "insufficient_stock"

    def __init__(self, product_id: str, size: str, requested: int = 0, available: int = 0):
        self.product_id = product_id
        self.size = size
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id} size {size}. "
            f"Available: {available}, Requested: {requested}"
        )


class AlreadyFinalizedError(OrderError):
    """Payment outcome delivered for an order that already left pending_payment"""

    reason = "already_finalized"

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} is already finalized (status: {status})")


class WrongStateError(OrderError):
    reason = "wrong_state"

    def __init__(self, message: str, status: str = None):
        self.status = status
        super().__init__(message)


class AlreadyRedeemedError(OrderError):
    reason = "already_redeemed"


class GatewayError(OrderError):
    """Payment processor unreachable or answered something unusable"""

    reason = "gateway_error"


class PaymentPendingError(GatewayError):
    """The processor has not settled the intent yet"""

    reason = "payment_pending"
