"""Error kinds raised by the order engine and the inventory adjuster.

Engine functions raise these synchronously; the request layer translates them
into the error envelope using ``code`` and ``http_status``.
"""

from __future__ import annotations


class OrderingError(Exception):
    code = "ordering_error"
    http_status = 400

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(OrderingError):
    code = "not_found"
    http_status = 404


class OrderNotFound(NotFound):
    code = "order_not_found"


class CustomerNotFound(NotFound):
    code = "customer_not_found"


class ProductNotFound(NotFound):
    code = "product_not_found"


class InvalidTransition(OrderingError):
    """A status change outside the transition table, or out of a terminal state."""

    code = "invalid_transition"
    http_status = 409


class OrderLocked(OrderingError):
    """Edit or delete attempted on an order that no longer accepts it."""

    code = "order_locked"
    http_status = 409


class InsufficientStock(OrderingError):
    code = "insufficient_stock"
    http_status = 409


class NotTracked(OrderingError):
    code = "not_tracked"
    http_status = 422


class InvalidInput(OrderingError):
    code = "invalid_input"
    http_status = 422


class InvalidDiscount(InvalidInput):
    code = "invalid_discount"


class AllocationExhausted(OrderingError):
    code = "allocation_exhausted"
    http_status = 503


class Conflict(OrderingError):
    code = "conflict"
    http_status = 409


class ServiceUnavailable(OrderingError):
    """Storage or other infrastructure failure; the request itself may be fine."""

    code = "service_unavailable"
    http_status = 503
