"""Exceptions raised by the engine."""


class EngineError(Exception):
    """Base exception for engine errors."""

    pass


class NotFoundError(EngineError):
    """Raised when a referenced product, order, payment or customer is absent."""

    pass


class ConflictError(EngineError):
    """Raised on an invalid state transition or rejected input."""

    pass


class InsufficientStockError(ConflictError):
    """Raised when a decrement or reservation would take stock below zero."""

    def __init__(self, product_id: int, requested: int, available: int):
        """
        Initialize insufficient stock error.

        Args:
            product_id: Product whose stock was short
            requested: Units requested
            available: Units that were available
        """
        super().__init__(
            f"Insufficient stock for product {product_id}. "
            f"Available: {available}, Requested: {requested}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class TransientDeliveryFailure(EngineError):
    """
    Raised when a publish or message delivery fails or times out.

    Never propagated to the caller of a stock or payment mutation.
    """

    pass
