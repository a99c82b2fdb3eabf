"""Custom exceptions for cartflow services."""
from typing import List, Optional


class CartflowError(Exception):
    """Base exception for all cartflow domain errors."""

    pass


class NotFoundError(CartflowError):
    """Raised when an order, product, variant or address is absent or not owned by the caller."""

    def __init__(self, resource: str, identifier: Optional[str] = None, message: Optional[str] = None):
        self.resource = resource
        self.identifier = identifier
        if message is None:
            message = f"{resource} not found"
            if identifier:
                message = f"{resource} {identifier} not found"
        super().__init__(message)


class InvalidIdError(CartflowError):
    """Raised when a path or body id is not a valid ObjectId."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid id format: {value}")


class InvalidRequestError(CartflowError):
    """Raised when a request breaks a business rule (negative stock, last variant, ...)."""

    pass


class EmptyCartError(CartflowError):
    def __init__(self):
        super().__init__("Cart is empty")


class StockShortage:
    """One cart or checkout line that cannot be served from current stock."""

    def __init__(self, product_id: str, variant_sku: str, product_name: str, available: int, requested: int):
        self.product_id = product_id
        self.variant_sku = variant_sku
        self.product_name = product_name
        self.available = available
        self.requested = requested

    def describe(self) -> str:
        return (
            f"Insufficient stock for {self.product_name} ({self.variant_sku}). "
            f"Available: {self.available}, Requested: {self.requested}"
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "variant_sku": self.variant_sku,
            "product_name": self.product_name,
            "available": self.available,
            "requested": self.requested,
        }

    def __repr__(self) -> str:
        return f"StockShortage({self.variant_sku!r}, available={self.available}, requested={self.requested})"


class InsufficientStockError(CartflowError):
    """Raised when one or more lines exceed the stock of their variant.

    Carries every offending line, not only the first one, so clients can re-render the cart.
    """

    def __init__(self, shortages: List[StockShortage]):
        self.shortages = list(shortages)
        lines = "; ".join(s.describe() for s in self.shortages)
        super().__init__(f"Some items are no longer available or out of stock: {lines}")

    @property
    def errors(self) -> List[str]:
        return [s.describe() for s in self.shortages]


class InvalidStateError(CartflowError):
    """Raised on a disallowed order status transition."""

    def __init__(self, message: str, current: Optional[str] = None, requested: Optional[str] = None):
        self.current = current
        self.requested = requested
        super().__init__(message)


class AlreadyLinkedError(CartflowError):
    """Raised when a guest order is already bound to a different account."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("This order is already linked to another account")


class ConflictError(CartflowError):
    """Raised when a write collides with a uniqueness constraint."""

    pass


class DuplicateOrderNumberError(ConflictError):
    def __init__(self, order_number: str):
        self.order_number = order_number
        super().__init__(f"Order number {order_number} is already taken, please retry")
