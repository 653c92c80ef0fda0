"""Exceptions raised by the ordering core.

Every error derives from :class:`OrderingError` so a front end can catch
the whole family in one place.  None of them is fatal: a failed operation
has always been rolled back before the exception reaches the caller.
"""

from __future__ import annotations

from typing import Iterable, List


class OrderingError(Exception):
    """Base class for all ordering errors."""


class NotFoundError(OrderingError):
    """A customer, product or order does not exist."""

    entity = "record"

    def __init__(self, key: object, message: str | None = None) -> None:
        self.key = key
        super().__init__(message or f"{self.entity.capitalize()} {key!r} not found")


class CustomerNotFoundError(NotFoundError):
    entity = "customer"


class ProductNotFoundError(NotFoundError):
    """Raised for unknown products and for deactivated ones."""

    entity = "product"

    def __init__(self, key: object) -> None:
        super().__init__(key, f"Product {key!r} not found or not active")


class OrderNotFoundError(NotFoundError):
    entity = "order"


class ValidationError(OrderingError):
    """Input was rejected before anything was written.

    ``errors`` holds one message per violated rule.
    """

    def __init__(self, errors: Iterable[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors))


class EmptyBasketError(ValidationError):
    def __init__(self) -> None:
        super().__init__("An order needs at least one product")


class InsufficientStockError(OrderingError):
    def __init__(self, product_id: int, product_name: str, requested: int, available: int) -> None:
        self.product_id = product_id
        self.product_name = product_name
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_name}: requested {requested}, available {available}"
        )


class DuplicateError(OrderingError):
    """The identification is already registered to a different customer."""

    def __init__(self, external_id: str) -> None:
        self.external_id = external_id
        super().__init__(f"A customer with identification {external_id!r} already exists")


class InvalidTransitionError(OrderingError):
    def __init__(self, order_id: int, current: str, requested: str) -> None:
        self.order_id = order_id
        self.current = current
        self.requested = requested
        super().__init__(f"Order {order_id} cannot move from {current} to {requested}")


class InUseError(OrderingError):
    """A delete was refused because other records still reference the row."""

    def __init__(self, entity: str, key: object, referenced_by: str) -> None:
        self.entity = entity
        self.key = key
        self.referenced_by = referenced_by
        super().__init__(f"Cannot delete {entity} {key!r}: still referenced by {referenced_by}")


class InternalError(OrderingError):
    """Storage failure (lock timeout, constraint violation, I/O).

    The original exception is chained as ``__cause__``.
    """
