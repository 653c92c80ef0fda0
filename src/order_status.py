"""Order status values and the rules for moving between them.

::

    Pending -> Processing -> Completed
       |           |
       +-----+-----+
             v
         Cancelled

Completed and Cancelled are terminal.
"""

from __future__ import annotations

from enum import Enum

from errors import InvalidTransitionError, ValidationError


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def parse(cls, value: "OrderStatus | str") -> "OrderStatus":
        """Accept an enum member or its value, case-insensitively."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        raise ValidationError(f"Unknown order status {value!r}")


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Position in the forward chain; Cancelled sits outside it.
_FORWARD_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PROCESSING: 1,
    OrderStatus.COMPLETED: 2,
}


def check_transition(order_id: int, current: OrderStatus, requested: OrderStatus) -> bool:
    """Validate ``current -> requested``.

    Returns True when the status actually changes and False for an
    accepted no-op (same non-terminal status, or Cancelled again).
    Raises :class:`InvalidTransitionError` for everything else.
    """
    if current == OrderStatus.CANCELLED and requested == OrderStatus.CANCELLED:
        return False
    if current.is_terminal:
        raise InvalidTransitionError(order_id, current.value, requested.value)
    if requested == OrderStatus.CANCELLED:
        return True
    if requested == current:
        return False
    if _FORWARD_RANK[requested] < _FORWARD_RANK[current]:
        raise InvalidTransitionError(order_id, current.value, requested.value)
    return True
