"""
Status machines for orders and bookings.

Every status change goes through ``ensure_transition`` so an illegal move
cannot be written by accident from a new code path.
"""

from enum import Enum
from typing import Dict, FrozenSet

from errors import StateConflictError, ValidationError


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    REFUNDED = "refunded"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.CONFIRMED: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PROCESSING: frozenset({
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
        OrderStatus.RETURNED,
    }),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.RETURNED: frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED}),
    OrderStatus.REFUNDED: frozenset(),
}

BOOKING_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

# Targets accepted by the admin status endpoint; refunded is reached via gateway refunds.
TRANSITION_TARGETS = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.RETURNED,
)

NON_CANCELLABLE = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED})


def parse_order_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError("Invalid status")


def can_transition(src, dst) -> bool:
    return OrderStatus(dst) in ORDER_TRANSITIONS[OrderStatus(src)]


def ensure_transition(src, dst) -> OrderStatus:
    src, dst = OrderStatus(src), OrderStatus(dst)
    if src == OrderStatus.COMPLETED:
        raise StateConflictError("Order is completed")
    if dst not in ORDER_TRANSITIONS[src]:
        raise StateConflictError(
            f"Cannot change order status from {src.value} to {dst.value}; "
            f"allowed from {src.value}: {describe_targets(src)}"
        )
    return dst


def describe_targets(src) -> str:
    targets = sorted(s.value for s in ORDER_TRANSITIONS[OrderStatus(src)])
    return ", ".join(targets) if targets else "none"


def describe_transitions() -> str:
    """One line per status, e.g. ``pending -> cancelled, completed, ...``."""
    return "\n".join(f"{src.value} -> {describe_targets(src)}" for src in OrderStatus)


def is_cancellable(status) -> bool:
    return OrderStatus(status) not in NON_CANCELLABLE


def ensure_booking_transition(src, dst) -> BookingStatus:
    try:
        dst = BookingStatus(dst)
    except ValueError:
        raise ValidationError("Invalid status")
    src = BookingStatus(src)
    if dst not in BOOKING_TRANSITIONS[src]:
        raise StateConflictError(f"Booking cannot move from {src.value} to {dst.value}")
    return dst
