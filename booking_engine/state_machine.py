"""Legal booking status transitions."""

from typing import Any, Dict, FrozenSet

from .exceptions import InvalidTransition
from .models import BookingStatus

TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.CONFIRMED,
        BookingStatus.REJECTED,
        BookingStatus.CANCELLED,
        BookingStatus.EXPIRED,
    }),
    BookingStatus.CONFIRMED: frozenset({
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    }),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.REJECTED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.EXPIRED: frozenset(),
}

TERMINAL_STATES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)


def can_transition(current: str, target: str) -> bool:
    try:
        return BookingStatus(target) in TRANSITIONS[BookingStatus(current)]
    except ValueError:
        return False


def assert_transition(booking_id: Any, current: str, target: str) -> None:
    """Raise InvalidTransition unless current -> target is legal."""
    if can_transition(current, target):
        return
    reason = "booking is in a terminal state" if current in {s.value for s in TERMINAL_STATES} else None
    raise InvalidTransition(booking_id, current, target, reason)
