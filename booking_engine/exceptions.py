"""
Booking Engine Errors
=====================

Validation and authorization errors are raised to the caller before anything
is written. Side-effect failures are wrapped in ExternalServiceFailure so they
are never mistaken for state machine errors.
"""

from decimal import Decimal
from typing import Any, Optional


class BookingEngineError(Exception):
    """Base exception for booking engine errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidAmount(BookingEngineError):
    """Raised when a price is not a positive finite number."""

    def __init__(self, amount: Any, message: Optional[str] = None):
        self.amount = amount
        super().__init__(message or f"Invalid amount: {amount!r}")


class PropertyUnavailable(BookingEngineError):
    """Raised when the requested dates overlap an active booking."""

    def __init__(self, property_id: Any, conflicting_booking_id: Any = None):
        self.property_id = property_id
        self.conflicting_booking_id = conflicting_booking_id
        super().__init__(
            f"Property {property_id} is not available for the selected dates"
        )


class InvalidTransition(BookingEngineError):
    """Raised when a booking cannot move from its current status."""

    def __init__(self, booking_id: Any, current_status: str, target_status: str, reason: Optional[str] = None):
        self.booking_id = booking_id
        self.current_status = current_status
        self.target_status = target_status
        message = f"Cannot move booking {booking_id} from {current_status} to {target_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class Forbidden(BookingEngineError):
    """Raised when the caller may not perform the operation."""

    def __init__(self, user_id: Any, operation: str, booking_id: Any = None):
        self.user_id = user_id
        self.operation = operation
        self.booking_id = booking_id
        super().__init__(f"User {user_id} is not allowed to {operation} booking {booking_id}")


class ConcurrentModification(BookingEngineError):
    """Raised when a conditional update finds the row already changed."""

    def __init__(self, booking_id: Any, expected_status: str, current_status: Optional[str] = None):
        self.booking_id = booking_id
        self.expected_status = expected_status
        self.current_status = current_status
        super().__init__(
            f"Booking {booking_id} was modified concurrently "
            f"(expected {expected_status}, found {current_status})"
        )


class NotFound(BookingEngineError):
    """Raised when a booking or property does not exist."""

    def __init__(self, resource: str, resource_id: Any):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} {resource_id} not found")


class ExternalServiceFailure(BookingEngineError):
    """Raised when a wallet or notification call fails or times out."""

    def __init__(
        self,
        side_effect: str,
        booking_id: Any = None,
        cause: Optional[BaseException] = None,
        amount: Optional[Decimal] = None,
    ):
        self.side_effect = side_effect
        self.booking_id = booking_id
        self.cause = cause
        self.amount = amount
        detail = f": {cause}" if cause else ""
        super().__init__(f"{side_effect} failed for booking {booking_id}{detail}")
