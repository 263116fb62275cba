"""Database models."""

from booking_coordinator.models.booking import (
    BookingAppliedEvent,
    BookingDirective,
    BookingModel,
    BookingStateHistory,
)
from booking_coordinator.models.deferred_event import DeferredEvent

__all__ = [
    # Booking
    "BookingModel",
    "BookingStateHistory",
    "BookingAppliedEvent",
    "BookingDirective",
    # Journal
    "DeferredEvent",
]
