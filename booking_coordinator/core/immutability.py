"""Immutability enforcement for audit records using SQLAlchemy events."""

import logging
from datetime import UTC, datetime

from sqlalchemy import event

from booking_coordinator.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_registered = False


class ImmutabilityViolationError(ValidationError):
    """Raised when attempting to modify append-only booking records."""

    def __init__(self, model_name: str, operation: str, record_id: str):
        self.model_name = model_name
        self.operation = operation
        self.record_id = record_id
        super().__init__(
            f"Immutability violation: Cannot {operation} {model_name} record {record_id}. "
            "Booking audit records are append-only."
        )


def _log_immutability_violation(model_name: str, operation: str, record_id: str) -> None:
    """Log immutability violation for audit purposes."""
    logger.error(
        f"IMMUTABILITY_VIOLATION: Attempted to {operation} {model_name} "
        f"record_id={record_id} at {datetime.now(UTC).isoformat()}"
    )


def _guard(model, operation: str) -> None:
    name = model.__name__

    def prevent(mapper, connection, target):
        _log_immutability_violation(name, operation, str(target.id))
        raise ImmutabilityViolationError(name, operation, str(target.id))

    event.listen(model, f"before_{operation.lower()}", prevent)


def register_immutability_enforcement() -> None:
    """Register SQLAlchemy event listeners for append-only tables.

    Must be called after models are imported but before session use.
    Safe to call more than once.
    """
    global _registered
    if _registered:
        return

    from booking_coordinator.models.booking import BookingAppliedEvent, BookingStateHistory

    for model in (BookingStateHistory, BookingAppliedEvent):
        _guard(model, "UPDATE")
        _guard(model, "DELETE")

    _registered = True
    logger.info("Immutability enforcement registered for booking history")
