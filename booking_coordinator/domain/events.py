"""Normalized booking events.

Every inbound notification (Calendly, Stripe), every API action and every
recovery-synthesized event is reduced to a ``BookingEvent`` before it
reaches the state machine engine.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID


class EventType(str, Enum):
    """Internal event vocabulary."""

    SCHEDULING_CONFIRMED = "SchedulingConfirmed"
    SCHEDULING_CANCELLED = "SchedulingCancelled"
    PAYMENT_SUCCEEDED = "PaymentSucceeded"
    PAYMENT_FAILED = "PaymentFailed"
    CANCELLATION_REQUESTED = "CancellationRequested"
    SESSION_COMPLETED = "SessionCompleted"
    RESCHEDULE_DETECTED = "RescheduleDetected"
    PAYMENT_RETRY_REQUESTED = "PaymentRetryRequested"
    REFUND_PROCESSED = "RefundProcessed"


class EventSource(str, Enum):
    """Where an event came from."""

    WEBHOOK = "webhook"
    API = "api"
    RECOVERY = "recovery"
    SYSTEM = "system"


class Provider(str, Enum):
    CALENDLY = "calendly"
    STRIPE = "stripe"
    INTERNAL = "internal"


# Deferred events are retried highest priority first
EVENT_PRIORITY: dict[EventType, int] = {
    EventType.CANCELLATION_REQUESTED: 100,
    EventType.SCHEDULING_CANCELLED: 90,
    EventType.SCHEDULING_CONFIRMED: 50,
    EventType.RESCHEDULE_DETECTED: 40,
    EventType.PAYMENT_SUCCEEDED: 30,
    EventType.PAYMENT_FAILED: 20,
    EventType.REFUND_PROCESSED: 20,
    EventType.PAYMENT_RETRY_REQUESTED: 10,
    EventType.SESSION_COMPLETED: 0,
}


@dataclass(frozen=True)
class BookingEvent:
    """A provider-independent event addressed to one booking.

    ``data`` carries the event payload using these optional keys:
    ``scheduling_ref``, ``payment_ref``, ``scheduled_start``,
    ``scheduled_end`` (ISO-8601), ``client_email``, ``client_timezone``,
    ``reason``, ``cancelled_by``, ``amount_refunded``, ``provider_status``.
    """

    event_type: EventType
    idempotency_key: str
    source: EventSource = EventSource.WEBHOOK
    provider: Provider = Provider.INTERNAL
    booking_id: UUID | None = None
    external_ref: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def priority(self) -> int:
        return EVENT_PRIORITY.get(self.event_type, 0)

    @property
    def is_synthetic(self) -> bool:
        return self.source == EventSource.RECOVERY

    def to_dict(self) -> dict[str, Any]:
        raw = asdict(self)
        raw["event_type"] = self.event_type.value
        raw["source"] = self.source.value
        raw["provider"] = self.provider.value
        raw["booking_id"] = str(self.booking_id) if self.booking_id else None
        raw["occurred_at"] = self.occurred_at.isoformat()
        return raw

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> BookingEvent:
        return cls(
            event_type=EventType(raw["event_type"]),
            idempotency_key=raw["idempotency_key"],
            source=EventSource(raw.get("source", EventSource.WEBHOOK.value)),
            provider=Provider(raw.get("provider", Provider.INTERNAL.value)),
            booking_id=UUID(raw["booking_id"]) if raw.get("booking_id") else None,
            external_ref=raw.get("external_ref"),
            occurred_at=datetime.fromisoformat(raw["occurred_at"]),
            data=dict(raw.get("data") or {}),
        )

    def with_data(self, **data: Any) -> BookingEvent:
        merged = dict(self.data)
        merged.update(data)
        return BookingEvent(
            event_type=self.event_type,
            idempotency_key=self.idempotency_key,
            source=self.source,
            provider=self.provider,
            booking_id=self.booking_id,
            external_ref=self.external_ref,
            occurred_at=self.occurred_at,
            data=merged,
        )

    def with_booking(self, booking_id: UUID) -> BookingEvent:
        """Return a copy addressed to a resolved booking."""
        return BookingEvent(
            event_type=self.event_type,
            idempotency_key=self.idempotency_key,
            source=self.source,
            provider=self.provider,
            booking_id=booking_id,
            external_ref=self.external_ref,
            occurred_at=self.occurred_at,
            data=self.data,
        )


class DeferredStatus(str, Enum):
    """Lifecycle of a deferred journal entry."""

    QUEUED = "QUEUED"
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"
    EXHAUSTED = "EXHAUSTED"


class DeferReason(str, Enum):
    MISSING_PREREQUISITE = "missing_prerequisite"
    UNMATCHED_BOOKING = "unmatched_booking"
    VERSION_CONFLICT = "version_conflict"
    INVALID_TRANSITION = "invalid_transition"
    REDUNDANT = "redundant"


@dataclass
class DeferredEntry:
    """Journal entry for an inbound event that was not applied on arrival.

    Entries with status QUEUED are retried; REJECTED entries are kept only
    so a redelivery of the same event is acknowledged as a duplicate.
    """

    event: BookingEvent
    reason: DeferReason
    status: DeferredStatus = DeferredStatus.QUEUED
    attempts: int = 0
    last_error: str | None = None
    next_attempt_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def idempotency_key(self) -> str:
        return self.event.idempotency_key

    @property
    def booking_id(self) -> UUID | None:
        return self.event.booking_id

    @property
    def priority(self) -> int:
        return self.event.priority

    @property
    def is_queued(self) -> bool:
        return self.status == DeferredStatus.QUEUED
