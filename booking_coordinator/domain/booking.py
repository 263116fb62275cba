"""Booking aggregate.

Plain dataclasses shared by the engine, the stores and the services.
State fields are only changed by the functions in
``booking_coordinator.domain.booking_state``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from booking_coordinator.domain.payment_state import PaymentState


class BookingState(str, Enum):
    """Booking lifecycle states."""

    PENDING = "PENDING"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = frozenset({BookingState.COMPLETED, BookingState.CANCELLED})
NON_TERMINAL_STATES = frozenset(s for s in BookingState if s not in TERMINAL_STATES)


class DirectiveType(str, Enum):
    """Side effects requested by a transition."""

    CREATE_PAYMENT_SESSION = "CreatePaymentSession"
    ISSUE_REFUND_IF_PAID = "IssueRefundIfPaid"
    SEND_CONFIRMATION = "SendConfirmation"
    NOTIFY_CLIENT = "NotifyClient"
    UPDATE_SCHEDULE_REF = "UpdateScheduleRef"


class DirectiveStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


OPEN_DIRECTIVE_STATUSES = frozenset({DirectiveStatus.PENDING, DirectiveStatus.IN_PROGRESS})


class CancelledBy(str, Enum):
    CLIENT = "client"
    BUILDER = "builder"
    SYSTEM = "system"


@dataclass
class StateHistoryEntry:
    """One append-only entry of the booking audit trail."""

    seq: int
    state: BookingState
    payment_state: PaymentState
    entered_at: datetime
    triggering_event: str
    event_source_id: str | None = None
    source: str = "system"
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class DirectiveRecord:
    """Ledger entry for one emitted directive."""

    idempotency_key: str
    directive: DirectiveType
    emitted_seq: int = 0
    status: DirectiveStatus = DirectiveStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_DIRECTIVE_STATUSES

    def claim(self, now: datetime) -> None:
        self.status = DirectiveStatus.IN_PROGRESS
        self.attempts += 1
        self.updated_at = now

    def succeed(self, result: dict[str, Any], now: datetime) -> None:
        self.status = DirectiveStatus.SUCCEEDED
        self.result = result
        self.updated_at = now
        self.completed_at = now

    def skip(self, reason: str, now: datetime) -> None:
        self.status = DirectiveStatus.SKIPPED
        self.result = {"skipped": reason}
        self.updated_at = now
        self.completed_at = now

    def fail(self, error: str, now: datetime) -> None:
        self.status = DirectiveStatus.FAILED
        self.last_error = error
        self.updated_at = now
        self.completed_at = now


@dataclass
class Booking:
    """The booking aggregate.

    ``version`` is the optimistic concurrency counter; stores increment it on
    every successful save.
    """

    id: UUID
    client_id: str
    builder_id: str
    session_type_id: str
    scheduled_start: datetime
    scheduled_end: datetime
    amount: int
    currency: str = "usd"
    client_timezone: str = "UTC"
    builder_timezone: str | None = None
    client_email: str | None = None
    state: BookingState = BookingState.PENDING
    payment_state: PaymentState = PaymentState.UNPAID
    external_scheduling_ref: str | None = None
    external_payment_ref: str | None = None
    payment_ref_replacements: int = 0
    cancel_reason: str | None = None
    cancelled_by: CancelledBy | None = None
    refund_amount: int = 0
    refund_pending_amount: int = 0
    anomaly: str | None = None
    anomaly_at: datetime | None = None
    state_history: list[StateHistoryEntry] = field(default_factory=list)
    idempotency_keys: set[str] = field(default_factory=set)
    directives: list[DirectiveRecord] = field(default_factory=list)
    version: int = 0
    last_transition_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def new(
        cls,
        *,
        client_id: str,
        builder_id: str,
        session_type_id: str,
        scheduled_start: datetime,
        scheduled_end: datetime,
        amount: int,
        currency: str = "usd",
        client_timezone: str = "UTC",
        builder_timezone: str | None = None,
        client_email: str | None = None,
        now: datetime | None = None,
        booking_id: UUID | None = None,
    ) -> Booking:
        """Create a PENDING booking with its initial history entry."""
        now = now or datetime.now(UTC)
        booking = cls(
            id=booking_id or uuid4(),
            client_id=client_id,
            builder_id=builder_id,
            session_type_id=session_type_id,
            scheduled_start=scheduled_start,
            scheduled_end=scheduled_end,
            amount=amount,
            currency=currency.lower(),
            client_timezone=client_timezone,
            builder_timezone=builder_timezone,
            client_email=client_email,
            last_transition_at=now,
            created_at=now,
            updated_at=now,
        )
        booking.state_history.append(
            StateHistoryEntry(
                seq=0,
                state=BookingState.PENDING,
                payment_state=PaymentState.UNPAID,
                entered_at=now,
                triggering_event="BookingCreated",
                source="api",
            )
        )
        return booking

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def history_length(self) -> int:
        return len(self.state_history)

    @property
    def processing(self) -> bool:
        """True while side effects are still outstanding."""
        return any(d.is_open for d in self.directives)

    @property
    def refund_outstanding(self) -> bool:
        """Captured money whose refund is queued or not yet confirmed by the provider."""
        if self.payment_state != PaymentState.PAID:
            return False
        return self.refund_pending_amount > 0 or any(
            d.is_open and d.directive == DirectiveType.ISSUE_REFUND_IF_PAID for d in self.directives
        )

    def directive(self, idempotency_key: str) -> DirectiveRecord | None:
        for record in self.directives:
            if record.idempotency_key == idempotency_key:
                return record
        return None

    def open_directives(self) -> list[DirectiveRecord]:
        return [d for d in self.directives if d.is_open]

    def has_applied(self, idempotency_key: str) -> bool:
        return idempotency_key in self.idempotency_keys

    def snapshot(self) -> Booking:
        """Deep copy used by the in-memory store and the engine tests."""
        return copy.deepcopy(self)
