"""Booking-related database models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from booking_coordinator.database import Base
from booking_coordinator.models.types import JSONType, UTCDateTime


class BookingModel(Base):
    """Booking aggregate row.

    ``version`` backs the optimistic concurrency check; every save is a
    conditional UPDATE on it.
    """

    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    builder_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    session_type_id: Mapped[str] = mapped_column(String(64), nullable=False)
    client_email: Mapped[str | None] = mapped_column(String(255))

    # Schedule (UTC); timezones are display-only
    scheduled_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    scheduled_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    client_timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    builder_timezone: Mapped[str | None] = mapped_column(String(64))

    # Pricing (minor currency units)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="usd")

    # Status
    state: Mapped[str] = mapped_column(String(20), default="PENDING", index=True)
    payment_state: Mapped[str] = mapped_column(String(20), default="UNPAID")

    # External references
    external_scheduling_ref: Mapped[str | None] = mapped_column(String(255), unique=True)
    external_payment_ref: Mapped[str | None] = mapped_column(String(255), index=True)
    payment_ref_replacements: Mapped[int] = mapped_column(Integer, default=0)

    # Cancellation
    cancelled_by: Mapped[str | None] = mapped_column(String(10))  # client, builder, system
    cancel_reason: Mapped[str | None] = mapped_column(Text)
    refund_amount: Mapped[int] = mapped_column(Integer, default=0)
    refund_pending_amount: Mapped[int] = mapped_column(Integer, default=0)

    # Operator attention
    anomaly: Mapped[str | None] = mapped_column(Text)
    anomaly_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_transition_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("ix_bookings_state_last_transition", "state", "last_transition_at"),
    )


class BookingStateHistory(Base):
    """Append-only audit trail of applied transitions."""

    __tablename__ = "booking_state_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False, index=True
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_state: Mapped[str] = mapped_column(String(20), nullable=False)
    entered_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    triggering_event: Mapped[str] = mapped_column(String(50), nullable=False)
    event_source_id: Mapped[str | None] = mapped_column(String(255))
    source: Mapped[str] = mapped_column(String(20), nullable=False)  # webhook, api, recovery, system
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    __table_args__ = (UniqueConstraint("booking_id", "seq", name="uq_history_booking_seq"),)


class BookingAppliedEvent(Base):
    """Idempotency keys of events already applied to a booking (append-only)."""

    __tablename__ = "booking_applied_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False, index=True
    )
    event_key: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("booking_id", "event_key", name="uq_applied_booking_event"),
    )


class BookingDirective(Base):
    """Directive ledger (transactional outbox)."""

    __tablename__ = "booking_directives"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False, index=True
    )
    idempotency_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    directive: Mapped[str] = mapped_column(String(40), nullable=False)
    emitted_seq: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(
        String(20), default="PENDING", index=True
    )  # PENDING, IN_PROGRESS, SUCCEEDED, SKIPPED, FAILED
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text)
    result: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
