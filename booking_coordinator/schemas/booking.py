"""Booking-related Pydantic schemas."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from booking_coordinator.domain.booking import Booking, StateHistoryEntry


class BookingCreate(BaseModel):
    """Schema for creating a booking."""

    client_id: str | None = Field(None, max_length=64)
    builder_id: str = Field(..., min_length=1, max_length=64)
    session_type_id: str = Field(..., min_length=1, max_length=64)
    requested_start: datetime
    requested_end: datetime
    client_timezone: str = Field(default="UTC", max_length=64)
    builder_timezone: str | None = Field(None, max_length=64)
    client_email: str | None = Field(None, max_length=255)
    amount: int = Field(..., gt=0)
    currency: str = Field(default="usd", min_length=3, max_length=3)

    @field_validator("requested_start", "requested_end")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("datetime must include a timezone offset")
        return v

    @field_validator("requested_end")
    @classmethod
    def validate_end(cls, v: datetime, info) -> datetime:
        start = info.data.get("requested_start")
        if start and v <= start:
            raise ValueError("requested_end must be after requested_start")
        return v


class BookingCreatedResponse(BaseModel):
    booking_id: UUID
    state: str


class BookingResponse(BaseModel):
    """Read-only projection of a booking."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: str
    builder_id: str
    session_type_id: str

    # Status
    state: str
    payment_state: str
    processing: bool

    # Schedule
    scheduled_start: datetime
    scheduled_end: datetime
    client_timezone: str
    builder_timezone: str | None

    # Pricing
    amount: int
    currency: str
    refund_amount: int
    refund_pending_amount: int

    # Cancellation
    cancelled_by: str | None
    cancel_reason: str | None

    # Timestamps
    last_transition_at: datetime
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponse":
        return cls(
            id=booking.id,
            client_id=booking.client_id,
            builder_id=booking.builder_id,
            session_type_id=booking.session_type_id,
            state=booking.state.value,
            payment_state=booking.payment_state.value,
            processing=booking.processing,
            scheduled_start=booking.scheduled_start,
            scheduled_end=booking.scheduled_end,
            client_timezone=booking.client_timezone,
            builder_timezone=booking.builder_timezone,
            amount=booking.amount,
            currency=booking.currency,
            refund_amount=booking.refund_amount,
            refund_pending_amount=booking.refund_pending_amount,
            cancelled_by=booking.cancelled_by.value if booking.cancelled_by else None,
            cancel_reason=booking.cancel_reason,
            last_transition_at=booking.last_transition_at,
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class HistoryEntryResponse(BaseModel):
    seq: int
    state: str
    payment_state: str
    entered_at: datetime
    triggering_event: str
    source: str
    details: dict[str, Any]

    @classmethod
    def from_entry(cls, entry: StateHistoryEntry) -> "HistoryEntryResponse":
        return cls(
            seq=entry.seq,
            state=entry.state.value,
            payment_state=entry.payment_state.value,
            entered_at=entry.entered_at,
            triggering_event=entry.triggering_event,
            source=entry.source,
            details=entry.details,
        )


class BookingCancelRequest(BaseModel):
    """Schema for cancelling a booking."""

    reason: str | None = Field(None, max_length=1000)


class BookingCancelResponse(BaseModel):
    booking_id: UUID
    state: str
    payment_state: str
    refund_amount: int = 0
    processing: bool = False


class RetryPaymentResponse(BaseModel):
    booking_id: UUID
    state: str
    checkout_url: str | None = None


class AnomalyResponse(BaseModel):
    booking_id: UUID
    state: str
    payment_state: str
    anomaly: str
    anomaly_at: datetime | None


class SweepResponse(BaseModel):
    summary: dict[str, int]


class WebhookAck(BaseModel):
    received: bool = True
    status: str
