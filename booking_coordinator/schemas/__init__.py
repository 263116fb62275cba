"""Pydantic request and response schemas."""

from booking_coordinator.schemas.booking import (
    AnomalyResponse,
    BookingCancelRequest,
    BookingCancelResponse,
    BookingCreate,
    BookingCreatedResponse,
    BookingResponse,
    HistoryEntryResponse,
    RetryPaymentResponse,
    SweepResponse,
    WebhookAck,
)

__all__ = [
    "AnomalyResponse",
    "BookingCancelRequest",
    "BookingCancelResponse",
    "BookingCreate",
    "BookingCreatedResponse",
    "BookingResponse",
    "HistoryEntryResponse",
    "RetryPaymentResponse",
    "SweepResponse",
    "WebhookAck",
]
