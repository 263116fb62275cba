"""Booking endpoints."""

from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, status

from booking_coordinator.api.deps import (
    get_coordinator,
    get_current_principal,
    get_dispatcher,
    require_booking_access,
    require_client_booking_access,
)
from booking_coordinator.core.exceptions import AuthorizationError
from booking_coordinator.core.security import Principal
from booking_coordinator.domain.booking import Booking, CancelledBy, DirectiveType
from booking_coordinator.schemas.booking import (
    BookingCancelRequest,
    BookingCancelResponse,
    BookingCreate,
    BookingCreatedResponse,
    BookingResponse,
    HistoryEntryResponse,
    RetryPaymentResponse,
)
from booking_coordinator.services.coordinator import BookingCoordinator, IngestStatus
from booking_coordinator.services.dispatcher import DirectiveDispatcher

router = APIRouter()

CANCELLATION_PENDING = "CANCELLATION_PENDING"


@router.post("", response_model=BookingCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreate,
    principal: Annotated[Principal, Depends(get_current_principal)],
    coordinator: Annotated[BookingCoordinator, Depends(get_coordinator)],
) -> BookingCreatedResponse:
    """Create a booking in PENDING before the client picks a slot."""
    client_id = data.client_id or principal.user_id
    if client_id != principal.user_id and not principal.is_admin:
        raise AuthorizationError("Bookings can only be created for yourself")

    booking = await coordinator.create_booking(
        client_id=client_id,
        builder_id=data.builder_id,
        session_type_id=data.session_type_id,
        requested_start=data.requested_start,
        requested_end=data.requested_end,
        amount=data.amount,
        currency=data.currency,
        client_timezone=data.client_timezone,
        builder_timezone=data.builder_timezone,
        client_email=data.client_email,
    )
    return BookingCreatedResponse(booking_id=booking.id, state=booking.state.value)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking: Annotated[Booking, Depends(require_booking_access)],
) -> BookingResponse:
    """Get the last applied state of a booking."""
    return BookingResponse.from_booking(booking)


@router.get("/{booking_id}/history", response_model=list[HistoryEntryResponse])
async def get_booking_history(
    booking: Annotated[Booking, Depends(require_booking_access)],
) -> list[HistoryEntryResponse]:
    """Get the booking's audit trail."""
    return [HistoryEntryResponse.from_entry(entry) for entry in booking.state_history]


@router.post("/{booking_id}/cancel", response_model=BookingCancelResponse)
async def cancel_booking(
    data: BookingCancelRequest,
    booking: Annotated[Booking, Depends(require_client_booking_access)],
    principal: Annotated[Principal, Depends(get_current_principal)],
    coordinator: Annotated[BookingCoordinator, Depends(get_coordinator)],
    dispatcher: Annotated[DirectiveDispatcher, Depends(get_dispatcher)],
    background_tasks: BackgroundTasks,
) -> BookingCancelResponse:
    """Cancel a booking; any refund is issued after the response."""
    # Builders cancel through the scheduling provider
    cancelled_by = CancelledBy.CLIENT if booking.client_id == principal.user_id else CancelledBy.SYSTEM

    result = await coordinator.request_cancellation(booking.id, data.reason, cancelled_by)
    if result.status == IngestStatus.DEFERRED:
        return BookingCancelResponse(
            booking_id=booking.id,
            state=CANCELLATION_PENDING,
            payment_state=booking.payment_state.value,
            refund_amount=booking.refund_amount,
            processing=True,
        )

    if result.needs_dispatch:
        background_tasks.add_task(dispatcher.dispatch_in_background, booking.id)

    updated = await coordinator.get_booking(booking.id)
    # Paid cancellations stay pending until the refund is confirmed
    return BookingCancelResponse(
        booking_id=updated.id,
        state=CANCELLATION_PENDING if updated.refund_outstanding else updated.state.value,
        payment_state=updated.payment_state.value,
        refund_amount=updated.refund_amount,
        processing=updated.processing,
    )


@router.post("/{booking_id}/retry-payment", response_model=RetryPaymentResponse)
async def retry_payment(
    booking: Annotated[Booking, Depends(require_client_booking_access)],
    coordinator: Annotated[BookingCoordinator, Depends(get_coordinator)],
    dispatcher: Annotated[DirectiveDispatcher, Depends(get_dispatcher)],
) -> RetryPaymentResponse:
    """Open a new checkout session after a failed payment."""
    result = await coordinator.retry_payment(booking.id)
    if result.needs_dispatch:
        await dispatcher.dispatch_pending(booking.id)

    updated = await coordinator.get_booking(booking.id)
    checkout_url = None
    for record in reversed(updated.directives):
        if record.directive == DirectiveType.CREATE_PAYMENT_SESSION:
            checkout_url = record.result.get("checkout_url")
            break
    return RetryPaymentResponse(booking_id=updated.id, state=updated.state.value, checkout_url=checkout_url)
