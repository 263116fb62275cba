"""API dependencies for authentication and service wiring."""

from functools import lru_cache
from typing import Annotated
from uuid import UUID

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from booking_coordinator.core.exceptions import AuthorizationError
from booking_coordinator.core.security import Principal, principal_from_claims, verify_token
from booking_coordinator.domain.booking import Booking
from booking_coordinator.repositories.base import BookingStore
from booking_coordinator.services.coordinator import BookingCoordinator
from booking_coordinator.services.dispatcher import DirectiveDispatcher
from booking_coordinator.services.ingestion import WebhookIngestionService
from booking_coordinator.services.recovery import RecoveryJob

# Security scheme
security = HTTPBearer()


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Principal:
    """Get the authenticated caller from the identity provider's token."""
    return principal_from_claims(verify_token(credentials.credentials))


async def get_current_admin(
    principal: Annotated[Principal, Depends(get_current_principal)],
) -> Principal:
    """Get current principal and verify they are an admin."""
    if not principal.is_admin:
        raise AuthorizationError("Admin access required")
    return principal


# ==================== SERVICES ====================


@lru_cache
def get_booking_store() -> BookingStore:
    from booking_coordinator.database import async_session_maker
    from booking_coordinator.repositories.sqlalchemy_store import SqlAlchemyBookingStore

    return SqlAlchemyBookingStore(async_session_maker)


def get_coordinator(
    store: Annotated[BookingStore, Depends(get_booking_store)],
) -> BookingCoordinator:
    return BookingCoordinator(store)


def get_dispatcher(
    store: Annotated[BookingStore, Depends(get_booking_store)],
) -> DirectiveDispatcher:
    from booking_coordinator.gateways.stripe_gateway import stripe_gateway
    from booking_coordinator.services.notification_service import notification_service

    return DirectiveDispatcher(store, stripe_gateway, notification_service)


def get_ingestion_service(
    coordinator: Annotated[BookingCoordinator, Depends(get_coordinator)],
) -> WebhookIngestionService:
    return WebhookIngestionService(coordinator)


def get_recovery_job(
    coordinator: Annotated[BookingCoordinator, Depends(get_coordinator)],
    dispatcher: Annotated[DirectiveDispatcher, Depends(get_dispatcher)],
) -> RecoveryJob:
    from booking_coordinator.gateways.calendly_client import calendly_client

    return RecoveryJob(coordinator, dispatcher, dispatcher.payment_gateway, calendly_client)


# ==================== PERMISSIONS ====================


class BookingPermissionChecker:
    """Check if the principal may read or act on a booking.

    Clients act on their own bookings, builders may read theirs and admins
    may do anything.
    """

    def __init__(self, allow_builder: bool = True):
        self.allow_builder = allow_builder

    async def __call__(
        self,
        booking_id: UUID,
        principal: Annotated[Principal, Depends(get_current_principal)],
        coordinator: Annotated[BookingCoordinator, Depends(get_coordinator)],
    ) -> Booking:
        """Load the booking after checking permissions."""
        booking = await coordinator.get_booking(booking_id)

        # Admin always has access
        if principal.is_admin:
            return booking

        if booking.client_id == principal.user_id:
            return booking

        if self.allow_builder and booking.builder_id == principal.user_id:
            return booking

        raise AuthorizationError("You don't have permission to access this booking")


require_booking_access = BookingPermissionChecker(allow_builder=True)
require_client_booking_access = BookingPermissionChecker(allow_builder=False)
