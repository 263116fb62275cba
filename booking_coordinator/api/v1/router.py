"""Main API router that includes all endpoint routers."""

from fastapi import APIRouter

from booking_coordinator.api.v1 import bookings, internal, webhooks

api_router = APIRouter()

# Bookings
api_router.include_router(bookings.router, prefix="/bookings", tags=["Bookings"])

# Webhooks
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])

# Internal
api_router.include_router(internal.router, prefix="/internal", tags=["Internal"])
