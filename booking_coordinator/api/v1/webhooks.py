"""Webhook endpoints for the scheduling and payment providers.

Both endpoints answer 200 once the event is durably applied or journaled;
directives run after the response.
"""

from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request, status

from booking_coordinator.api.deps import get_dispatcher, get_ingestion_service
from booking_coordinator.core.webhook_security import (
    CALENDLY_SIGNATURE_HEADER,
    STRIPE_SIGNATURE_HEADER,
)
from booking_coordinator.schemas.booking import WebhookAck
from booking_coordinator.services.coordinator import IngestResult
from booking_coordinator.services.dispatcher import DirectiveDispatcher
from booking_coordinator.services.ingestion import WebhookIngestionService

router = APIRouter()


def _acknowledge(
    result: IngestResult,
    dispatcher: DirectiveDispatcher,
    background_tasks: BackgroundTasks,
) -> WebhookAck:
    if result.needs_dispatch:
        background_tasks.add_task(dispatcher.dispatch_in_background, result.booking_id)
    return WebhookAck(status=result.status.value)


@router.post("/calendly", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def calendly_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    ingestion: Annotated[WebhookIngestionService, Depends(get_ingestion_service)],
    dispatcher: Annotated[DirectiveDispatcher, Depends(get_dispatcher)],
    signature: str | None = Header(None, alias=CALENDLY_SIGNATURE_HEADER),
) -> WebhookAck:
    """Handle Calendly invitee webhooks."""
    # Raw body is required for signature verification
    payload = await request.body()
    result = await ingestion.handle_calendly(payload, signature)
    return _acknowledge(result, dispatcher, background_tasks)


@router.post("/stripe", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    ingestion: Annotated[WebhookIngestionService, Depends(get_ingestion_service)],
    dispatcher: Annotated[DirectiveDispatcher, Depends(get_dispatcher)],
    signature: str | None = Header(None, alias=STRIPE_SIGNATURE_HEADER),
) -> WebhookAck:
    """Handle Stripe checkout, payment intent and refund events."""
    payload = await request.body()
    result = await ingestion.handle_stripe(payload, signature)
    return _acknowledge(result, dispatcher, background_tasks)
