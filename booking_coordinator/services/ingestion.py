"""Webhook ingestion.

Verifies provider signatures, normalizes Calendly and Stripe payloads into
``BookingEvent`` and hands them to the coordinator. Event types we do not
act on are acknowledged and ignored.
"""

import json
import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from booking_coordinator.config import settings
from booking_coordinator.core.exceptions import AppException
from booking_coordinator.core.webhook_security import (
    verify_calendly_signature,
    verify_stripe_signature,
)
from booking_coordinator.domain.booking import CancelledBy
from booking_coordinator.domain.events import BookingEvent, EventSource, EventType, Provider
from booking_coordinator.services.coordinator import BookingCoordinator, IngestResult, IngestStatus

logger = logging.getLogger(__name__)

STRIPE_SUCCESS_EVENTS = frozenset({
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "payment_intent.succeeded",
})
# A declined attempt (payment_intent.payment_failed) leaves the Checkout
# session open for another try, so only the session outcome fails a booking
STRIPE_FAILURE_EVENTS = frozenset({
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
})


def _parse_uuid(value: Any) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, UTC)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(UTC)


def _event_uri_from_invitee(invitee_uri: str | None) -> str | None:
    """Calendly invitee URIs are nested under their scheduled event URI."""
    if not invitee_uri or "/invitees/" not in invitee_uri:
        return None
    return invitee_uri.split("/invitees/")[0]


def normalize_calendly(body: dict[str, Any]) -> BookingEvent | None:
    """Map a Calendly webhook body to an event; None for ignored events."""
    event_name = body.get("event")
    if event_name not in ("invitee.created", "invitee.canceled"):
        return None

    payload = body.get("payload") or {}
    invitee_uri = payload.get("uri")
    scheduled = payload.get("scheduled_event") or {}
    event_uri = scheduled.get("uri") or payload.get("event") or _event_uri_from_invitee(invitee_uri)
    tracking = payload.get("tracking") or {}

    data: dict[str, Any] = {
        "scheduling_ref": event_uri,
        "scheduled_start": scheduled.get("start_time"),
        "scheduled_end": scheduled.get("end_time"),
        "client_email": payload.get("email"),
        "client_timezone": payload.get("timezone"),
    }
    external_ref = event_uri

    if event_name == "invitee.created":
        old_invitee = payload.get("old_invitee")
        if old_invitee:
            event_type = EventType.RESCHEDULE_DETECTED
            # The booking still carries the replaced event's URI
            external_ref = _event_uri_from_invitee(old_invitee) or event_uri
        else:
            event_type = EventType.SCHEDULING_CONFIRMED
    else:
        if payload.get("rescheduled"):
            return None
        event_type = EventType.SCHEDULING_CANCELLED
        cancellation = payload.get("cancellation") or {}
        data["reason"] = cancellation.get("reason")
        data["cancelled_by"] = (
            CancelledBy.BUILDER.value
            if cancellation.get("canceler_type") == "host"
            else CancelledBy.CLIENT.value
        )

    return BookingEvent(
        event_type=event_type,
        idempotency_key=f"calendly:{event_name}:{invitee_uri}",
        source=EventSource.WEBHOOK,
        provider=Provider.CALENDLY,
        booking_id=_parse_uuid(tracking.get("utm_content")),
        external_ref=external_ref,
        occurred_at=_parse_timestamp(body.get("created_at")),
        data={k: v for k, v in data.items() if v is not None},
    )


def normalize_stripe(body: dict[str, Any]) -> BookingEvent | None:
    """Map a Stripe event to a booking event; None for ignored events.

    Checkout sessions are the tracked payment reference. Payment intent and
    charge events carry no reference and resolve through metadata.
    """
    event_type_name = body.get("type", "")
    obj = (body.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    booking_id = _parse_uuid(obj.get("client_reference_id") or metadata.get("booking_id"))
    is_session = event_type_name.startswith("checkout.session.")
    payment_ref = obj.get("id") if is_session else None
    data: dict[str, Any] = {}

    if event_type_name in STRIPE_SUCCESS_EVENTS:
        if event_type_name == "checkout.session.completed" and obj.get("payment_status") not in ("paid", "no_payment_required"):
            # Delayed payment methods settle through async_payment_succeeded
            return None
        event_type = EventType.PAYMENT_SUCCEEDED
    elif event_type_name in STRIPE_FAILURE_EVENTS:
        event_type = EventType.PAYMENT_FAILED
        data["provider_status"] = event_type_name.rsplit(".", 1)[-1]
    elif event_type_name == "charge.refunded":
        event_type = EventType.REFUND_PROCESSED
        data["amount_refunded"] = int(obj.get("amount_refunded") or 0)
    else:
        return None

    if payment_ref:
        data["payment_ref"] = payment_ref

    return BookingEvent(
        event_type=event_type,
        idempotency_key=str(body.get("id")),
        source=EventSource.WEBHOOK,
        provider=Provider.STRIPE,
        booking_id=booking_id,
        external_ref=payment_ref,
        occurred_at=_parse_timestamp(body.get("created")),
        data=data,
    )


def _load_json(provider: str, payload: bytes) -> dict[str, Any]:
    try:
        body = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning(f"Malformed {provider} webhook body")
        raise AppException(status_code=400, detail="Invalid payload")
    if not isinstance(body, dict):
        raise AppException(status_code=400, detail="Invalid payload")
    return body


class WebhookIngestionService:
    """Verify, normalize and ingest provider webhooks."""

    def __init__(
        self,
        coordinator: BookingCoordinator,
        calendly_signing_keys: list[str] | None = None,
        stripe_webhook_secret: str | None = None,
        tolerance_seconds: int | None = None,
    ) -> None:
        self.coordinator = coordinator
        if calendly_signing_keys is None:
            calendly_signing_keys = [
                key
                for key in (
                    settings.calendly_webhook_signing_key,
                    settings.calendly_webhook_signing_key_secondary,
                )
                if key
            ]
        self.calendly_signing_keys = calendly_signing_keys
        self.stripe_webhook_secret = stripe_webhook_secret or settings.stripe_webhook_secret
        self.tolerance_seconds = tolerance_seconds or settings.webhook_tolerance_seconds

    async def handle_calendly(self, payload: bytes, signature: str | None) -> IngestResult:
        verify_calendly_signature(payload, signature, self.calendly_signing_keys, self.tolerance_seconds)
        body = _load_json("calendly", payload)
        event = normalize_calendly(body)
        if event is None:
            logger.info(f"Ignoring Calendly event {body.get('event')}")
            return IngestResult(IngestStatus.IGNORED, reason=str(body.get("event")))
        return await self._ingest(event)

    async def handle_stripe(self, payload: bytes, signature: str | None) -> IngestResult:
        verify_stripe_signature(payload, signature, self.stripe_webhook_secret, self.tolerance_seconds)
        body = _load_json("stripe", payload)
        event = normalize_stripe(body)
        if event is None:
            logger.info(f"Ignoring Stripe event {body.get('type')} ({body.get('id')})")
            return IngestResult(IngestStatus.IGNORED, reason=str(body.get("type")))
        return await self._ingest(event)

    async def _ingest(self, event: BookingEvent) -> IngestResult:
        result = await self.coordinator.ingest(event)
        logger.info(
            f"Webhook {event.provider.value} {event.event_type.value} key={event.idempotency_key}: "
            f"{result.status.value}" + (f" ({result.reason})" if result.reason else "")
        )
        return result
