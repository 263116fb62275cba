"""HTTP surface tests through the ASGI app."""

import json
import time
from datetime import UTC, datetime, timedelta
from typing import Annotated
from uuid import UUID

import httpx
import pytest
from fastapi import Depends
from jose import jwt

from booking_coordinator.api.deps import (
    get_booking_store,
    get_coordinator,
    get_dispatcher,
    get_ingestion_service,
    get_recovery_job,
)
from booking_coordinator.config import settings
from booking_coordinator.core.webhook_security import CALENDLY_SIGNATURE_HEADER, sign_webhook_payload
from booking_coordinator.domain.booking import BookingState
from booking_coordinator.domain.booking_state import apply_event, flag_anomaly, record_payment_session
from booking_coordinator.domain.events import EventType
from booking_coordinator.main import create_application
from booking_coordinator.services.coordinator import BookingCoordinator
from booking_coordinator.services.dispatcher import DirectiveDispatcher
from booking_coordinator.services.ingestion import WebhookIngestionService
from booking_coordinator.services.notification_service import NotificationService
from booking_coordinator.services.recovery import RecoveryJob
from tests.conftest import NOW, make_event, new_booking, payment_succeeded, scheduling_confirmed

CALENDLY_KEY = "calendly-signing-key"
BOOKINGS = f"{settings.api_prefix}/bookings"


def token(sub="client-1", roles=("client",)):
    claims = {"sub": sub, settings.auth_roles_claim: list(roles)}
    encoded = jwt.encode(claims, settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm)
    return {"Authorization": f"Bearer {encoded}"}


CLIENT = token()
OTHER_CLIENT = token("client-2")
BUILDER = token("builder-1", ("builder",))
ADMIN = token("ops-1", ("admin",))


@pytest.fixture
def app(store, payments, email, scheduler):
    app = create_application()

    def dispatcher_override() -> DirectiveDispatcher:
        return DirectiveDispatcher(store, payments, NotificationService(email))

    def ingestion_override(
        coordinator: Annotated[BookingCoordinator, Depends(get_coordinator)],
    ) -> WebhookIngestionService:
        return WebhookIngestionService(coordinator, calendly_signing_keys=[CALENDLY_KEY])

    def recovery_override(
        coordinator: Annotated[BookingCoordinator, Depends(get_coordinator)],
    ) -> RecoveryJob:
        return RecoveryJob(coordinator, dispatcher_override(), payments, scheduler)

    app.dependency_overrides[get_booking_store] = lambda: store
    app.dependency_overrides[get_dispatcher] = dispatcher_override
    app.dependency_overrides[get_ingestion_service] = ingestion_override
    app.dependency_overrides[get_recovery_job] = recovery_override
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def create_body(**overrides):
    start = datetime.now(UTC) + timedelta(days=3)
    body = {
        "builder_id": "builder-1",
        "session_type_id": "consult-60",
        "requested_start": start.isoformat(),
        "requested_end": (start + timedelta(hours=1)).isoformat(),
        "amount": 10000,
        "client_email": "client@example.com",
    }
    body.update(overrides)
    return body


async def payment_failed_booking(store):
    booking = new_booking(now=datetime.now(UTC))
    apply_event(booking, scheduling_confirmed(booking.id), NOW)
    record_payment_session(booking, "cs_1", NOW)
    booking.directives[0].succeed({"payment_ref": "cs_1"}, NOW)
    apply_event(booking, make_event(EventType.PAYMENT_FAILED, "evt_failed", booking.id, payment_ref="cs_1"), NOW)
    return await store.add(booking)


async def paid_booking(store):
    booking = new_booking(now=datetime.now(UTC))
    apply_event(booking, scheduling_confirmed(booking.id), NOW)
    record_payment_session(booking, "cs_1", NOW)
    booking.directives[0].succeed({"payment_ref": "cs_1"}, NOW)
    apply_event(booking, payment_succeeded(booking.id, "cs_1"), NOW)
    return await store.add(booking)


class TestAuth:
    async def test_missing_token(self, client):
        response = await client.post(BOOKINGS, json=create_body())

        assert response.status_code in (401, 403)

    async def test_invalid_token(self, client):
        response = await client.post(BOOKINGS, json=create_body(), headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    async def test_token_without_subject(self, client):
        encoded = jwt.encode({"roles": ["client"]}, settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm)

        response = await client.post(
            BOOKINGS, json=create_body(), headers={"Authorization": f"Bearer {encoded}"}
        )

        assert response.status_code == 401


class TestBookings:
    async def test_create_and_read(self, client):
        created = await client.post(BOOKINGS, json=create_body(), headers=CLIENT)

        assert created.status_code == 201
        assert created.json()["state"] == "PENDING"
        booking_id = created.json()["booking_id"]

        fetched = await client.get(f"{BOOKINGS}/{booking_id}", headers=CLIENT)
        assert fetched.status_code == 200
        assert fetched.json()["client_id"] == "client-1"
        assert fetched.json()["payment_state"] == "UNPAID"

    async def test_create_rejects_naive_datetimes(self, client):
        body = create_body(requested_start="2026-05-01T09:00:00", requested_end="2026-05-01T10:00:00")

        response = await client.post(BOOKINGS, json=body, headers=CLIENT)

        assert response.status_code == 422

    async def test_client_cannot_book_for_someone_else(self, client):
        response = await client.post(BOOKINGS, json=create_body(client_id="client-2"), headers=CLIENT)

        assert response.status_code == 403

    async def test_access_rules(self, client):
        created = await client.post(BOOKINGS, json=create_body(), headers=CLIENT)
        url = f"{BOOKINGS}/{created.json()['booking_id']}"

        assert (await client.get(url, headers=BUILDER)).status_code == 200
        assert (await client.get(url, headers=ADMIN)).status_code == 200
        assert (await client.get(url, headers=OTHER_CLIENT)).status_code == 403
        assert (await client.post(f"{url}/cancel", json={}, headers=BUILDER)).status_code == 403

    async def test_unknown_booking(self, client, store):
        response = await client.get(f"{BOOKINGS}/{new_booking().id}", headers=ADMIN)

        assert response.status_code == 404

    async def test_history(self, client):
        created = await client.post(BOOKINGS, json=create_body(), headers=CLIENT)

        response = await client.get(f"{BOOKINGS}/{created.json()['booking_id']}/history", headers=CLIENT)

        assert response.status_code == 200
        assert [(h["seq"], h["state"], h["triggering_event"]) for h in response.json()] == [
            (0, "PENDING", "BookingCreated")
        ]

    async def test_cancel(self, client, store):
        created = await client.post(BOOKINGS, json=create_body(), headers=CLIENT)
        booking_id = created.json()["booking_id"]

        response = await client.post(f"{BOOKINGS}/{booking_id}/cancel", json={"reason": "Plans changed"}, headers=CLIENT)
        again = await client.post(f"{BOOKINGS}/{booking_id}/cancel", json={}, headers=CLIENT)

        assert response.status_code == 200
        assert response.json()["state"] == "CANCELLED"
        assert response.json()["refund_amount"] == 0
        assert again.status_code == 200
        assert again.json()["state"] == "CANCELLED"

        stored = await store.get(UUID(booking_id))
        assert stored.cancel_reason == "Plans changed"
        assert stored.cancelled_by.value == "client"
        assert not stored.processing

    async def test_cancel_paid_booking_is_pending_until_refunded(self, client, store, payments):
        booking = await paid_booking(store)

        response = await client.post(f"{BOOKINGS}/{booking.id}/cancel", json={}, headers=CLIENT)

        assert response.status_code == 200
        assert response.json()["state"] == "CANCELLATION_PENDING"
        assert response.json()["payment_state"] == "PAID"
        assert response.json()["processing"] is True
        assert payments.refund_calls == 1
        stored = await store.get(booking.id)
        assert stored.state == BookingState.CANCELLED
        assert stored.payment_state.value == "REFUNDED"
        assert stored.refund_amount == 10000

    async def test_cancel_with_provider_pending_refund(self, client, store, payments):
        booking = await paid_booking(store)
        payments.refund_pending = True

        await client.post(f"{BOOKINGS}/{booking.id}/cancel", json={}, headers=CLIENT)
        again = await client.post(f"{BOOKINGS}/{booking.id}/cancel", json={}, headers=CLIENT)

        assert again.json()["state"] == "CANCELLATION_PENDING"
        assert again.json()["payment_state"] == "PAID"
        fetched = await client.get(f"{BOOKINGS}/{booking.id}", headers=CLIENT)
        assert fetched.json()["state"] == "CANCELLED"
        assert fetched.json()["refund_pending_amount"] == 10000

    async def test_retry_payment(self, client, store, payments):
        booking = await payment_failed_booking(store)

        response = await client.post(f"{BOOKINGS}/{booking.id}/retry-payment", headers=CLIENT)

        assert response.status_code == 200
        assert response.json()["state"] == "AWAITING_PAYMENT"
        assert response.json()["checkout_url"] == "https://checkout.stripe.test/cs_test_1"
        assert (await store.get(booking.id)).external_payment_ref == "cs_test_1"

    async def test_retry_payment_from_wrong_state(self, client):
        created = await client.post(BOOKINGS, json=create_body(), headers=CLIENT)

        response = await client.post(f"{BOOKINGS}/{created.json()['booking_id']}/retry-payment", headers=CLIENT)

        assert response.status_code == 409


class TestWebhooks:
    async def test_calendly_webhook_applies_and_dispatches(self, client, store, payments):
        created = await client.post(BOOKINGS, json=create_body(), headers=CLIENT)
        booking_id = created.json()["booking_id"]
        body = {
            "event": "invitee.created",
            "payload": {
                "uri": "https://api.calendly.com/scheduled_events/EV1/invitees/INV1",
                "email": "client@example.com",
                "scheduled_event": {"uri": "https://api.calendly.com/scheduled_events/EV1"},
                "tracking": {"utm_content": booking_id},
            },
        }
        payload = json.dumps(body).encode("utf-8")
        headers = {CALENDLY_SIGNATURE_HEADER: sign_webhook_payload(CALENDLY_KEY, payload, int(time.time()))}

        response = await client.post(f"{settings.api_prefix}/webhooks/calendly", content=payload, headers=headers)
        replay = await client.post(f"{settings.api_prefix}/webhooks/calendly", content=payload, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "applied"}
        assert replay.json()["status"] == "duplicate"
        fetched = await client.get(f"{BOOKINGS}/{booking_id}", headers=CLIENT)
        assert fetched.json()["state"] == BookingState.AWAITING_PAYMENT.value
        assert payments.calls.count("checkout") == 1

    async def test_bad_signature(self, client, caplog):
        payload = b'{"event": "invitee.created"}'
        headers = {CALENDLY_SIGNATURE_HEADER: sign_webhook_payload("wrong-key", payload, int(time.time()))}

        response = await client.post(f"{settings.api_prefix}/webhooks/calendly", content=payload, headers=headers)

        assert response.status_code == 400
        assert response.json() == {"detail": "Invalid webhook signature"}
        assert response.headers["X-Request-ID"]
        assert any("WEBHOOK_REJECTED" in r.getMessage() for r in caplog.records)


class TestInternal:
    async def test_anomalies_are_admin_only(self, client, store):
        booking = new_booking()
        flag_anomaly(booking, "payment captured twice", NOW)
        await store.add(booking)

        denied = await client.get(f"{settings.api_prefix}/internal/anomalies", headers=CLIENT)
        listed = await client.get(f"{settings.api_prefix}/internal/anomalies", headers=ADMIN)

        assert denied.status_code == 403
        assert listed.status_code == 200
        assert [(a["booking_id"], a["anomaly"]) for a in listed.json()] == [
            (str(booking.id), "payment captured twice")
        ]

    async def test_manual_sweep(self, client):
        response = await client.post(f"{settings.api_prefix}/internal/recovery/sweep", headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["summary"]["errors"] == 0


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
