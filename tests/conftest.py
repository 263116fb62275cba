"""Shared fixtures: in-memory store, provider fakes and a controllable clock."""

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import UUID

import pytest

from booking_coordinator.core.exceptions import ExternalProviderUnavailable
from booking_coordinator.domain.booking import Booking
from booking_coordinator.domain.events import BookingEvent, EventSource, EventType, Provider
from booking_coordinator.gateways.base import (
    EmailSender,
    GatewayType,
    PaymentGateway,
    PaymentResult,
    ProviderPaymentStatus,
    RefundResult,
    ScheduledEvent,
    SchedulingProvider,
)
from booking_coordinator.repositories.memory import InMemoryBookingStore
from booking_coordinator.services.coordinator import BookingCoordinator
from booking_coordinator.services.dispatcher import DirectiveDispatcher
from booking_coordinator.services.notification_service import NotificationService
from booking_coordinator.services.recovery import RecoveryJob

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class Clock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InterleavingStore(InMemoryBookingStore):
    """Yields to the event loop after every read so concurrent writers race."""

    async def get(self, booking_id: UUID) -> Booking:
        booking = await super().get(booking_id)
        await asyncio.sleep(0)
        return booking


class FakePaymentGateway(PaymentGateway):
    """Stripe stand-in that honours idempotency keys like Stripe does."""

    def __init__(self) -> None:
        self.sessions: dict[str, str] = {}
        self.refunds: dict[str, RefundResult] = {}
        self.statuses: dict[str, ProviderPaymentStatus] = {}
        self.metadata: dict[str, dict] = {}
        self.calls: list[str] = []
        self.unavailable = 0
        self.hang = False
        self.refund_pending = False
        self.decline_refunds = False

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.STRIPE

    async def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.hang:
            await asyncio.sleep(3600)
        if self.unavailable:
            self.unavailable -= 1
            raise ExternalProviderUnavailable("stripe", "connection reset")

    @property
    def refund_calls(self) -> int:
        return self.calls.count("refund")

    async def create_checkout_session(
        self,
        amount: int,
        currency: str,
        reference_id: str,
        description: str,
        idempotency_key: str,
        customer_email: str | None = None,
        metadata: dict | None = None,
    ) -> PaymentResult:
        await self._call("checkout")
        if idempotency_key not in self.sessions:
            self.sessions[idempotency_key] = f"cs_test_{len(self.sessions) + 1}"
        session_id = self.sessions[idempotency_key]
        return PaymentResult(
            success=True,
            transaction_id=session_id,
            checkout_url=f"https://checkout.stripe.test/{session_id}",
            status=ProviderPaymentStatus.PENDING,
        )

    async def get_payment_status(self, transaction_id: str) -> PaymentResult:
        await self._call("status")
        return PaymentResult(
            success=True,
            transaction_id=transaction_id,
            status=self.statuses.get(transaction_id, ProviderPaymentStatus.PENDING),
        )

    async def process_refund(
        self,
        transaction_id: str,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> RefundResult:
        await self._call("refund")
        if self.decline_refunds:
            return RefundResult(success=False, error_message="charge already refunded")
        if idempotency_key not in self.refunds:
            self.refunds[idempotency_key] = RefundResult(
                success=True,
                refund_id=f"re_test_{len(self.refunds) + 1}",
                amount=amount,
                pending=self.refund_pending,
            )
        return self.refunds[idempotency_key]

    async def update_metadata(self, transaction_id: str, metadata: dict, idempotency_key: str) -> PaymentResult:
        await self._call("metadata")
        self.metadata[transaction_id] = metadata
        return PaymentResult(success=True, transaction_id=transaction_id)


class FakeSchedulingProvider(SchedulingProvider):
    def __init__(self) -> None:
        self.events: dict[str, ScheduledEvent] = {}
        self.unavailable = False

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.CALENDLY

    async def get_scheduled_event(self, event_uri: str) -> ScheduledEvent | None:
        if self.unavailable:
            raise ExternalProviderUnavailable("calendly", "503")
        return self.events.get(event_uri)

    async def find_scheduled_event(self, invitee_email: str, start_time: datetime) -> ScheduledEvent | None:
        if self.unavailable:
            raise ExternalProviderUnavailable("calendly", "503")
        for event in self.events.values():
            if event.invitee_email == invitee_email and event.start_time == start_time:
                return event
        return None


class FakeEmailSender(EmailSender):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send_email(self, to_email: str, subject: str, html_content: str, text_content: str | None = None) -> bool:
        self.sent.append((to_email, subject))
        return True

    @property
    def subjects(self) -> list[str]:
        return [subject for _, subject in self.sent]


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store() -> InMemoryBookingStore:
    return InMemoryBookingStore()


@pytest.fixture
def payments() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def scheduler() -> FakeSchedulingProvider:
    return FakeSchedulingProvider()


@pytest.fixture
def email() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def coordinator(store, clock) -> BookingCoordinator:
    return BookingCoordinator(
        store,
        conflict_retries=5,
        deferred_max_attempts=3,
        deferred_retry_seconds=60,
        clock=clock,
    )


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def dispatcher(store, payments, email, clock, sleeps) -> DirectiveDispatcher:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return DirectiveDispatcher(
        store,
        payments,
        NotificationService(email),
        max_attempts=3,
        backoff_base=0.5,
        backoff_max=4.0,
        call_timeout=0.05,
        conflict_retries=5,
        sleep=fake_sleep,
        clock=clock,
    )


@pytest.fixture
def recovery(coordinator, dispatcher, payments, scheduler, clock) -> RecoveryJob:
    return RecoveryJob(
        coordinator,
        dispatcher,
        payments,
        scheduler,
        awaiting_payment_timeout=timedelta(minutes=15),
        pending_timeout=timedelta(hours=24),
        payment_failed_timeout=timedelta(hours=24),
        completion_grace=timedelta(minutes=60),
        stale_directive_after=timedelta(minutes=10),
        batch_size=50,
        clock=clock,
    )


def new_booking(now: datetime = NOW, start_in: timedelta = timedelta(days=3), **overrides) -> Booking:
    start = now + start_in
    fields = dict(
        client_id="client-1",
        builder_id="builder-1",
        session_type_id="consult-60",
        scheduled_start=start,
        scheduled_end=start + timedelta(hours=1),
        amount=10000,
        client_email="client@example.com",
        now=now,
    )
    fields.update(overrides)
    return Booking.new(**fields)


@pytest.fixture
async def booking(store, clock) -> Booking:
    return await store.add(new_booking(clock()))


def make_event(
    event_type: EventType,
    key: str,
    booking_id: UUID | None = None,
    source: EventSource = EventSource.WEBHOOK,
    provider: Provider = Provider.INTERNAL,
    external_ref: str | None = None,
    **data,
) -> BookingEvent:
    return BookingEvent(
        event_type=event_type,
        idempotency_key=key,
        source=source,
        provider=provider,
        booking_id=booking_id,
        external_ref=external_ref,
        occurred_at=NOW,
        data=data,
    )


def scheduling_confirmed(booking_id: UUID | None, ref: str = "https://api.calendly.com/scheduled_events/EV1", key: str = "calendly:created:1") -> BookingEvent:
    return make_event(
        EventType.SCHEDULING_CONFIRMED,
        key,
        booking_id,
        provider=Provider.CALENDLY,
        external_ref=ref,
        scheduling_ref=ref,
    )


def payment_succeeded(booking_id: UUID | None, ref: str | None = None, key: str = "evt_paid_1") -> BookingEvent:
    data = {"payment_ref": ref} if ref else {}
    return make_event(
        EventType.PAYMENT_SUCCEEDED, key, booking_id, provider=Provider.STRIPE, external_ref=ref, **data
    )
