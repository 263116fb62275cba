"""Coordinator tests: idempotency, ordering, deferral and concurrency."""

import asyncio
import logging
from datetime import timedelta

import pytest

from booking_coordinator.core.exceptions import InvalidTransition, ValidationError, VersionConflict
from booking_coordinator.domain.booking import BookingState, DirectiveType
from booking_coordinator.domain.booking_state import apply_event, record_payment_session
from booking_coordinator.domain.events import DeferReason, DeferredStatus, EventSource, EventType, Provider
from booking_coordinator.domain.payment_state import PaymentState
from booking_coordinator.repositories.memory import InMemoryBookingStore
from booking_coordinator.services.coordinator import BookingCoordinator, IngestStatus
from tests.conftest import (
    NOW,
    InterleavingStore,
    make_event,
    new_booking,
    payment_succeeded,
    scheduling_confirmed,
)


class ContendedStore(InMemoryBookingStore):
    """Every booking save loses the version race."""

    async def save(self, booking, expected_version):
        raise VersionConflict(str(booking.id), expected_version)


async def awaiting_payment(store, payment_ref="cs_1"):
    booking = new_booking()
    apply_event(booking, scheduling_confirmed(booking.id), NOW)
    record_payment_session(booking, payment_ref, NOW)
    return await store.add(booking)


class TestHappyPath:
    async def test_book_pay_and_replay(self, coordinator, dispatcher, store, payments, booking):
        result = await coordinator.ingest(scheduling_confirmed(booking.id))

        assert result.status == IngestStatus.APPLIED
        assert result.state == BookingState.AWAITING_PAYMENT
        assert result.needs_dispatch

        await dispatcher.dispatch_pending(booking.id)
        await dispatcher.dispatch_pending(booking.id)
        assert payments.calls.count("checkout") == 1

        paid = await coordinator.ingest(payment_succeeded(booking.id, "cs_test_1", key="K1"))
        assert paid.state == BookingState.CONFIRMED

        before = await store.get(booking.id)
        replay = await coordinator.ingest(payment_succeeded(booking.id, "cs_test_1", key="K1"))
        after = await store.get(booking.id)

        assert replay.status == IngestStatus.DUPLICATE
        assert not replay.needs_dispatch
        assert after.version == before.version
        assert len(after.directives) == len(before.directives)

    async def test_failed_payment_then_success(self, coordinator, store):
        booking = await awaiting_payment(store)

        failed = await coordinator.ingest(
            make_event(EventType.PAYMENT_FAILED, "evt_failed", booking.id, payment_ref="cs_1")
        )
        assert failed.state == BookingState.PAYMENT_FAILED

        paid = await coordinator.ingest(payment_succeeded(booking.id, "cs_1", key="evt_paid_late"))
        assert paid.state == BookingState.CONFIRMED

        stored = await store.get(booking.id)
        assert stored.payment_state == PaymentState.PAID
        assert [d.directive for d in stored.directives] == [
            DirectiveType.CREATE_PAYMENT_SESSION,
            DirectiveType.NOTIFY_CLIENT,
            DirectiveType.SEND_CONFIRMATION,
        ]

    async def test_create_booking_validates_window(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.create_booking(
                client_id="client-1",
                builder_id="builder-1",
                session_type_id="consult-60",
                requested_start=NOW + timedelta(days=1),
                requested_end=NOW + timedelta(days=1),
                amount=10000,
            )


class TestOrdering:
    async def test_payment_before_scheduling_is_replayed(self, coordinator, dispatcher, store, booking):
        early = await coordinator.ingest(payment_succeeded(booking.id, "cs_early", key="evt_early"))

        assert early.status == IngestStatus.DEFERRED
        assert early.reason == DeferReason.MISSING_PREREQUISITE.value
        assert (await store.get(booking.id)).state == BookingState.PENDING

        confirmed = await coordinator.ingest(scheduling_confirmed(booking.id))

        assert confirmed.state == BookingState.CONFIRMED
        entry = await store.get_deferred("evt_early")
        assert entry.status == DeferredStatus.APPLIED

        results = await dispatcher.dispatch_pending(booking.id)
        statuses = {r.directive: r.status.value for r in results}
        assert statuses[DirectiveType.CREATE_PAYMENT_SESSION] == "SKIPPED"
        assert statuses[DirectiveType.SEND_CONFIRMATION] == "SUCCEEDED"

    async def test_redelivery_of_deferred_event(self, coordinator, booking):
        await coordinator.ingest(payment_succeeded(booking.id, "cs_early", key="evt_early"))

        again = await coordinator.ingest(payment_succeeded(booking.id, "cs_early", key="evt_early"))

        assert again.status == IngestStatus.DEFERRED
        assert again.reason == "already journaled"

    async def test_unmatched_event_resolves_later(self, coordinator, dispatcher, store, booking):
        stray = make_event(
            EventType.PAYMENT_SUCCEEDED,
            "evt_stray",
            provider=Provider.STRIPE,
            external_ref="cs_test_1",
            payment_ref="cs_test_1",
        )
        result = await coordinator.ingest(stray)
        assert result.status == IngestStatus.DEFERRED
        assert result.reason == DeferReason.UNMATCHED_BOOKING.value

        await coordinator.ingest(scheduling_confirmed(booking.id))
        await dispatcher.dispatch_pending(booking.id)

        summary = await coordinator.reapply_deferred()

        assert summary.applied == 1
        assert booking.id in summary.booking_ids
        stored = await store.get(booking.id)
        assert stored.state == BookingState.CONFIRMED
        assert (await store.get_deferred("evt_stray")).event.booking_id == booking.id

    async def test_deferred_event_exhausts(self, coordinator, store, booking, caplog):
        await coordinator.ingest(make_event(EventType.SESSION_COMPLETED, "evt_done", booking.id))

        for _ in range(3):
            summary = await coordinator.reapply_deferred()

        assert summary.exhausted == 1
        entry = await store.get_deferred("evt_done")
        assert entry.status == DeferredStatus.EXHAUSTED
        assert entry.attempts == 3
        stored = await store.get(booking.id)
        assert stored.state == BookingState.PENDING
        assert "exhausted" in stored.anomaly
        assert "RECONCILIATION_ANOMALY" in caplog.text

    async def test_exhausted_entry_is_not_retried(self, coordinator, store, booking):
        await coordinator.ingest(make_event(EventType.SESSION_COMPLETED, "evt_done", booking.id))
        for _ in range(3):
            await coordinator.reapply_deferred()

        summary = await coordinator.reapply_deferred()

        assert summary.applied == summary.requeued == summary.exhausted == 0


class TestRejections:
    async def test_late_failure_on_completed_booking_is_acknowledged(self, coordinator, store):
        booking = await awaiting_payment(store)
        await coordinator.ingest(payment_succeeded(booking.id, "cs_1"))
        await coordinator.ingest(make_event(EventType.SESSION_COMPLETED, "evt_done", booking.id))

        result = await coordinator.ingest(
            make_event(EventType.PAYMENT_FAILED, "evt_fail_late", booking.id, payment_ref="cs_1")
        )

        stored = await store.get(booking.id)
        assert stored.state == BookingState.COMPLETED
        assert stored.anomaly is None
        assert result.status == IngestStatus.REJECTED
        assert (await store.get_deferred("evt_fail_late")).status == DeferredStatus.REJECTED

    async def test_invalid_transition_flags_anomaly(self, coordinator, store, caplog):
        booking = await awaiting_payment(store)
        await coordinator.ingest(payment_succeeded(booking.id, "cs_1"))
        await coordinator.ingest(make_event(EventType.SESSION_COMPLETED, "evt_done", booking.id))

        result = await coordinator.ingest(
            make_event(EventType.PAYMENT_RETRY_REQUESTED, "evt_retry", booking.id)
        )

        assert result.status == IngestStatus.REJECTED
        assert result.reason == DeferReason.INVALID_TRANSITION.value
        stored = await store.get(booking.id)
        assert stored.state == BookingState.COMPLETED
        assert stored.anomaly
        assert "RECONCILIATION_ANOMALY" in caplog.text

    async def test_calendly_cancel_after_api_cancel_is_redundant(self, coordinator, store, booking):
        await coordinator.request_cancellation(booking.id, "Plans changed")

        result = await coordinator.ingest(
            make_event(EventType.SCHEDULING_CANCELLED, "calendly:canceled:1", booking.id)
        )

        assert result.status == IngestStatus.REJECTED
        assert result.reason == DeferReason.REDUNDANT.value
        assert (await store.get(booking.id)).anomaly is None

    async def test_repeated_cancellation_request(self, coordinator, booking):
        first = await coordinator.request_cancellation(booking.id)
        second = await coordinator.request_cancellation(booking.id)

        assert first.status == IngestStatus.APPLIED
        assert second.status == IngestStatus.DUPLICATE
        assert second.state == BookingState.CANCELLED

    async def test_cancelling_completed_booking_raises(self, coordinator, store):
        booking = await awaiting_payment(store)
        await coordinator.ingest(payment_succeeded(booking.id, "cs_1"))
        await coordinator.ingest(make_event(EventType.SESSION_COMPLETED, "evt_done", booking.id))

        with pytest.raises(InvalidTransition):
            await coordinator.request_cancellation(booking.id)

    async def test_retry_payment(self, coordinator, store):
        booking = await awaiting_payment(store)
        await coordinator.ingest(
            make_event(EventType.PAYMENT_FAILED, "evt_failed", booking.id, payment_ref="cs_1")
        )

        result = await coordinator.retry_payment(booking.id)

        assert result.state == BookingState.AWAITING_PAYMENT
        stored = await store.get(booking.id)
        assert stored.directives[-1].directive == DirectiveType.CREATE_PAYMENT_SESSION
        assert stored.directives[-1].idempotency_key in result.directive_keys


class TestConcurrency:
    async def test_racing_payment_and_cancellation_converge(self, clock):
        store = InterleavingStore()
        coordinator = BookingCoordinator(store, conflict_retries=5, clock=clock)
        booking = await awaiting_payment(store)

        cancel, paid = await asyncio.gather(
            coordinator.request_cancellation(booking.id, "Plans changed"),
            coordinator.ingest(payment_succeeded(booking.id, "cs_1")),
        )

        assert cancel.status == IngestStatus.APPLIED
        assert paid.status == IngestStatus.APPLIED
        stored = await store.get(booking.id)
        assert stored.state == BookingState.CANCELLED
        assert stored.payment_state == PaymentState.PAID
        assert [h.seq for h in stored.state_history] == list(range(stored.history_length))
        assert DirectiveType.ISSUE_REFUND_IF_PAID in [d.directive for d in stored.directives]
        # two winning writes on top of the initial add
        assert stored.version == 3

    async def test_exhausted_version_conflicts_defer(self, clock):
        store = ContendedStore()
        coordinator = BookingCoordinator(store, conflict_retries=3, clock=clock)
        booking = await store.add(new_booking())

        result = await coordinator.ingest(scheduling_confirmed(booking.id))

        assert result.status == IngestStatus.DEFERRED
        assert result.reason == DeferReason.VERSION_CONFLICT.value
        entry = await store.get_deferred("calendly:created:1")
        assert entry.is_queued

    async def test_cancellation_losing_every_race_is_journaled(self, clock):
        store = ContendedStore()
        coordinator = BookingCoordinator(store, conflict_retries=2, clock=clock)
        booking = await store.add(new_booking())

        result = await coordinator.request_cancellation(booking.id)

        assert result.status == IngestStatus.DEFERRED
        entries = await store.list_deferred(booking_id=booking.id)
        assert entries[0].event.event_type == EventType.CANCELLATION_REQUESTED


class TestSyntheticEvents:
    async def test_synthetic_event_is_tagged_in_logs(self, coordinator, store, caplog):
        caplog.set_level(logging.INFO, logger="booking_coordinator")
        booking = await awaiting_payment(store)

        await coordinator.ingest(
            make_event(
                EventType.PAYMENT_SUCCEEDED,
                "recovery:1",
                booking.id,
                source=EventSource.RECOVERY,
                payment_ref="cs_1",
            )
        )

        assert "SYNTHETIC_EVENT" in caplog.text
