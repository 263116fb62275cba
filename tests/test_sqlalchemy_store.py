"""SQLAlchemy store tests against SQLite (aiosqlite)."""

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import booking_coordinator.models  # noqa: F401
from booking_coordinator.core.exceptions import NotFoundError, VersionConflict
from booking_coordinator.core.immutability import ImmutabilityViolationError, register_immutability_enforcement
from booking_coordinator.database import Base
from booking_coordinator.domain.booking import BookingState, DirectiveStatus, DirectiveType
from booking_coordinator.domain.booking_state import apply_event, flag_anomaly, record_payment_session, record_refund
from booking_coordinator.domain.events import (
    DeferReason,
    DeferredEntry,
    DeferredStatus,
    EventType,
    Provider,
)
from booking_coordinator.models.booking import BookingStateHistory
from booking_coordinator.repositories.sqlalchemy_store import SqlAlchemyBookingStore
from booking_coordinator.services.coordinator import BookingCoordinator, IngestStatus
from booking_coordinator.services.dispatcher import DirectiveDispatcher
from booking_coordinator.services.notification_service import NotificationService
from tests.conftest import NOW, make_event, new_booking, payment_succeeded, scheduling_confirmed

EVENT_URI = "https://api.calendly.com/scheduled_events/EV1"


@pytest.fixture
async def sql_store(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SqlAlchemyBookingStore(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


def deferred(event, reason=DeferReason.MISSING_PREREQUISITE, at=NOW):
    return DeferredEntry(event=event, reason=reason, next_attempt_at=at, created_at=at, updated_at=at)


class TestBookings:
    async def test_add_and_get(self, sql_store):
        booking = new_booking()
        apply_event(booking, scheduling_confirmed(booking.id), NOW)

        await sql_store.add(booking)
        loaded = await sql_store.get(booking.id)

        assert loaded.version == 1
        assert loaded.state == BookingState.AWAITING_PAYMENT
        assert loaded.scheduled_start == booking.scheduled_start
        assert loaded.scheduled_start.tzinfo is not None
        assert [h.triggering_event for h in loaded.state_history] == ["BookingCreated", "SchedulingConfirmed"]
        assert loaded.has_applied("calendly:created:1")
        assert loaded.directives[0].directive == DirectiveType.CREATE_PAYMENT_SESSION
        assert loaded.external_scheduling_ref == EVENT_URI

    async def test_get_missing(self, sql_store):
        with pytest.raises(NotFoundError):
            await sql_store.get(new_booking().id)

    async def test_save_appends_children_and_bumps_version(self, sql_store):
        booking = await sql_store.add(new_booking())
        loaded = await sql_store.get(booking.id)
        apply_event(loaded, scheduling_confirmed(loaded.id), NOW)
        loaded.directives[0].claim(NOW)

        await sql_store.save(loaded, 1)
        again = await sql_store.get(booking.id)

        assert again.version == 2
        assert again.history_length == 2
        assert again.directives[0].status == DirectiveStatus.IN_PROGRESS
        assert again.directives[0].attempts == 1

    async def test_stale_version_conflicts(self, sql_store):
        booking = await sql_store.add(new_booking())
        first = await sql_store.get(booking.id)
        second = await sql_store.get(booking.id)

        apply_event(first, scheduling_confirmed(first.id), NOW)
        await sql_store.save(first, first.version)
        apply_event(second, make_event(EventType.CANCELLATION_REQUESTED, "cancel", second.id), NOW)

        with pytest.raises(VersionConflict):
            await sql_store.save(second, second.version)

        stored = await sql_store.get(booking.id)
        assert stored.state == BookingState.AWAITING_PAYMENT
        assert not stored.has_applied("cancel")

    async def test_pending_refund_amount_persists(self, sql_store):
        booking = new_booking()
        apply_event(booking, scheduling_confirmed(booking.id), NOW)
        record_payment_session(booking, "cs_1", NOW)
        apply_event(booking, payment_succeeded(booking.id, "cs_1"), NOW)
        apply_event(booking, make_event(EventType.CANCELLATION_REQUESTED, "cancel", booking.id), NOW)
        record_refund(booking, 10000, NOW, "re_1", pending=True)

        await sql_store.add(booking)
        loaded = await sql_store.get(booking.id)

        assert loaded.refund_pending_amount == 10000
        assert loaded.refund_amount == 0
        assert loaded.refund_outstanding

    async def test_find_by_refs(self, sql_store):
        booking = new_booking()
        apply_event(booking, scheduling_confirmed(booking.id), NOW)
        record_payment_session(booking, "cs_1", NOW)
        await sql_store.add(booking)

        assert (await sql_store.find_by_scheduling_ref(EVENT_URI)).id == booking.id
        assert (await sql_store.find_by_payment_ref("cs_1")).id == booking.id
        assert await sql_store.find_by_payment_ref("cs_other") is None

    async def test_sweep_queries(self, sql_store):
        waiting = new_booking()
        apply_event(waiting, scheduling_confirmed(waiting.id), NOW)
        ended = new_booking(start_in=timedelta(hours=-3))
        apply_event(ended, scheduling_confirmed(ended.id, ref=f"{EVENT_URI}-2"), NOW)
        record_payment_session(ended, "cs_2", NOW)
        apply_event(ended, payment_succeeded(ended.id, "cs_2"), NOW)
        flag_anomaly(ended, "checked by hand", NOW)
        for booking in (waiting, ended):
            await sql_store.add(booking)

        later = NOW + timedelta(minutes=30)
        stale = await sql_store.find_stale([BookingState.AWAITING_PAYMENT], later)
        finished = await sql_store.find_sessions_ended(NOW - timedelta(minutes=60))
        open_work = await sql_store.find_with_open_directives(later)
        anomalies = await sql_store.list_anomalies()

        assert [b.id for b in stale] == [waiting.id]
        assert [b.id for b in finished] == [ended.id]
        assert {b.id for b in open_work} == {waiting.id, ended.id}
        assert [b.id for b in anomalies] == [ended.id]
        assert await sql_store.find_stale([BookingState.AWAITING_PAYMENT], NOW) == []


class TestDeferredJournal:
    async def test_defer_is_keyed(self, sql_store):
        event = payment_succeeded(None, "cs_1", key="evt_1")

        assert await sql_store.defer(deferred(event)) is True
        assert await sql_store.defer(deferred(event)) is False

        entry = await sql_store.get_deferred("evt_1")
        assert entry.event == event
        assert entry.status == DeferredStatus.QUEUED

    async def test_priority_order_and_due_filter(self, sql_store):
        booking = new_booking()
        await sql_store.defer(deferred(make_event(EventType.SESSION_COMPLETED, "done", booking.id)))
        await sql_store.defer(deferred(payment_succeeded(booking.id, "cs_1", key="paid")))
        await sql_store.defer(
            deferred(make_event(EventType.CANCELLATION_REQUESTED, "cancel", booking.id), at=NOW + timedelta(hours=1))
        )

        ordered = await sql_store.list_deferred(booking_id=booking.id)
        due = await sql_store.list_deferred(due_before=NOW)

        assert [e.idempotency_key for e in ordered] == ["cancel", "paid", "done"]
        assert [e.idempotency_key for e in due] == ["paid", "done"]

    async def test_update_persists_resolution(self, sql_store):
        event = make_event(
            EventType.PAYMENT_SUCCEEDED, "evt_stray", provider=Provider.STRIPE, external_ref="cs_1"
        )
        await sql_store.defer(deferred(event, DeferReason.UNMATCHED_BOOKING))
        booking = new_booking()

        entry = await sql_store.get_deferred("evt_stray")
        entry.event = entry.event.with_booking(booking.id)
        entry.status = DeferredStatus.APPLIED
        entry.attempts = 1
        await sql_store.update_deferred(entry)

        stored = await sql_store.get_deferred("evt_stray")
        assert stored.booking_id == booking.id
        assert stored.status == DeferredStatus.APPLIED
        assert stored.attempts == 1
        assert await sql_store.list_deferred() == []


async def test_full_flow_against_sql_store(sql_store, payments, email, clock):
    coordinator = BookingCoordinator(sql_store, clock=clock)
    dispatcher = DirectiveDispatcher(
        sql_store, payments, NotificationService(email), call_timeout=1.0, clock=clock
    )
    booking = await coordinator.create_booking(
        client_id="client-1",
        builder_id="builder-1",
        session_type_id="consult-60",
        requested_start=NOW + timedelta(days=2),
        requested_end=NOW + timedelta(days=2, hours=1),
        amount=10000,
        client_email="client@example.com",
    )

    early = await coordinator.ingest(payment_succeeded(booking.id, "cs_test_1", key="evt_paid"))
    await coordinator.ingest(scheduling_confirmed(booking.id))
    await dispatcher.dispatch_pending(booking.id)
    replay = await coordinator.ingest(payment_succeeded(booking.id, "cs_test_1", key="evt_paid"))
    cancel = await coordinator.request_cancellation(booking.id, "Plans changed")
    await dispatcher.dispatch_pending(booking.id)

    stored = await sql_store.get(booking.id)
    assert early.status == IngestStatus.DEFERRED
    assert replay.status == IngestStatus.DUPLICATE
    assert cancel.status == IngestStatus.APPLIED
    assert stored.state == BookingState.CANCELLED
    assert stored.refund_amount == 10000
    assert payments.refund_calls == 1
    assert not stored.processing
    assert [h.seq for h in stored.state_history] == list(range(stored.history_length))


async def test_history_rows_are_append_only(sql_store):
    register_immutability_enforcement()
    booking = await sql_store.add(new_booking())

    async with sql_store._session_factory() as session:
        row = await session.scalar(select(BookingStateHistory).where(BookingStateHistory.booking_id == booking.id))
        row.details = {"edited": True}

        with pytest.raises(ImmutabilityViolationError):
            await session.flush()
