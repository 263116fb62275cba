"""In-memory booking store with the same contract as the SQL store.

Used by the test-suite and for local development without PostgreSQL.
Bookings are copied on the way in and out so callers never share state
with the store.
"""

import copy
from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from booking_coordinator.core.exceptions import NotFoundError, VersionConflict
from booking_coordinator.domain.booking import Booking, BookingState
from booking_coordinator.domain.events import DeferredEntry, DeferredStatus
from booking_coordinator.repositories.base import BookingStore


class InMemoryBookingStore(BookingStore):
    def __init__(self) -> None:
        self._bookings: dict[UUID, Booking] = {}
        self._deferred: dict[str, DeferredEntry] = {}
        self.save_count = 0

    async def add(self, booking: Booking) -> Booking:
        booking.version = 1
        self._bookings[booking.id] = booking.snapshot()
        return booking

    async def get(self, booking_id: UUID) -> Booking:
        stored = self._bookings.get(booking_id)
        if stored is None:
            raise NotFoundError("Booking", str(booking_id))
        return stored.snapshot()

    async def save(self, booking: Booking, expected_version: int) -> Booking:
        stored = self._bookings.get(booking.id)
        if stored is None:
            raise NotFoundError("Booking", str(booking.id))
        if stored.version != expected_version:
            raise VersionConflict(str(booking.id), expected_version)

        booking.version = expected_version + 1
        self._bookings[booking.id] = booking.snapshot()
        self.save_count += 1
        return booking

    def _all(self) -> list[Booking]:
        return [b.snapshot() for b in self._bookings.values()]

    async def find_by_scheduling_ref(self, ref: str) -> Booking | None:
        for booking in self._all():
            if booking.external_scheduling_ref == ref:
                return booking
        return None

    async def find_by_payment_ref(self, ref: str) -> Booking | None:
        for booking in self._all():
            if booking.external_payment_ref == ref:
                return booking
        return None

    async def find_stale(
        self,
        states: Iterable[BookingState],
        cutoff: datetime,
        limit: int = 100,
    ) -> list[Booking]:
        wanted = set(states)
        found = [
            b for b in self._all() if b.state in wanted and b.last_transition_at < cutoff
        ]
        found.sort(key=lambda b: b.last_transition_at)
        return found[:limit]

    async def find_sessions_ended(self, cutoff: datetime, limit: int = 100) -> list[Booking]:
        found = [
            b
            for b in self._all()
            if b.state == BookingState.CONFIRMED and b.scheduled_end < cutoff
        ]
        found.sort(key=lambda b: b.scheduled_end)
        return found[:limit]

    async def find_with_open_directives(self, cutoff: datetime, limit: int = 100) -> list[Booking]:
        found = [
            b
            for b in self._all()
            if any(d.is_open and d.updated_at < cutoff for d in b.directives)
        ]
        return found[:limit]

    async def list_anomalies(self, limit: int = 100) -> list[Booking]:
        found = [b for b in self._all() if b.anomaly]
        found.sort(key=lambda b: b.anomaly_at, reverse=True)
        return found[:limit]

    async def defer(self, entry: DeferredEntry) -> bool:
        if entry.idempotency_key in self._deferred:
            return False
        self._deferred[entry.idempotency_key] = copy.deepcopy(entry)
        return True

    async def get_deferred(self, idempotency_key: str) -> DeferredEntry | None:
        entry = self._deferred.get(idempotency_key)
        return copy.deepcopy(entry) if entry else None

    async def list_deferred(
        self,
        booking_id: UUID | None = None,
        due_before: datetime | None = None,
        statuses: Iterable[DeferredStatus] = (DeferredStatus.QUEUED,),
        limit: int = 100,
    ) -> list[DeferredEntry]:
        wanted = set(statuses)
        found = [
            e
            for e in self._deferred.values()
            if e.status in wanted
            and (booking_id is None or e.booking_id == booking_id)
            and (due_before is None or e.next_attempt_at <= due_before)
        ]
        found.sort(key=lambda e: (-e.priority, e.created_at))
        return [copy.deepcopy(e) for e in found[:limit]]

    async def update_deferred(self, entry: DeferredEntry) -> None:
        self._deferred[entry.idempotency_key] = copy.deepcopy(entry)
