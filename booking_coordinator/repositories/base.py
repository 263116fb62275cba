"""Booking aggregate store interface.

Stores own durability and the optimistic version check. A ``save`` writes
the booking fields, new history entries, applied idempotency keys and the
directive ledger atomically.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from booking_coordinator.domain.booking import Booking, BookingState
from booking_coordinator.domain.events import DeferredEntry, DeferredStatus


class BookingStore(ABC):
    """Abstract booking store."""

    @abstractmethod
    async def add(self, booking: Booking) -> Booking:
        """Persist a new booking and return it with its initial version."""
        pass

    @abstractmethod
    async def get(self, booking_id: UUID) -> Booking:
        """Load a booking.

        Raises:
            NotFoundError: no booking with this id.
        """
        pass

    @abstractmethod
    async def save(self, booking: Booking, expected_version: int) -> Booking:
        """Persist ``booking`` if the stored version equals ``expected_version``.

        Sets ``booking.version`` to the new version on success.

        Raises:
            VersionConflict: the stored version moved on.
        """
        pass

    @abstractmethod
    async def find_by_scheduling_ref(self, ref: str) -> Booking | None:
        pass

    @abstractmethod
    async def find_by_payment_ref(self, ref: str) -> Booking | None:
        pass

    @abstractmethod
    async def find_stale(
        self,
        states: Iterable[BookingState],
        cutoff: datetime,
        limit: int = 100,
    ) -> list[Booking]:
        """Bookings in ``states`` whose last transition is older than ``cutoff``."""
        pass

    @abstractmethod
    async def find_sessions_ended(self, cutoff: datetime, limit: int = 100) -> list[Booking]:
        """CONFIRMED bookings whose session ended before ``cutoff``."""
        pass

    @abstractmethod
    async def find_with_open_directives(self, cutoff: datetime, limit: int = 100) -> list[Booking]:
        """Bookings with a PENDING/IN_PROGRESS directive untouched since ``cutoff``."""
        pass

    @abstractmethod
    async def list_anomalies(self, limit: int = 100) -> list[Booking]:
        pass

    # Deferred event journal

    @abstractmethod
    async def defer(self, entry: DeferredEntry) -> bool:
        """Insert a journal entry; False when the idempotency key is already journaled."""
        pass

    @abstractmethod
    async def get_deferred(self, idempotency_key: str) -> DeferredEntry | None:
        pass

    @abstractmethod
    async def list_deferred(
        self,
        booking_id: UUID | None = None,
        due_before: datetime | None = None,
        statuses: Iterable[DeferredStatus] = (DeferredStatus.QUEUED,),
        limit: int = 100,
    ) -> list[DeferredEntry]:
        """Journal entries ordered by priority (highest first) then age."""
        pass

    @abstractmethod
    async def update_deferred(self, entry: DeferredEntry) -> None:
        pass
