"""Booking coordinator.

Feeds normalized events through the state machine engine with an
optimistic reload-recompute-save loop, keeps the deferred event journal and
exposes the booking actions used by the API. Side effects are left in the
booking's directive ledger for the dispatcher.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from uuid import UUID

from booking_coordinator.config import settings
from booking_coordinator.core.exceptions import (
    InvalidTransition,
    NotFoundError,
    ValidationError,
    VersionConflict,
)
from booking_coordinator.core.idempotency import api_event_key
from booking_coordinator.domain.booking import Booking, BookingState, CancelledBy
from booking_coordinator.domain.booking_state import apply_transition, flag_anomaly, transition
from booking_coordinator.domain.events import (
    BookingEvent,
    DeferReason,
    DeferredEntry,
    DeferredStatus,
    EventSource,
    EventType,
    Provider,
)
from booking_coordinator.repositories.base import BookingStore

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


class IngestStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    DEFERRED = "deferred"
    REJECTED = "rejected"
    IGNORED = "ignored"


@dataclass
class IngestResult:
    """Outcome of feeding one event to the coordinator."""

    status: IngestStatus
    booking_id: UUID | None = None
    state: BookingState | None = None
    directive_keys: list[str] = field(default_factory=list)
    reason: str | None = None

    @property
    def needs_dispatch(self) -> bool:
        return self.booking_id is not None and self.status == IngestStatus.APPLIED


@dataclass
class ReapplySummary:
    applied: int = 0
    requeued: int = 0
    rejected: int = 0
    exhausted: int = 0
    booking_ids: set[UUID] = field(default_factory=set)

    def merge(self, other: "ReapplySummary") -> None:
        self.applied += other.applied
        self.requeued += other.requeued
        self.rejected += other.rejected
        self.exhausted += other.exhausted
        self.booking_ids |= other.booking_ids


class BookingCoordinator:
    """Applies events to bookings; the only writer of booking state."""

    def __init__(
        self,
        store: BookingStore,
        *,
        conflict_retries: int | None = None,
        deferred_max_attempts: int | None = None,
        deferred_retry_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.conflict_retries = conflict_retries or settings.version_conflict_max_retries
        self.deferred_max_attempts = deferred_max_attempts or settings.deferred_event_max_attempts
        self.deferred_retry_seconds = (
            deferred_retry_seconds
            if deferred_retry_seconds is not None
            else settings.deferred_event_retry_seconds
        )
        self._clock = clock

    # ==================== BOOKINGS ====================

    async def create_booking(
        self,
        *,
        client_id: str,
        builder_id: str,
        session_type_id: str,
        requested_start: datetime,
        requested_end: datetime,
        amount: int,
        currency: str = "usd",
        client_timezone: str = "UTC",
        builder_timezone: str | None = None,
        client_email: str | None = None,
    ) -> Booking:
        """Create a booking in PENDING."""
        if requested_end <= requested_start:
            raise ValidationError("Session end must be after its start")
        if amount <= 0:
            raise ValidationError("Amount must be positive")

        booking = Booking.new(
            client_id=client_id,
            builder_id=builder_id,
            session_type_id=session_type_id,
            scheduled_start=requested_start.astimezone(UTC),
            scheduled_end=requested_end.astimezone(UTC),
            amount=amount,
            currency=currency,
            client_timezone=client_timezone,
            builder_timezone=builder_timezone,
            client_email=client_email,
            now=self._clock(),
        )
        await self.store.add(booking)
        logger.info(f"Booking {booking.id} created for client {client_id} with builder {builder_id}")
        return booking

    async def get_booking(self, booking_id: UUID) -> Booking:
        return await self.store.get(booking_id)

    async def flag_anomaly(self, booking_id: UUID, reason: str) -> None:
        """Flag a booking for operator attention without changing its state."""
        for _ in range(self.conflict_retries):
            booking = await self.store.get(booking_id)
            flag_anomaly(booking, reason, self._clock())
            try:
                await self.store.save(booking, booking.version)
                return
            except VersionConflict:
                continue
        logger.error(f"RECONCILIATION_ANOMALY: could not flag booking {booking_id}: {reason}")

    # ==================== EVENT APPLICATION ====================

    async def apply(self, event: BookingEvent) -> IngestResult:
        """Apply an event addressed to a known booking.

        Raises:
            InvalidTransition: the engine rejected the event.
            VersionConflict: concurrent writers won every retry.
            NotFoundError: the booking does not exist.
        """
        booking_id = event.booking_id
        expected = 0
        for attempt in range(1, self.conflict_retries + 1):
            booking = await self.store.get(booking_id)
            expected = booking.version
            if booking.has_applied(event.idempotency_key):
                return IngestResult(IngestStatus.DUPLICATE, booking.id, booking.state)

            result = transition(booking, event)
            now = self._clock()
            records = apply_transition(booking, event, result, now)
            try:
                await self.store.save(booking, expected)
            except VersionConflict:
                logger.debug(
                    f"Version conflict applying {event.event_type.value} to {booking_id} "
                    f"(attempt {attempt})"
                )
                continue

            log_line = (
                f"Booking {booking.id}: {result.from_state.value} -> {result.to_state.value} "
                f"on {event.event_type.value} key={event.idempotency_key} source={event.source.value}"
            )
            if event.is_synthetic:
                logger.warning(f"SYNTHETIC_EVENT: {log_line}")
            else:
                logger.info(log_line)

            return IngestResult(
                IngestStatus.APPLIED,
                booking.id,
                booking.state,
                [r.idempotency_key for r in records],
            )
        raise VersionConflict(str(booking_id), expected)

    async def resolve_booking_id(self, event: BookingEvent) -> UUID | None:
        """Find the booking an event is addressed to."""
        if event.booking_id is not None:
            return event.booking_id
        if not event.external_ref:
            return None
        if event.provider == Provider.CALENDLY:
            booking = await self.store.find_by_scheduling_ref(event.external_ref)
        elif event.provider == Provider.STRIPE:
            booking = await self.store.find_by_payment_ref(event.external_ref)
        else:
            booking = None
        return booking.id if booking else None

    async def _journal(self, event: BookingEvent, reason: DeferReason, status: DeferredStatus, error: str | None = None) -> bool:
        now = self._clock()
        return await self.store.defer(
            DeferredEntry(
                event=event,
                reason=reason,
                status=status,
                last_error=error,
                next_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
        )

    async def ingest(self, event: BookingEvent) -> IngestResult:
        """Apply an inbound event, journaling it when it cannot apply yet.

        Never raises for domain outcomes: rejected events are journaled and
        flagged so the caller can acknowledge delivery.
        """
        journaled = await self.store.get_deferred(event.idempotency_key)
        if journaled is not None:
            status = IngestStatus.DEFERRED if journaled.is_queued else IngestStatus.DUPLICATE
            return IngestResult(status, journaled.booking_id, reason="already journaled")

        booking_id = await self.resolve_booking_id(event)
        if booking_id is None:
            logger.warning(
                f"No booking matches {event.event_type.value} key={event.idempotency_key} "
                f"ref={event.external_ref}; deferring"
            )
            await self._journal(event, DeferReason.UNMATCHED_BOOKING, DeferredStatus.QUEUED)
            return IngestResult(IngestStatus.DEFERRED, reason=DeferReason.UNMATCHED_BOOKING.value)

        event = event.with_booking(booking_id)
        try:
            result = await self.apply(event)
        except NotFoundError:
            logger.warning(f"Event {event.idempotency_key} addresses unknown booking {booking_id}; deferring")
            await self._journal(event, DeferReason.UNMATCHED_BOOKING, DeferredStatus.QUEUED)
            return IngestResult(IngestStatus.DEFERRED, reason=DeferReason.UNMATCHED_BOOKING.value)
        except VersionConflict:
            logger.warning(f"Version conflicts exhausted for {event.idempotency_key}; deferring")
            await self._journal(event, DeferReason.VERSION_CONFLICT, DeferredStatus.QUEUED)
            return IngestResult(IngestStatus.DEFERRED, booking_id, reason=DeferReason.VERSION_CONFLICT.value)
        except InvalidTransition as e:
            return await self._handle_rejection(event, e)

        if result.status == IngestStatus.APPLIED:
            await self.reapply_deferred(booking_id)
            booking = await self.store.get(booking_id)
            result.state = booking.state
        return result

    async def _handle_rejection(self, event: BookingEvent, error: InvalidTransition) -> IngestResult:
        booking_id = event.booking_id
        if error.redundant:
            logger.info(
                f"Booking {booking_id} already reflects {event.event_type.value} "
                f"key={event.idempotency_key}; acknowledged"
            )
            await self._journal(event, DeferReason.REDUNDANT, DeferredStatus.REJECTED)
            return IngestResult(IngestStatus.REJECTED, booking_id, reason=DeferReason.REDUNDANT.value)

        if error.deferrable:
            logger.info(
                f"Deferring {event.event_type.value} for booking {booking_id} in "
                f"{error.current_state} key={event.idempotency_key}"
            )
            await self._journal(event, DeferReason.MISSING_PREREQUISITE, DeferredStatus.QUEUED)
            return IngestResult(IngestStatus.DEFERRED, booking_id, reason=DeferReason.MISSING_PREREQUISITE.value)

        reason = f"{event.event_type.value} not valid in {error.current_state} (key={event.idempotency_key})"
        logger.error(f"RECONCILIATION_ANOMALY: booking {booking_id}: {reason}")
        await self._journal(event, DeferReason.INVALID_TRANSITION, DeferredStatus.REJECTED, str(error.detail))
        await self.flag_anomaly(booking_id, reason)
        return IngestResult(IngestStatus.REJECTED, booking_id, reason=DeferReason.INVALID_TRANSITION.value)

    # ==================== DEFERRED JOURNAL ====================

    def _requeue(self, entry: DeferredEntry, error: str, now: datetime) -> bool:
        """Count a failed retry; True when the entry is now exhausted."""
        entry.attempts += 1
        entry.last_error = error
        entry.updated_at = now
        entry.next_attempt_at = now + timedelta(seconds=self.deferred_retry_seconds)
        if entry.attempts >= self.deferred_max_attempts:
            entry.status = DeferredStatus.EXHAUSTED
            return True
        return False

    async def _retry_entry(self, entry: DeferredEntry, summary: ReapplySummary) -> bool:
        """Retry one journal entry; True when it was applied."""
        now = self._clock()
        event = entry.event
        applied = False
        error: str | None = None

        if event.booking_id is None:
            booking_id = await self.resolve_booking_id(event)
            if booking_id is not None:
                event = event.with_booking(booking_id)
                entry.event = event

        if event.booking_id is None:
            error = "no matching booking"
        else:
            try:
                result = await self.apply(event)
            except InvalidTransition as e:
                if e.redundant:
                    entry.status = DeferredStatus.REJECTED
                    entry.updated_at = now
                    summary.rejected += 1
                elif e.deferrable:
                    error = str(e.detail)
                else:
                    entry.status = DeferredStatus.REJECTED
                    entry.last_error = str(e.detail)
                    entry.updated_at = now
                    summary.rejected += 1
                    logger.error(
                        f"RECONCILIATION_ANOMALY: deferred {event.event_type.value} for booking "
                        f"{event.booking_id} can no longer apply: {e.detail}"
                    )
                    await self.flag_anomaly(event.booking_id, f"Deferred event rejected: {e.detail}")
            except (VersionConflict, NotFoundError) as e:
                error = str(e.detail)
            else:
                entry.status = DeferredStatus.APPLIED
                entry.updated_at = now
                applied = result.status == IngestStatus.APPLIED
                summary.applied += 1
                summary.booking_ids.add(event.booking_id)

        if error is not None:
            if self._requeue(entry, error, now):
                summary.exhausted += 1
                logger.error(
                    f"RECONCILIATION_ANOMALY: deferred event {entry.idempotency_key} "
                    f"({event.event_type.value}) exhausted after {entry.attempts} attempts: {error}"
                )
                if event.booking_id is not None:
                    await self.flag_anomaly(
                        event.booking_id,
                        f"Deferred {event.event_type.value} exhausted: {error}",
                    )
            else:
                summary.requeued += 1

        await self.store.update_deferred(entry)
        return applied

    async def reapply_deferred(
        self,
        booking_id: UUID | None = None,
        due_only: bool = False,
        limit: int = 100,
    ) -> ReapplySummary:
        """Retry queued journal entries, highest priority first.

        Scoped to one booking after a successful transition; the recovery
        sweep calls it unscoped with ``due_only``. Each entry is tried at most
        once per call; a successful application rescans the remaining ones.
        """
        summary = ReapplySummary()
        tried: set[str] = set()
        while True:
            due_before = self._clock() if due_only else None
            entries = [
                e
                for e in await self.store.list_deferred(booking_id=booking_id, due_before=due_before, limit=limit)
                if e.idempotency_key not in tried
            ]
            if not entries:
                return summary

            progressed = False
            for entry in entries:
                tried.add(entry.idempotency_key)
                if await self._retry_entry(entry, summary):
                    progressed = True
                    break
            if not progressed:
                return summary

    # ==================== API ACTIONS ====================

    async def request_cancellation(
        self,
        booking_id: UUID,
        reason: str | None = None,
        cancelled_by: CancelledBy = CancelledBy.CLIENT,
    ) -> IngestResult:
        """Cancel a booking on behalf of a user.

        A cancellation that loses every version race is journaled at the
        highest priority and reported as deferred.
        """
        event = BookingEvent(
            event_type=EventType.CANCELLATION_REQUESTED,
            idempotency_key=api_event_key("cancel", booking_id),
            source=EventSource.API,
            provider=Provider.INTERNAL,
            booking_id=booking_id,
            occurred_at=self._clock(),
            data={"reason": reason, "cancelled_by": cancelled_by.value},
        )
        try:
            result = await self.apply(event)
        except InvalidTransition as e:
            if e.redundant:
                booking = await self.store.get(booking_id)
                return IngestResult(IngestStatus.DUPLICATE, booking_id, booking.state)
            raise
        except VersionConflict:
            logger.warning(f"Cancellation of {booking_id} lost every version race; deferring")
            await self._journal(event, DeferReason.VERSION_CONFLICT, DeferredStatus.QUEUED)
            return IngestResult(IngestStatus.DEFERRED, booking_id, reason=DeferReason.VERSION_CONFLICT.value)

        if result.status == IngestStatus.APPLIED:
            await self.reapply_deferred(booking_id)
        logger.info(f"Booking {booking_id} cancelled by {cancelled_by.value}")
        return result

    async def retry_payment(self, booking_id: UUID) -> IngestResult:
        """Open a new payment session after a failed payment."""
        booking = await self.store.get(booking_id)
        event = BookingEvent(
            event_type=EventType.PAYMENT_RETRY_REQUESTED,
            idempotency_key=api_event_key("retry-payment", booking_id, booking.history_length),
            source=EventSource.API,
            provider=Provider.INTERNAL,
            booking_id=booking_id,
            occurred_at=self._clock(),
        )
        return await self.apply(event)
