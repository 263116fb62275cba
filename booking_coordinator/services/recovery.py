"""Recovery and reconciliation sweep.

Webhooks are the primary signal; this sweep is the backstop. It polls the
providers for bookings stuck in a waiting state, feeds synthetic events to
the coordinator, completes sessions that have ended and re-drives deferred
events and directives that were left behind.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from booking_coordinator.config import settings
from booking_coordinator.core.exceptions import ExternalProviderUnavailable
from booking_coordinator.core.idempotency import synthetic_event_key
from booking_coordinator.domain.booking import Booking, BookingState, CancelledBy
from booking_coordinator.domain.events import BookingEvent, EventSource, EventType, Provider
from booking_coordinator.gateways.base import (
    PaymentGateway,
    ProviderPaymentStatus,
    ProviderSchedulingStatus,
    SchedulingProvider,
)
from booking_coordinator.services.coordinator import BookingCoordinator, IngestStatus
from booking_coordinator.services.dispatcher import DirectiveDispatcher

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class SweepSummary:
    """Counts per outcome for one sweep."""

    checked: int = 0
    synthetic_applied: int = 0
    synthetic_deferred: int = 0
    synthetic_rejected: int = 0
    sessions_completed: int = 0
    deferred_applied: int = 0
    deferred_exhausted: int = 0
    directives_dispatched: int = 0
    provider_unavailable: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class RecoveryJob:
    """One reconciliation pass over stale bookings."""

    def __init__(
        self,
        coordinator: BookingCoordinator,
        dispatcher: DirectiveDispatcher,
        payment_gateway: PaymentGateway,
        scheduling_provider: SchedulingProvider,
        *,
        awaiting_payment_timeout: timedelta | None = None,
        pending_timeout: timedelta | None = None,
        payment_failed_timeout: timedelta | None = None,
        completion_grace: timedelta | None = None,
        stale_directive_after: timedelta | None = None,
        batch_size: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.coordinator = coordinator
        self.store = coordinator.store
        self.dispatcher = dispatcher
        self.payment_gateway = payment_gateway
        self.scheduling_provider = scheduling_provider
        self.awaiting_payment_timeout = awaiting_payment_timeout or timedelta(
            minutes=settings.awaiting_payment_timeout_minutes
        )
        self.pending_timeout = pending_timeout or timedelta(hours=settings.pending_timeout_hours)
        self.payment_failed_timeout = payment_failed_timeout or timedelta(
            hours=settings.payment_failed_timeout_hours
        )
        self.completion_grace = completion_grace or timedelta(
            minutes=settings.session_completion_grace_minutes
        )
        self.stale_directive_after = stale_directive_after or timedelta(
            minutes=settings.stale_directive_minutes
        )
        self.batch_size = batch_size or settings.recovery_batch_size
        self._clock = clock

    async def sweep(self) -> SweepSummary:
        """Run every recovery step; a failing booking never blocks the others."""
        summary = SweepSummary()
        now = self._clock()

        await self._each(
            await self.store.find_stale(
                [BookingState.AWAITING_PAYMENT], now - self.awaiting_payment_timeout, self.batch_size
            ),
            self._check_awaiting_payment,
            summary,
        )
        await self._each(
            await self.store.find_stale([BookingState.PENDING], now - self.pending_timeout, self.batch_size),
            self._check_pending,
            summary,
        )
        await self._each(
            await self.store.find_stale(
                [BookingState.PAYMENT_FAILED], now - self.payment_failed_timeout, self.batch_size
            ),
            self._check_payment_failed,
            summary,
        )
        await self._each(
            await self.store.find_sessions_ended(now - self.completion_grace, self.batch_size),
            self._complete_session,
            summary,
        )
        await self._redrive_deferred(summary)
        await self._redrive_directives(now - self.stale_directive_after, summary)
        return summary

    async def _each(
        self,
        bookings: list[Booking],
        check: Callable[[Booking, SweepSummary], Awaitable[None]],
        summary: SweepSummary,
    ) -> None:
        for booking in bookings:
            summary.checked += 1
            try:
                await check(booking, summary)
            except ExternalProviderUnavailable as e:
                summary.provider_unavailable += 1
                logger.warning(f"Recovery skipped booking {booking.id}: {e.detail}")
            except Exception as e:
                summary.errors += 1
                logger.error(f"Recovery failed for booking {booking.id}: {e}")

    async def _emit(
        self,
        booking: Booking,
        event_type: EventType,
        summary: SweepSummary,
        data: dict[str, Any] | None = None,
    ) -> IngestStatus:
        """Feed a synthetic event for ``booking`` and dispatch what it emits."""
        event = BookingEvent(
            event_type=event_type,
            idempotency_key=synthetic_event_key(booking.id, event_type.value, booking.history_length),
            source=EventSource.RECOVERY,
            provider=Provider.INTERNAL,
            booking_id=booking.id,
            occurred_at=self._clock(),
            data=data or {},
        )
        logger.info(
            f"Recovery emitting {event_type.value} for booking {booking.id} "
            f"in {booking.state.value} key={event.idempotency_key}"
        )
        result = await self.coordinator.ingest(event)
        if result.status in (IngestStatus.APPLIED, IngestStatus.DUPLICATE):
            summary.synthetic_applied += 1
        elif result.status == IngestStatus.DEFERRED:
            summary.synthetic_deferred += 1
        else:
            summary.synthetic_rejected += 1

        if result.needs_dispatch:
            dispatched = await self.dispatcher.dispatch_pending(booking.id)
            summary.directives_dispatched += len(dispatched)
        return result.status

    async def _check_awaiting_payment(self, booking: Booking, summary: SweepSummary) -> None:
        if not booking.external_payment_ref:
            # Payment session was never opened
            dispatched = await self.dispatcher.dispatch_pending(
                booking.id, stale_before=self._clock() - self.stale_directive_after
            )
            summary.directives_dispatched += len(dispatched)
            return

        status = await self.payment_gateway.get_payment_status(booking.external_payment_ref)
        if not status.success:
            logger.warning(
                f"Payment status unknown for booking {booking.id}: {status.error_message}"
            )
            return
        if status.status == ProviderPaymentStatus.PAID:
            await self._emit(
                booking, EventType.PAYMENT_SUCCEEDED, summary, {"payment_ref": booking.external_payment_ref}
            )
        elif status.status in (ProviderPaymentStatus.EXPIRED, ProviderPaymentStatus.FAILED):
            await self._emit(
                booking,
                EventType.PAYMENT_FAILED,
                summary,
                {"payment_ref": booking.external_payment_ref, "provider_status": status.status.value},
            )

    async def _check_pending(self, booking: Booking, summary: SweepSummary) -> None:
        if booking.external_scheduling_ref:
            event = await self.scheduling_provider.get_scheduled_event(booking.external_scheduling_ref)
        elif booking.client_email:
            event = await self.scheduling_provider.find_scheduled_event(
                booking.client_email, booking.scheduled_start
            )
        else:
            logger.info(f"Pending booking {booking.id} has nothing to reconcile against")
            return

        if event is None:
            logger.info(f"No scheduled event found for pending booking {booking.id}")
            return

        if event.status == ProviderSchedulingStatus.ACTIVE:
            data: dict[str, Any] = {"scheduling_ref": event.uri}
            if event.start_time:
                data["scheduled_start"] = event.start_time.isoformat()
            if event.end_time:
                data["scheduled_end"] = event.end_time.isoformat()
            await self._emit(booking, EventType.SCHEDULING_CONFIRMED, summary, data)
        else:
            await self._emit(
                booking,
                EventType.SCHEDULING_CANCELLED,
                summary,
                {
                    "scheduling_ref": event.uri,
                    "reason": "Cancelled in the scheduling provider",
                    "cancelled_by": CancelledBy.SYSTEM.value,
                },
            )

    async def _check_payment_failed(self, booking: Booking, summary: SweepSummary) -> None:
        if not booking.external_payment_ref:
            return
        status = await self.payment_gateway.get_payment_status(booking.external_payment_ref)
        if status.success and status.status == ProviderPaymentStatus.PAID:
            await self._emit(
                booking, EventType.PAYMENT_SUCCEEDED, summary, {"payment_ref": booking.external_payment_ref}
            )

    async def _complete_session(self, booking: Booking, summary: SweepSummary) -> None:
        if await self._emit(booking, EventType.SESSION_COMPLETED, summary) == IngestStatus.APPLIED:
            summary.sessions_completed += 1

    async def _redrive_deferred(self, summary: SweepSummary) -> None:
        try:
            reapplied = await self.coordinator.reapply_deferred(due_only=True, limit=self.batch_size)
        except Exception as e:
            summary.errors += 1
            logger.error(f"Re-driving deferred events failed: {e}")
            return
        summary.deferred_applied += reapplied.applied
        summary.deferred_exhausted += reapplied.exhausted
        for booking_id in reapplied.booking_ids:
            try:
                dispatched = await self.dispatcher.dispatch_pending(booking_id)
            except ExternalProviderUnavailable as e:
                summary.provider_unavailable += 1
                logger.warning(f"Dispatch for booking {booking_id} deferred: {e.detail}")
                continue
            summary.directives_dispatched += len(dispatched)

    async def _redrive_directives(self, cutoff: datetime, summary: SweepSummary) -> None:
        for booking in await self.store.find_with_open_directives(cutoff, self.batch_size):
            try:
                dispatched = await self.dispatcher.dispatch_pending(booking.id, stale_before=cutoff)
            except Exception as e:
                summary.errors += 1
                logger.error(f"Re-dispatch failed for booking {booking.id}: {e}")
                continue
            summary.directives_dispatched += len(dispatched)


def build_recovery_job() -> RecoveryJob:
    """Wire a recovery job against the database and the live providers."""
    from booking_coordinator.database import async_session_maker
    from booking_coordinator.gateways.calendly_client import calendly_client
    from booking_coordinator.gateways.stripe_gateway import stripe_gateway
    from booking_coordinator.repositories.sqlalchemy_store import SqlAlchemyBookingStore
    from booking_coordinator.services.notification_service import notification_service

    store = SqlAlchemyBookingStore(async_session_maker)
    coordinator = BookingCoordinator(store)
    dispatcher = DirectiveDispatcher(store, stripe_gateway, notification_service)
    return RecoveryJob(coordinator, dispatcher, stripe_gateway, calendly_client)
