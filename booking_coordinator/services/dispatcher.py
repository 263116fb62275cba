"""Idempotent side-effect dispatcher.

Executes the directives a transition wrote to the booking's ledger. A
directive is claimed (PENDING -> IN_PROGRESS) through a version-checked save
so two dispatchers never run it concurrently; its ledger key doubles as the
provider idempotency key. Transient failures retry with exponential backoff;
exhaustion marks the ledger entry FAILED and flags the booking for an
operator without touching its state.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from booking_coordinator.config import settings
from booking_coordinator.core.exceptions import (
    DirectiveExecutionFailed,
    ExternalProviderUnavailable,
    VersionConflict,
)
from booking_coordinator.domain.booking import (
    Booking,
    BookingState,
    DirectiveRecord,
    DirectiveStatus,
    DirectiveType,
)
from booking_coordinator.domain.booking_state import (
    can_replace_payment_ref,
    flag_anomaly,
    late_capture,
    record_payment_session,
    record_refund,
)
from booking_coordinator.domain.cancellation_policy import (
    RefundPolicy,
    full_refund_policy,
    get_refund_policy,
)
from booking_coordinator.domain.payment_state import SETTLED_PAYMENT_STATES, PaymentState
from booking_coordinator.gateways.base import PaymentGateway
from booking_coordinator.repositories.base import BookingStore
from booking_coordinator.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

Mutation = Callable[[Booking, datetime], None]


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Outcome:
    """What a handler did: final status, ledger result and booking mutation."""

    status: DirectiveStatus
    result: dict[str, Any] = field(default_factory=dict)
    mutate: Mutation | None = None

    @classmethod
    def skipped(cls, reason: str) -> "Outcome":
        return cls(DirectiveStatus.SKIPPED, {"skipped": reason})


@dataclass
class DispatchResult:
    booking_id: UUID
    idempotency_key: str
    directive: DirectiveType | None
    status: DirectiveStatus | None
    error: str | None = None


class DirectiveDispatcher:
    """Runs ledger directives against the external providers."""

    def __init__(
        self,
        store: BookingStore,
        payment_gateway: PaymentGateway,
        notifications: NotificationService,
        refund_policy: RefundPolicy | None = None,
        *,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
        call_timeout: float | None = None,
        conflict_retries: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.payment_gateway = payment_gateway
        self.notifications = notifications
        self.refund_policy = refund_policy or get_refund_policy(settings.refund_policy)
        self.max_attempts = max_attempts or settings.directive_max_attempts
        self.backoff_base = backoff_base if backoff_base is not None else settings.directive_backoff_base_seconds
        self.backoff_max = backoff_max if backoff_max is not None else settings.directive_backoff_max_seconds
        self.call_timeout = call_timeout or settings.external_call_timeout_seconds
        self.conflict_retries = conflict_retries or settings.version_conflict_max_retries
        self._sleep = sleep
        self._clock = clock
        self._handlers: dict[DirectiveType, Callable[[Booking, DirectiveRecord], Awaitable[Outcome]]] = {
            DirectiveType.CREATE_PAYMENT_SESSION: self._create_payment_session,
            DirectiveType.ISSUE_REFUND_IF_PAID: self._issue_refund_if_paid,
            DirectiveType.SEND_CONFIRMATION: self._send_confirmation,
            DirectiveType.NOTIFY_CLIENT: self._notify_client,
            DirectiveType.UPDATE_SCHEDULE_REF: self._update_schedule_ref,
        }

    def backoff(self, attempt: int) -> float:
        """Delay before retrying after the ``attempt``-th failure."""
        return min(self.backoff_base * (2 ** max(attempt - 1, 0)), self.backoff_max)

    # ==================== LEDGER WRITES ====================

    async def _mutate(self, booking_id: UUID, change: Callable[[Booking, datetime], bool]) -> Booking | None:
        """Reload-apply-save loop; ``change`` returns False to skip the save."""
        expected = 0
        for _ in range(self.conflict_retries):
            booking = await self.store.get(booking_id)
            expected = booking.version
            if not change(booking, self._clock()):
                return None
            try:
                return await self.store.save(booking, booking.version)
            except VersionConflict:
                logger.debug(f"Version conflict on booking {booking_id}; reloading")
        raise VersionConflict(str(booking_id), expected)

    async def _claim(self, booking_id: UUID, key: str, stale_before: datetime | None) -> Booking | None:
        def claim(booking: Booking, now: datetime) -> bool:
            record = booking.directive(key)
            if record is None:
                return False
            if record.status == DirectiveStatus.PENDING:
                record.claim(now)
                return True
            if (
                record.status == DirectiveStatus.IN_PROGRESS
                and stale_before is not None
                and record.updated_at < stale_before
            ):
                logger.warning(f"Reclaiming stale directive {record.directive.value} key={key}")
                record.claim(now)
                return True
            return False

        return await self._mutate(booking_id, claim)

    async def _complete(self, booking_id: UUID, key: str, outcome: Outcome) -> DirectiveStatus:
        final = {"status": outcome.status}

        def complete(booking: Booking, now: datetime) -> bool:
            record = booking.directive(key)
            final["status"] = outcome.status
            if outcome.mutate is not None:
                try:
                    outcome.mutate(booking, now)
                except DirectiveExecutionFailed as e:
                    record.fail(str(e.detail), now)
                    flag_anomaly(booking, f"{record.directive.value} failed: {e.detail}", now)
                    final["status"] = DirectiveStatus.FAILED
                    return True
            if outcome.status == DirectiveStatus.SKIPPED:
                record.skip(outcome.result.get("skipped", ""), now)
            else:
                record.succeed(outcome.result, now)
            return True

        await self._mutate(booking_id, complete)
        return final["status"]

    async def _record_failure(self, booking_id: UUID, key: str, error: str) -> None:
        def failure(booking: Booking, now: datetime) -> bool:
            record = booking.directive(key)
            record.fail(error, now)
            flag_anomaly(booking, f"{record.directive.value} failed: {error}", now)
            return True

        await self._mutate(booking_id, failure)

    # ==================== DISPATCH ====================

    async def dispatch(
        self,
        booking_id: UUID,
        key: str,
        stale_before: datetime | None = None,
    ) -> DispatchResult:
        """Execute one ledger directive unless it is done or claimed elsewhere."""
        booking = await self._claim(booking_id, key, stale_before)
        if booking is None:
            current = (await self.store.get(booking_id)).directive(key)
            return DispatchResult(
                booking_id,
                key,
                current.directive if current else None,
                current.status if current else None,
            )

        while True:
            record = booking.directive(key)
            handler = self._handlers[record.directive]
            try:
                outcome = await asyncio.wait_for(handler(booking, record), timeout=self.call_timeout)
            except asyncio.TimeoutError:
                error, retryable = f"timed out after {self.call_timeout}s", True
            except ExternalProviderUnavailable as e:
                error, retryable = str(e.detail), True
            except DirectiveExecutionFailed as e:
                error, retryable = str(e.detail), e.retryable
            else:
                status = await self._complete(booking_id, key, outcome)
                logger.info(
                    f"Directive {record.directive.value} for booking {booking_id}: {status.value}"
                )
                return DispatchResult(booking_id, key, record.directive, status)

            if not retryable or record.attempts >= self.max_attempts:
                logger.error(
                    f"DIRECTIVE_FAILED: {record.directive.value} booking={booking_id} "
                    f"key={key} attempts={record.attempts} error={error}"
                )
                await self._record_failure(booking_id, key, error)
                return DispatchResult(booking_id, key, record.directive, DirectiveStatus.FAILED, error)

            delay = self.backoff(record.attempts)
            logger.warning(
                f"Directive {record.directive.value} booking={booking_id} attempt "
                f"{record.attempts} failed ({error}); retrying in {delay:.1f}s"
            )
            await self._sleep(delay)
            booking = await self._mutate(
                booking_id, lambda b, now: self._bump_attempt(b, key, error, now)
            )

    @staticmethod
    def _bump_attempt(booking: Booking, key: str, error: str, now: datetime) -> bool:
        record = booking.directive(key)
        record.last_error = error
        record.claim(now)
        return True

    async def dispatch_pending(self, booking_id: UUID, stale_before: datetime | None = None) -> list[DispatchResult]:
        """Run every open directive of a booking in emission order."""
        booking = await self.store.get(booking_id)
        results = []
        for record in booking.open_directives():
            results.append(await self.dispatch(booking_id, record.idempotency_key, stale_before))
        return results

    async def dispatch_in_background(self, booking_id: UUID) -> None:
        """Entry point for work scheduled after a response; the recovery sweep retries leftovers."""
        try:
            await self.dispatch_pending(booking_id)
        except Exception as e:
            logger.error(f"Background dispatch for booking {booking_id} failed: {e}")

    # ==================== HANDLERS ====================

    async def _create_payment_session(self, booking: Booking, record: DirectiveRecord) -> Outcome:
        if booking.payment_state in SETTLED_PAYMENT_STATES:
            return Outcome.skipped("already paid")
        if booking.is_terminal:
            return Outcome.skipped(f"booking is {booking.state.value}")
        if booking.payment_state == PaymentState.FAILED and not can_replace_payment_ref(booking):
            raise DirectiveExecutionFailed(
                record.directive.value, "payment reference was already replaced once", retryable=False
            )

        result = await self.payment_gateway.create_checkout_session(
            amount=booking.amount,
            currency=booking.currency,
            reference_id=str(booking.id),
            description=f"Session {booking.session_type_id}",
            idempotency_key=record.idempotency_key,
            customer_email=booking.client_email,
            metadata={"scheduling_ref": booking.external_scheduling_ref or ""},
        )
        if not result.success:
            raise DirectiveExecutionFailed(record.directive.value, result.error_message, retryable=False)

        session_ref = result.transaction_id

        def attach(b: Booking, now: datetime) -> None:
            record_payment_session(b, session_ref, now, record.idempotency_key)

        return Outcome(
            DirectiveStatus.SUCCEEDED,
            {"payment_ref": session_ref, "checkout_url": result.checkout_url},
            attach,
        )

    def _refund_decision(self, booking: Booking, record: DirectiveRecord):
        captured = late_capture(booking)
        if captured is not None:
            # Payment captured after the booking was already cancelled
            return full_refund_policy(booking, captured.entered_at)
        emitted = booking.state_history[record.emitted_seq] if record.emitted_seq < booking.history_length else None
        cancelled_at = emitted.entered_at if emitted is not None else self._clock()
        return self.refund_policy(booking, cancelled_at)

    async def _issue_refund_if_paid(self, booking: Booking, record: DirectiveRecord) -> Outcome:
        if booking.payment_state != PaymentState.PAID or not booking.external_payment_ref:
            return Outcome.skipped(f"payment is {booking.payment_state.value}")

        decision = self._refund_decision(booking, record)
        amount = decision.amount - booking.refund_amount - booking.refund_pending_amount
        if amount <= 0:
            return Outcome.skipped(f"no refund due ({decision.reason})")

        refund = await self.payment_gateway.process_refund(
            booking.external_payment_ref,
            amount,
            booking.cancel_reason or decision.reason,
            idempotency_key=record.idempotency_key,
        )
        if not refund.success:
            raise DirectiveExecutionFailed(record.directive.value, refund.error_message, retryable=False)

        refunded = refund.amount or amount

        def apply_refund(b: Booking, now: datetime) -> None:
            record_refund(b, refunded, now, refund.refund_id, refund.pending, record.idempotency_key)

        try:
            notified = await self.notifications.notify(
                NotificationService.BOOKING_CANCELLED, booking, refund_amount=refunded
            )
        except ExternalProviderUnavailable as e:
            # The refund is already issued; a lost email must not repeat it
            logger.warning(f"Cancellation email for booking {booking.id} not sent: {e.detail}")
            notified = False

        return Outcome(
            DirectiveStatus.SUCCEEDED,
            {
                "refund_ref": refund.refund_id,
                "amount": refunded,
                "percentage": str(decision.percentage),
                "pending": refund.pending,
                "notified": notified,
            },
            apply_refund,
        )

    async def _send_confirmation(self, booking: Booking, record: DirectiveRecord) -> Outcome:
        if booking.state not in (BookingState.CONFIRMED, BookingState.COMPLETED):
            return Outcome.skipped(f"booking is {booking.state.value}")
        sent = await self.notifications.notify(NotificationService.BOOKING_CONFIRMED, booking)
        if not sent:
            return Outcome.skipped("email not sent")
        return Outcome(DirectiveStatus.SUCCEEDED, {"sent": True})

    async def _notify_client(self, booking: Booking, record: DirectiveRecord) -> Outcome:
        if booking.payment_state in SETTLED_PAYMENT_STATES:
            return Outcome.skipped("payment already settled")
        sent = await self.notifications.notify(NotificationService.PAYMENT_FAILED, booking)
        if not sent:
            return Outcome.skipped("email not sent")
        return Outcome(DirectiveStatus.SUCCEEDED, {"sent": True})

    async def _update_schedule_ref(self, booking: Booking, record: DirectiveRecord) -> Outcome:
        result: dict[str, Any] = {"scheduling_ref": booking.external_scheduling_ref}
        if booking.external_payment_ref:
            update = await self.payment_gateway.update_metadata(
                booking.external_payment_ref,
                {"booking_id": str(booking.id), "scheduling_ref": booking.external_scheduling_ref or ""},
                idempotency_key=record.idempotency_key,
            )
            result["metadata_updated"] = update.success
            if not update.success:
                logger.warning(
                    f"Could not update payment metadata for booking {booking.id}: {update.error_message}"
                )
        result["notified"] = await self.notifications.notify(
            NotificationService.BOOKING_RESCHEDULED, booking
        )
        return Outcome(DirectiveStatus.SUCCEEDED, result)
