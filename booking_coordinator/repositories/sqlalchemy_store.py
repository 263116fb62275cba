"""SQLAlchemy booking store (PostgreSQL in production, SQLite in tests)."""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from booking_coordinator.core.exceptions import NotFoundError, VersionConflict
from booking_coordinator.domain.booking import (
    OPEN_DIRECTIVE_STATUSES,
    Booking,
    BookingState,
    CancelledBy,
    DirectiveRecord,
    DirectiveStatus,
    DirectiveType,
    StateHistoryEntry,
)
from booking_coordinator.domain.events import (
    BookingEvent,
    DeferReason,
    DeferredEntry,
    DeferredStatus,
)
from booking_coordinator.domain.payment_state import PaymentState
from booking_coordinator.models import (
    BookingAppliedEvent,
    BookingDirective,
    BookingModel,
    BookingStateHistory,
    DeferredEvent,
)
from booking_coordinator.repositories.base import BookingStore

logger = logging.getLogger(__name__)


def _booking_columns(booking: Booking) -> dict:
    """Mutable booking columns (everything but id and version)."""
    return {
        "client_id": booking.client_id,
        "builder_id": booking.builder_id,
        "session_type_id": booking.session_type_id,
        "client_email": booking.client_email,
        "scheduled_start": booking.scheduled_start,
        "scheduled_end": booking.scheduled_end,
        "client_timezone": booking.client_timezone,
        "builder_timezone": booking.builder_timezone,
        "amount": booking.amount,
        "currency": booking.currency,
        "state": booking.state.value,
        "payment_state": booking.payment_state.value,
        "external_scheduling_ref": booking.external_scheduling_ref,
        "external_payment_ref": booking.external_payment_ref,
        "payment_ref_replacements": booking.payment_ref_replacements,
        "cancelled_by": booking.cancelled_by.value if booking.cancelled_by else None,
        "cancel_reason": booking.cancel_reason,
        "refund_amount": booking.refund_amount,
        "refund_pending_amount": booking.refund_pending_amount,
        "anomaly": booking.anomaly,
        "anomaly_at": booking.anomaly_at,
        "last_transition_at": booking.last_transition_at,
        "created_at": booking.created_at,
        "updated_at": booking.updated_at,
    }


def _history_to_domain(row: BookingStateHistory) -> StateHistoryEntry:
    return StateHistoryEntry(
        seq=row.seq,
        state=BookingState(row.state),
        payment_state=PaymentState(row.payment_state),
        entered_at=row.entered_at,
        triggering_event=row.triggering_event,
        event_source_id=row.event_source_id,
        source=row.source,
        details=dict(row.details or {}),
    )


def _directive_to_domain(row: BookingDirective) -> DirectiveRecord:
    return DirectiveRecord(
        idempotency_key=row.idempotency_key,
        directive=DirectiveType(row.directive),
        emitted_seq=row.emitted_seq,
        status=DirectiveStatus(row.status),
        attempts=row.attempts,
        last_error=row.last_error,
        result=dict(row.result or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )


def _copy_directive(record: DirectiveRecord, row: BookingDirective) -> None:
    row.status = record.status.value
    row.attempts = record.attempts
    row.last_error = record.last_error
    row.result = dict(record.result)
    row.updated_at = record.updated_at
    row.completed_at = record.completed_at


def _deferred_to_domain(row: DeferredEvent) -> DeferredEntry:
    return DeferredEntry(
        event=BookingEvent.from_dict(row.event),
        reason=DeferReason(row.reason),
        status=DeferredStatus(row.status),
        attempts=row.attempts,
        last_error=row.last_error,
        next_attempt_at=row.next_attempt_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlAlchemyBookingStore(BookingStore):
    """Booking store backed by an async SQLAlchemy session factory.

    Each call runs in its own transaction; ``save`` performs a conditional
    ``UPDATE ... WHERE version = expected`` and writes the new history,
    applied-key and ledger rows in the same transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _load(self, session: AsyncSession, row: BookingModel) -> Booking:
        history = (
            await session.scalars(
                select(BookingStateHistory)
                .where(BookingStateHistory.booking_id == row.id)
                .order_by(BookingStateHistory.seq)
            )
        ).all()
        keys = (
            await session.scalars(
                select(BookingAppliedEvent.event_key).where(BookingAppliedEvent.booking_id == row.id)
            )
        ).all()
        directives = (
            await session.scalars(
                select(BookingDirective)
                .where(BookingDirective.booking_id == row.id)
                .order_by(BookingDirective.emitted_seq, BookingDirective.created_at)
            )
        ).all()

        return Booking(
            id=row.id,
            client_id=row.client_id,
            builder_id=row.builder_id,
            session_type_id=row.session_type_id,
            scheduled_start=row.scheduled_start,
            scheduled_end=row.scheduled_end,
            amount=row.amount,
            currency=row.currency,
            client_timezone=row.client_timezone,
            builder_timezone=row.builder_timezone,
            client_email=row.client_email,
            state=BookingState(row.state),
            payment_state=PaymentState(row.payment_state),
            external_scheduling_ref=row.external_scheduling_ref,
            external_payment_ref=row.external_payment_ref,
            payment_ref_replacements=row.payment_ref_replacements,
            cancel_reason=row.cancel_reason,
            cancelled_by=CancelledBy(row.cancelled_by) if row.cancelled_by else None,
            refund_amount=row.refund_amount,
            refund_pending_amount=row.refund_pending_amount,
            anomaly=row.anomaly,
            anomaly_at=row.anomaly_at,
            state_history=[_history_to_domain(h) for h in history],
            idempotency_keys=set(keys),
            directives=[_directive_to_domain(d) for d in directives],
            version=row.version,
            last_transition_at=row.last_transition_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    async def _load_many(self, session: AsyncSession, stmt) -> list[Booking]:
        rows = (await session.scalars(stmt)).all()
        return [await self._load(session, row) for row in rows]

    def _history_row(self, booking: Booking, entry: StateHistoryEntry) -> BookingStateHistory:
        return BookingStateHistory(
            booking_id=booking.id,
            seq=entry.seq,
            state=entry.state.value,
            payment_state=entry.payment_state.value,
            entered_at=entry.entered_at,
            triggering_event=entry.triggering_event,
            event_source_id=entry.event_source_id,
            source=entry.source,
            details=dict(entry.details),
        )

    def _directive_row(self, booking: Booking, record: DirectiveRecord) -> BookingDirective:
        row = BookingDirective(
            booking_id=booking.id,
            idempotency_key=record.idempotency_key,
            directive=record.directive.value,
            emitted_seq=record.emitted_seq,
            created_at=record.created_at,
        )
        _copy_directive(record, row)
        return row

    async def add(self, booking: Booking) -> Booking:
        async with self._session_factory() as session, session.begin():
            session.add(BookingModel(id=booking.id, version=1, **_booking_columns(booking)))
            await session.flush()
            for entry in booking.state_history:
                session.add(self._history_row(booking, entry))
            now = datetime.now(UTC)
            for key in booking.idempotency_keys:
                session.add(BookingAppliedEvent(booking_id=booking.id, event_key=key, applied_at=now))
            for record in booking.directives:
                session.add(self._directive_row(booking, record))
        booking.version = 1
        return booking

    async def get(self, booking_id: UUID) -> Booking:
        async with self._session_factory() as session:
            row = await session.get(BookingModel, booking_id)
            if row is None:
                raise NotFoundError("Booking", str(booking_id))
            return await self._load(session, row)

    async def save(self, booking: Booking, expected_version: int) -> Booking:
        try:
            async with self._session_factory() as session, session.begin():
                result = await session.execute(
                    update(BookingModel)
                    .where(BookingModel.id == booking.id, BookingModel.version == expected_version)
                    .values(version=expected_version + 1, **_booking_columns(booking))
                )
                if result.rowcount == 0:
                    raise VersionConflict(str(booking.id), expected_version)

                stored_len = await session.scalar(
                    select(func.count())
                    .select_from(BookingStateHistory)
                    .where(BookingStateHistory.booking_id == booking.id)
                )
                for entry in booking.state_history[stored_len:]:
                    session.add(self._history_row(booking, entry))

                stored_keys = set(
                    (
                        await session.scalars(
                            select(BookingAppliedEvent.event_key).where(
                                BookingAppliedEvent.booking_id == booking.id
                            )
                        )
                    ).all()
                )
                for key in booking.idempotency_keys - stored_keys:
                    session.add(
                        BookingAppliedEvent(
                            booking_id=booking.id, event_key=key, applied_at=booking.updated_at
                        )
                    )

                stored_directives = {
                    row.idempotency_key: row
                    for row in (
                        await session.scalars(
                            select(BookingDirective).where(BookingDirective.booking_id == booking.id)
                        )
                    ).all()
                }
                for record in booking.directives:
                    row = stored_directives.get(record.idempotency_key)
                    if row is None:
                        session.add(self._directive_row(booking, record))
                    else:
                        _copy_directive(record, row)
        except IntegrityError as e:
            # A concurrent writer inserted the same child rows first
            logger.warning(f"Integrity error saving booking {booking.id}: {e}")
            raise VersionConflict(str(booking.id), expected_version)

        booking.version = expected_version + 1
        return booking

    async def find_by_scheduling_ref(self, ref: str) -> Booking | None:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(BookingModel).where(BookingModel.external_scheduling_ref == ref)
            )
            return await self._load(session, row) if row else None

    async def find_by_payment_ref(self, ref: str) -> Booking | None:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(BookingModel).where(BookingModel.external_payment_ref == ref)
            )
            return await self._load(session, row) if row else None

    async def find_stale(
        self,
        states: Iterable[BookingState],
        cutoff: datetime,
        limit: int = 100,
    ) -> list[Booking]:
        stmt = (
            select(BookingModel)
            .where(
                BookingModel.state.in_([BookingState(s).value for s in states]),
                BookingModel.last_transition_at < cutoff,
            )
            .order_by(BookingModel.last_transition_at)
            .limit(limit)
        )
        async with self._session_factory() as session:
            return await self._load_many(session, stmt)

    async def find_sessions_ended(self, cutoff: datetime, limit: int = 100) -> list[Booking]:
        stmt = (
            select(BookingModel)
            .where(
                BookingModel.state == BookingState.CONFIRMED.value,
                BookingModel.scheduled_end < cutoff,
            )
            .order_by(BookingModel.scheduled_end)
            .limit(limit)
        )
        async with self._session_factory() as session:
            return await self._load_many(session, stmt)

    async def find_with_open_directives(self, cutoff: datetime, limit: int = 100) -> list[Booking]:
        open_ids = (
            select(BookingDirective.booking_id)
            .where(
                BookingDirective.status.in_([s.value for s in OPEN_DIRECTIVE_STATUSES]),
                BookingDirective.updated_at < cutoff,
            )
            .distinct()
        )
        stmt = select(BookingModel).where(BookingModel.id.in_(open_ids)).limit(limit)
        async with self._session_factory() as session:
            return await self._load_many(session, stmt)

    async def list_anomalies(self, limit: int = 100) -> list[Booking]:
        stmt = (
            select(BookingModel)
            .where(BookingModel.anomaly.is_not(None))
            .order_by(BookingModel.anomaly_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            return await self._load_many(session, stmt)

    async def defer(self, entry: DeferredEntry) -> bool:
        try:
            async with self._session_factory() as session, session.begin():
                existing = await session.scalar(
                    select(DeferredEvent.id).where(DeferredEvent.idempotency_key == entry.idempotency_key)
                )
                if existing is not None:
                    return False
                session.add(
                    DeferredEvent(
                        idempotency_key=entry.idempotency_key,
                        booking_id=entry.booking_id,
                        external_ref=entry.event.external_ref,
                        event_type=entry.event.event_type.value,
                        event=entry.event.to_dict(),
                        reason=entry.reason.value,
                        priority=entry.priority,
                        status=entry.status.value,
                        attempts=entry.attempts,
                        last_error=entry.last_error,
                        next_attempt_at=entry.next_attempt_at,
                        created_at=entry.created_at,
                        updated_at=entry.updated_at,
                    )
                )
        except IntegrityError:
            return False
        return True

    async def get_deferred(self, idempotency_key: str) -> DeferredEntry | None:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(DeferredEvent).where(DeferredEvent.idempotency_key == idempotency_key)
            )
            return _deferred_to_domain(row) if row else None

    async def list_deferred(
        self,
        booking_id: UUID | None = None,
        due_before: datetime | None = None,
        statuses: Iterable[DeferredStatus] = (DeferredStatus.QUEUED,),
        limit: int = 100,
    ) -> list[DeferredEntry]:
        stmt = select(DeferredEvent).where(
            DeferredEvent.status.in_([DeferredStatus(s).value for s in statuses])
        )
        if booking_id is not None:
            stmt = stmt.where(DeferredEvent.booking_id == booking_id)
        if due_before is not None:
            stmt = stmt.where(DeferredEvent.next_attempt_at <= due_before)
        stmt = stmt.order_by(DeferredEvent.priority.desc(), DeferredEvent.created_at).limit(limit)

        async with self._session_factory() as session:
            rows = (await session.scalars(stmt)).all()
            return [_deferred_to_domain(row) for row in rows]

    async def update_deferred(self, entry: DeferredEntry) -> None:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(DeferredEvent)
                .where(DeferredEvent.idempotency_key == entry.idempotency_key)
                .values(
                    booking_id=entry.booking_id,
                    event=entry.event.to_dict(),
                    status=entry.status.value,
                    attempts=entry.attempts,
                    last_error=entry.last_error,
                    next_attempt_at=entry.next_attempt_at,
                    updated_at=entry.updated_at,
                )
            )
