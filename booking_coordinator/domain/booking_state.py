"""Booking state machine engine.

``transition`` is a pure function of a booking snapshot and a normalized
event. It returns the next state, the payment state, field updates and the
directives to dispatch, or raises ``InvalidTransition``. The ``apply_*`` and
``record_*`` functions are the only code that mutates a booking's lifecycle
fields.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from booking_coordinator.core.exceptions import DirectiveExecutionFailed, InvalidTransition
from booking_coordinator.core.idempotency import generate_idempotency_key
from booking_coordinator.domain.booking import (
    NON_TERMINAL_STATES,
    TERMINAL_STATES,
    Booking,
    BookingState,
    CancelledBy,
    DirectiveRecord,
    DirectiveType,
    StateHistoryEntry,
)
from booking_coordinator.domain.events import BookingEvent, EventType
from booking_coordinator.domain.payment_state import (
    SETTLED_PAYMENT_STATES,
    PaymentState,
    can_transition_payment,
)

# external_payment_ref may be replaced at most this many times
MAX_PAYMENT_REF_REPLACEMENTS = 1


@dataclass(frozen=True)
class Rule:
    """Table row: target state (None keeps the current one) and directives."""

    to_state: BookingState | None
    directives: tuple[DirectiveType, ...] = ()


_CANCEL_WITH_REFUND = Rule(BookingState.CANCELLED, (DirectiveType.ISSUE_REFUND_IF_PAID,))
_RESCHEDULE = Rule(None, (DirectiveType.UPDATE_SCHEDULE_REF,))

TRANSITIONS: dict[EventType, dict[BookingState, Rule]] = {
    EventType.SCHEDULING_CONFIRMED: {
        BookingState.PENDING: Rule(
            BookingState.AWAITING_PAYMENT, (DirectiveType.CREATE_PAYMENT_SESSION,)
        ),
    },
    EventType.SCHEDULING_CANCELLED: {
        BookingState.PENDING: Rule(BookingState.CANCELLED),
        BookingState.AWAITING_PAYMENT: Rule(BookingState.CANCELLED),
        BookingState.PAYMENT_FAILED: Rule(BookingState.CANCELLED),
        BookingState.CONFIRMED: _CANCEL_WITH_REFUND,
    },
    EventType.PAYMENT_SUCCEEDED: {
        BookingState.AWAITING_PAYMENT: Rule(
            BookingState.CONFIRMED, (DirectiveType.SEND_CONFIRMATION,)
        ),
        BookingState.PAYMENT_FAILED: Rule(
            BookingState.CONFIRMED, (DirectiveType.SEND_CONFIRMATION,)
        ),
        # Late capture after cancellation: keep CANCELLED, refund it
        BookingState.CANCELLED: Rule(None, (DirectiveType.ISSUE_REFUND_IF_PAID,)),
    },
    EventType.PAYMENT_FAILED: {
        BookingState.AWAITING_PAYMENT: Rule(
            BookingState.PAYMENT_FAILED, (DirectiveType.NOTIFY_CLIENT,)
        ),
    },
    EventType.CANCELLATION_REQUESTED: {
        state: _CANCEL_WITH_REFUND for state in NON_TERMINAL_STATES
    },
    EventType.SESSION_COMPLETED: {
        BookingState.CONFIRMED: Rule(BookingState.COMPLETED),
    },
    EventType.RESCHEDULE_DETECTED: {
        BookingState.CONFIRMED: _RESCHEDULE,
        BookingState.AWAITING_PAYMENT: _RESCHEDULE,
    },
    EventType.PAYMENT_RETRY_REQUESTED: {
        BookingState.PAYMENT_FAILED: Rule(
            BookingState.AWAITING_PAYMENT, (DirectiveType.CREATE_PAYMENT_SESSION,)
        ),
    },
    EventType.REFUND_PROCESSED: {
        BookingState.CANCELLED: Rule(None),
    },
}


@dataclass(frozen=True)
class Transition:
    """Result of evaluating one event against a booking snapshot."""

    event_type: EventType
    from_state: BookingState
    to_state: BookingState
    payment_state: PaymentState
    directives: tuple[DirectiveType, ...] = ()
    updates: dict[str, Any] = field(default_factory=dict)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def changes_state(self) -> bool:
        return self.from_state != self.to_state


def reachable_states(start: BookingState) -> set[BookingState]:
    """States reachable from ``start`` in one or more table steps."""
    seen: set[BookingState] = set()
    queue = deque([start])
    while queue:
        current = queue.popleft()
        if current in TERMINAL_STATES:
            continue
        for rules in TRANSITIONS.values():
            rule = rules.get(current)
            if rule is None or rule.to_state is None or rule.to_state in seen:
                continue
            seen.add(rule.to_state)
            queue.append(rule.to_state)
    return seen


def is_deferrable(state: BookingState, event_type: EventType) -> bool:
    """Whether an event rejected in ``state`` may apply after a prerequisite.

    CANCELLED source rows are reconciliation rows and never count as a
    prerequisite to wait for.
    """
    if state in TERMINAL_STATES:
        return False
    sources = {s for s in TRANSITIONS.get(event_type, {}) if s not in TERMINAL_STATES}
    return bool(sources & reachable_states(state))


def late_capture(booking: Booking) -> StateHistoryEntry | None:
    """The history entry of a payment captured after the booking was cancelled."""
    for entry in booking.state_history:
        if entry.triggering_event == EventType.PAYMENT_SUCCEEDED.value and entry.state == BookingState.CANCELLED:
            return entry
    return None


def _same_ref(incoming: str | None, current: str | None) -> bool:
    return incoming is None or incoming == current


def is_redundant(booking: Booking, event: BookingEvent) -> bool:
    """Whether the booking already reflects the event's outcome."""
    data = event.data
    event_type = event.event_type
    if event_type == EventType.SCHEDULING_CONFIRMED:
        return booking.state != BookingState.PENDING and _same_ref(
            data.get("scheduling_ref"), booking.external_scheduling_ref
        )
    if event_type in (EventType.SCHEDULING_CANCELLED, EventType.CANCELLATION_REQUESTED):
        return booking.state == BookingState.CANCELLED
    if event_type == EventType.PAYMENT_SUCCEEDED:
        return booking.payment_state in SETTLED_PAYMENT_STATES and (
            booking.external_payment_ref is None
            or _same_ref(data.get("payment_ref"), booking.external_payment_ref)
        )
    if event_type == EventType.PAYMENT_FAILED:
        # A failure reported for a replaced payment session is stale
        ref = data.get("payment_ref")
        stale = ref is not None and booking.external_payment_ref is not None and ref != booking.external_payment_ref
        return (
            booking.state == BookingState.PAYMENT_FAILED
            or booking.payment_state in SETTLED_PAYMENT_STATES
            or stale
        )
    if event_type == EventType.SESSION_COMPLETED:
        return booking.state == BookingState.COMPLETED
    if event_type == EventType.RESCHEDULE_DETECTED:
        return data.get("scheduling_ref") == booking.external_scheduling_ref
    if event_type == EventType.REFUND_PROCESSED:
        if booking.payment_state == PaymentState.REFUNDED:
            return True
        return (
            booking.payment_state == PaymentState.PARTIALLY_REFUNDED
            and int(data.get("amount_refunded") or 0) <= booking.refund_amount
        )
    return False


def _parse_dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _scheduling_updates(booking: Booking, data: dict[str, Any]) -> dict[str, Any]:
    updates: dict[str, Any] = {}
    start = _parse_dt(data.get("scheduled_start"))
    end = _parse_dt(data.get("scheduled_end"))
    if start is not None:
        updates["scheduled_start"] = start
    if end is not None:
        updates["scheduled_end"] = end
    if data.get("client_email") and not booking.client_email:
        updates["client_email"] = data["client_email"]
    if data.get("client_timezone"):
        updates["client_timezone"] = data["client_timezone"]
    return updates


def _event_updates(booking: Booking, event: BookingEvent) -> tuple[dict[str, Any], dict[str, Any], PaymentState]:
    """Field updates, history details and next payment state for an event."""
    data = event.data
    updates: dict[str, Any] = {}
    details: dict[str, Any] = {}
    payment_state = booking.payment_state

    event_type = event.event_type

    if event_type == EventType.SCHEDULING_CONFIRMED:
        updates.update(_scheduling_updates(booking, data))
        ref = data.get("scheduling_ref")
        if ref and booking.external_scheduling_ref is None:
            updates["external_scheduling_ref"] = ref
        elif ref and ref != booking.external_scheduling_ref:
            details["ignored_scheduling_ref"] = ref
    elif event_type == EventType.RESCHEDULE_DETECTED:
        updates.update(_scheduling_updates(booking, data))
        ref = data.get("scheduling_ref")
        if ref:
            updates["external_scheduling_ref"] = ref
            details["previous_scheduling_ref"] = booking.external_scheduling_ref
    elif event_type in (EventType.SCHEDULING_CANCELLED, EventType.CANCELLATION_REQUESTED):
        default_actor = (
            CancelledBy.CLIENT
            if event_type == EventType.CANCELLATION_REQUESTED
            else CancelledBy.SYSTEM
        )
        updates["cancel_reason"] = data.get("reason")
        updates["cancelled_by"] = CancelledBy(data.get("cancelled_by") or default_actor)
    elif event_type == EventType.PAYMENT_SUCCEEDED:
        payment_state = PaymentState.PAID
        ref = data.get("payment_ref")
        if ref and booking.external_payment_ref is None:
            updates["external_payment_ref"] = ref
        elif ref and ref != booking.external_payment_ref:
            details["paid_via_ref"] = ref
    elif event_type == EventType.PAYMENT_FAILED:
        payment_state = PaymentState.FAILED
        if data.get("provider_status"):
            details["provider_status"] = data["provider_status"]
    elif event_type == EventType.REFUND_PROCESSED:
        refunded = int(data.get("amount_refunded") or 0)
        updates["refund_amount"] = max(refunded, booking.refund_amount)
        settled = updates["refund_amount"] - booking.refund_amount
        if booking.refund_pending_amount:
            updates["refund_pending_amount"] = max(booking.refund_pending_amount - settled, 0)
        payment_state = (
            PaymentState.REFUNDED
            if updates["refund_amount"] >= booking.amount
            else PaymentState.PARTIALLY_REFUNDED
        )
    return updates, details, payment_state


def transition(booking: Booking, event: BookingEvent) -> Transition:
    """Evaluate ``event`` against ``booking`` without mutating it.

    Raises:
        InvalidTransition: the (state, event) pair is not in the table.
    """
    current = booking.state
    if is_redundant(booking, event):
        raise InvalidTransition(current.value, event.event_type.value, redundant=True)

    rule = TRANSITIONS.get(event.event_type, {}).get(current)
    if rule is None:
        raise InvalidTransition(
            current.value,
            event.event_type.value,
            deferrable=is_deferrable(current, event.event_type),
        )

    updates, details, payment_state = _event_updates(booking, event)
    if payment_state != booking.payment_state and not can_transition_payment(
        booking.payment_state, payment_state
    ):
        raise InvalidTransition(current.value, event.event_type.value)

    return Transition(
        event_type=event.event_type,
        from_state=current,
        to_state=rule.to_state or current,
        payment_state=payment_state,
        directives=rule.directives,
        updates=updates,
        details=details,
    )


def _append_history(
    booking: Booking,
    triggering_event: str,
    now: datetime,
    event_source_id: str | None,
    source: str,
    details: dict[str, Any] | None = None,
) -> StateHistoryEntry:
    entry = StateHistoryEntry(
        seq=booking.history_length,
        state=booking.state,
        payment_state=booking.payment_state,
        entered_at=now,
        triggering_event=triggering_event,
        event_source_id=event_source_id,
        source=source,
        details=details or {},
    )
    booking.state_history.append(entry)
    booking.last_transition_at = now
    booking.updated_at = now
    return entry


def emitted_directive_key(booking: Booking, directive: DirectiveType) -> str:
    """Ledger key of a directive emitted at the booking's current history length."""
    return generate_idempotency_key(directive.value, booking.id, {"seq": booking.history_length})


def apply_transition(
    booking: Booking,
    event: BookingEvent,
    result: Transition,
    now: datetime,
) -> list[DirectiveRecord]:
    """Apply an evaluated transition and return the new ledger records."""
    for name, value in result.updates.items():
        setattr(booking, name, value)
    booking.state = result.to_state
    booking.payment_state = result.payment_state
    _append_history(
        booking,
        event.event_type.value,
        now,
        event.idempotency_key,
        event.source.value,
        result.details,
    )
    booking.idempotency_keys.add(event.idempotency_key)

    records = []
    for directive in result.directives:
        record = DirectiveRecord(
            idempotency_key=emitted_directive_key(booking, directive),
            directive=directive,
            emitted_seq=booking.history_length - 1,
            created_at=now,
            updated_at=now,
        )
        booking.directives.append(record)
        records.append(record)
    return records


def apply_event(booking: Booking, event: BookingEvent, now: datetime) -> list[DirectiveRecord]:
    """Evaluate and apply in one step."""
    return apply_transition(booking, event, transition(booking, event), now)


def can_replace_payment_ref(booking: Booking) -> bool:
    return (
        booking.external_payment_ref is None
        or booking.payment_ref_replacements < MAX_PAYMENT_REF_REPLACEMENTS
    )


def record_payment_session(
    booking: Booking,
    session_ref: str,
    now: datetime,
    directive_key: str | None = None,
) -> bool:
    """Attach a freshly created payment session to the booking.

    Returns False when the reference is already recorded.
    """
    if booking.external_payment_ref == session_ref:
        return False

    if booking.external_payment_ref is not None:
        if not can_replace_payment_ref(booking):
            raise DirectiveExecutionFailed(
                DirectiveType.CREATE_PAYMENT_SESSION.value,
                "payment reference was already replaced once",
                retryable=False,
            )
        previous = booking.external_payment_ref
        booking.external_payment_ref = session_ref
        booking.payment_ref_replacements += 1
        if booking.payment_state != PaymentState.PENDING:
            booking.payment_state = PaymentState.PENDING
        _append_history(
            booking,
            "PaymentSessionReplaced",
            now,
            directive_key,
            "system",
            {"previous_payment_ref": previous, "payment_ref": session_ref},
        )
        return True

    booking.external_payment_ref = session_ref
    if booking.payment_state != PaymentState.PENDING and can_transition_payment(
        booking.payment_state, PaymentState.PENDING
    ):
        booking.payment_state = PaymentState.PENDING
    booking.updated_at = now
    return True


def record_refund(
    booking: Booking,
    amount: int,
    now: datetime,
    refund_ref: str | None = None,
    pending: bool = False,
    directive_key: str | None = None,
) -> None:
    """Record a refund issued by the dispatcher.

    A pending refund is held in ``refund_pending_amount``; the payment state
    follows once the provider reports it processed.
    """
    details = {"amount": amount, "refund_ref": refund_ref}
    if pending:
        booking.refund_pending_amount += amount
        _append_history(booking, "RefundPending", now, directive_key, "system", details)
        return

    booking.refund_amount += amount
    target = (
        PaymentState.REFUNDED
        if booking.refund_amount >= booking.amount
        else PaymentState.PARTIALLY_REFUNDED
    )
    if can_transition_payment(booking.payment_state, target):
        booking.payment_state = target
    _append_history(booking, "RefundIssued", now, directive_key, "system", details)


def flag_anomaly(booking: Booking, reason: str, now: datetime) -> None:
    """Mark the booking for operator attention; state is left untouched."""
    booking.anomaly = reason
    booking.anomaly_at = now
    booking.updated_at = now
