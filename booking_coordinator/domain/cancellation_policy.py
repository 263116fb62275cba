"""Refund policy domain logic.

Policies:
- notice_period: Full refund 24h+ before the session, 50% from 12h, 0% after
- full: Always refund the full amount
- none: Never refund

Cancellations initiated by the builder or by the system are always
refunded in full; the notice period only applies to client cancellations.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable

from booking_coordinator.domain.booking import Booking, CancelledBy


class RefundPolicyType(str, Enum):
    """Refund policy types."""

    NOTICE_PERIOD = "notice_period"
    FULL = "full"
    NONE = "none"


@dataclass(frozen=True)
class RefundDecision:
    amount: int
    percentage: Decimal
    reason: str


RefundPolicy = Callable[[Booking, datetime], RefundDecision]


def notice_period_rules(
    full_notice_hours: int = 24,
    partial_notice_hours: int = 12,
    partial_percent: int = 50,
) -> list[tuple[float, Decimal]]:
    """Refund rules: list of (hours_before_start, refund_percentage).

    Evaluated in order - first match wins.
    """
    return [
        (full_notice_hours, Decimal("100")),
        (partial_notice_hours, Decimal(partial_percent)),
        (float("-inf"), Decimal("0")),
    ]


def calculate_refund_percentage(
    scheduled_start: datetime,
    cancelled_at: datetime,
    rules: list[tuple[float, Decimal]],
) -> Decimal:
    """Calculate refund percentage from the notice given before the session."""
    hours_before = (scheduled_start - cancelled_at).total_seconds() / 3600

    for min_hours, refund_pct in rules:
        if hours_before >= min_hours:
            return refund_pct

    return Decimal("0")


def calculate_refund_amount(total_price: int, refund_pct: Decimal) -> int:
    """Calculate refund amount in minor currency units."""
    refund_amount = (Decimal(total_price) * refund_pct / Decimal("100")).quantize(Decimal("1"))
    return int(refund_amount)


class NoticePeriodRefundPolicy:
    """Tiered refund based on how long before the session the cancellation came."""

    def __init__(
        self,
        full_notice_hours: int = 24,
        partial_notice_hours: int = 12,
        partial_percent: int = 50,
    ) -> None:
        self.rules = notice_period_rules(full_notice_hours, partial_notice_hours, partial_percent)

    def __call__(self, booking: Booking, cancelled_at: datetime) -> RefundDecision:
        if booking.cancelled_by in (CancelledBy.BUILDER, CancelledBy.SYSTEM):
            return RefundDecision(booking.amount, Decimal("100"), f"cancelled by {booking.cancelled_by.value}")

        pct = calculate_refund_percentage(booking.scheduled_start, cancelled_at, self.rules)
        return RefundDecision(
            calculate_refund_amount(booking.amount, pct),
            pct,
            f"{pct}% refund by notice period",
        )


def full_refund_policy(booking: Booking, cancelled_at: datetime) -> RefundDecision:
    return RefundDecision(booking.amount, Decimal("100"), "full refund policy")


def no_refund_policy(booking: Booking, cancelled_at: datetime) -> RefundDecision:
    return RefundDecision(0, Decimal("0"), "no refund policy")


def get_refund_policy(policy: str | RefundPolicyType = RefundPolicyType.NOTICE_PERIOD) -> RefundPolicy:
    """Resolve a policy name to a callable, defaulting to the notice period."""
    from booking_coordinator.config import settings

    if isinstance(policy, str):
        try:
            policy = RefundPolicyType(policy)
        except ValueError:
            policy = RefundPolicyType.NOTICE_PERIOD

    if policy == RefundPolicyType.FULL:
        return full_refund_policy
    if policy == RefundPolicyType.NONE:
        return no_refund_policy
    return NoticePeriodRefundPolicy(
        settings.refund_full_notice_hours,
        settings.refund_partial_notice_hours,
        settings.refund_partial_percent,
    )
