"""Payment sub-state machine.

Tracked separately from the booking state because scheduling and payment
can each succeed or fail independently before they converge.
"""

from enum import Enum


class PaymentState(str, Enum):
    """Payment states of a booking."""

    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


PAYMENT_TRANSITIONS: dict[PaymentState, set[PaymentState]] = {
    PaymentState.UNPAID: {PaymentState.PENDING, PaymentState.PAID, PaymentState.FAILED},
    PaymentState.PENDING: {PaymentState.PENDING, PaymentState.PAID, PaymentState.FAILED},
    PaymentState.FAILED: {PaymentState.PENDING, PaymentState.PAID},
    PaymentState.PAID: {PaymentState.REFUNDED, PaymentState.PARTIALLY_REFUNDED},
    PaymentState.PARTIALLY_REFUNDED: {PaymentState.PARTIALLY_REFUNDED, PaymentState.REFUNDED},
    PaymentState.REFUNDED: set(),
}

# Money has been captured at some point
SETTLED_PAYMENT_STATES = frozenset(
    {PaymentState.PAID, PaymentState.REFUNDED, PaymentState.PARTIALLY_REFUNDED}
)


def can_transition_payment(current: str, target: str) -> bool:
    return PaymentState(target) in PAYMENT_TRANSITIONS.get(PaymentState(current), set())
