"""External provider interfaces.

All adapters must implement these interfaces. Business logic should NOT
live in adapters - only provider communication. Adapters raise
``ExternalProviderUnavailable`` for transport failures, timeouts, rate
limits and 5xx answers; definitive provider rejections come back as a
result with ``success=False``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class GatewayType(str, Enum):
    """Supported external providers."""

    STRIPE = "stripe"
    CALENDLY = "calendly"
    SENDGRID = "sendgrid"


class ProviderPaymentStatus(str, Enum):
    """Payment status as reported by the payment provider."""

    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"
    EXPIRED = "expired"


class ProviderSchedulingStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"


@dataclass
class PaymentResult:
    """Result of a payment operation."""

    success: bool
    transaction_id: str | None = None
    checkout_url: str | None = None
    status: ProviderPaymentStatus | None = None
    error_message: str | None = None
    raw_response: dict | None = None


@dataclass
class RefundResult:
    """Result of a refund operation."""

    success: bool
    refund_id: str | None = None
    amount: int = 0
    pending: bool = False
    error_message: str | None = None
    raw_response: dict | None = None


@dataclass
class ScheduledEvent:
    """A scheduling-provider event."""

    uri: str
    status: ProviderSchedulingStatus
    start_time: datetime | None = None
    end_time: datetime | None = None
    invitee_email: str | None = None
    raw_response: dict = field(default_factory=dict)


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    @property
    @abstractmethod
    def gateway_type(self) -> GatewayType:
        """Return the gateway type."""
        pass

    @abstractmethod
    async def create_checkout_session(
        self,
        amount: int,
        currency: str,
        reference_id: str,
        description: str,
        idempotency_key: str,
        customer_email: str | None = None,
        metadata: dict | None = None,
    ) -> PaymentResult:
        """Open a hosted checkout session.

        Args:
            amount: Amount in smallest currency unit
            currency: ISO currency code
            reference_id: Booking id, echoed back in webhooks
            description: Line item description
            idempotency_key: Ledger key, forwarded to the provider
            customer_email: Prefilled payer email
            metadata: Additional metadata

        Returns:
            PaymentResult with the session id and checkout URL
        """
        pass

    @abstractmethod
    async def get_payment_status(self, transaction_id: str) -> PaymentResult:
        """Query the current status of a checkout session."""
        pass

    @abstractmethod
    async def process_refund(
        self,
        transaction_id: str,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> RefundResult:
        """Refund (part of) the payment captured by a checkout session."""
        pass

    @abstractmethod
    async def update_metadata(
        self,
        transaction_id: str,
        metadata: dict,
        idempotency_key: str,
    ) -> PaymentResult:
        """Attach metadata to an existing checkout session."""
        pass


class SchedulingProvider(ABC):
    """Abstract base class for the scheduling provider."""

    @property
    @abstractmethod
    def gateway_type(self) -> GatewayType:
        pass

    @abstractmethod
    async def get_scheduled_event(self, event_uri: str) -> ScheduledEvent | None:
        """Fetch a scheduled event by URI; None when it does not exist."""
        pass

    @abstractmethod
    async def find_scheduled_event(
        self,
        invitee_email: str,
        start_time: datetime,
    ) -> ScheduledEvent | None:
        """Find the event booked by ``invitee_email`` starting at ``start_time``."""
        pass


class EmailSender(ABC):
    """Abstract base class for transactional email."""

    @abstractmethod
    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: str | None = None,
    ) -> bool:
        """Send an email; False when the provider rejected it."""
        pass

    async def close(self) -> None:
        """Release transport resources."""
