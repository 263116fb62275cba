"""Notification service for booking emails.

Sends transactional email via SendGrid:
- booking confirmation
- payment failure with a retry link
- reschedule notice
- cancellation and refund notice
"""

import logging
from typing import Any

import httpx

from booking_coordinator.config import settings
from booking_coordinator.core.exceptions import ExternalProviderUnavailable
from booking_coordinator.domain.booking import Booking
from booking_coordinator.gateways.base import EmailSender

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


class SendGridEmailSender(EmailSender):
    """SendGrid v3 mail client."""

    def __init__(self, api_key: str | None = None, http_client: httpx.AsyncClient | None = None) -> None:
        self.api_key = api_key or settings.sendgrid_api_key
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-load HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.external_call_timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: str | None = None,
    ) -> bool:
        """Send an email via SendGrid.

        Args:
            to_email: Recipient email
            subject: Email subject
            html_content: HTML body
            text_content: Plain text body

        Returns:
            bool: True if accepted by SendGrid

        Raises:
            ExternalProviderUnavailable: transport error, 429 or 5xx
        """
        if not self.api_key:
            logger.warning(f"SendGrid not configured; email to {to_email} not sent")
            return False

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": {
                "email": settings.email_from_address,
                "name": settings.email_from_name,
            },
            "subject": subject,
            "content": [{"type": "text/html", "value": html_content}],
        }
        if text_content:
            payload["content"].insert(0, {"type": "text/plain", "value": text_content})

        try:
            response = await self.http_client.post(SENDGRID_URL, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise ExternalProviderUnavailable("sendgrid", str(e))

        if response.status_code == 429 or response.status_code >= 500:
            raise ExternalProviderUnavailable("sendgrid", f"HTTP {response.status_code}")
        return response.status_code in (200, 202)


class NotificationService:
    """Renders booking emails and hands them to an ``EmailSender``."""

    BOOKING_CONFIRMED = "booking_confirmed"
    PAYMENT_FAILED = "payment_failed"
    BOOKING_RESCHEDULED = "booking_rescheduled"
    BOOKING_CANCELLED = "booking_cancelled"

    def __init__(self, sender: EmailSender | None = None) -> None:
        self.sender = sender or SendGridEmailSender()

    @staticmethod
    def _when(booking: Booking) -> str:
        return booking.scheduled_start.strftime("%Y-%m-%d %H:%M UTC")

    def render(self, kind: str, booking: Booking, **context: Any) -> tuple[str, str]:
        """Return (subject, html) for a notification kind."""
        when = self._when(booking)
        if kind == self.BOOKING_CONFIRMED:
            return (
                "Your session is confirmed",
                f"<p>Your session on {when} is confirmed. Booking reference: {booking.id}.</p>",
            )
        if kind == self.PAYMENT_FAILED:
            retry_url = settings.stripe_checkout_cancel_url.format(booking_id=booking.id)
            return (
                "Payment for your session did not go through",
                f"<p>We could not process the payment for your session on {when}.</p>"
                f'<p><a href="{retry_url}">Retry payment</a></p>',
            )
        if kind == self.BOOKING_RESCHEDULED:
            return (
                "Your session was rescheduled",
                f"<p>Your session has moved to {when}.</p>",
            )
        if kind == self.BOOKING_CANCELLED:
            refund = context.get("refund_amount") or 0
            refund_line = (
                f"<p>A refund of {refund / 100:.2f} {booking.currency.upper()} is on its way.</p>"
                if refund
                else ""
            )
            return (
                "Your session was cancelled",
                f"<p>Your session on {when} was cancelled.</p>{refund_line}",
            )
        raise ValueError(f"Unknown notification kind: {kind}")

    async def notify(self, kind: str, booking: Booking, **context: Any) -> bool:
        if not booking.client_email:
            logger.warning(f"Booking {booking.id} has no client email; {kind} not sent")
            return False
        subject, html = self.render(kind, booking, **context)
        sent = await self.sender.send_email(booking.client_email, subject, html)
        logger.info(f"Notification {kind} for booking {booking.id}: sent={sent}")
        return sent


notification_service = NotificationService()
