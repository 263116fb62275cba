"""Stripe payment gateway adapter."""

import asyncio
import logging

import stripe

from booking_coordinator.config import settings
from booking_coordinator.core.exceptions import ExternalProviderUnavailable
from booking_coordinator.gateways.base import (
    GatewayType,
    PaymentGateway,
    PaymentResult,
    ProviderPaymentStatus,
    RefundResult,
)

logger = logging.getLogger(__name__)

# Errors worth retrying; everything else is a definitive rejection
_TRANSIENT_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


class StripeGateway(PaymentGateway):
    """Stripe Checkout implementation.

    The stripe SDK is synchronous; calls run in a worker thread so the event
    loop is never blocked.
    """

    def __init__(self, secret_key: str | None = None):
        self.secret_key = secret_key or settings.stripe_secret_key

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.STRIPE

    async def _call(self, func, *args, **kwargs):
        if not self.secret_key:
            raise ExternalProviderUnavailable("stripe", "Stripe not configured")
        try:
            return await asyncio.to_thread(func, *args, api_key=self.secret_key, **kwargs)
        except _TRANSIENT_ERRORS as e:
            raise ExternalProviderUnavailable("stripe", str(e))

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
        """Create a Stripe Checkout session."""
        params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": amount,
                        "product_data": {"name": description},
                    },
                    "quantity": 1,
                }
            ],
            "client_reference_id": reference_id,
            "metadata": {"booking_id": reference_id, **(metadata or {})},
            "payment_intent_data": {"metadata": {"booking_id": reference_id}},
            "success_url": settings.stripe_checkout_success_url.format(booking_id=reference_id),
            "cancel_url": settings.stripe_checkout_cancel_url.format(booking_id=reference_id),
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = await self._call(
                stripe.checkout.Session.create,
                idempotency_key=idempotency_key,
                **params,
            )
        except stripe.StripeError as e:
            logger.warning(f"Stripe rejected checkout session for {reference_id}: {e}")
            return PaymentResult(success=False, error_message=str(e))

        return PaymentResult(
            success=True,
            transaction_id=session.id,
            checkout_url=session.url,
            status=ProviderPaymentStatus.PENDING,
            raw_response={"id": session.id, "url": session.url},
        )

    async def get_payment_status(self, transaction_id: str) -> PaymentResult:
        """Map the checkout session's status onto a provider payment status."""
        try:
            session = await self._call(stripe.checkout.Session.retrieve, transaction_id)
        except stripe.StripeError as e:
            return PaymentResult(success=False, transaction_id=transaction_id, error_message=str(e))

        if session.payment_status == "paid":
            status = ProviderPaymentStatus.PAID
        elif session.status == "expired":
            status = ProviderPaymentStatus.EXPIRED
        else:
            status = ProviderPaymentStatus.PENDING

        return PaymentResult(
            success=True,
            transaction_id=transaction_id,
            status=status,
            raw_response={"status": session.status, "payment_status": session.payment_status},
        )

    async def process_refund(
        self,
        transaction_id: str,
        amount: int,
        reason: str,
        idempotency_key: str,
    ) -> RefundResult:
        """Refund the payment intent behind a checkout session."""
        try:
            session = await self._call(stripe.checkout.Session.retrieve, transaction_id)
            if not session.payment_intent:
                return RefundResult(success=False, error_message="Checkout session has no payment")

            refund = await self._call(
                stripe.Refund.create,
                payment_intent=session.payment_intent,
                amount=amount,
                reason="requested_by_customer",
                metadata={"reason": reason[:500]},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            return RefundResult(success=False, error_message=str(e))

        if refund.status in ("failed", "canceled"):
            return RefundResult(
                success=False,
                refund_id=refund.id,
                error_message=f"Refund {refund.status}",
                raw_response={"status": refund.status, "id": refund.id},
            )

        return RefundResult(
            success=True,
            refund_id=refund.id,
            amount=refund.amount,
            pending=refund.status != "succeeded",
            raw_response={"status": refund.status, "id": refund.id},
        )

    async def update_metadata(
        self,
        transaction_id: str,
        metadata: dict,
        idempotency_key: str,
    ) -> PaymentResult:
        try:
            await self._call(
                stripe.checkout.Session.modify,
                transaction_id,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            return PaymentResult(success=False, transaction_id=transaction_id, error_message=str(e))
        return PaymentResult(success=True, transaction_id=transaction_id)


stripe_gateway = StripeGateway()
