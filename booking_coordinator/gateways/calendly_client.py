"""Calendly API v2 adapter."""

import logging
from datetime import datetime, timedelta

import httpx

from booking_coordinator.config import settings
from booking_coordinator.core.exceptions import ExternalProviderUnavailable
from booking_coordinator.gateways.base import (
    GatewayType,
    ProviderSchedulingStatus,
    ScheduledEvent,
    SchedulingProvider,
)

logger = logging.getLogger(__name__)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _to_event(resource: dict) -> ScheduledEvent:
    status = (
        ProviderSchedulingStatus.CANCELED
        if resource.get("status") == "canceled"
        else ProviderSchedulingStatus.ACTIVE
    )
    return ScheduledEvent(
        uri=resource["uri"],
        status=status,
        start_time=_parse_time(resource.get("start_time")),
        end_time=_parse_time(resource.get("end_time")),
        raw_response=resource,
    )


class CalendlyClient(SchedulingProvider):
    """Read-only Calendly client used by the recovery job."""

    def __init__(
        self,
        api_token: str | None = None,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_token = api_token or settings.calendly_api_token
        self.base_url = (base_url or settings.calendly_api_base_url).rstrip("/")
        self._http_client = http_client

    @property
    def gateway_type(self) -> GatewayType:
        return GatewayType.CALENDLY

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-load HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=settings.external_call_timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()

    async def _get(self, url: str, params: dict | None = None) -> dict | None:
        if not self.api_token:
            raise ExternalProviderUnavailable("calendly", "Calendly not configured")

        try:
            response = await self.http_client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {self.api_token}"},
            )
        except httpx.HTTPError as e:
            raise ExternalProviderUnavailable("calendly", str(e))

        if response.status_code == 404:
            return None
        if response.status_code == 429 or response.status_code >= 500:
            raise ExternalProviderUnavailable("calendly", f"HTTP {response.status_code}")
        if response.status_code >= 400:
            logger.warning(f"Calendly request {url} rejected: HTTP {response.status_code}")
            return None
        return response.json()

    async def get_scheduled_event(self, event_uri: str) -> ScheduledEvent | None:
        url = event_uri if event_uri.startswith("http") else f"{self.base_url}/scheduled_events/{event_uri}"
        body = await self._get(url)
        if not body or "resource" not in body:
            return None
        return _to_event(body["resource"])

    async def find_scheduled_event(
        self,
        invitee_email: str,
        start_time: datetime,
    ) -> ScheduledEvent | None:
        params = {
            "invitee_email": invitee_email,
            "min_start_time": (start_time - timedelta(minutes=1)).isoformat(),
            "max_start_time": (start_time + timedelta(minutes=1)).isoformat(),
            "count": 10,
        }
        if settings.calendly_organization_uri:
            params["organization"] = settings.calendly_organization_uri

        body = await self._get(f"{self.base_url}/scheduled_events", params=params)
        if not body:
            return None

        events = [_to_event(resource) for resource in body.get("collection", [])]
        if not events:
            return None
        # Prefer an active event when the invitee rebooked the same slot
        active = [e for e in events if e.status == ProviderSchedulingStatus.ACTIVE]
        event = (active or events)[0]
        event.invitee_email = invitee_email
        return event


calendly_client = CalendlyClient()
