# leadflow/services/notification_client.py
"""Fire-and-forget client for lead-assigned notifications."""

from typing import Any

import httpx

from leadflow.config import settings
from leadflow.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class NotificationClient:
    def __init__(
        self,
        base_url: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        url = base_url if base_url is not None else settings.NOTIFICATION_SERVICE_URL
        self.base_url = url.rstrip("/") if url else None
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s or settings.NOTIFICATION_TIMEOUT_S),
            headers={"X-Service-Auth": settings.SERVICE_AUTH_TOKEN},
            transport=transport,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def close(self) -> None:
        await self._client.aclose()

    async def notify_lead_assigned(
        self,
        lead_id: str,
        assigned_to: str,
        organization_id: str,
        lead_summary: dict[str, Any],
    ) -> bool:
        """Send the notification. Failures are logged and reported as False, never raised."""
        if not self.enabled:
            logger.debug("Notification service not configured, skipping", lead_id=lead_id)
            return False

        try:
            response = await self._client.post(
                f"{self.base_url}/api/notifications/lead-assigned",
                json={
                    "leadId": lead_id,
                    "assignedTo": assigned_to,
                    "organizationId": organization_id,
                    "leadSummary": lead_summary,
                },
            )
        except httpx.RequestError as e:
            logger.warning(
                "Lead assignment notification failed",
                lead_id=lead_id,
                assigned_to=assigned_to,
                error=str(e),
            )
            return False

        if not response.is_success:
            logger.warning(
                "Lead assignment notification rejected",
                lead_id=lead_id,
                status_code=response.status_code,
            )
            return False

        logger.info("Lead assignment notification sent", lead_id=lead_id, assigned_to=assigned_to)
        return True
