# leadflow/services/leads_service_client.py
"""
HTTP client for the downstream leads service.

Nothing here retries inline. A failed create is fatal for the ingestion
that issued it; a failed assign push is left for the assignment retry job.
"""

from datetime import UTC, datetime
from typing import Any

import httpx

from leadflow.config import settings
from leadflow.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

USER_AGENT = "leadflow/0.1.0"


class LeadsServiceError(Exception):
    """Custom exception for leads service errors."""

    def __init__(self, message: str, status_code: int | None = None, operation: str = "unknown"):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation


class DownstreamStoreUnavailable(LeadsServiceError):
    """The lead store could not be reached or refused to store the lead."""


class LeadsServiceClient:
    def __init__(
        self,
        base_url: str | None = None,
        auth_token: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.leads_service_base_url()).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_s or settings.LEADS_SERVICE_TIMEOUT_S),
            headers={
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
                "X-Service-Auth": auth_token or settings.SERVICE_AUTH_TOKEN,
            },
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _extract_lead_id(data: Any) -> str | None:
        if not isinstance(data, dict):
            return None
        lead = data.get("lead") if isinstance(data.get("lead"), dict) else data
        lead_id = lead.get("_id") or lead.get("id")
        return str(lead_id) if lead_id else None

    async def create_lead(
        self,
        organization_id: str,
        source: str,
        name: str | None,
        email: str | None,
        phone: str | None,
        custom_fields: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        assigned_to: str | None = None,
    ) -> str:
        """
        Create the lead downstream and return its id.

        Raises:
            DownstreamStoreUnavailable: transport error, timeout, non-2xx
                response or a response without a lead id
        """
        payload: dict[str, Any] = {
            "name": name or "",
            "email": email or "",
            "phone": phone or "",
            "source": source,
            "status": "new",
            "organizationId": organization_id,
            "customFields": custom_fields or {},
            "metadata": {
                **(metadata or {}),
                "createdBy": "leadflow",
                "createdAt": datetime.now(UTC).isoformat(),
            },
        }
        if assigned_to:
            payload["assignedTo"] = assigned_to

        try:
            response = await self._client.post(
                "/api/leads", json=payload, headers={"X-Organization-Id": organization_id}
            )
        except httpx.RequestError as e:
            logger.error(
                "Lead store request failed",
                organization_id=organization_id,
                source=source,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise DownstreamStoreUnavailable(
                f"Lead store unreachable: {e}", operation="create_lead"
            ) from e

        if not response.is_success:
            logger.error(
                "Lead store rejected lead",
                organization_id=organization_id,
                status_code=response.status_code,
                response_text=response.text[:200] if response.text else "",
            )
            raise DownstreamStoreUnavailable(
                f"Lead store error (HTTP {response.status_code})",
                status_code=response.status_code,
                operation="create_lead",
            )

        try:
            lead_id = self._extract_lead_id(response.json())
        except ValueError as e:
            raise DownstreamStoreUnavailable(
                f"Invalid lead store response: {e}", operation="create_lead"
            ) from e

        if not lead_id:
            raise DownstreamStoreUnavailable(
                "Lead store response missing lead id", operation="create_lead"
            )

        logger.info(
            "Lead created in lead store",
            lead_id=lead_id,
            organization_id=organization_id,
            source=source,
            assigned_to=assigned_to,
        )
        return lead_id

    async def assign_lead(
        self, lead_id: str, assigned_to: str, organization_id: str, reason: str = "auto_assignment"
    ) -> None:
        """
        Push an assignment for an existing lead.

        Raises:
            LeadsServiceError: on any transport or HTTP failure
        """
        try:
            response = await self._client.put(
                f"/api/leads/{lead_id}/assign",
                json={"assignedTo": assigned_to, "reason": reason},
                headers={"X-Organization-Id": organization_id},
            )
        except httpx.RequestError as e:
            raise LeadsServiceError(f"Assign request failed: {e}", operation="assign_lead") from e

        if not response.is_success:
            raise LeadsServiceError(
                f"Assign rejected (HTTP {response.status_code})",
                status_code=response.status_code,
                operation="assign_lead",
            )

        logger.info("Lead assignment pushed", lead_id=lead_id, assigned_to=assigned_to)

    async def check_health(self) -> bool:
        try:
            response = await self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError as e:
            logger.error("Lead store health check failed", error=str(e))
            return False
