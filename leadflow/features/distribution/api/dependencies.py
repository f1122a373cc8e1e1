"""
FastAPI dependency providers for the distribution routes.

Process-wide instances are built on first use; tests replace them through
app.dependency_overrides.
"""

from leadflow.features.distribution.pipeline.duplicates.service import DuplicateDetector
from leadflow.features.distribution.services.assignment_service import AssignmentAdminService
from leadflow.features.distribution.services.ingestion_service import IngestionCoordinator
from leadflow.infrastructure.observability.logging import get_logger
from leadflow.services.leads_service_client import LeadsServiceClient
from leadflow.services.notification_client import NotificationClient

logger = get_logger(__name__)

_leads_client: LeadsServiceClient | None = None
_notifier: NotificationClient | None = None
_coordinator: IngestionCoordinator | None = None


def get_leads_client() -> LeadsServiceClient:
    global _leads_client
    if _leads_client is None:
        _leads_client = LeadsServiceClient()
    return _leads_client


def get_notification_client() -> NotificationClient:
    global _notifier
    if _notifier is None:
        _notifier = NotificationClient()
    return _notifier


def get_duplicate_detector() -> DuplicateDetector:
    return DuplicateDetector()


def get_assignment_service() -> AssignmentAdminService:
    return AssignmentAdminService(leads_client=get_leads_client())


def get_ingestion_coordinator() -> IngestionCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = IngestionCoordinator(
            leads_client=get_leads_client(),
            notifier=get_notification_client(),
        )
    return _coordinator


async def close_clients() -> None:
    """Drain background work and close HTTP clients on shutdown."""
    global _leads_client, _notifier, _coordinator

    if _coordinator is not None:
        await _coordinator.drain()
    if _leads_client is not None:
        await _leads_client.close()
    if _notifier is not None:
        await _notifier.close()

    _leads_client = _notifier = _coordinator = None
    logger.info("Distribution clients closed")
