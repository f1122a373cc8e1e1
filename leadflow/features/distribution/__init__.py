"""
Lead distribution feature package.

This vertical slice keeps every layer of lead ingestion, assignment and
duplicate detection co-located (domain models, repositories, pipeline
stages, services and API routers).
"""

# Re-export the primary building blocks for easy access.
from .services.ingestion_service import IngestionCoordinator  # noqa: F401
from .services.assignment_service import AssignmentAdminService  # noqa: F401
from .domain.models import AssignmentPolicy, DistributionUnit, LeadSourceRecord  # noqa: F401
