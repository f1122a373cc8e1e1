"""
Service layer for lead distribution.
"""

from .assignment_service import AssignmentAdminService, PolicyValidationError
from .ingestion_service import IngestionCoordinator

__all__ = ["AssignmentAdminService", "IngestionCoordinator", "PolicyValidationError"]
