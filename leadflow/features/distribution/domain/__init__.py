"""
Domain subpackage for lead distribution.
"""

from .models import (
    AssignmentAlgorithm,
    AssignmentMode,
    AssignmentPolicy,
    AssignmentReason,
    ChannelMetadata,
    DistributionUnit,
    EligibleUser,
    IngestRequest,
    IngestResult,
    LeadSourceRecord,
    NormalizedIdentity,
    RotationState,
    SelectionOutcome,
)

__all__ = [
    "AssignmentAlgorithm",
    "AssignmentMode",
    "AssignmentPolicy",
    "AssignmentReason",
    "ChannelMetadata",
    "DistributionUnit",
    "EligibleUser",
    "IngestRequest",
    "IngestResult",
    "LeadSourceRecord",
    "NormalizedIdentity",
    "RotationState",
    "SelectionOutcome",
]
