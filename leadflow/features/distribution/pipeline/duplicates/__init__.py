"""
Duplicate detection: lookup, cluster planning and persistence.
"""

from .linking import ClusterLinkPlan, MemberLinkUpdate, plan_cluster_links
from .repository import LeadSourceRepository, LeadSourceRepositoryError
from .service import DuplicateDetector

__all__ = [
    "ClusterLinkPlan",
    "DuplicateDetector",
    "LeadSourceRepository",
    "LeadSourceRepositoryError",
    "MemberLinkUpdate",
    "plan_cluster_links",
]
