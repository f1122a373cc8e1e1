"""
Administrative operations on assignment policies.

Validation rules that pydantic cannot express on a single field live here
and raise PolicyValidationError.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime

from leadflow.features.distribution.domain.models import (
    AssignmentAlgorithm,
    AssignmentMode,
    AssignmentPolicy,
    DistributionUnit,
    SelectionOutcome,
)
from leadflow.features.distribution.pipeline.assignment.selector import (
    preview_next,
    select_for_policy,
)
from leadflow.features.distribution.repository.policy_repository import (
    AssignmentPolicyRepository,
    DistributionUnitNotFound,
)
from leadflow.infrastructure.observability.logging import get_logger
from leadflow.services.leads_service_client import LeadsServiceClient

logger = get_logger(__name__)

MIN_WEIGHT = 1
MAX_WEIGHT = 10


class PolicyValidationError(ValueError):
    """Policy is well-typed but inconsistent."""


@dataclass(slots=True)
class UserAssignmentStats:
    user_id: str
    weight: int
    is_active: bool
    assignment_count: int


@dataclass(slots=True)
class AssignmentStats:
    enabled: bool
    mode: AssignmentMode
    algorithm: AssignmentAlgorithm
    total_users: int
    active_users: int
    last_assigned_user_id: str | None
    last_assigned_at: datetime | None
    total_leads: int
    last_lead_received_at: datetime | None
    users: list[UserAssignmentStats] = field(default_factory=list)


def validate_policy(policy: AssignmentPolicy) -> None:
    seen: set[str] = set()
    for user in policy.eligible_users:
        if not user.user_id:
            raise PolicyValidationError("Eligible user id must not be empty")
        if user.user_id in seen:
            raise PolicyValidationError(f"Duplicate eligible user: {user.user_id}")
        if not MIN_WEIGHT <= user.weight <= MAX_WEIGHT:
            raise PolicyValidationError(
                f"Weight for {user.user_id} must be between {MIN_WEIGHT} and {MAX_WEIGHT}"
            )
        seen.add(user.user_id)

    if policy.mode == AssignmentMode.specific and not policy.assign_to_user:
        raise PolicyValidationError("Specific mode requires assign_to_user")


class AssignmentAdminService:
    def __init__(
        self,
        repository=AssignmentPolicyRepository,
        leads_client: LeadsServiceClient | None = None,
    ):
        self.repository = repository
        self.leads_client = leads_client

    async def _require_unit(self, unit_id: str) -> DistributionUnit:
        unit = await self.repository.get_unit(unit_id)
        if unit is None:
            raise DistributionUnitNotFound(unit_id)
        return unit

    async def register_unit(
        self,
        organization_id: str,
        channel: str,
        unit_key: str,
        name: str | None = None,
        policy: AssignmentPolicy | None = None,
    ) -> DistributionUnit:
        if policy is not None:
            validate_policy(policy)
        return await self.repository.register_unit(
            organization_id, channel, unit_key, name=name, policy=policy
        )

    async def get_unit(self, unit_id: str) -> DistributionUnit:
        return await self._require_unit(unit_id)

    async def get_policy(self, unit_id: str) -> AssignmentPolicy:
        unit = await self._require_unit(unit_id)
        return unit.policy

    async def update_policy(self, unit_id: str, policy: AssignmentPolicy) -> AssignmentPolicy:
        validate_policy(policy)
        unit = await self.repository.update_policy(unit_id, policy)
        return unit.policy

    async def preview(self, unit_id: str, rng: random.Random | None = None) -> SelectionOutcome:
        unit = await self._require_unit(unit_id)
        return preview_next(unit.policy, rng=rng)

    async def reset_rotation(self, unit_id: str) -> AssignmentPolicy:
        unit = await self.repository.reset_rotation(unit_id)
        return unit.policy

    async def get_stats(self, unit_id: str) -> AssignmentStats:
        unit = await self._require_unit(unit_id)
        policy = unit.policy
        counts = policy.rotation_state.assignment_counts

        return AssignmentStats(
            enabled=policy.enabled,
            mode=policy.mode,
            algorithm=policy.algorithm,
            total_users=len(policy.eligible_users),
            active_users=len(policy.active_users()),
            last_assigned_user_id=policy.rotation_state.last_assigned_user_id,
            last_assigned_at=policy.rotation_state.last_assigned_at,
            total_leads=unit.total_leads,
            last_lead_received_at=unit.last_lead_received_at,
            users=[
                UserAssignmentStats(
                    user_id=user.user_id,
                    weight=user.weight,
                    is_active=user.is_active,
                    assignment_count=counts.get(user.user_id, 0),
                )
                for user in policy.eligible_users
            ],
        )

    async def list_eligible_users(self, unit_id: str) -> AssignmentPolicy:
        """The unit's policy; callers list its active users."""
        unit = await self._require_unit(unit_id)
        return unit.policy

    async def assign_lead(self, unit_id: str, lead_id: str) -> SelectionOutcome:
        """
        Assign an already-created lead through the unit's policy.

        Advances rotation exactly like ingestion does, then pushes the
        assignment to the lead store. An unassigned outcome is returned as-is.

        Raises:
            DistributionUnitNotFound: unknown unit
            LeadsServiceError: the lead store rejected the assignment
        """
        if self.leads_client is None:
            raise RuntimeError("Lead store client not configured")

        unit = await self._require_unit(unit_id)
        outcome = await self.repository.advance_rotation(unit.id, select_for_policy)
        if outcome is None:
            raise DistributionUnitNotFound(unit_id)
        if not outcome.assigned:
            logger.info(
                "Lead not assigned",
                unit_id=unit_id,
                lead_id=lead_id,
                reason=outcome.reason.value,
            )
            return outcome

        await self.leads_client.assign_lead(
            lead_id,
            outcome.assignee_user_id,
            unit.organization_id,
            reason=f"manual_trigger:{outcome.algorithm.value}",
        )
        logger.info(
            "Lead assigned on request",
            unit_id=unit_id,
            lead_id=lead_id,
            assignee_user_id=outcome.assignee_user_id,
            algorithm=outcome.algorithm.value,
        )
        return outcome
