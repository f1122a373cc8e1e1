# leadflow/models/api/distribution_response.py
"""
Distribution API response models.
Serialized in camelCase.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from leadflow.features.distribution.domain.models import (
    AssignmentAlgorithm,
    AssignmentMode,
    AssignmentPolicy,
    DistributionUnit,
    IngestResult,
    LeadSourceRecord,
    SelectionOutcome,
)
from leadflow.features.distribution.services.assignment_service import AssignmentStats


class CamelResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IngestLeadResponse(CamelResponse):
    lead_id: str
    assigned: bool
    assignee_user_id: str | None = None
    reason: str | None = None
    is_duplicate: bool = False
    duplicate_of: str | None = None
    record_id: str | None = None
    stage_errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: IngestResult) -> "IngestLeadResponse":
        return cls(
            lead_id=result.lead_id,
            assigned=result.assigned,
            assignee_user_id=result.assignee_user_id,
            reason=result.reason,
            is_duplicate=result.is_duplicate,
            duplicate_of=result.duplicate_of,
            record_id=result.record_id,
            stage_errors=list(result.stage_errors),
        )


class EligibleUserResponse(CamelResponse):
    user_id: str
    weight: int
    is_active: bool


class RotationStateResponse(CamelResponse):
    last_assigned_index: int | None = None
    last_assigned_user_id: str | None = None
    last_assigned_at: datetime | None = None
    assignment_counts: dict[str, int] = Field(default_factory=dict)


class AssignmentPolicyResponse(CamelResponse):
    enabled: bool
    mode: AssignmentMode
    algorithm: AssignmentAlgorithm
    eligible_users: list[EligibleUserResponse]
    assign_to_user: str | None = None
    rotation_state: RotationStateResponse

    @classmethod
    def from_policy(cls, policy: AssignmentPolicy) -> "AssignmentPolicyResponse":
        state = policy.rotation_state
        return cls(
            enabled=policy.enabled,
            mode=policy.mode,
            algorithm=policy.algorithm,
            eligible_users=[
                EligibleUserResponse(user_id=u.user_id, weight=u.weight, is_active=u.is_active)
                for u in policy.eligible_users
            ],
            assign_to_user=policy.assign_to_user,
            rotation_state=RotationStateResponse(
                last_assigned_index=state.last_assigned_index,
                last_assigned_user_id=state.last_assigned_user_id,
                last_assigned_at=state.last_assigned_at,
                assignment_counts=dict(state.assignment_counts),
            ),
        )


class DistributionUnitResponse(CamelResponse):
    id: str
    organization_id: str
    channel: str
    unit_key: str
    name: str | None = None
    policy: AssignmentPolicyResponse
    total_leads: int = 0
    last_lead_received_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_unit(cls, unit: DistributionUnit) -> "DistributionUnitResponse":
        return cls(
            id=unit.id,
            organization_id=unit.organization_id,
            channel=unit.channel,
            unit_key=unit.unit_key,
            name=unit.name,
            policy=AssignmentPolicyResponse.from_policy(unit.policy),
            total_leads=unit.total_leads,
            last_lead_received_at=unit.last_lead_received_at,
            created_at=unit.created_at,
            updated_at=unit.updated_at,
        )


class AssignmentPreviewResponse(CamelResponse):
    would_assign: bool
    assignee_user_id: str | None = None
    algorithm: AssignmentAlgorithm
    reason: str
    deterministic: bool

    @classmethod
    def from_outcome(cls, outcome: SelectionOutcome) -> "AssignmentPreviewResponse":
        return cls(
            would_assign=outcome.assigned,
            assignee_user_id=outcome.assignee_user_id,
            algorithm=outcome.algorithm,
            reason=outcome.reason.value,
            deterministic=outcome.deterministic,
        )


class UserAssignmentStatsResponse(CamelResponse):
    user_id: str
    weight: int
    is_active: bool
    assignment_count: int


class AssignmentStatsResponse(CamelResponse):
    enabled: bool
    mode: AssignmentMode
    algorithm: AssignmentAlgorithm
    total_users: int
    active_users: int
    last_assigned_user_id: str | None = None
    last_assigned_at: datetime | None = None
    total_leads: int
    last_lead_received_at: datetime | None = None
    users: list[UserAssignmentStatsResponse]

    @classmethod
    def from_stats(cls, stats: AssignmentStats) -> "AssignmentStatsResponse":
        return cls(
            enabled=stats.enabled,
            mode=stats.mode,
            algorithm=stats.algorithm,
            total_users=stats.total_users,
            active_users=stats.active_users,
            last_assigned_user_id=stats.last_assigned_user_id,
            last_assigned_at=stats.last_assigned_at,
            total_leads=stats.total_leads,
            last_lead_received_at=stats.last_lead_received_at,
            users=[
                UserAssignmentStatsResponse(
                    user_id=u.user_id,
                    weight=u.weight,
                    is_active=u.is_active,
                    assignment_count=u.assignment_count,
                )
                for u in stats.users
            ],
        )


class LeadSourceResponse(CamelResponse):
    id: str
    lead_id: str
    source: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    is_duplicate: bool
    duplicate_of: str | None = None
    duplicate_record_ids: list[str]
    processed: bool
    assigned_to: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_record(cls, record: LeadSourceRecord) -> "LeadSourceResponse":
        return cls(
            id=record.id,
            lead_id=record.lead_id,
            source=record.source,
            name=record.identity.name,
            email=record.identity.email,
            phone=record.identity.phone,
            is_duplicate=record.is_duplicate,
            duplicate_of=record.duplicate_of,
            duplicate_record_ids=list(record.duplicate_record_ids),
            processed=record.processed,
            assigned_to=record.assigned_to,
            created_at=record.created_at,
        )


class DuplicateClusterResponse(CamelResponse):
    record_id: str
    cluster_size: int
    records: list[LeadSourceResponse]


class EligibleUsersResponse(CamelResponse):
    users: list[EligibleUserResponse]
    count: int
    algorithm: AssignmentAlgorithm
    mode: AssignmentMode

    @classmethod
    def from_policy(cls, policy: AssignmentPolicy) -> "EligibleUsersResponse":
        active = policy.active_users()
        return cls(
            users=[
                EligibleUserResponse(user_id=u.user_id, weight=u.weight, is_active=u.is_active)
                for u in active
            ],
            count=len(active),
            algorithm=policy.algorithm,
            mode=policy.mode,
        )


class LeadAssignmentResponse(CamelResponse):
    lead_id: str
    assigned: bool
    assignee_user_id: str | None = None
    algorithm: AssignmentAlgorithm
    reason: str

    @classmethod
    def from_outcome(cls, lead_id: str, outcome: SelectionOutcome) -> "LeadAssignmentResponse":
        return cls(
            lead_id=lead_id,
            assigned=outcome.assigned,
            assignee_user_id=outcome.assignee_user_id,
            algorithm=outcome.algorithm,
            reason=outcome.reason.value,
        )
