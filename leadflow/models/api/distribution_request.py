# leadflow/models/api/distribution_request.py
"""
Distribution API request models.
Fields are accepted in camelCase or snake_case.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from leadflow.features.distribution.domain.models import (
    AssignmentAlgorithm,
    AssignmentMode,
    AssignmentPolicy,
    ChannelMetadata,
    EligibleUser,
    IngestRequest,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChannelMetadataRequest(CamelModel):
    source: str = Field(..., min_length=1, description="Channel tag, e.g. website or facebook")
    form_id: str | None = Field(None, description="Originating form id")
    page: str | None = Field(None, description="Originating page or URL")
    utm: dict[str, Any] = Field(default_factory=dict, description="UTM parameters")
    ip: str | None = Field(None, description="Submitter IP address")
    user_agent: str | None = Field(None, description="Submitter user agent")


class IngestLeadRequest(CamelModel):
    """Inbound lead from a channel adapter."""

    organization_id: str = Field(..., min_length=1)
    distribution_unit_key: str = Field(..., min_length=1)
    raw_fields: dict[str, Any] = Field(default_factory=dict)
    channel_metadata: ChannelMetadataRequest

    def to_domain(self, ip: str | None = None, user_agent: str | None = None) -> IngestRequest:
        meta = self.channel_metadata
        return IngestRequest(
            organization_id=self.organization_id,
            distribution_unit_key=self.distribution_unit_key,
            raw_fields=dict(self.raw_fields),
            channel_metadata=ChannelMetadata(
                source=meta.source,
                form_id=meta.form_id,
                page=meta.page,
                utm=dict(meta.utm),
                ip=meta.ip or ip,
                user_agent=meta.user_agent or user_agent,
            ),
        )


class EligibleUserRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    weight: int = Field(default=1, ge=1, le=10, description="Relative share for weighted round-robin")
    is_active: bool = True


class AssignmentPolicyRequest(CamelModel):
    """Full replacement of a unit's assignment policy. Rotation state is not writable."""

    enabled: bool = False
    mode: AssignmentMode = AssignmentMode.manual
    algorithm: AssignmentAlgorithm = AssignmentAlgorithm.round_robin
    eligible_users: list[EligibleUserRequest] = Field(default_factory=list)
    assign_to_user: str | None = None

    def to_domain(self) -> AssignmentPolicy:
        return AssignmentPolicy(
            enabled=self.enabled,
            mode=self.mode,
            algorithm=self.algorithm,
            eligible_users=[
                EligibleUser(user_id=u.user_id, weight=u.weight, is_active=u.is_active)
                for u in self.eligible_users
            ],
            assign_to_user=self.assign_to_user,
        )


class RegisterUnitRequest(CamelModel):
    organization_id: str = Field(..., min_length=1)
    channel: str = Field(..., min_length=1)
    unit_key: str = Field(..., min_length=1, description="e.g. '<pageId>:<formId>' or a shop domain")
    name: str | None = Field(None, max_length=200)
    policy: AssignmentPolicyRequest | None = None


class AssignLeadRequest(CamelModel):
    lead_id: str = Field(..., min_length=1)
