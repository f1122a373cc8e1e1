"""
Domain models for lead distribution and deduplication.

Plain dataclasses shared by the repositories, the pure selector, the
coordinator and the API layer. Policies and rotation state round-trip
through JSONB columns, hence the small to_dict/from_dict helpers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AssignmentMode(str, Enum):
    auto = "auto"
    manual = "manual"
    specific = "specific"


class AssignmentAlgorithm(str, Enum):
    round_robin = "round-robin"
    weighted_round_robin = "weighted-round-robin"
    least_assigned = "least-assigned"
    random = "random"


class AssignmentReason(str, Enum):
    """Non-fatal reasons reported alongside an assignment result."""

    assigned = "assigned"
    specific_user = "specific_user"
    no_eligible_users = "no_eligible_users"
    policy_not_found = "policy_not_found"
    policy_disabled = "policy_disabled"
    manual_mode = "manual_mode"
    no_specific_user = "no_specific_user"
    assignment_failed = "assignment_failed"
    assignment_push_pending = "assignment_push_pending"


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(slots=True)
class EligibleUser:
    user_id: str
    weight: int = 1
    is_active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "weight": self.weight, "is_active": self.is_active}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EligibleUser":
        return cls(
            user_id=str(data["user_id"]),
            weight=int(data.get("weight", 1)),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass(slots=True)
class RotationState:
    """
    Per-unit rotation bookkeeping.

    `last_assigned_index` is None until the first assignment. `credits` holds
    the weighted-round-robin running credit per user and `assignment_counts`
    the policy-scoped totals used by least-assigned and the stats endpoint.
    """

    last_assigned_index: int | None = None
    last_assigned_user_id: str | None = None
    last_assigned_at: datetime | None = None
    credits: dict[str, int] = field(default_factory=dict)
    assignment_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_assigned_index": self.last_assigned_index,
            "last_assigned_user_id": self.last_assigned_user_id,
            "last_assigned_at": (
                self.last_assigned_at.isoformat() if self.last_assigned_at else None
            ),
            "credits": dict(self.credits),
            "assignment_counts": dict(self.assignment_counts),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RotationState":
        if not data:
            return cls()
        return cls(
            last_assigned_index=data.get("last_assigned_index"),
            last_assigned_user_id=data.get("last_assigned_user_id"),
            last_assigned_at=_parse_datetime(data.get("last_assigned_at")),
            credits={str(k): int(v) for k, v in (data.get("credits") or {}).items()},
            assignment_counts={
                str(k): int(v) for k, v in (data.get("assignment_counts") or {}).items()
            },
        )


@dataclass(slots=True)
class AssignmentPolicy:
    enabled: bool = False
    mode: AssignmentMode = AssignmentMode.manual
    algorithm: AssignmentAlgorithm = AssignmentAlgorithm.round_robin
    eligible_users: list[EligibleUser] = field(default_factory=list)
    assign_to_user: str | None = None
    rotation_state: RotationState = field(default_factory=RotationState)

    def active_users(self) -> list[EligibleUser]:
        """Eligible users with is_active=True, in stored order."""
        return [user for user in self.eligible_users if user.is_active]

    @property
    def auto_assigns(self) -> bool:
        return self.enabled and self.mode != AssignmentMode.manual

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "mode": self.mode.value,
            "algorithm": self.algorithm.value,
            "eligible_users": [user.to_dict() for user in self.eligible_users],
            "assign_to_user": self.assign_to_user,
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any] | None, rotation_state: dict[str, Any] | None = None
    ) -> "AssignmentPolicy":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            mode=AssignmentMode(data.get("mode", AssignmentMode.manual.value)),
            algorithm=AssignmentAlgorithm(
                data.get("algorithm", AssignmentAlgorithm.round_robin.value)
            ),
            eligible_users=[EligibleUser.from_dict(u) for u in data.get("eligible_users") or []],
            assign_to_user=data.get("assign_to_user"),
            rotation_state=RotationState.from_dict(rotation_state),
        )


@dataclass(slots=True)
class DistributionUnit:
    """A place leads originate from; owns exactly one assignment policy."""

    id: str
    organization_id: str
    channel: str
    unit_key: str
    name: str | None = None
    policy: AssignmentPolicy = field(default_factory=AssignmentPolicy)
    total_leads: int = 0
    last_lead_received_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class NormalizedIdentity:
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    custom_fields: dict[str, Any] = field(default_factory=dict)

    @property
    def has_identity(self) -> bool:
        return bool(self.name or self.email or self.phone)

    def as_raw_fields(self) -> dict[str, Any]:
        """Flatten back into a raw field bag (canonical keys win)."""
        raw = dict(self.custom_fields)
        for key in ("name", "email", "phone"):
            value = getattr(self, key)
            if value:
                raw[key] = value
        return raw


@dataclass(slots=True)
class LeadSourceRecord:
    """
    One ingested lead as seen by this service.

    `duplicate_of` is the lead id of the first record in the cluster;
    `duplicate_record_ids` holds the record ids of every other member.
    """

    id: str
    lead_id: str
    organization_id: str
    source: str
    identity: NormalizedIdentity
    source_details: dict[str, Any] = field(default_factory=dict)
    distribution_unit_id: str | None = None
    is_duplicate: bool = False
    duplicate_of: str | None = None
    duplicate_record_ids: list[str] = field(default_factory=list)
    processed: bool = False
    processed_at: datetime | None = None
    assigned_to: str | None = None
    pending_assignee: str | None = None
    error_message: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class ChannelMetadata:
    """Where a lead came from, as reported by the channel adapter."""

    source: str
    form_id: str | None = None
    page: str | None = None
    utm: dict[str, Any] = field(default_factory=dict)
    ip: str | None = None
    user_agent: str | None = None

    def source_details(self) -> dict[str, Any]:
        details: dict[str, Any] = {}
        if self.form_id:
            details["form_id"] = self.form_id
        if self.page:
            details["page"] = self.page
        if self.utm:
            details["utm"] = dict(self.utm)
        return details


@dataclass(slots=True)
class IngestRequest:
    organization_id: str
    distribution_unit_key: str
    raw_fields: dict[str, Any]
    channel_metadata: ChannelMetadata


@dataclass(slots=True)
class SelectionOutcome:
    """Result of one pure selection step; new_state is None when unassigned."""

    assigned: bool
    algorithm: AssignmentAlgorithm
    assignee_user_id: str | None = None
    new_state: RotationState | None = None
    reason: AssignmentReason = AssignmentReason.assigned
    deterministic: bool = True


@dataclass(slots=True)
class IngestResult:
    lead_id: str
    assigned: bool
    assignee_user_id: str | None = None
    reason: str | None = None
    is_duplicate: bool = False
    duplicate_of: str | None = None
    record_id: str | None = None
    stage_errors: list[str] = field(default_factory=list)
