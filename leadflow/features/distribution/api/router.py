"""
Lead distribution routes.

Ingestion, the per-unit assignment admin surface and duplicate cluster
lookup all live in the feature package.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status

from leadflow.db.helpers import DatabaseError
from leadflow.features.distribution.api.dependencies import (
    get_assignment_service,
    get_duplicate_detector,
    get_ingestion_coordinator,
)
from leadflow.features.distribution.pipeline.duplicates.service import DuplicateDetector
from leadflow.features.distribution.repository.policy_repository import DistributionUnitNotFound
from leadflow.features.distribution.services.assignment_service import (
    AssignmentAdminService,
    PolicyValidationError,
)
from leadflow.features.distribution.services.ingestion_service import IngestionCoordinator
from leadflow.infrastructure.observability.logging import get_logger
from leadflow.models.api.distribution_request import (
    AssignLeadRequest,
    AssignmentPolicyRequest,
    IngestLeadRequest,
    RegisterUnitRequest,
)
from leadflow.models.api.distribution_response import (
    AssignmentPolicyResponse,
    AssignmentPreviewResponse,
    AssignmentStatsResponse,
    DistributionUnitResponse,
    DuplicateClusterResponse,
    EligibleUsersResponse,
    IngestLeadResponse,
    LeadAssignmentResponse,
    LeadSourceResponse,
)
from leadflow.services.leads_service_client import DownstreamStoreUnavailable, LeadsServiceError

logger = get_logger(__name__)

router = APIRouter(tags=["distribution"])


def _not_found(e: DistributionUnitNotFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _storage_unavailable(operation: str, e: Exception) -> HTTPException:
    logger.error("Policy store unavailable", operation=operation, error=str(e))
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Policy store unavailable"
    )


@router.post("/leads/ingest", response_model=IngestLeadResponse)
async def ingest_lead(
    payload: IngestLeadRequest,
    request: Request,
    coordinator: IngestionCoordinator = Depends(get_ingestion_coordinator),
):
    """Ingest one lead from a channel adapter."""
    state = request.state
    ingest_request = payload.to_domain(
        ip=getattr(state, "ip_address", None),
        user_agent=getattr(state, "user_agent", None),
    )

    try:
        result = await coordinator.ingest(ingest_request)
    except DownstreamStoreUnavailable as e:
        logger.error(
            "Lead store unavailable, ingestion rejected",
            organization_id=payload.organization_id,
            distribution_unit_key=payload.distribution_unit_key,
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Lead store unavailable"
        )

    return IngestLeadResponse.from_result(result)


@router.post(
    "/distribution-units",
    response_model=DistributionUnitResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_distribution_unit(
    payload: RegisterUnitRequest,
    service: AssignmentAdminService = Depends(get_assignment_service),
):
    """Register a unit, or return the existing one with the same key."""
    try:
        unit = await service.register_unit(
            payload.organization_id,
            payload.channel,
            payload.unit_key,
            name=payload.name,
            policy=payload.policy.to_domain() if payload.policy else None,
        )
    except PolicyValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except DatabaseError as e:
        raise _storage_unavailable("register_unit", e)

    return DistributionUnitResponse.from_unit(unit)


@router.get("/distribution-units/{unit_id}", response_model=DistributionUnitResponse)
async def get_distribution_unit(
    unit_id: UUID, service: AssignmentAdminService = Depends(get_assignment_service)
):
    try:
        unit = await service.get_unit(str(unit_id))
    except DistributionUnitNotFound as e:
        raise _not_found(e)
    except DatabaseError as e:
        raise _storage_unavailable("get_unit", e)

    return DistributionUnitResponse.from_unit(unit)


@router.get(
    "/distribution-units/{unit_id}/assignment", response_model=AssignmentPolicyResponse
)
async def get_assignment_policy(
    unit_id: UUID, service: AssignmentAdminService = Depends(get_assignment_service)
):
    try:
        policy = await service.get_policy(str(unit_id))
    except DistributionUnitNotFound as e:
        raise _not_found(e)
    except DatabaseError as e:
        raise _storage_unavailable("get_policy", e)

    return AssignmentPolicyResponse.from_policy(policy)


@router.put(
    "/distribution-units/{unit_id}/assignment", response_model=AssignmentPolicyResponse
)
async def update_assignment_policy(
    unit_id: UUID,
    payload: AssignmentPolicyRequest,
    service: AssignmentAdminService = Depends(get_assignment_service),
):
    """Replace the assignment policy. Rotation state is preserved."""
    try:
        policy = await service.update_policy(str(unit_id), payload.to_domain())
    except PolicyValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except DistributionUnitNotFound as e:
        raise _not_found(e)
    except DatabaseError as e:
        raise _storage_unavailable("update_policy", e)

    return AssignmentPolicyResponse.from_policy(policy)


@router.get(
    "/distribution-units/{unit_id}/assignment/preview",
    response_model=AssignmentPreviewResponse,
)
async def preview_assignment(
    unit_id: UUID, service: AssignmentAdminService = Depends(get_assignment_service)
):
    """Who would get the next lead. Nothing is persisted."""
    try:
        outcome = await service.preview(str(unit_id))
    except DistributionUnitNotFound as e:
        raise _not_found(e)
    except DatabaseError as e:
        raise _storage_unavailable("preview", e)

    return AssignmentPreviewResponse.from_outcome(outcome)


@router.post(
    "/distribution-units/{unit_id}/assignment/reset", response_model=AssignmentPolicyResponse
)
async def reset_assignment_rotation(
    unit_id: UUID, service: AssignmentAdminService = Depends(get_assignment_service)
):
    try:
        policy = await service.reset_rotation(str(unit_id))
    except DistributionUnitNotFound as e:
        raise _not_found(e)
    except DatabaseError as e:
        raise _storage_unavailable("reset_rotation", e)

    return AssignmentPolicyResponse.from_policy(policy)


@router.get(
    "/distribution-units/{unit_id}/assignment/stats", response_model=AssignmentStatsResponse
)
async def get_assignment_stats(
    unit_id: UUID, service: AssignmentAdminService = Depends(get_assignment_service)
):
    try:
        stats = await service.get_stats(str(unit_id))
    except DistributionUnitNotFound as e:
        raise _not_found(e)
    except DatabaseError as e:
        raise _storage_unavailable("get_stats", e)

    return AssignmentStatsResponse.from_stats(stats)


@router.get(
    "/distribution-units/{unit_id}/assignment/eligible-users",
    response_model=EligibleUsersResponse,
)
async def list_eligible_users(
    unit_id: UUID, service: AssignmentAdminService = Depends(get_assignment_service)
):
    """Active users the unit's policy can assign to."""
    try:
        policy = await service.list_eligible_users(str(unit_id))
    except DistributionUnitNotFound as e:
        raise _not_found(e)
    except DatabaseError as e:
        raise _storage_unavailable("list_eligible_users", e)

    return EligibleUsersResponse.from_policy(policy)


@router.post(
    "/distribution-units/{unit_id}/assignment/assign", response_model=LeadAssignmentResponse
)
async def assign_existing_lead(
    unit_id: UUID,
    payload: AssignLeadRequest,
    service: AssignmentAdminService = Depends(get_assignment_service),
):
    """Run an existing lead through the unit's policy and push the assignment."""
    try:
        outcome = await service.assign_lead(str(unit_id), payload.lead_id)
    except DistributionUnitNotFound as e:
        raise _not_found(e)
    except LeadsServiceError as e:
        logger.error(
            "Lead store rejected assignment",
            unit_id=str(unit_id),
            lead_id=payload.lead_id,
            status_code=e.status_code,
            error=str(e),
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="Lead store rejected assignment"
        )
    except DatabaseError as e:
        raise _storage_unavailable("assign_lead", e)

    if not outcome.assigned:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=outcome.reason.value)

    return LeadAssignmentResponse.from_outcome(payload.lead_id, outcome)


@router.get("/lead-sources/{record_id}/duplicates", response_model=DuplicateClusterResponse)
async def get_duplicate_cluster(
    record_id: UUID, detector: DuplicateDetector = Depends(get_duplicate_detector)
):
    """The record and every record linked to it as a duplicate."""
    try:
        cluster = await detector.get_cluster(str(record_id))
    except DatabaseError as e:
        logger.error("Lead source lookup failed", record_id=str(record_id), error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Lead source store unavailable"
        )

    if cluster is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Lead source not found: {record_id}"
        )

    return DuplicateClusterResponse(
        record_id=str(record_id),
        cluster_size=len(cluster),
        records=[LeadSourceResponse.from_record(r) for r in cluster],
    )
