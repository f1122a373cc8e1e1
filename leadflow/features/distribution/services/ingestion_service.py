"""
Ingestion coordinator.

Runs one lead through received -> normalized -> persisted ->
duplicate-checked -> assignment-attempted -> notified. Only the persisted
stage (creating the lead in the downstream store) is fatal. The others
degrade: the failure is logged, recorded in `stage_errors`, and the lead
keeps moving.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Coroutine
from typing import Any

from leadflow.db.helpers import DatabaseError
from leadflow.features.distribution.domain.models import (
    AssignmentMode,
    AssignmentReason,
    DistributionUnit,
    IngestRequest,
    IngestResult,
    LeadSourceRecord,
    NormalizedIdentity,
)
from leadflow.features.distribution.pipeline.assignment.selector import (
    resolve_specific_assignee,
    select_for_policy,
)
from leadflow.features.distribution.pipeline.duplicates.linking import plan_cluster_links
from leadflow.features.distribution.pipeline.duplicates.service import DuplicateDetector
from leadflow.features.distribution.pipeline.normalization.identity import normalize
from leadflow.features.distribution.repository.policy_repository import (
    AssignmentPolicyRepository,
)
from leadflow.infrastructure.observability.logging import get_logger, log_ingestion_stage_failure
from leadflow.services.leads_service_client import LeadsServiceClient, LeadsServiceError
from leadflow.services.notification_client import NotificationClient

logger = get_logger(__name__)

STAGE_RECEIVED = "received"
STAGE_NORMALIZED = "normalized"
STAGE_PERSISTED = "persisted"
STAGE_DUPLICATE_CHECKED = "duplicate-checked"
STAGE_ASSIGNMENT_ATTEMPTED = "assignment-attempted"
STAGE_NOTIFIED = "notified"


class IngestionCoordinator:
    def __init__(
        self,
        leads_client: LeadsServiceClient,
        notifier: NotificationClient,
        detector: DuplicateDetector | None = None,
        policy_repository=AssignmentPolicyRepository,
        lead_source_repository=None,
    ):
        self.leads_client = leads_client
        self.notifier = notifier
        self.detector = detector or DuplicateDetector()
        self.policy_repository = policy_repository
        self.lead_source_repository = lead_source_repository or self.detector.repository
        self._background_tasks: set[asyncio.Task] = set()

    async def ingest(
        self, request: IngestRequest, unit: DistributionUnit | None = None
    ) -> IngestResult:
        """
        Ingest one lead.

        Args:
            request: Normalized-or-raw lead payload from a channel adapter
            unit: Pre-resolved distribution unit; looked up by
                (organization, channel, key) when omitted

        Raises:
            DownstreamStoreUnavailable: the lead could not be created
        """
        org_id = request.organization_id
        unit_key = request.distribution_unit_key
        stage_errors: list[str] = []

        logger.info(
            "Lead received",
            stage=STAGE_RECEIVED,
            organization_id=org_id,
            distribution_unit_key=unit_key,
            source=request.channel_metadata.source,
        )

        identity = normalize(request.raw_fields)
        if not identity.has_identity:
            logger.warning(
                "Lead has no name, email or phone",
                stage=STAGE_NORMALIZED,
                organization_id=org_id,
                distribution_unit_key=unit_key,
            )

        lookup_failed = False
        if unit is None:
            unit, lookup_failed = await self._lookup_unit(request, stage_errors)

        policy = unit.policy if unit else None
        specific_assignee = None
        if policy and policy.enabled and policy.mode == AssignmentMode.specific:
            specific_assignee = resolve_specific_assignee(policy)

        # Fatal on failure
        lead_id = await self.leads_client.create_lead(
            organization_id=org_id,
            source=request.channel_metadata.source,
            name=identity.name,
            email=identity.email,
            phone=identity.phone,
            custom_fields=identity.custom_fields,
            metadata={
                "distributionUnitKey": unit_key,
                "sourceDetails": request.channel_metadata.source_details(),
                "ipAddress": request.channel_metadata.ip,
                "userAgent": request.channel_metadata.user_agent,
            },
            assigned_to=specific_assignee,
        )

        record = self._build_record(request, identity, lead_id, unit)
        record_saved = await self._check_duplicates(record, unit_key, stage_errors)

        assigned, assignee, reason = await self._attempt_assignment(
            record, record_saved, unit, specific_assignee, stage_errors, lookup_failed
        )

        if assigned and assignee:
            self._dispatch(
                self._notify(record, assignee),
                name=f"notify-{lead_id}",
            )
        if unit is not None:
            self._dispatch(self._record_stats(unit), name=f"stats-{unit.id}")

        logger.info(
            "Lead ingested",
            organization_id=org_id,
            distribution_unit_key=unit_key,
            lead_id=lead_id,
            assigned=assigned,
            assignee_user_id=assignee,
            reason=reason,
            is_duplicate=record.is_duplicate,
            stage_errors=stage_errors,
        )

        return IngestResult(
            lead_id=lead_id,
            assigned=assigned,
            assignee_user_id=assignee,
            reason=reason,
            is_duplicate=record.is_duplicate,
            duplicate_of=record.duplicate_of,
            record_id=record.id if record_saved else None,
            stage_errors=stage_errors,
        )

    async def _lookup_unit(
        self, request: IngestRequest, stage_errors: list[str]
    ) -> tuple[DistributionUnit | None, bool]:
        """Returns (unit, lookup_failed)."""
        try:
            unit = await self.policy_repository.get_unit_by_key(
                request.organization_id,
                request.channel_metadata.source,
                request.distribution_unit_key,
            )
            return unit, False
        except (DatabaseError, RuntimeError) as e:
            stage_errors.append(STAGE_ASSIGNMENT_ATTEMPTED)
            log_ingestion_stage_failure(
                STAGE_ASSIGNMENT_ATTEMPTED,
                e,
                request.organization_id,
                request.distribution_unit_key,
            )
            return None, True

    @staticmethod
    def _build_record(
        request: IngestRequest,
        identity: NormalizedIdentity,
        lead_id: str,
        unit: DistributionUnit | None,
    ) -> LeadSourceRecord:
        meta = request.channel_metadata
        return LeadSourceRecord(
            id=str(uuid.uuid4()),
            lead_id=lead_id,
            organization_id=request.organization_id,
            source=meta.source,
            identity=identity,
            source_details=meta.source_details(),
            distribution_unit_id=unit.id if unit else None,
            ip_address=meta.ip,
            user_agent=meta.user_agent,
        )

    async def _check_duplicates(
        self, record: LeadSourceRecord, unit_key: str, stage_errors: list[str]
    ) -> bool:
        """Returns whether the record row was written."""
        try:
            await self.detector.check_and_link(record)
            return True
        except (DatabaseError, RuntimeError) as e:
            stage_errors.append(STAGE_DUPLICATE_CHECKED)
            log_ingestion_stage_failure(
                STAGE_DUPLICATE_CHECKED, e, record.organization_id, unit_key, lead_id=record.lead_id
            )

        # Linking failed; store the record on its own so later stages have a row
        try:
            await self.lead_source_repository.save_cluster(plan_cluster_links(record, []))
            logger.warning(
                "Lead source stored without duplicate links",
                record_id=record.id,
                lead_id=record.lead_id,
            )
            return True
        except (DatabaseError, RuntimeError) as e:
            logger.error(
                "Failed to store lead source",
                record_id=record.id,
                lead_id=record.lead_id,
                error=str(e),
            )
            return False

    async def _attempt_assignment(
        self,
        record: LeadSourceRecord,
        record_saved: bool,
        unit: DistributionUnit | None,
        specific_assignee: str | None,
        stage_errors: list[str],
        lookup_failed: bool = False,
    ) -> tuple[bool, str | None, str]:
        """Returns (assigned, assignee_user_id, reason)."""
        if unit is None:
            await self._mark_processed(record, record_saved, None, stage_errors)
            if lookup_failed:
                return False, None, AssignmentReason.assignment_failed.value
            return False, None, AssignmentReason.policy_not_found.value

        policy = unit.policy
        if not policy.enabled:
            await self._mark_processed(record, record_saved, None, stage_errors)
            return False, None, AssignmentReason.policy_disabled.value
        if policy.mode == AssignmentMode.manual:
            await self._mark_processed(record, record_saved, None, stage_errors)
            return False, None, AssignmentReason.manual_mode.value

        if policy.mode == AssignmentMode.specific:
            if not specific_assignee:
                await self._mark_processed(record, record_saved, None, stage_errors)
                return False, None, AssignmentReason.no_specific_user.value
            # Already sent as assignedTo on create
            await self._mark_processed(record, record_saved, specific_assignee, stage_errors)
            return True, specific_assignee, AssignmentReason.specific_user.value

        # The policy is re-read under the row lock; it may have changed since lookup
        try:
            outcome = await self.policy_repository.advance_rotation(unit.id, select_for_policy)
        except (DatabaseError, RuntimeError) as e:
            stage_errors.append(STAGE_ASSIGNMENT_ATTEMPTED)
            log_ingestion_stage_failure(
                STAGE_ASSIGNMENT_ATTEMPTED,
                e,
                record.organization_id,
                unit.unit_key,
                lead_id=record.lead_id,
            )
            return False, None, AssignmentReason.assignment_failed.value

        if outcome is None:
            await self._mark_processed(record, record_saved, None, stage_errors)
            return False, None, AssignmentReason.policy_not_found.value
        if not outcome.assigned:
            await self._mark_processed(record, record_saved, None, stage_errors)
            return False, None, outcome.reason.value

        assignee = outcome.assignee_user_id
        try:
            await self.leads_client.assign_lead(
                record.lead_id,
                assignee,
                record.organization_id,
                reason=f"auto_assignment:{outcome.algorithm.value}",
            )
        except LeadsServiceError as e:
            stage_errors.append(STAGE_ASSIGNMENT_ATTEMPTED)
            log_ingestion_stage_failure(
                STAGE_ASSIGNMENT_ATTEMPTED,
                e,
                record.organization_id,
                unit.unit_key,
                lead_id=record.lead_id,
            )
            if await self._mark_pending(record, record_saved, assignee, str(e)):
                return True, assignee, AssignmentReason.assignment_push_pending.value
            return False, None, AssignmentReason.assignment_failed.value

        await self._mark_processed(record, record_saved, assignee, stage_errors)
        return True, assignee, outcome.reason.value

    async def _mark_pending(
        self, record: LeadSourceRecord, record_saved: bool, assignee: str, error: str
    ) -> bool:
        """Persist the owed push for the retry job. False when nothing could be written."""
        if not record_saved:
            logger.error(
                "Assignment push failed and no lead source row exists to retry from",
                lead_id=record.lead_id,
                assignee=assignee,
            )
            return False
        try:
            await self.lead_source_repository.mark_assignment_pending(record.id, assignee, error)
        except DatabaseError as e:
            logger.error(
                "Failed to record pending assignment",
                record_id=record.id,
                lead_id=record.lead_id,
                error=str(e),
            )
            return False
        record.pending_assignee = assignee
        return True

    async def _mark_processed(
        self,
        record: LeadSourceRecord,
        record_saved: bool,
        assignee: str | None,
        stage_errors: list[str],
    ) -> None:
        record.processed = True
        record.assigned_to = assignee
        if not record_saved:
            return
        try:
            await self.lead_source_repository.mark_processed(record.id, assignee)
        except DatabaseError as e:
            stage_errors.append(STAGE_ASSIGNMENT_ATTEMPTED)
            logger.error(
                "Failed to mark lead source processed",
                record_id=record.id,
                lead_id=record.lead_id,
                error=str(e),
            )

    def _dispatch(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _notify(self, record: LeadSourceRecord, assignee: str) -> None:
        try:
            await self.notifier.notify_lead_assigned(
                lead_id=record.lead_id,
                assigned_to=assignee,
                organization_id=record.organization_id,
                lead_summary={
                    "name": record.identity.name,
                    "email": record.identity.email,
                    "phone": record.identity.phone,
                    "source": record.source,
                    "isDuplicate": record.is_duplicate,
                },
            )
        except Exception as e:
            logger.warning(
                "Notification dispatch failed",
                stage=STAGE_NOTIFIED,
                lead_id=record.lead_id,
                error=str(e),
            )

    async def _record_stats(self, unit: DistributionUnit) -> None:
        try:
            await self.policy_repository.record_lead_received(unit.id)
        except Exception as e:
            logger.warning("Failed to update unit stats", unit_id=unit.id, error=str(e))

    async def drain(self) -> None:
        """Wait for outstanding notification and stats tasks."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
