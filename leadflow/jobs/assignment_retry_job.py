"""
Assignment retry job.

Re-pushes assignments whose push to the lead store failed during ingestion.
Those records carry a pending_assignee and stay unprocessed until a push
succeeds here. The assignee itself was already chosen and committed to the
rotation state; this job never selects again.
"""

import asyncio
import time
from datetime import UTC, datetime

from leadflow.config import settings
from leadflow.db.helpers import with_db_retry
from leadflow.db.pool import db_pool
from leadflow.features.distribution.domain.models import LeadSourceRecord
from leadflow.features.distribution.pipeline.duplicates.repository import LeadSourceRepository
from leadflow.infrastructure.observability.logging import get_logger
from leadflow.services.leads_service_client import LeadsServiceClient, LeadsServiceError

logger = get_logger(__name__)

PUSH_TIMEOUT_SECONDS = 30
ERROR_BACKOFF_SECONDS = 60


class AssignmentRetryMetrics:
    def __init__(self):
        self.reset()

    def reset(self):
        self.start_time = datetime.now(UTC)
        self.records_found = 0
        self.pushed = 0
        self.failed = 0
        self.total_duration_seconds = 0.0

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": "assignment_retry",
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "records_found": self.records_found,
            "pushed": self.pushed,
            "failed": self.failed,
        }


class AssignmentRetryJob:
    """Background job that drains pending assignment pushes in batches."""

    def __init__(
        self,
        leads_client: LeadsServiceClient | None = None,
        repository=LeadSourceRepository,
        batch_size: int | None = None,
        max_concurrency: int | None = None,
        min_age_seconds: int | None = None,
    ):
        self._leads_client = leads_client
        self.repository = repository
        self.batch_size = batch_size or settings.ASSIGNMENT_RETRY_BATCH_SIZE
        self.max_concurrency = max_concurrency or settings.ASSIGNMENT_RETRY_MAX_CONCURRENCY
        self.min_age_seconds = (
            settings.ASSIGNMENT_RETRY_MIN_AGE_S if min_age_seconds is None else min_age_seconds
        )
        self.is_running = False
        self.metrics = AssignmentRetryMetrics()

    @property
    def leads_client(self) -> LeadsServiceClient:
        if self._leads_client is None:
            self._leads_client = LeadsServiceClient()
        return self._leads_client

    async def run_once(self) -> dict:
        """Run a single pass over pending assignments."""
        if self.is_running:
            logger.warning("Assignment retry job already running, skipping this iteration")
            return {"skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.metrics.reset()

            pending = await self._load_pending()
            self.metrics.records_found = len(pending)

            if not pending:
                logger.debug("No pending assignments")
                self.metrics.finalize()
                return self.metrics.to_dict()

            semaphore = asyncio.Semaphore(self.max_concurrency)
            await asyncio.gather(
                *(self._push_with_semaphore(semaphore, record) for record in pending),
                return_exceptions=True,
            )

            self.metrics.finalize()
            metrics = self.metrics.to_dict()
            logger.info("Assignment retry job completed", **metrics)
            return metrics

        finally:
            self.is_running = False

    @with_db_retry(max_retries=3)
    async def _load_pending(self) -> list[LeadSourceRecord]:
        return await self.repository.list_pending_assignments(
            self.min_age_seconds, self.batch_size
        )

    async def _push_with_semaphore(
        self, semaphore: asyncio.Semaphore, record: LeadSourceRecord
    ) -> None:
        async with semaphore:
            await self._push(record)

    async def _push(self, record: LeadSourceRecord) -> None:
        start_time = time.time()
        try:
            await asyncio.wait_for(
                self.leads_client.assign_lead(
                    record.lead_id,
                    record.pending_assignee,
                    record.organization_id,
                    reason="auto_assignment_retry",
                ),
                timeout=PUSH_TIMEOUT_SECONDS,
            )
            await self._mark_processed(record)
        except (LeadsServiceError, TimeoutError) as e:
            self.metrics.failed += 1
            logger.warning(
                "Assignment push retry failed",
                record_id=record.id,
                lead_id=record.lead_id,
                assignee=record.pending_assignee,
                error=str(e) or type(e).__name__,
            )
            return
        except Exception as e:
            self.metrics.failed += 1
            logger.error(
                "Unexpected error retrying assignment push",
                record_id=record.id,
                lead_id=record.lead_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        self.metrics.pushed += 1
        logger.info(
            "Pending assignment pushed",
            record_id=record.id,
            lead_id=record.lead_id,
            assignee=record.pending_assignee,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )

    @with_db_retry(max_retries=3)
    async def _mark_processed(self, record: LeadSourceRecord) -> None:
        await self.repository.mark_processed(record.id, record.pending_assignee)


assignment_retry_job = AssignmentRetryJob()


async def run_assignment_retry_job() -> dict:
    """Run a single iteration of the assignment retry job."""
    return await assignment_retry_job.run_once()


async def start_assignment_retry_scheduler():
    """Run the retry job forever at ASSIGNMENT_RETRY_INTERVAL_S."""
    interval = settings.ASSIGNMENT_RETRY_INTERVAL_S
    logger.info("Starting assignment retry scheduler", interval_seconds=interval)

    if not db_pool._initialized:
        await db_pool.initialize()

    try:
        while True:
            try:
                await run_assignment_retry_job()
                await asyncio.sleep(interval)
            except Exception as e:
                logger.error(
                    "Error in assignment retry scheduler", error=str(e), error_type=type(e).__name__
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
    finally:
        await assignment_retry_job.leads_client.close()
        await db_pool.close()
