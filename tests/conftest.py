import asyncio
import copy
import uuid
from datetime import UTC, datetime, timedelta

import pytest

from leadflow.features.distribution.domain.models import (
    AssignmentPolicy,
    ChannelMetadata,
    DistributionUnit,
    IngestRequest,
    RotationState,
)
from leadflow.features.distribution.pipeline.duplicates.linking import apply_member_update
from leadflow.features.distribution.pipeline.duplicates.repository import (
    LeadSourceRepositoryError,
    email_match_key,
    phone_match_key,
)
from leadflow.features.distribution.pipeline.duplicates.service import DuplicateDetector
from leadflow.features.distribution.repository.policy_repository import DistributionUnitNotFound
from leadflow.features.distribution.services.ingestion_service import IngestionCoordinator
from leadflow.services.leads_service_client import DownstreamStoreUnavailable, LeadsServiceError

BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.lock_calls: list[str] = []
        self.refuse_locks = False

    async def acquire_lock(self, key: str, ttl_ms: int, wait_s: float) -> str | None:
        self.lock_calls.append(key)
        if self.refuse_locks:
            return None
        while key in self.store:
            await asyncio.sleep(0)
        token = uuid.uuid4().hex
        self.store[key] = token
        return token

    async def release_lock(self, key: str, token: str) -> bool:
        if self.store.get(key) == token:
            del self.store[key]
            return True
        return False

    async def ping(self) -> bool:
        return True


class FakeLeadSourceRepository:
    """In-memory stand-in for LeadSourceRepository; returns copies like a database would."""

    def __init__(self):
        self.records: dict[str, object] = {}
        self.fail_lookup = False
        self.fail_save = False
        self.fail_linked_save = False
        self._tick = 0

    def _next_time(self) -> datetime:
        self._tick += 1
        return BASE_TIME + timedelta(seconds=self._tick)

    async def find_by_identity(self, organization_id, email, phone):
        if self.fail_lookup:
            raise LeadSourceRepositoryError("connection refused", operation="fetch_all")
        email_key = email_match_key(email)
        phone_key = phone_match_key(phone)
        matches = [
            record
            for record in self.records.values()
            if record.organization_id == organization_id
            and (
                (email_key and email_match_key(record.identity.email) == email_key)
                or (phone_key and phone_match_key(record.identity.phone) == phone_key)
            )
        ]
        return [copy.deepcopy(r) for r in sorted(matches, key=lambda r: (r.created_at, r.id))]

    async def get_many(self, organization_id, record_ids):
        found = [
            self.records[rid]
            for rid in record_ids
            if rid in self.records and self.records[rid].organization_id == organization_id
        ]
        return [copy.deepcopy(r) for r in sorted(found, key=lambda r: (r.created_at, r.id))]

    async def get(self, record_id):
        record = self.records.get(record_id)
        return copy.deepcopy(record) if record else None

    async def save_cluster(self, plan):
        if self.fail_save:
            raise LeadSourceRepositoryError("insert failed", operation="save_cluster")
        if self.fail_linked_save and plan.member_updates:
            raise LeadSourceRepositoryError("member update failed", operation="save_cluster")
        record = copy.deepcopy(plan.new_record)
        if record.created_at is None:
            record.created_at = self._next_time()
        self.records[record.id] = record
        for update in plan.member_updates:
            apply_member_update(self.records[update.record_id], update)
        return copy.deepcopy(record)

    async def mark_processed(self, record_id, assigned_to):
        record = self.records[record_id]
        record.processed = True
        record.processed_at = self._next_time()
        record.assigned_to = assigned_to
        record.pending_assignee = None
        record.error_message = None

    async def mark_assignment_pending(self, record_id, assignee, error):
        record = self.records[record_id]
        record.processed = False
        record.pending_assignee = assignee
        record.error_message = error

    async def list_pending_assignments(self, min_age_seconds, limit):
        pending = [
            r for r in self.records.values() if not r.processed and r.pending_assignee is not None
        ]
        return [copy.deepcopy(r) for r in sorted(pending, key=lambda r: r.created_at)[:limit]]


class FakePolicyRepository:
    """In-memory policy store serializing rotation advances with one lock per unit."""

    def __init__(self):
        self.units: dict[str, DistributionUnit] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self.fail_advance = False
        self.fail_unit_lookup = False
        self.lead_counts: dict[str, int] = {}

    async def register_unit(self, organization_id, channel, unit_key, name=None, policy=None):
        for unit in self.units.values():
            if (unit.organization_id, unit.channel, unit.unit_key) == (
                organization_id,
                channel,
                unit_key,
            ):
                if name:
                    unit.name = name
                return copy.deepcopy(unit)
        unit = DistributionUnit(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            channel=channel,
            unit_key=unit_key,
            name=name,
            policy=copy.deepcopy(policy) if policy else AssignmentPolicy(),
            created_at=BASE_TIME,
            updated_at=BASE_TIME,
        )
        self.units[unit.id] = unit
        self._locks[unit.id] = asyncio.Lock()
        return copy.deepcopy(unit)

    async def get_unit(self, unit_id):
        unit = self.units.get(unit_id)
        return copy.deepcopy(unit) if unit else None

    async def get_unit_by_key(self, organization_id, channel, unit_key):
        if self.fail_unit_lookup:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        for unit in self.units.values():
            if (unit.organization_id, unit.channel, unit.unit_key) == (
                organization_id,
                channel,
                unit_key,
            ):
                return copy.deepcopy(unit)
        return None

    async def update_policy(self, unit_id, policy):
        unit = self.units.get(unit_id)
        if unit is None:
            raise DistributionUnitNotFound(unit_id)
        state = unit.policy.rotation_state
        unit.policy = copy.deepcopy(policy)
        unit.policy.rotation_state = state
        return copy.deepcopy(unit)

    async def advance_rotation(self, unit_id, select_fn):
        if self.fail_advance:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        if unit_id not in self.units:
            return None
        async with self._locks[unit_id]:
            policy = copy.deepcopy(self.units[unit_id].policy)
            # Yield while holding the lock so concurrent callers really queue
            await asyncio.sleep(0)
            outcome = select_fn(policy)
            if outcome.new_state is not None:
                self.units[unit_id].policy.rotation_state = outcome.new_state
            return outcome

    async def reset_rotation(self, unit_id):
        unit = self.units.get(unit_id)
        if unit is None:
            raise DistributionUnitNotFound(unit_id)
        unit.policy.rotation_state = RotationState()
        return copy.deepcopy(unit)

    async def record_lead_received(self, unit_id):
        self.lead_counts[unit_id] = self.lead_counts.get(unit_id, 0) + 1
        self.units[unit_id].total_leads += 1


class FakeLeadsClient:
    def __init__(self):
        self.created: list[dict] = []
        self.assigned: list[tuple[str, str, str]] = []
        self.fail_create = False
        self.fail_assign = False
        self.healthy = True

    async def create_lead(self, organization_id, source, name, email, phone, **kwargs):
        if self.fail_create:
            raise DownstreamStoreUnavailable("Lead store unreachable", operation="create_lead")
        lead_id = f"lead-{len(self.created) + 1}"
        self.created.append(
            {
                "lead_id": lead_id,
                "organization_id": organization_id,
                "source": source,
                "name": name,
                "email": email,
                "phone": phone,
                **kwargs,
            }
        )
        return lead_id

    async def assign_lead(self, lead_id, assigned_to, organization_id, reason="auto_assignment"):
        if self.fail_assign:
            raise LeadsServiceError("Assign rejected (HTTP 502)", status_code=502)
        self.assigned.append((lead_id, assigned_to, organization_id))

    async def check_health(self) -> bool:
        return self.healthy


class FakeNotifier:
    def __init__(self):
        self.sent: list[dict] = []
        self.fail = False

    async def notify_lead_assigned(self, lead_id, assigned_to, organization_id, lead_summary):
        if self.fail:
            raise RuntimeError("notification service down")
        self.sent.append(
            {"lead_id": lead_id, "assigned_to": assigned_to, "organization_id": organization_id}
        )
        return True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def lead_source_repo():
    return FakeLeadSourceRepository()


@pytest.fixture
def policy_repo():
    return FakePolicyRepository()


@pytest.fixture
def leads_client():
    return FakeLeadsClient()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def detector(lead_source_repo, fake_redis):
    return DuplicateDetector(
        repository=lead_source_repo, redis_client=fake_redis, strict_locking=False
    )


@pytest.fixture
def coordinator(leads_client, notifier, detector, policy_repo, lead_source_repo):
    return IngestionCoordinator(
        leads_client=leads_client,
        notifier=notifier,
        detector=detector,
        policy_repository=policy_repo,
        lead_source_repository=lead_source_repo,
    )


@pytest.fixture
def make_request():
    def _make(
        raw_fields: dict,
        organization_id: str = "org-1",
        unit_key: str = "form-1",
        source: str = "website",
    ) -> IngestRequest:
        return IngestRequest(
            organization_id=organization_id,
            distribution_unit_key=unit_key,
            raw_fields=raw_fields,
            channel_metadata=ChannelMetadata(source=source, form_id=unit_key, ip="203.0.113.7"),
        )

    return _make
