"""
Duplicate detection service.

Looks up earlier records sharing an email or phone, then links the new
record into their cluster. Lookup failures never block ingestion: the
detector logs and carries on as if nothing matched.
"""

from __future__ import annotations

from leadflow.config import settings
from leadflow.db.helpers import DatabaseError
from leadflow.features.distribution.domain.models import LeadSourceRecord
from leadflow.features.distribution.pipeline.duplicates.linking import (
    apply_member_update,
    plan_cluster_links,
)
from leadflow.features.distribution.pipeline.duplicates.repository import (
    LeadSourceRepository,
    email_match_key,
    phone_match_key,
)
from leadflow.infrastructure.observability.logging import get_logger
from leadflow.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

LOOKUP_UNAVAILABLE = "DuplicateLookupUnavailable"


class DuplicateDetector:
    def __init__(
        self,
        repository=LeadSourceRepository,
        redis_client: FastRedisClient | None = None,
        strict_locking: bool | None = None,
    ):
        self.repository = repository
        self.redis = redis_client or fast_redis
        self.strict_locking = (
            settings.DUPLICATE_STRICT_LOCKING if strict_locking is None else strict_locking
        )

    async def find_duplicates(
        self, organization_id: str, email: str | None, phone: str | None
    ) -> list[LeadSourceRecord]:
        """Records in the organization matching on email or phone, oldest first."""
        if not email_match_key(email) and not phone_match_key(phone):
            return []

        try:
            return await self.repository.find_by_identity(organization_id, email, phone)
        except (DatabaseError, RuntimeError, TimeoutError) as e:
            logger.warning(
                "Duplicate lookup unavailable, treating lead as original",
                reason=LOOKUP_UNAVAILABLE,
                organization_id=organization_id,
                error=str(e),
            )
            return []

    async def _expand_cluster(
        self, organization_id: str, matches: list[LeadSourceRecord]
    ) -> list[LeadSourceRecord]:
        members = {record.id: record for record in matches}
        missing = {
            rid
            for record in matches
            for rid in record.duplicate_record_ids
            if rid not in members
        }
        if missing:
            for record in await self.repository.get_many(organization_id, sorted(missing)):
                members.setdefault(record.id, record)
        return list(members.values())

    async def link_cluster(
        self, new_record: LeadSourceRecord, matches: list[LeadSourceRecord]
    ) -> LeadSourceRecord:
        """
        Persist `new_record` and link it with every member of the matched cluster(s).

        The insert and all member updates commit together; `matches` (and any
        cluster mates loaded here) are updated in place to mirror what was
        written.
        """
        members = await self._expand_cluster(new_record.organization_id, matches) if matches else []
        plan = plan_cluster_links(new_record, members)

        stored = await self.repository.save_cluster(plan)

        by_id = {member.id: member for member in members}
        for update in plan.member_updates:
            apply_member_update(by_id[update.record_id], update)

        if plan.member_updates:
            logger.info(
                "Duplicate lead linked",
                record_id=new_record.id,
                lead_id=new_record.lead_id,
                duplicate_of=new_record.duplicate_of,
                cluster_size=len(plan.member_updates) + 1,
            )
        return stored or new_record

    def _lock_keys(self, record: LeadSourceRecord) -> list[str]:
        keys = []
        email_key = email_match_key(record.identity.email)
        phone_key = phone_match_key(record.identity.phone)
        if email_key:
            keys.append(f"leadflow:dup:{record.organization_id}:email:{email_key}")
        if phone_key:
            keys.append(f"leadflow:dup:{record.organization_id}:phone:{phone_key}")
        return sorted(keys)

    async def check_and_link(self, new_record: LeadSourceRecord) -> LeadSourceRecord:
        """
        Find duplicates for `new_record`, then persist it linked to them.

        In strict mode the lookup and link run under per-identity Redis locks
        taken in sorted key order. A lock that cannot be taken is skipped and
        the check runs unlocked.
        """
        held: list[tuple[str, str]] = []
        if self.strict_locking:
            for key in self._lock_keys(new_record):
                token = await self.redis.acquire_lock(
                    key, settings.DUPLICATE_LOCK_TTL_MS, settings.DUPLICATE_LOCK_WAIT_S
                )
                if token is None:
                    logger.warning(
                        "Identity lock unavailable, continuing without it",
                        organization_id=new_record.organization_id,
                        record_id=new_record.id,
                    )
                    continue
                held.append((key, token))

        try:
            matches = await self.find_duplicates(
                new_record.organization_id, new_record.identity.email, new_record.identity.phone
            )
            return await self.link_cluster(new_record, matches)
        finally:
            for key, token in reversed(held):
                await self.redis.release_lock(key, token)

    async def get_cluster(self, record_id: str) -> list[LeadSourceRecord] | None:
        """The record plus its linked duplicates, oldest first; None if unknown."""
        record = await self.repository.get(record_id)
        if record is None:
            return None
        others = await self.repository.get_many(record.organization_id, record.duplicate_record_ids)
        cluster = [record, *others]
        return sorted(cluster, key=lambda r: (r.created_at is None, r.created_at, r.id))
