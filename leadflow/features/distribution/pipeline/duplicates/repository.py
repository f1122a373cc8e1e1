"""
Persistence for lead source records and their duplicate links.
"""

from datetime import UTC, datetime, timedelta

from psycopg.types.json import Jsonb

from leadflow.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from leadflow.db.pool import get_db_transaction
from leadflow.features.distribution.domain.models import LeadSourceRecord, NormalizedIdentity
from leadflow.features.distribution.pipeline.duplicates.linking import ClusterLinkPlan
from leadflow.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class LeadSourceRepositoryError(DatabaseError):
    """More specific exception for lead source persistence failures."""


def email_match_key(email: str | None) -> str | None:
    return email.strip().lower() if email and email.strip() else None


def phone_match_key(phone: str | None) -> str | None:
    return phone.strip() if phone and phone.strip() else None


class LeadSourceRepository:
    """Persistence helpers for the lead_sources table."""

    SELECT_COLUMNS = """
        id, lead_id, organization_id, distribution_unit_id, source, source_details,
        name, email, phone, custom_fields,
        is_duplicate, duplicate_of, duplicate_record_ids,
        processed, processed_at, assigned_to, pending_assignee, error_message,
        ip_address, user_agent, created_at
    """

    @classmethod
    def _row_to_record(cls, row: dict | None) -> LeadSourceRecord | None:
        if not row:
            return None

        return LeadSourceRecord(
            id=str(row["id"]),
            lead_id=str(row["lead_id"]),
            organization_id=str(row["organization_id"]),
            distribution_unit_id=(
                str(row["distribution_unit_id"]) if row.get("distribution_unit_id") else None
            ),
            source=row["source"],
            source_details=row.get("source_details") or {},
            identity=NormalizedIdentity(
                name=row.get("name"),
                email=row.get("email"),
                phone=row.get("phone"),
                custom_fields=row.get("custom_fields") or {},
            ),
            is_duplicate=row["is_duplicate"],
            duplicate_of=row.get("duplicate_of"),
            duplicate_record_ids=[str(rid) for rid in row.get("duplicate_record_ids") or []],
            processed=row["processed"],
            processed_at=row.get("processed_at"),
            assigned_to=row.get("assigned_to"),
            pending_assignee=row.get("pending_assignee"),
            error_message=row.get("error_message"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at"),
        )

    @classmethod
    async def find_by_identity(
        cls, organization_id: str, email: str | None, phone: str | None
    ) -> list[LeadSourceRecord]:
        """Records in the organization sharing a non-empty email OR phone, oldest first."""

        email_key = email_match_key(email)
        phone_key = phone_match_key(phone)

        conditions = []
        params: list = [organization_id]
        if email_key:
            conditions.append("lower(btrim(email)) = %s")
            params.append(email_key)
        if phone_key:
            conditions.append("btrim(phone) = %s")
            params.append(phone_key)

        if not conditions:
            return []

        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM lead_sources
            WHERE organization_id = %s AND ({" OR ".join(conditions)})
            ORDER BY created_at, id
        """

        rows = await fetch_all(query, tuple(params))
        return [cls._row_to_record(row) for row in rows]

    @classmethod
    async def get_many(cls, organization_id: str, record_ids: list[str]) -> list[LeadSourceRecord]:
        if not record_ids:
            return []

        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM lead_sources
            WHERE organization_id = %s AND id = ANY(%s::uuid[])
            ORDER BY created_at, id
        """
        rows = await fetch_all(query, (organization_id, record_ids))
        return [cls._row_to_record(row) for row in rows]

    @classmethod
    async def get(cls, record_id: str) -> LeadSourceRecord | None:
        query = f"SELECT {cls.SELECT_COLUMNS} FROM lead_sources WHERE id = %s"
        return cls._row_to_record(await fetch_one(query, (record_id,)))

    @classmethod
    async def save_cluster(cls, plan: ClusterLinkPlan) -> LeadSourceRecord:
        """
        Insert the new record and add it to every member in one transaction.

        Member id arrays are merged server-side so links added by a
        concurrent ingestion are never overwritten.
        """
        record = plan.new_record

        insert_query = f"""
            INSERT INTO lead_sources (
                id, lead_id, organization_id, distribution_unit_id, source, source_details,
                name, email, phone, custom_fields,
                is_duplicate, duplicate_of, duplicate_record_ids,
                processed, ip_address, user_agent
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::uuid[], false, %s, %s)
            RETURNING {cls.SELECT_COLUMNS}
        """

        update_query = """
            UPDATE lead_sources
            SET is_duplicate = true,
                duplicate_of = %s,
                duplicate_record_ids = ARRAY(
                    SELECT DISTINCT unnest(duplicate_record_ids || %s::uuid[])
                )
            WHERE id = %s AND organization_id = %s
        """

        try:
            async with await get_db_transaction() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(
                        insert_query,
                        (
                            record.id,
                            record.lead_id,
                            record.organization_id,
                            record.distribution_unit_id,
                            record.source,
                            Jsonb(record.source_details),
                            record.identity.name,
                            record.identity.email,
                            record.identity.phone,
                            Jsonb(record.identity.custom_fields),
                            record.is_duplicate,
                            record.duplicate_of,
                            record.duplicate_record_ids,
                            record.ip_address,
                            record.user_agent,
                        ),
                    )
                    row = await cur.fetchone()

                for update in plan.member_updates:
                    await conn.execute(
                        update_query,
                        (
                            update.duplicate_of,
                            update.added_record_ids,
                            update.record_id,
                            record.organization_id,
                        ),
                    )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to save lead source cluster",
                record_id=record.id,
                organization_id=record.organization_id,
                member_count=len(plan.member_updates),
                error=str(e),
            )
            raise LeadSourceRepositoryError(
                f"Failed to save lead source: {e}", operation="save_cluster"
            ) from e

        logger.info(
            "Lead source stored",
            record_id=record.id,
            lead_id=record.lead_id,
            is_duplicate=record.is_duplicate,
            linked_members=len(plan.member_updates),
        )
        return cls._row_to_record(row)

    @classmethod
    async def mark_processed(cls, record_id: str, assigned_to: str | None) -> None:
        query = """
            UPDATE lead_sources
            SET processed = true,
                processed_at = NOW(),
                assigned_to = %s,
                pending_assignee = NULL,
                error_message = NULL
            WHERE id = %s
        """
        await execute_query(query, (assigned_to, record_id))

    @classmethod
    async def mark_assignment_pending(cls, record_id: str, assignee: str, error: str) -> None:
        """Leave the record unprocessed so the retry job pushes the assignment later."""
        query = """
            UPDATE lead_sources
            SET processed = false,
                pending_assignee = %s,
                error_message = %s
            WHERE id = %s
        """
        await execute_query(query, (assignee, (error or "")[:500], record_id))
        logger.warning("Assignment push pending", record_id=record_id, assignee=assignee)

    @classmethod
    async def list_pending_assignments(
        cls, min_age_seconds: int, limit: int
    ) -> list[LeadSourceRecord]:
        cutoff = datetime.now(UTC) - timedelta(seconds=min_age_seconds)
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM lead_sources
            WHERE processed = false
              AND pending_assignee IS NOT NULL
              AND created_at <= %s
            ORDER BY created_at
            LIMIT %s
        """
        rows = await fetch_all(query, (cutoff, limit))
        return [cls._row_to_record(row) for row in rows]
