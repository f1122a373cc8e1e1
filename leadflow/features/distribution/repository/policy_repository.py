"""
Persistence for distribution units and their assignment policies.

The policy document and its rotation state live in separate JSONB columns
so that admin edits (`update_policy`) and rotation advances
(`advance_rotation`) never overwrite each other.
"""

from collections.abc import Callable

from psycopg.types.json import Jsonb

from leadflow.db.helpers import DatabaseError, execute_query, fetch_one
from leadflow.db.pool import get_db_transaction
from leadflow.features.distribution.domain.models import (
    AssignmentPolicy,
    DistributionUnit,
    RotationState,
    SelectionOutcome,
)
from leadflow.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class PolicyRepositoryError(DatabaseError):
    """More specific exception for policy store failures."""


class DistributionUnitNotFound(Exception):
    def __init__(self, unit_id: str):
        super().__init__(f"Distribution unit not found: {unit_id}")
        self.unit_id = unit_id


class AssignmentPolicyRepository:
    """Persistence helpers for the distribution_units table."""

    UNIT_SELECT_COLUMNS = """
        id, organization_id, channel, unit_key, name, policy, rotation_state,
        total_leads, last_lead_received_at, created_at, updated_at
    """

    @classmethod
    def _row_to_unit(cls, row: dict | None) -> DistributionUnit | None:
        if not row:
            return None

        return DistributionUnit(
            id=str(row["id"]),
            organization_id=str(row["organization_id"]),
            channel=row["channel"],
            unit_key=row["unit_key"],
            name=row.get("name"),
            policy=AssignmentPolicy.from_dict(row.get("policy"), row.get("rotation_state")),
            total_leads=row.get("total_leads") or 0,
            last_lead_received_at=row.get("last_lead_received_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @classmethod
    async def register_unit(
        cls,
        organization_id: str,
        channel: str,
        unit_key: str,
        name: str | None = None,
        policy: AssignmentPolicy | None = None,
    ) -> DistributionUnit:
        """
        Create the unit, or return the existing one for the same key.

        An existing unit keeps its policy; only a new name is applied.
        """
        query = f"""
            INSERT INTO distribution_units (organization_id, channel, unit_key, name, policy)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (organization_id, channel, unit_key) DO UPDATE
            SET name = COALESCE(EXCLUDED.name, distribution_units.name),
                updated_at = NOW()
            RETURNING {cls.UNIT_SELECT_COLUMNS}
        """
        initial = policy or AssignmentPolicy()
        row = await fetch_one(
            query, (organization_id, channel, unit_key, name, Jsonb(initial.to_dict()))
        )
        if not row:
            raise PolicyRepositoryError(
                "Failed to register distribution unit", operation="register_unit"
            )

        logger.info(
            "Distribution unit registered",
            organization_id=organization_id,
            channel=channel,
            unit_key=unit_key,
        )
        return cls._row_to_unit(row)

    @classmethod
    async def get_unit(cls, unit_id: str) -> DistributionUnit | None:
        query = f"SELECT {cls.UNIT_SELECT_COLUMNS} FROM distribution_units WHERE id = %s"
        return cls._row_to_unit(await fetch_one(query, (unit_id,)))

    @classmethod
    async def get_unit_by_key(
        cls, organization_id: str, channel: str, unit_key: str
    ) -> DistributionUnit | None:
        query = f"""
            SELECT {cls.UNIT_SELECT_COLUMNS}
            FROM distribution_units
            WHERE organization_id = %s AND channel = %s AND unit_key = %s
        """
        return cls._row_to_unit(await fetch_one(query, (organization_id, channel, unit_key)))

    @classmethod
    async def update_policy(cls, unit_id: str, policy: AssignmentPolicy) -> DistributionUnit:
        """Replace the policy document. Rotation state is left as it was."""
        query = f"""
            UPDATE distribution_units
            SET policy = %s, updated_at = NOW()
            WHERE id = %s
            RETURNING {cls.UNIT_SELECT_COLUMNS}
        """
        row = await fetch_one(query, (Jsonb(policy.to_dict()), unit_id))
        if not row:
            raise DistributionUnitNotFound(unit_id)

        logger.info(
            "Assignment policy updated",
            unit_id=unit_id,
            enabled=policy.enabled,
            mode=policy.mode.value,
            algorithm=policy.algorithm.value,
            eligible_users=len(policy.eligible_users),
        )
        return cls._row_to_unit(row)

    @classmethod
    async def advance_rotation(
        cls, unit_id: str, select_fn: Callable[[AssignmentPolicy], SelectionOutcome]
    ) -> SelectionOutcome | None:
        """
        Run one selection step under the unit's row lock.

        The row is read with SELECT ... FOR UPDATE, `select_fn` picks from the
        locked policy and the new rotation state is written before commit, so
        concurrent callers for the same unit see each other's advances.

        Returns None when the unit does not exist.
        """
        select_query = f"""
            SELECT {cls.UNIT_SELECT_COLUMNS}
            FROM distribution_units
            WHERE id = %s
            FOR UPDATE
        """
        update_query = """
            UPDATE distribution_units
            SET rotation_state = %s
            WHERE id = %s
        """

        try:
            async with await get_db_transaction() as conn:
                unit = cls._row_to_unit(
                    await fetch_one(select_query, (unit_id,), connection=conn)
                )
                if unit is None:
                    return None

                outcome = select_fn(unit.policy)
                if outcome.new_state is not None:
                    await execute_query(
                        update_query,
                        (Jsonb(outcome.new_state.to_dict()), unit_id),
                        connection=conn,
                    )
        except DatabaseError:
            raise
        except Exception as e:
            logger.error("Failed to advance rotation", unit_id=unit_id, error=str(e))
            raise PolicyRepositoryError(
                f"Failed to advance rotation: {e}", operation="advance_rotation"
            ) from e

        return outcome

    @classmethod
    async def reset_rotation(cls, unit_id: str) -> DistributionUnit:
        query = f"""
            UPDATE distribution_units
            SET rotation_state = %s, updated_at = NOW()
            WHERE id = %s
            RETURNING {cls.UNIT_SELECT_COLUMNS}
        """
        row = await fetch_one(query, (Jsonb(RotationState().to_dict()), unit_id))
        if not row:
            raise DistributionUnitNotFound(unit_id)

        logger.info("Rotation state reset", unit_id=unit_id)
        return cls._row_to_unit(row)

    @classmethod
    async def record_lead_received(cls, unit_id: str) -> None:
        query = """
            UPDATE distribution_units
            SET total_leads = total_leads + 1,
                last_lead_received_at = NOW()
            WHERE id = %s
        """
        await execute_query(query, (unit_id,))
