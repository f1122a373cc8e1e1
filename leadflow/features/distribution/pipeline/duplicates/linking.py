"""
Duplicate cluster planning.

Given a new record and every existing member of the cluster(s) it matched,
work out the final link fields for all of them. Keeping this pure lets the
repository apply the plan in one transaction and lets tests check the graph
invariants without a database.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from leadflow.features.distribution.domain.models import LeadSourceRecord

_EPOCH = datetime.min.replace(tzinfo=UTC)


@dataclass(slots=True)
class MemberLinkUpdate:
    record_id: str
    duplicate_of: str | None
    added_record_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ClusterLinkPlan:
    new_record: LeadSourceRecord
    member_updates: list[MemberLinkUpdate] = field(default_factory=list)


def _age_key(record: LeadSourceRecord) -> tuple[datetime, str]:
    return (record.created_at or _EPOCH, record.id)


def plan_cluster_links(
    new_record: LeadSourceRecord, members: list[LeadSourceRecord]
) -> ClusterLinkPlan:
    """
    Link `new_record` into the cluster formed by `members`.

    `members` must already include the cluster mates of every direct match,
    so that a lead bridging two clusters merges them into one closed set.
    The earliest member is the root: its duplicate_of stays as it was (null
    for a well-formed cluster), every other member points at the root's
    lead id, and every member lists every other member.
    """
    unique: dict[str, LeadSourceRecord] = {}
    for member in members:
        if member.id != new_record.id:
            unique.setdefault(member.id, member)

    if not unique:
        new_record.is_duplicate = False
        new_record.duplicate_of = None
        new_record.duplicate_record_ids = []
        return ClusterLinkPlan(new_record=new_record)

    ordered = sorted(unique.values(), key=_age_key)
    root = ordered[0]
    root_lead_id = root.duplicate_of or root.lead_id
    all_ids = [member.id for member in ordered] + [new_record.id]

    new_record.is_duplicate = True
    new_record.duplicate_of = root_lead_id
    new_record.duplicate_record_ids = [member.id for member in ordered]

    updates = []
    for member in ordered:
        known = set(member.duplicate_record_ids)
        added = [rid for rid in all_ids if rid != member.id and rid not in known]
        updates.append(
            MemberLinkUpdate(
                record_id=member.id,
                duplicate_of=member.duplicate_of if member is root else root_lead_id,
                added_record_ids=added,
            )
        )

    return ClusterLinkPlan(new_record=new_record, member_updates=updates)


def apply_member_update(record: LeadSourceRecord, update: MemberLinkUpdate) -> None:
    """Apply a planned update to an in-memory record."""
    record.is_duplicate = True
    record.duplicate_of = update.duplicate_of
    for rid in update.added_record_ids:
        if rid not in record.duplicate_record_ids:
            record.duplicate_record_ids.append(rid)
