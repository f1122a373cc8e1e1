"""
Tests for duplicate detection and cluster linking.
"""

import random
import uuid

import pytest

from leadflow.features.distribution.domain.models import LeadSourceRecord, NormalizedIdentity
from leadflow.features.distribution.pipeline.duplicates.linking import plan_cluster_links
from leadflow.features.distribution.pipeline.duplicates.service import DuplicateDetector


def _record(lead_id, email=None, phone=None, organization_id="org-1"):
    return LeadSourceRecord(
        id=str(uuid.uuid4()),
        lead_id=lead_id,
        organization_id=organization_id,
        source="website",
        identity=NormalizedIdentity(name=lead_id, email=email, phone=phone),
    )


def _assert_cluster_invariants(records):
    by_id = {r.id: r for r in records}
    for record in records:
        for other_id in record.duplicate_record_ids:
            assert other_id != record.id
            # Symmetric
            assert record.id in by_id[other_id].duplicate_record_ids
            # Transitively closed
            expected = set(by_id[other_id].duplicate_record_ids) - {record.id} | {other_id}
            assert expected == set(record.duplicate_record_ids)
        assert record.is_duplicate == bool(record.duplicate_record_ids)


@pytest.mark.asyncio
async def test_three_leads_with_same_email(detector, lead_source_repo):
    r1 = await detector.check_and_link(_record("L1", email="dup@test.com"))
    r2 = await detector.check_and_link(_record("L2", email="dup@test.com"))
    r3 = await detector.check_and_link(_record("L3", email="DUP@test.com "))

    s1, s2, s3 = (lead_source_repo.records[r.id] for r in (r1, r2, r3))

    assert s1.is_duplicate is True
    assert s1.duplicate_of is None
    assert set(s1.duplicate_record_ids) == {s2.id, s3.id}

    assert s2.duplicate_of == "L1"
    assert set(s2.duplicate_record_ids) == {s1.id, s3.id}

    assert s3.is_duplicate is True
    assert s3.duplicate_of == "L1"
    assert set(s3.duplicate_record_ids) == {s1.id, s2.id}


@pytest.mark.asyncio
async def test_first_record_is_original(detector, lead_source_repo):
    stored = await detector.check_and_link(_record("L1", email="solo@test.com"))

    assert stored.is_duplicate is False
    assert stored.duplicate_of is None
    assert stored.duplicate_record_ids == []


@pytest.mark.asyncio
async def test_empty_identity_never_matches(detector, lead_source_repo):
    await detector.check_and_link(_record("L1", email="", phone=" "))
    second = await detector.check_and_link(_record("L2", email="", phone=" "))

    assert second.is_duplicate is False


@pytest.mark.asyncio
async def test_matching_is_scoped_to_organization(detector):
    await detector.check_and_link(_record("L1", email="x@test.com", organization_id="org-1"))
    other = await detector.check_and_link(
        _record("L2", email="x@test.com", organization_id="org-2")
    )

    assert other.is_duplicate is False


@pytest.mark.asyncio
async def test_phone_match_links_records(detector, lead_source_repo):
    first = await detector.check_and_link(_record("L1", email="a@test.com", phone="555-0100"))
    second = await detector.check_and_link(_record("L2", email="b@test.com", phone=" 555-0100"))

    assert second.duplicate_of == "L1"
    assert lead_source_repo.records[first.id].duplicate_record_ids == [second.id]


@pytest.mark.asyncio
async def test_bridging_lead_merges_two_clusters(detector, lead_source_repo):
    a1 = await detector.check_and_link(_record("A1", email="a@test.com"))
    a2 = await detector.check_and_link(_record("A2", email="a@test.com"))
    b1 = await detector.check_and_link(_record("B1", phone="555-9"))
    bridge = await detector.check_and_link(_record("X", email="a@test.com", phone="555-9"))

    records = list(lead_source_repo.records.values())
    _assert_cluster_invariants(records)

    assert set(lead_source_repo.records[bridge.id].duplicate_record_ids) == {a1.id, a2.id, b1.id}
    assert lead_source_repo.records[b1.id].duplicate_of == "A1"
    assert lead_source_repo.records[a1.id].duplicate_of is None


@pytest.mark.asyncio
async def test_random_collisions_keep_graph_symmetric_and_closed(detector, lead_source_repo):
    rng = random.Random(1234)
    emails = [f"user{i}@test.com" for i in range(6)] + [None]
    phones = [f"555-{i}" for i in range(6)] + [None]

    for n in range(80):
        await detector.check_and_link(
            _record(f"L{n}", email=rng.choice(emails), phone=rng.choice(phones))
        )

    records = list(lead_source_repo.records.values())
    _assert_cluster_invariants(records)

    by_id = {r.id: r for r in records}
    for record in records:
        if not record.is_duplicate:
            continue
        cluster = [by_id[rid] for rid in record.duplicate_record_ids] + [record]
        roots = [r for r in cluster if r.duplicate_of is None]
        assert len(roots) == 1
        assert all(r.duplicate_of == roots[0].lead_id for r in cluster if r is not roots[0])


@pytest.mark.asyncio
async def test_lookup_failure_fails_open(detector, lead_source_repo):
    lead_source_repo.fail_lookup = True

    matches = await detector.find_duplicates("org-1", "dup@test.com", None)
    stored = await detector.check_and_link(_record("L1", email="dup@test.com"))

    assert matches == []
    assert stored.is_duplicate is False
    assert stored.id in lead_source_repo.records


@pytest.mark.asyncio
async def test_strict_mode_takes_identity_locks_in_sorted_order(lead_source_repo, fake_redis):
    detector = DuplicateDetector(
        repository=lead_source_repo, redis_client=fake_redis, strict_locking=True
    )

    await detector.check_and_link(_record("L1", email="Lock@Test.com", phone="555"))

    assert fake_redis.lock_calls == [
        "leadflow:dup:org-1:email:lock@test.com",
        "leadflow:dup:org-1:phone:555",
    ]
    # Released
    assert fake_redis.store == {}


@pytest.mark.asyncio
async def test_strict_mode_proceeds_when_lock_unavailable(lead_source_repo, fake_redis):
    fake_redis.refuse_locks = True
    detector = DuplicateDetector(
        repository=lead_source_repo, redis_client=fake_redis, strict_locking=True
    )

    await detector.check_and_link(_record("L1", email="a@test.com"))
    second = await detector.check_and_link(_record("L2", email="a@test.com"))

    assert second.is_duplicate is True


@pytest.mark.asyncio
async def test_get_cluster_returns_members_oldest_first(detector):
    r1 = await detector.check_and_link(_record("L1", email="c@test.com"))
    r2 = await detector.check_and_link(_record("L2", email="c@test.com"))

    cluster = await detector.get_cluster(r2.id)

    assert [r.lead_id for r in cluster] == ["L1", "L2"]
    assert await detector.get_cluster(str(uuid.uuid4())) is None
    assert r1.id in cluster[1].duplicate_record_ids


def test_plan_without_members_leaves_record_original():
    record = _record("L1", email="z@test.com")

    plan = plan_cluster_links(record, [])

    assert plan.member_updates == []
    assert record.is_duplicate is False
