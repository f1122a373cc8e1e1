"""
Tests for the pure assignment selector.
"""

import random
from collections import Counter

from leadflow.features.distribution.domain.models import (
    AssignmentAlgorithm,
    AssignmentMode,
    AssignmentPolicy,
    AssignmentReason,
    EligibleUser,
    RotationState,
)
from leadflow.features.distribution.pipeline.assignment.selector import (
    preview_next,
    resolve_specific_assignee,
    select_next,
)


def _policy(users, algorithm=AssignmentAlgorithm.round_robin, state=None, weights=None, **kwargs):
    weights = weights or {}
    return AssignmentPolicy(
        enabled=True,
        mode=AssignmentMode.auto,
        algorithm=algorithm,
        eligible_users=[EligibleUser(user_id=u, weight=weights.get(u, 1)) for u in users],
        rotation_state=state or RotationState(),
        **kwargs,
    )


def _run(policy, picks, rng=None):
    chosen = []
    for _ in range(picks):
        outcome = select_next(policy, rng=rng)
        chosen.append(outcome.assignee_user_id)
        policy.rotation_state = outcome.new_state
    return chosen


def test_round_robin_wraps_to_first_user():
    policy = _policy(["A", "B", "C"], state=RotationState(last_assigned_index=2))

    outcome = select_next(policy)

    assert outcome.assigned is True
    assert outcome.assignee_user_id == "A"
    assert outcome.new_state.last_assigned_index == 0
    assert outcome.new_state.last_assigned_user_id == "A"
    assert outcome.reason == AssignmentReason.assigned


def test_round_robin_first_assignment_is_index_zero():
    outcome = select_next(_policy(["A", "B"]))

    assert outcome.assignee_user_id == "A"
    assert outcome.new_state.last_assigned_index == 0


def test_round_robin_is_fair_over_multiples_of_n():
    users = ["A", "B", "C", "D"]
    policy = _policy(users)

    counts = Counter(_run(policy, 4 * 25))

    assert all(counts[user] == 25 for user in users)


def test_round_robin_stale_index_is_taken_modulo_n():
    policy = _policy(["A", "B"], state=RotationState(last_assigned_index=4))

    # 4 % 2 == 0 -> next is index 1
    assert select_next(policy).assignee_user_id == "B"


def test_inactive_users_are_skipped():
    policy = _policy(["A", "B", "C"])
    policy.eligible_users[1].is_active = False

    assert _run(policy, 4) == ["A", "C", "A", "C"]


def test_select_does_not_mutate_input_state():
    state = RotationState(last_assigned_index=0, assignment_counts={"A": 1})
    policy = _policy(["A", "B"], state=state)

    select_next(policy)

    assert policy.rotation_state.last_assigned_index == 0
    assert policy.rotation_state.assignment_counts == {"A": 1}


def test_no_eligible_users_is_not_an_error():
    outcome = select_next(_policy([]))

    assert outcome.assigned is False
    assert outcome.assignee_user_id is None
    assert outcome.new_state is None
    assert outcome.reason == AssignmentReason.no_eligible_users


def test_weighted_round_robin_is_exactly_proportional():
    policy = _policy(
        ["A", "B", "C"],
        algorithm=AssignmentAlgorithm.weighted_round_robin,
        weights={"A": 5, "B": 1, "C": 1},
    )

    counts = Counter(_run(policy, 700))

    assert counts == {"A": 500, "B": 100, "C": 100}


def test_weighted_round_robin_interleaves_picks():
    policy = _policy(
        ["A", "B"], algorithm=AssignmentAlgorithm.weighted_round_robin, weights={"A": 2, "B": 1}
    )

    assert _run(policy, 6) == ["A", "B", "A", "A", "B", "A"]


def test_weighted_round_robin_equal_weights_matches_round_robin():
    policy = _policy(["A", "B", "C"], algorithm=AssignmentAlgorithm.weighted_round_robin)

    assert _run(policy, 6) == ["A", "B", "C", "A", "B", "C"]


def test_weighted_round_robin_drops_credit_of_removed_users():
    policy = _policy(
        ["A", "B"], algorithm=AssignmentAlgorithm.weighted_round_robin, weights={"A": 3}
    )
    _run(policy, 3)
    policy.eligible_users = [EligibleUser(user_id="B"), EligibleUser(user_id="C")]

    outcome = select_next(policy)

    assert "A" not in outcome.new_state.credits


def test_least_assigned_picks_lowest_count_with_list_order_ties():
    state = RotationState(assignment_counts={"A": 3, "B": 1, "C": 1})
    policy = _policy(["A", "B", "C"], algorithm=AssignmentAlgorithm.least_assigned, state=state)

    outcome = select_next(policy)

    assert outcome.assignee_user_id == "B"
    assert outcome.new_state.assignment_counts == {"A": 3, "B": 2, "C": 1}


def test_least_assigned_levels_out_newcomers():
    state = RotationState(assignment_counts={"A": 2, "B": 2})
    policy = _policy(["A", "B", "C"], algorithm=AssignmentAlgorithm.least_assigned, state=state)

    assert _run(policy, 3) == ["C", "C", "A"]


def test_random_uses_injected_rng_and_is_flagged_nondeterministic():
    policy = _policy(["A", "B", "C"], algorithm=AssignmentAlgorithm.random)

    first = [select_next(policy, rng=random.Random(7)).assignee_user_id for _ in range(5)]
    outcome = select_next(policy, rng=random.Random(7))

    assert len(set(first)) == 1
    assert outcome.assignee_user_id == first[0]
    assert outcome.deterministic is False


def test_random_only_picks_active_users():
    policy = _policy(["A", "B", "C"], algorithm=AssignmentAlgorithm.random)
    policy.eligible_users[0].is_active = False

    picks = set(_run(policy, 50, rng=random.Random(1)))

    assert picks <= {"B", "C"}


def test_every_algorithm_counts_assignments():
    for algorithm in AssignmentAlgorithm:
        policy = _policy(["A", "B"], algorithm=algorithm)
        _run(policy, 4, rng=random.Random(3))
        assert sum(policy.rotation_state.assignment_counts.values()) == 4


def test_specific_mode_always_returns_configured_user():
    policy = _policy(
        ["A", "B"], state=RotationState(last_assigned_index=0), assign_to_user="U"
    )
    policy.mode = AssignmentMode.specific

    for _ in range(5):
        assert resolve_specific_assignee(policy) == "U"
        outcome = preview_next(policy)
        assert outcome.assignee_user_id == "U"
        assert outcome.reason == AssignmentReason.specific_user
    assert policy.rotation_state.last_assigned_index == 0


def test_preview_matches_select_and_persists_nothing():
    policy = _policy(["A", "B", "C"], state=RotationState(last_assigned_index=0))

    preview = preview_next(policy)

    assert preview.assignee_user_id == select_next(policy).assignee_user_id == "B"
    assert policy.rotation_state.last_assigned_index == 0


def test_preview_reports_disabled_and_manual():
    disabled = _policy(["A"])
    disabled.enabled = False
    manual = _policy(["A"])
    manual.mode = AssignmentMode.manual

    assert preview_next(disabled).reason == AssignmentReason.policy_disabled
    assert preview_next(manual).reason == AssignmentReason.manual_mode
