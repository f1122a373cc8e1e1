"""
Assignment selector - picks the next assignee for a distribution unit.

Everything here is pure: the policy passed in is never mutated and a fresh
RotationState comes back on the outcome. Persisting that state (under the
per-unit lock) is the caller's job, see
AssignmentPolicyRepository.advance_rotation.
"""

from __future__ import annotations

import random
from collections.abc import Callable
from datetime import UTC, datetime

from leadflow.features.distribution.domain.models import (
    AssignmentAlgorithm,
    AssignmentMode,
    AssignmentPolicy,
    AssignmentReason,
    EligibleUser,
    RotationState,
    SelectionOutcome,
)

PickResult = tuple[int, dict[str, int] | None]


def _round_robin(state: RotationState, active: list[EligibleUser]) -> PickResult:
    count = len(active)
    last = state.last_assigned_index
    if last is None:
        return 0, None
    # A stale index from a larger eligible set wraps instead of failing
    return (last % count + 1) % count, None


def _weighted_round_robin(state: RotationState, active: list[EligibleUser]) -> PickResult:
    """
    Smooth weighted round-robin.

    Every round each user earns its weight in credit; the richest user wins
    and pays back the total weight. Over sum(weights) rounds each user is
    picked exactly `weight` times, interleaved rather than in bursts.
    """
    credits = {user.user_id: state.credits.get(user.user_id, 0) + user.weight for user in active}
    total_weight = sum(user.weight for user in active)

    best_index = 0
    for index, user in enumerate(active):
        if credits[user.user_id] > credits[active[best_index].user_id]:
            best_index = index

    credits[active[best_index].user_id] -= total_weight
    return best_index, credits


def _least_assigned(state: RotationState, active: list[EligibleUser]) -> PickResult:
    best_index = 0
    best_count = state.assignment_counts.get(active[0].user_id, 0)
    for index, user in enumerate(active[1:], start=1):
        user_count = state.assignment_counts.get(user.user_id, 0)
        if user_count < best_count:
            best_index, best_count = index, user_count
    return best_index, None


ALGORITHMS: dict[AssignmentAlgorithm, Callable[[RotationState, list[EligibleUser]], PickResult]] = {
    AssignmentAlgorithm.round_robin: _round_robin,
    AssignmentAlgorithm.weighted_round_robin: _weighted_round_robin,
    AssignmentAlgorithm.least_assigned: _least_assigned,
}


def select_next(
    policy: AssignmentPolicy,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> SelectionOutcome:
    """
    Choose the next assignee according to the policy's algorithm.

    Args:
        policy: Policy with eligible users and the current rotation state
        rng: Random source for the `random` algorithm
        now: Timestamp recorded as last_assigned_at

    Returns:
        SelectionOutcome. No active users is a normal unassigned outcome
        (reason=no_eligible_users), never an exception.
    """
    algorithm = policy.algorithm
    active = policy.active_users()
    if not active:
        return SelectionOutcome(
            assigned=False,
            algorithm=algorithm,
            reason=AssignmentReason.no_eligible_users,
        )

    state = policy.rotation_state

    if algorithm == AssignmentAlgorithm.random:
        index = (rng or random.Random()).randrange(len(active))
        credits = None
    else:
        index, credits = ALGORITHMS[algorithm](state, active)

    chosen = active[index]
    counts = dict(state.assignment_counts)
    counts[chosen.user_id] = counts.get(chosen.user_id, 0) + 1

    new_state = RotationState(
        last_assigned_index=index,
        last_assigned_user_id=chosen.user_id,
        last_assigned_at=now or datetime.now(UTC),
        credits=credits if credits is not None else dict(state.credits),
        assignment_counts=counts,
    )

    return SelectionOutcome(
        assigned=True,
        algorithm=algorithm,
        assignee_user_id=chosen.user_id,
        new_state=new_state,
        reason=AssignmentReason.assigned,
        deterministic=algorithm != AssignmentAlgorithm.random,
    )


def resolve_specific_assignee(policy: AssignmentPolicy) -> str | None:
    """Constant-time path for mode=specific; rotation state is not consulted."""
    if policy.mode != AssignmentMode.specific:
        return None
    return policy.assign_to_user or None


def select_for_policy(
    policy: AssignmentPolicy,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> SelectionOutcome:
    """
    Apply the policy gates, then select.

    Disabled and manual policies assign nobody. Specific mode names its user
    without touching rotation state. Only auto mode runs `select_next`.
    """
    if not policy.enabled:
        return SelectionOutcome(
            assigned=False, algorithm=policy.algorithm, reason=AssignmentReason.policy_disabled
        )
    if policy.mode == AssignmentMode.manual:
        return SelectionOutcome(
            assigned=False, algorithm=policy.algorithm, reason=AssignmentReason.manual_mode
        )
    if policy.mode == AssignmentMode.specific:
        assignee = resolve_specific_assignee(policy)
        return SelectionOutcome(
            assigned=assignee is not None,
            algorithm=policy.algorithm,
            assignee_user_id=assignee,
            reason=(
                AssignmentReason.specific_user if assignee else AssignmentReason.no_specific_user
            ),
        )
    return select_next(policy, rng=rng, now=now)


def preview_next(
    policy: AssignmentPolicy, *, rng: random.Random | None = None
) -> SelectionOutcome:
    """Read-only preview of the next assignment. Nothing is persisted."""
    return select_for_policy(policy, rng=rng)
