"""Recompute stored assignments after an experiment's variant set changes."""
from typing import Iterable, Sequence

from trafficlab.middleware.logging import get_logger
from trafficlab.schemas.allocation import RebalancePlan
from trafficlab.schemas.experiment import Assignment, Variant
from trafficlab.services.bucketing import assign_to_variant, check_variants

logger = get_logger()


def rebalance_traffic_allocation(
    experiment_id: str,
    new_variants: Sequence[Variant],
    existing_assignments: Iterable[Assignment],
) -> RebalancePlan:
    """
    Work out which users must move after a variant list edit.

    A user whose variant was removed always moves. Everyone else is
    re-bucketed against the new list and only moves if the answer changed,
    so users whose bucket still falls inside their variant see no churn.

    Args:
        experiment_id: Experiment being rebalanced
        new_variants: The variant list that will be live after the change
        existing_assignments: Currently stored assignments for the experiment

    Returns:
        RebalancePlan with kept assignments, assignments to replace and the
        new variant id for each replaced user. Applying it is up to the store.
    """
    check_variants(new_variants)
    live_ids = {v.id for v in new_variants}

    plan = RebalancePlan()
    removed = 0

    for assignment in existing_assignments:
        target = assign_to_variant(experiment_id, assignment.user_id, new_variants)

        if assignment.variant_id not in live_ids:
            removed += 1
            plan.to_reassign.append(assignment)
            plan.new_assignments[assignment.user_id] = target
        elif target != assignment.variant_id:
            plan.to_reassign.append(assignment)
            plan.new_assignments[assignment.user_id] = target
        else:
            plan.to_keep.append(assignment)

    logger.info(
        "rebalance_planned",
        experiment_id=experiment_id,
        kept=len(plan.to_keep),
        reassigned=len(plan.to_reassign),
        removed_variant=removed,
    )
    return plan
