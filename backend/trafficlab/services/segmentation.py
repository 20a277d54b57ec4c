"""User segmentation and stratified sampling."""
from typing import Any, Dict, List, Mapping, Optional, Sequence

from trafficlab.middleware.logging import get_logger
from trafficlab.schemas.experiment import Variant
from trafficlab.schemas.segmentation import (
    SegmentCondition,
    SegmentDefinition,
    SegmentOverlap,
    SegmentOverlapReport,
    StratifiedUser,
    StratumAssignment,
    UserProfile,
)
from trafficlab.services.bucketing import assign_to_variant, bucket_value, traffic_total

logger = get_logger()


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(properties: Mapping[str, Any], condition: SegmentCondition) -> bool:
    """Evaluate one condition against a user's properties."""
    actual = properties.get(condition.property)
    expected = condition.value
    op = condition.operator

    if op == "equals":
        return actual == expected
    if op == "not_equals":
        return actual != expected
    if op in ("greater_than", "less_than"):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return left > right if op == "greater_than" else left < right
    if op == "contains":
        if actual is None:
            return False
        if isinstance(actual, (list, tuple, set, frozenset)):
            return expected in actual
        return str(expected) in str(actual)
    if op == "in":
        return isinstance(expected, (list, tuple, set)) and actual in expected
    if op == "not_in":
        return isinstance(expected, (list, tuple, set)) and actual not in expected
    return False


def matches_segment(properties: Mapping[str, Any], conditions: Sequence[SegmentCondition]) -> bool:
    """True when every condition holds (an empty list matches everyone)."""
    return all(evaluate_condition(properties, condition) for condition in conditions)


def segment_users(
    users: Sequence[UserProfile],
    segment_definitions: Sequence[SegmentDefinition],
) -> Dict[str, List[str]]:
    """
    Classify users into every segment they satisfy.

    Segments can overlap; a user may land in none, one or several.

    Returns:
        segment name -> user ids, one key per definition even when empty
    """
    segments: Dict[str, List[str]] = {definition.name: [] for definition in segment_definitions}

    for user in users:
        for definition in segment_definitions:
            if matches_segment(user.properties, definition.conditions):
                segments[definition.name].append(user.id)

    logger.info(
        "users_segmented",
        users=len(users),
        segment_sizes={name: len(ids) for name, ids in segments.items()},
    )
    return segments


def analyze_segment_overlap(segments: Mapping[str, Sequence[str]]) -> SegmentOverlapReport:
    """
    Pairwise overlap and per-segment exclusivity.

    overlap % = |A & B| / min(|A|, |B|) * 100, reported for pairs that share
    at least one user. exclusivity % = share of a segment's users found in
    no other segment (0 for an empty segment).
    """
    names = list(segments)
    members = {name: set(segments[name]) for name in names}
    report = SegmentOverlapReport()

    for i, first in enumerate(names):
        for second in names[i + 1:]:
            shared = [user for user in dict.fromkeys(segments[first]) if user in members[second]]
            if not shared:
                continue
            smaller = min(len(members[first]), len(members[second]))
            report.overlaps.append(SegmentOverlap(
                segments=[first, second],
                users=shared,
                percentage=len(shared) / smaller * 100,
            ))

    for name in names:
        if not members[name]:
            report.exclusivity[name] = 0.0
            continue
        others = set()
        for other in names:
            if other != name:
                others |= members[other]
        exclusive = members[name] - others
        report.exclusivity[name] = len(exclusive) / len(members[name]) * 100

    return report


def adjust_variant_weights(variants: Sequence[Variant], weight: float) -> List[Variant]:
    """Multiply every variant's traffic percentage by ``weight``."""
    return [
        v.model_copy(update={"traffic_percentage": v.traffic_percentage * weight})
        for v in variants
    ]


def stratified_sampling(
    users: Sequence[StratifiedUser],
    variants: Sequence[Variant],
    stratum_weights: Optional[Mapping[str, float]] = None,
) -> Dict[str, List[StratumAssignment]]:
    """
    Assign users stratum by stratum.

    Each stratum buckets under its own namespace ("stratum_<name>"), so the
    same user id gets an independent bucket value per stratum. A non-zero
    weight for a stratum scales the variant percentages for that stratum
    only; a missing or zero weight leaves them unchanged.

    Returns:
        stratum -> [{user_id, variant_id}], strata in first-seen order
    """
    strata: Dict[str, List[str]] = {}
    for user in users:
        strata.setdefault(user.stratum, []).append(user.id)

    assignments: Dict[str, List[StratumAssignment]] = {}
    for stratum, user_ids in strata.items():
        stratum_variants = variants
        weight = (stratum_weights or {}).get(stratum)
        if weight:
            stratum_variants = adjust_variant_weights(variants, weight)

        namespace = f"stratum_{stratum}"
        assignments[stratum] = [
            StratumAssignment(
                user_id=user_id,
                variant_id=assign_to_variant(namespace, user_id, stratum_variants, log_fallback=False),
            )
            for user_id in user_ids
        ]

        # One line per stratum instead of one per user past the scaled total
        total = traffic_total(stratum_variants)
        if total < 100:
            fallbacks = sum(1 for user_id in user_ids if bucket_value(namespace, user_id) > total)
            if fallbacks:
                logger.warning(
                    "stratum_traffic_fallback",
                    stratum=stratum,
                    traffic_total=total,
                    users=len(user_ids),
                    fallbacks=fallbacks,
                )

    logger.info(
        "stratified_sampling_completed",
        strata={name: len(ids) for name, ids in strata.items()},
        weighted=sorted((stratum_weights or {}).keys()),
    )
    return assignments
