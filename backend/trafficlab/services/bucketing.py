"""Deterministic bucketing of users into experiment variants.

Assignment is hash-based: the same (experiment_id, user_id) pair always
lands in the same bucket, so no lookup or coordination is needed to answer
"which variant does this user see". Variants are always walked in id
order, so the answer does not depend on how a store happened to return
them.
"""
import hashlib
from typing import Dict, Iterable, List, Sequence

from trafficlab.exceptions import ConfigurationError
from trafficlab.middleware.logging import get_logger
from trafficlab.schemas.experiment import Variant

logger = get_logger()

# First 8 hex chars of the digest = 32 bits
_BUCKET_SPACE = 2 ** 32


def bucket_value(experiment_id: str, user_id: str) -> float:
    """Map (experiment_id, user_id) to a stable float in [0, 100)."""
    hash_input = f"{experiment_id}:{user_id}".encode("utf-8")
    hash_digest = hashlib.md5(hash_input).hexdigest()
    return int(hash_digest[:8], 16) / _BUCKET_SPACE * 100


def sorted_variants(variants: Iterable[Variant]) -> List[Variant]:
    """Return variants in the canonical (id) order used for accumulation."""
    return sorted(variants, key=lambda v: v.id)


def check_variants(variants: Sequence[Variant]) -> None:
    """Reject variant lists bucketing cannot work with."""
    if not variants:
        raise ConfigurationError("Cannot assign a variant from an empty variant list")

    ids = [v.id for v in variants]
    if len(ids) != len(set(ids)):
        raise ConfigurationError(f"Variant ids must be unique, got {ids}")

    negative = [v.id for v in variants if v.traffic_percentage < 0]
    if negative:
        raise ConfigurationError(f"Traffic percentages cannot be negative: {negative}")


def traffic_total(variants: Iterable[Variant]) -> float:
    return sum(v.traffic_percentage for v in variants)


def fallback_variant(ordered: Sequence[Variant]) -> Variant:
    """Control variant, or the first variant in id order if there is none."""
    for variant in ordered:
        if variant.is_control:
            return variant
    return ordered[0]


def assign_to_variant(
    experiment_id: str,
    user_id: str,
    variants: Sequence[Variant],
    strict: bool = False,
    tolerance: float = 0.01,
    log_fallback: bool = True,
) -> str:
    """
    Deterministically assign a user to one of an experiment's variants.

    Args:
        experiment_id: Experiment identifier (part of the hash input)
        user_id: User identifier (part of the hash input)
        variants: Variants with traffic percentages, in any order
        strict: Reject lists whose percentages don't sum to 100
        tolerance: Allowed deviation from 100 in strict mode
        log_fallback: Log each fallback; batch callers turn this off and
            report fallbacks themselves

    Returns:
        The id of the selected variant

    Raises:
        ConfigurationError: Empty or malformed variant list, or a traffic
            sum outside tolerance when strict is set

    Example:
        >>> variants = [Variant(id="control", traffic_percentage=50, is_control=True),
        ...             Variant(id="one_click", traffic_percentage=50)]
        >>> variant_id = assign_to_variant("exp_checkout_v2", "user_123", variants)
        >>> print(variant_id)  # "control" or "one_click", the same on every call
    """
    check_variants(variants)
    ordered = sorted_variants(variants)

    total = traffic_total(ordered)
    if strict and abs(total - 100) > tolerance:
        raise ConfigurationError(
            f"Traffic percentages must sum to 100 for experiment {experiment_id}, got {total}"
        )

    bucket = bucket_value(experiment_id, user_id)

    cumulative = 0.0
    for variant in ordered:
        if variant.traffic_percentage <= 0:
            continue
        cumulative += variant.traffic_percentage
        if cumulative >= bucket:
            return variant.id

    # Only reachable when traffic sums to less than 100
    chosen = fallback_variant(ordered)
    if not log_fallback:
        return chosen.id
    logger.warning(
        "traffic_fallback",
        experiment_id=experiment_id,
        user_id=user_id,
        bucket=round(bucket, 4),
        traffic_total=total,
        variant_id=chosen.id,
    )
    return chosen.id


def assign_to_multiple_experiments(
    experiments: Iterable,
    user_id: str,
    strict: bool = False,
) -> Dict[str, str]:
    """
    Assign a user in several experiments at once.

    Each experiment is bucketed independently; ``experiments`` holds objects
    with ``id`` and ``variants`` attributes (``Experiment``,
    ``AllocationSnapshot``).
    """
    assignments = {}
    for experiment in experiments:
        assignments[experiment.id] = assign_to_variant(
            experiment.id, user_id, experiment.variants, strict=strict
        )
    return assignments


def validate_traffic_split(variants: Sequence[Variant], tolerance: float = 0.01) -> List[str]:
    """List everything wrong with a traffic split; empty means valid."""
    errors = []

    if len(variants) < 2:
        errors.append("At least 2 variants are required for A/B testing")

    total = traffic_total(variants)
    if abs(total - 100) > tolerance:
        errors.append(f"Traffic percentages must sum to 100%, got {total}%")

    if any(v.traffic_percentage < 0 for v in variants):
        errors.append("Traffic percentages cannot be negative")

    controls = [v for v in variants if v.is_control]
    if len(controls) != 1:
        errors.append("Exactly one control variant is required")

    ids = [v.id for v in variants]
    if len(ids) != len(set(ids)):
        errors.append("Variant ids must be unique")

    return errors


def normalize_traffic(variants: Sequence[Variant], target_total: float = 100.0) -> List[Variant]:
    """Rescale percentages proportionally so they sum to ``target_total``."""
    if not variants:
        return []

    current_total = traffic_total(variants)
    if current_total == 0:
        equal = target_total / len(variants)
        return [v.model_copy(update={"traffic_percentage": equal}) for v in variants]

    scale = target_total / current_total
    return [
        v.model_copy(update={"traffic_percentage": v.traffic_percentage * scale})
        for v in variants
    ]
