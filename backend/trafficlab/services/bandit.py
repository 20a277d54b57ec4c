"""Thompson Sampling traffic optimizer.

Each variant's conversion rate is modelled as Beta(1 + conversions,
1 + failures). One draw per variant decides how the next round of
traffic is split: the control keeps a guaranteed floor, the remaining
traffic goes to the other arms in proportion to their squared sampled
rate plus an exploration bonus, and no arm drops below a minimum share.

The output is a {variant_id: percentage} map for the rebalancer; nothing
here touches stored assignments.
"""
import random
from typing import Dict, Mapping, Optional, Sequence, Tuple

from trafficlab.exceptions import ConfigurationError
from trafficlab.middleware.logging import get_logger
from trafficlab.schemas.experiment import Variant
from trafficlab.services.bucketing import check_variants, sorted_variants

logger = get_logger()

DEFAULT_EXPLORATION = 0.1
DEFAULT_CONTROL_FLOOR = 20.0
DEFAULT_MIN_ALLOCATION = 5.0


def beta_sample(alpha: float, beta: float, rng: random.Random) -> float:
    """Draw from Beta(alpha, beta) as X / (X + Y), X ~ Gamma(alpha), Y ~ Gamma(beta)."""
    x = rng.gammavariate(alpha, 1.0)
    y = rng.gammavariate(beta, 1.0)
    if x + y == 0:
        return alpha / (alpha + beta)
    return x / (x + y)


def posterior_params(conversions: int, participants: int) -> Tuple[float, float]:
    """Beta(1, 1) prior updated with observed successes and failures."""
    failures = max(participants - conversions, 0)
    return 1.0 + conversions, 1.0 + failures


def _counts(variant_id: str, entry) -> Tuple[int, int]:
    if entry is None:
        return 0, 0
    if isinstance(entry, Mapping):
        conversions, participants = int(entry.get("conversions", 0)), int(entry.get("participants", 0))
    else:
        conversions, participants = int(entry.conversions), int(entry.participants)
    if conversions < 0 or participants < 0:
        raise ConfigurationError(
            f"Conversion data for {variant_id} cannot be negative, got "
            f"conversions={conversions} participants={participants}"
        )
    return conversions, participants


def _fit_to_total(raw: Dict[str, float], total: float, minimum: float) -> Dict[str, float]:
    """Scale shares to sum to ``total`` while keeping each at or above ``minimum``.

    Shares that would fall under the minimum after scaling are pinned to it
    and the rest are rescaled over what is left.
    """
    if not raw:
        return {}
    if minimum * len(raw) >= total:
        equal = total / len(raw)
        return {key: equal for key in raw}

    pinned: Dict[str, float] = {}
    free = dict(raw)
    while free:
        target = total - minimum * len(pinned)
        free_total = sum(free.values())
        if free_total <= 0:
            scaled = {key: target / len(free) for key in free}
        else:
            scaled = {key: value / free_total * target for key, value in free.items()}

        below = [key for key, value in scaled.items() if value < minimum]
        if not below:
            pinned.update(scaled)
            break
        for key in below:
            pinned[key] = minimum
            del free[key]

    return {key: pinned[key] for key in raw}


def calculate_optimal_allocation(
    variants: Sequence[Variant],
    conversion_data: Mapping[str, object],
    exploration: float = DEFAULT_EXPLORATION,
    control_floor: float = DEFAULT_CONTROL_FLOOR,
    min_allocation: float = DEFAULT_MIN_ALLOCATION,
    rng: Optional[random.Random] = None,
) -> Dict[str, float]:
    """
    Compute a new traffic split from observed conversions.

    Args:
        variants: Current variants of the experiment
        conversion_data: variant_id -> {conversions, participants} (dicts or
            ConversionStats); variants with no entry use the uniform prior
        exploration: Share of traffic (0-1) spread evenly as an exploration bonus
        control_floor: Minimum percentage for the control variant
        min_allocation: Minimum percentage for every other variant
        rng: Random source, injectable for reproducible draws

    Returns:
        Dict mapping variant id to percentage; values sum to 100

    Raises:
        ConfigurationError: Empty/malformed variants, exploration outside [0, 1]
            or negative conversion counts
    """
    check_variants(variants)
    if not 0 <= exploration <= 1:
        raise ConfigurationError(f"Exploration must be between 0 and 1, got {exploration}")

    rng = rng or random.Random()
    ordered = sorted_variants(variants)
    arm_count = len(ordered)
    exploration_bonus = exploration * 100 / arm_count

    sampled: Dict[str, float] = {}
    for variant in ordered:
        conversions, participants = _counts(variant.id, conversion_data.get(variant.id))
        alpha, beta = posterior_params(conversions, participants)
        sampled[variant.id] = beta_sample(alpha, beta, rng)

    # With several variants flagged as control, the first in id order holds the floor
    control = next((v for v in ordered if v.is_control), None)
    arms = [v for v in ordered if control is None or v.id != control.id]

    allocation: Dict[str, float] = {}
    remaining = 100.0
    if control is not None:
        if not arms:
            return {control.id: 100.0}
        control_share = min(100.0, max(control_floor, exploration_bonus))
        allocation[control.id] = control_share
        remaining = 100.0 - control_share

    # Square to emphasize differences between arms
    weights = {v.id: sampled[v.id] ** 2 for v in arms}
    total_weight = sum(weights.values())

    raw: Dict[str, float] = {}
    for variant in arms:
        if total_weight > 0:
            base = weights[variant.id] / total_weight * remaining
        else:
            base = remaining / len(arms)
        raw[variant.id] = max(min_allocation, base + exploration_bonus)

    allocation.update(_fit_to_total(raw, remaining, min_allocation))

    result = {v.id: allocation[v.id] for v in ordered}
    logger.info(
        "allocation_optimized",
        variants=len(ordered),
        exploration=exploration,
        sampled_rates={k: round(v, 4) for k, v in sampled.items()},
        allocation={k: round(v, 2) for k, v in result.items()},
    )
    return result
