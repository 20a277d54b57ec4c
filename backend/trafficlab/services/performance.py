"""Variant performance: rates, average values and Wilson intervals.

Everything is computed from a VariantAggregate (counts and sums), so a
store that can run the aggregation query itself never has to hand over
raw events. ``get_variant_performance`` is the convenience path for
callers that already hold the events in memory.
"""
import math
from typing import Dict, Iterable, Mapping, Optional, Tuple

from trafficlab.schemas.events import (
    ConfidenceInterval,
    ExperimentEvent,
    VariantAggregate,
    VariantPerformance,
)

DEFAULT_Z = 1.96  # 95% confidence


def wilson_interval(conversions: int, trials: int, z: float = DEFAULT_Z) -> Tuple[float, float]:
    """Wilson score interval for a binomial proportion, clamped to [0, 1]."""
    if trials <= 0:
        return 0.0, 0.0

    n = trials
    p = conversions / n
    z2 = z * z
    denominator = 1 + z2 / n
    center = (p + z2 / (2 * n)) / denominator
    margin = z * math.sqrt(max(p * (1 - p) / n + z2 / (4 * n * n), 0.0)) / denominator
    return max(0.0, center - margin), min(1.0, center + margin)


def aggregate_events(events: Iterable[ExperimentEvent]) -> VariantAggregate:
    """Reduce raw events to the counts the evaluator needs."""
    aggregate = VariantAggregate()
    for event in events:
        if event.event_type == "exposure":
            aggregate.impressions += 1
        elif event.event_type == "conversion":
            aggregate.conversions += 1
            if event.value is not None:
                aggregate.value_sum += event.value
                aggregate.value_count += 1
    return aggregate


def summarize_aggregate(
    aggregate: VariantAggregate,
    z: float = DEFAULT_Z,
    variant_id: Optional[str] = None,
) -> VariantPerformance:
    impressions = aggregate.impressions
    conversions = aggregate.conversions
    conversion_rate = conversions / impressions if impressions > 0 else 0.0
    average_value = aggregate.value_sum / aggregate.value_count if aggregate.value_count > 0 else 0.0
    lower, upper = wilson_interval(conversions, impressions, z)

    return VariantPerformance(
        variant_id=variant_id,
        impressions=impressions,
        conversions=conversions,
        conversion_rate=conversion_rate,
        average_value=average_value,
        confidence_interval=ConfidenceInterval(lower=lower, upper=upper),
    )


def get_variant_performance(
    variant_id: str,
    events: Iterable[ExperimentEvent],
    z: float = DEFAULT_Z,
) -> VariantPerformance:
    """
    Performance of one variant from its raw event log.

    Events belonging to other variants are ignored. With zero impressions
    the rate and interval are all 0 instead of NaN.
    """
    own_events = (event for event in events if event.variant_id == variant_id)
    return summarize_aggregate(aggregate_events(own_events), z=z, variant_id=variant_id)


def conversion_data_from_aggregates(
    aggregates: Mapping[str, VariantAggregate],
) -> Dict[str, Dict[str, int]]:
    """Bandit input (conversions/participants) from per-variant aggregates."""
    return {
        variant_id: {
            "conversions": aggregate.conversions,
            "participants": aggregate.impressions,
        }
        for variant_id, aggregate in aggregates.items()
    }

