"""Tests for deterministic bucketing."""
import pytest

from trafficlab.exceptions import ConfigurationError
from trafficlab.schemas.experiment import Variant
from trafficlab.services.bucketing import (
    assign_to_multiple_experiments,
    assign_to_variant,
    bucket_value,
    normalize_traffic,
    validate_traffic_split,
)
from trafficlab.services.snapshots import AllocationSnapshot


def _users_with_bucket_above(experiment_id: str, threshold: float, count: int = 5):
    users = []
    i = 0
    while len(users) < count:
        user_id = f"user_{i}"
        if bucket_value(experiment_id, user_id) > threshold:
            users.append(user_id)
        i += 1
    return users


def test_assignment_is_deterministic(three_way):
    """Test that the same user always lands in the same variant."""
    first = assign_to_variant("exp_checkout_v2", "user_123", three_way)
    for _ in range(5):
        assert assign_to_variant("exp_checkout_v2", "user_123", three_way) == first


def test_bucket_value_is_in_range():
    """Test that bucket values stay inside [0, 100)."""
    for i in range(1000):
        value = bucket_value("exp_range", f"user_{i}")
        assert 0 <= value < 100


def test_bucket_value_depends_on_experiment():
    """Test that one user gets independent buckets per experiment."""
    values = {bucket_value(f"exp_{i}", "user_123") for i in range(20)}
    assert len(values) > 1


def test_distribution_matches_traffic_split(three_way):
    """Test that 100k users split 20/30/50 within two points."""
    counts = {"a": 0, "b": 0, "c": 0}
    total = 100_000
    for i in range(total):
        counts[assign_to_variant("exp_distribution", f"user_{i}", three_way)] += 1

    assert counts["a"] / total * 100 == pytest.approx(20, abs=2)
    assert counts["b"] / total * 100 == pytest.approx(30, abs=2)
    assert counts["c"] / total * 100 == pytest.approx(50, abs=2)


def test_variant_order_does_not_matter(three_way):
    """Test that assignment is stable regardless of input ordering.

    Stores do not guarantee the order variants come back in, so
    accumulation always walks them by id.
    """
    shuffled = [three_way[2], three_way[0], three_way[1]]
    for i in range(500):
        user_id = f"user_{i}"
        assert assign_to_variant("exp_order", user_id, three_way) == \
            assign_to_variant("exp_order", user_id, shuffled)


def test_zero_traffic_variant_never_selected():
    """Test that a variant with 0% traffic is skipped."""
    variants = [
        Variant(id="a", traffic_percentage=0),
        Variant(id="b", traffic_percentage=100, is_control=True),
    ]
    for i in range(500):
        assert assign_to_variant("exp_zero", f"user_{i}", variants) == "b"


def test_empty_variant_list_raises():
    """Test that an empty variant list is a configuration error."""
    with pytest.raises(ConfigurationError):
        assign_to_variant("exp_empty", "user_123", [])


def test_duplicate_variant_ids_raise():
    """Test that duplicate ids are rejected."""
    variants = [
        Variant(id="a", traffic_percentage=50),
        Variant(id="a", traffic_percentage=50),
    ]
    with pytest.raises(ConfigurationError) as exc_info:
        assign_to_variant("exp_dupes", "user_123", variants)

    assert "unique" in str(exc_info.value)


def test_short_traffic_falls_back_to_control():
    """Test that buckets past the traffic total go to the control variant."""
    variants = [
        Variant(id="a_treatment", traffic_percentage=30),
        Variant(id="z_control", traffic_percentage=30, is_control=True),
    ]
    for user_id in _users_with_bucket_above("exp_short", 60):
        assert assign_to_variant("exp_short", user_id, variants) == "z_control"


def test_short_traffic_without_control_falls_back_to_first_variant():
    """Test that the first variant by id is the fallback when there is no control."""
    variants = [
        Variant(id="beta", traffic_percentage=20),
        Variant(id="alpha", traffic_percentage=20),
    ]
    for user_id in _users_with_bucket_above("exp_no_control", 40):
        assert assign_to_variant("exp_no_control", user_id, variants) == "alpha"


def test_strict_mode_rejects_bad_sum():
    """Test that strict mode raises instead of falling back."""
    variants = [
        Variant(id="control", traffic_percentage=40, is_control=True),
        Variant(id="treatment", traffic_percentage=40),
    ]
    with pytest.raises(ConfigurationError) as exc_info:
        assign_to_variant("exp_strict", "user_123", variants, strict=True)

    assert "sum to 100" in str(exc_info.value)


def test_strict_mode_accepts_sum_within_tolerance():
    """Test that rounding noise is tolerated in strict mode."""
    variants = [
        Variant(id="a", traffic_percentage=33.333, is_control=True),
        Variant(id="b", traffic_percentage=33.333),
        Variant(id="c", traffic_percentage=33.334),
    ]
    assert assign_to_variant("exp_tolerance", "user_1", variants, strict=True) in {"a", "b", "c"}


def test_assign_to_multiple_experiments(three_way):
    """Test that each experiment is bucketed independently."""
    experiments = [
        AllocationSnapshot.build("exp_one", three_way),
        AllocationSnapshot.build("exp_two", three_way),
    ]
    assignments = assign_to_multiple_experiments(experiments, "user_123")

    assert set(assignments) == {"exp_one", "exp_two"}
    assert assignments["exp_one"] == assign_to_variant("exp_one", "user_123", three_way)
    assert assignments["exp_two"] == assign_to_variant("exp_two", "user_123", three_way)


def test_validate_traffic_split_accepts_valid_split(three_way):
    """Test that a valid split has no errors."""
    assert validate_traffic_split(three_way) == []


def test_validate_traffic_split_reports_every_problem():
    """Test that all problems are listed, not just the first."""
    variants = [Variant(id="only", traffic_percentage=90)]
    errors = validate_traffic_split(variants)

    assert any("At least 2 variants" in e for e in errors)
    assert any("sum to 100%" in e for e in errors)
    assert any("control" in e for e in errors)


def test_normalize_traffic_rescales_to_100():
    """Test proportional rescaling."""
    variants = [
        Variant(id="a", traffic_percentage=10),
        Variant(id="b", traffic_percentage=30),
    ]
    normalized = normalize_traffic(variants)

    assert [v.traffic_percentage for v in normalized] == pytest.approx([25, 75])


def test_normalize_traffic_all_zero_splits_evenly():
    """Test that an all-zero split becomes an even one."""
    variants = [
        Variant(id="a", traffic_percentage=0),
        Variant(id="b", traffic_percentage=0),
    ]
    normalized = normalize_traffic(variants)

    assert [v.traffic_percentage for v in normalized] == [50, 50]


@pytest.fixture
def three_way():
    """Three variants split 20/30/50."""
    return [
        Variant(id="a", traffic_percentage=20, is_control=True),
        Variant(id="b", traffic_percentage=30),
        Variant(id="c", traffic_percentage=50),
    ]
