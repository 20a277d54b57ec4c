"""Tests for segmentation and stratified sampling."""
import pytest
from structlog.testing import capture_logs

from trafficlab.schemas.experiment import Variant
from trafficlab.schemas.segmentation import (
    SegmentCondition,
    SegmentDefinition,
    StratifiedUser,
    UserProfile,
)
from trafficlab.services.bucketing import assign_to_variant, bucket_value
from trafficlab.services.segmentation import (
    analyze_segment_overlap,
    evaluate_condition,
    segment_users,
    stratified_sampling,
)


def test_conditions_are_anded(users):
    """Test that a user must meet every condition of a segment."""
    segments = segment_users(users, [
        SegmentDefinition(name="eu_big_spenders", conditions=[
            SegmentCondition(property="country", operator="in", value=["DE", "FR"]),
            SegmentCondition(property="lifetime_value", operator="greater_than", value=500),
        ]),
    ])

    assert segments == {"eu_big_spenders": ["u1"]}


def test_user_can_be_in_several_segments(users):
    """Test that segments overlap."""
    segments = segment_users(users, [
        SegmentDefinition(name="german", conditions=[
            SegmentCondition(property="country", operator="equals", value="DE"),
        ]),
        SegmentDefinition(name="mobile", conditions=[
            SegmentCondition(property="device", operator="equals", value="mobile"),
        ]),
        SegmentDefinition(name="nobody", conditions=[
            SegmentCondition(property="country", operator="equals", value="JP"),
        ]),
    ])

    assert segments["german"] == ["u1", "u2"]
    assert segments["mobile"] == ["u1", "u3"]
    assert segments["nobody"] == []


def test_empty_conditions_match_everyone(users):
    """Test that a segment without conditions contains every user."""
    segments = segment_users(users, [SegmentDefinition(name="all")])
    assert segments["all"] == ["u1", "u2", "u3"]


@pytest.mark.parametrize("operator,value,expected", [
    ("equals", "DE", True),
    ("not_equals", "DE", False),
    ("greater_than", 100, True),
    ("less_than", 100, False),
    ("in", ["DE", "FR"], True),
    ("not_in", ["DE", "FR"], False),
])
def test_operators(operator, value, expected):
    """Test each comparison operator."""
    prop = "lifetime_value" if operator in ("greater_than", "less_than") else "country"
    condition = SegmentCondition(property=prop, operator=operator, value=value)
    assert evaluate_condition({"country": "DE", "lifetime_value": 900}, condition) is expected


def test_contains_on_strings_and_lists():
    """Test substring and list membership for contains."""
    condition = SegmentCondition(property="tags", operator="contains", value="vip")
    assert evaluate_condition({"tags": ["vip", "beta"]}, condition) is True
    assert evaluate_condition({"tags": "vip_gold"}, condition) is True
    assert evaluate_condition({"tags": ["beta"]}, condition) is False
    assert evaluate_condition({}, condition) is False


def test_numeric_comparison_with_missing_property():
    """Test that a missing property never satisfies greater_than."""
    condition = SegmentCondition(property="age", operator="greater_than", value=18)
    assert evaluate_condition({}, condition) is False


def test_segment_overlap_and_exclusivity():
    """Test pairwise overlap percentage and exclusivity."""
    report = analyze_segment_overlap({
        "a": ["u1", "u2", "u3", "u4"],
        "b": ["u3", "u4"],
        "c": [],
    })

    assert len(report.overlaps) == 1
    overlap = report.overlaps[0]
    assert overlap.segments == ["a", "b"]
    assert overlap.users == ["u3", "u4"]
    assert overlap.percentage == pytest.approx(100)

    assert report.exclusivity == {"a": pytest.approx(50), "b": 0.0, "c": 0.0}


def test_stratified_sampling_uses_stratum_namespace(variants):
    """Test that each stratum buckets under its own namespace."""
    users = [StratifiedUser(id=f"user_{i}", stratum="mobile") for i in range(50)]
    result = stratified_sampling(users, variants)

    assert list(result) == ["mobile"]
    for assignment in result["mobile"]:
        assert assignment.variant_id == assign_to_variant(
            "stratum_mobile", assignment.user_id, variants
        )


def test_stratified_sampling_zero_weight_is_ignored(variants):
    """Test that a weight of 0 leaves the split unchanged."""
    users = [StratifiedUser(id=f"user_{i}", stratum="desktop") for i in range(50)]

    assert stratified_sampling(users, variants, {"desktop": 0}) == stratified_sampling(users, variants)


def test_stratified_sampling_weight_scales_split(variants):
    """Test that halving a stratum's weights sends the upper half to the control."""
    users = [StratifiedUser(id=f"user_{i}", stratum="tablet") for i in range(200)]
    result = stratified_sampling(users, variants, {"tablet": 0.5})

    for assignment in result["tablet"]:
        if bucket_value("stratum_tablet", assignment.user_id) > 50:
            assert assignment.variant_id == "control"


def test_stratified_sampling_logs_fallback_once_per_stratum(variants):
    """Test that a scaled-down stratum reports its fallbacks in one line."""
    users = [StratifiedUser(id=f"user_{i}", stratum="tablet") for i in range(200)]
    users += [StratifiedUser(id=f"user_{i}", stratum="desktop") for i in range(20)]

    with capture_logs() as logs:
        stratified_sampling(users, variants, {"tablet": 0.5})

    assert not [entry for entry in logs if entry["event"] == "traffic_fallback"]
    fallbacks = [entry for entry in logs if entry["event"] == "stratum_traffic_fallback"]
    assert len(fallbacks) == 1
    assert fallbacks[0]["stratum"] == "tablet"
    assert fallbacks[0]["users"] == 200
    assert fallbacks[0]["fallbacks"] == sum(
        1 for i in range(200) if bucket_value("stratum_tablet", f"user_{i}") > 50
    )
    assert fallbacks[0]["log_level"] == "warning"


def test_stratified_sampling_groups_strata_in_first_seen_order(variants):
    """Test strata keys and membership."""
    users = [
        StratifiedUser(id="u1", stratum="b"),
        StratifiedUser(id="u2", stratum="a"),
        StratifiedUser(id="u3", stratum="b"),
    ]
    result = stratified_sampling(users, variants)

    assert list(result) == ["b", "a"]
    assert [a.user_id for a in result["b"]] == ["u1", "u3"]


@pytest.fixture
def users():
    return [
        UserProfile(id="u1", properties={"country": "DE", "lifetime_value": 900, "device": "mobile"}),
        UserProfile(id="u2", properties={"country": "DE", "lifetime_value": 100, "device": "desktop"}),
        UserProfile(id="u3", properties={"country": "US", "lifetime_value": 1200, "device": "mobile"}),
    ]


@pytest.fixture
def variants():
    return [
        Variant(id="control", traffic_percentage=50, is_control=True),
        Variant(id="treatment", traffic_percentage=50),
    ]
