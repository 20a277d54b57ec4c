"""Tests for experiment conflict detection."""
import pytest

from trafficlab.schemas.experiment import Experiment, ExperimentConfig
from trafficlab.services.conflicts import (
    check_experiment_conflict,
    detect_allocation_conflicts,
    detect_configuration_conflicts,
)


def test_shared_page_is_a_conflict():
    """Test that two experiments targeting /home conflict."""
    conflicts = detect_allocation_conflicts(
        {"exp_a": "control", "exp_b": "treatment"},
        {
            "exp_a": ExperimentConfig(target_pages=["/home"]),
            "exp_b": ExperimentConfig(target_pages=["/home", "/product"]),
        },
    )

    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert conflict.experiment1 == "exp_a"
    assert conflict.experiment2 == "exp_b"
    assert conflict.axis == "target_pages"
    assert conflict.overlap == ["/home"]
    assert conflict.reason == "Page targeting conflict: /home"


def test_one_conflict_per_axis():
    """Test that a pair colliding on flags and UI elements reports both."""
    conflicts = check_experiment_conflict(
        "exp_a",
        "exp_b",
        ExperimentConfig(feature_flags={"new_checkout": True}, ui_elements={"cta_button": "green"}),
        ExperimentConfig(feature_flags={"new_checkout": False}, ui_elements={"cta_button": "red"}),
    )

    assert [c.axis for c in conflicts] == ["feature_flags", "ui_elements"]
    assert conflicts[0].reason == "Feature flag conflict: new_checkout"
    assert conflicts[1].reason == "UI element conflict: cta_button"


def test_disjoint_configs_do_not_conflict():
    """Test that experiments touching different things are fine together."""
    conflicts = check_experiment_conflict(
        "exp_a",
        "exp_b",
        ExperimentConfig(feature_flags={"a": True}, target_pages=["/cart"]),
        ExperimentConfig(feature_flags={"b": True}, target_pages=["/home"]),
    )
    assert conflicts == []


def test_missing_config_is_not_a_conflict():
    """Test that an experiment without a known config never conflicts."""
    conflicts = detect_allocation_conflicts(
        {"exp_a": "control", "exp_unknown": "treatment"},
        {"exp_a": ExperimentConfig(target_pages=["/home"])},
    )
    assert conflicts == []


def test_all_pairs_are_checked():
    """Test that three experiments on one page give three pairwise conflicts."""
    page = ExperimentConfig(target_pages=["/home"])
    conflicts = detect_allocation_conflicts(
        {"exp_a": "x", "exp_b": "y", "exp_c": "z"},
        {"exp_a": page, "exp_b": page, "exp_c": page},
    )

    pairs = [(c.experiment1, c.experiment2) for c in conflicts]
    assert pairs == [("exp_a", "exp_b"), ("exp_a", "exp_c"), ("exp_b", "exp_c")]


def test_single_page_string_is_accepted():
    """Test that target_pages given as a string is treated as one page."""
    config = ExperimentConfig(target_pages="/home")
    assert config.target_pages == ["/home"]


def test_proactive_check_against_other_experiments(checkout, others):
    """Test the pre-launch check against other experiments."""
    conflicts = detect_configuration_conflicts(checkout, others)

    assert {(c.experiment2, c.axis) for c in conflicts} == {
        ("exp_flags", "feature_flags"),
        ("exp_pages", "target_pages"),
    }


def test_proactive_check_filters_by_operation_type(checkout, others):
    """Test that operation_type limits the axes inspected."""
    conflicts = detect_configuration_conflicts(checkout, others, operation_type="target_pages")

    assert [c.experiment2 for c in conflicts] == ["exp_pages"]


def test_proactive_check_skips_itself(checkout):
    """Test that an experiment is never in conflict with itself."""
    assert detect_configuration_conflicts(checkout, [checkout]) == []


def test_unknown_operation_type_raises(checkout, others):
    """Test that an unknown operation type is rejected."""
    with pytest.raises(ValueError):
        detect_configuration_conflicts(checkout, others, operation_type="pricing")


@pytest.fixture
def checkout():
    return Experiment(
        id="exp_checkout",
        store_id="store_1",
        config=ExperimentConfig(
            feature_flags={"one_click": True},
            target_pages=["/checkout"],
        ),
    )


@pytest.fixture
def others():
    return [
        Experiment(
            id="exp_flags",
            store_id="store_1",
            config=ExperimentConfig(feature_flags={"one_click": False}),
        ),
        Experiment(
            id="exp_pages",
            store_id="store_1",
            config=ExperimentConfig(target_pages=["/checkout", "/cart"]),
        ),
        Experiment(
            id="exp_unrelated",
            store_id="store_1",
            config=ExperimentConfig(ui_elements={"banner": "blue"}),
        ),
    ]
