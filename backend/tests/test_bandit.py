"""Tests for the Thompson Sampling optimizer."""
import random

import pytest

from trafficlab.exceptions import ConfigurationError
from trafficlab.schemas.allocation import ConversionStats
from trafficlab.schemas.experiment import Variant
from trafficlab.services.bandit import (
    beta_sample,
    calculate_optimal_allocation,
    posterior_params,
)


def test_allocation_sums_to_100(variants, conversion_data):
    """Test that every draw produces a complete split."""
    for seed in range(50):
        allocation = calculate_optimal_allocation(
            variants, conversion_data, rng=random.Random(seed)
        )
        assert sum(allocation.values()) == pytest.approx(100, abs=1e-6)
        assert set(allocation) == {v.id for v in variants}


def test_control_keeps_its_floor(variants, conversion_data):
    """Test that the control never drops below 20% even when it is losing."""
    for seed in range(50):
        allocation = calculate_optimal_allocation(
            variants, conversion_data, rng=random.Random(seed)
        )
        assert allocation["control"] >= 20 - 1e-9


def test_every_arm_keeps_minimum_share(variants, conversion_data):
    """Test that no treatment drops below 5%."""
    for seed in range(50):
        allocation = calculate_optimal_allocation(
            variants, conversion_data, rng=random.Random(seed)
        )
        for variant_id in ("loser", "winner"):
            assert allocation[variant_id] >= 5 - 1e-9


def test_winner_gets_more_traffic(variants, conversion_data):
    """Test that a clearly better arm outweighs a clearly worse one."""
    allocation = calculate_optimal_allocation(
        variants, conversion_data, rng=random.Random(7)
    )
    assert allocation["winner"] > allocation["loser"]


def test_same_seed_same_allocation(variants, conversion_data):
    """Test that an injected RNG makes draws reproducible."""
    first = calculate_optimal_allocation(variants, conversion_data, rng=random.Random(3))
    second = calculate_optimal_allocation(variants, conversion_data, rng=random.Random(3))
    assert first == second


def test_lone_control_gets_everything():
    """Test that a single control variant keeps all traffic."""
    variants = [Variant(id="control", traffic_percentage=100, is_control=True)]
    assert calculate_optimal_allocation(variants, {}) == {"control": 100.0}


def test_no_control_still_sums_to_100():
    """Test that experiments without a control split all traffic between arms."""
    variants = [
        Variant(id="a", traffic_percentage=50),
        Variant(id="b", traffic_percentage=50),
    ]
    allocation = calculate_optimal_allocation(variants, {}, rng=random.Random(1))

    assert sum(allocation.values()) == pytest.approx(100, abs=1e-6)
    assert min(allocation.values()) >= 5 - 1e-9


def test_accepts_conversion_stats_models(variants):
    """Test that ConversionStats models work like plain dicts."""
    data = {"winner": ConversionStats(conversions=10, participants=100)}
    allocation = calculate_optimal_allocation(variants, data, rng=random.Random(0))
    assert sum(allocation.values()) == pytest.approx(100, abs=1e-6)


def test_many_arms_fall_back_to_even_minimums():
    """Test that when minimums use up all traffic, arms get equal shares."""
    variants = [Variant(id="control", traffic_percentage=4, is_control=True)] + [
        Variant(id=f"arm_{i:02d}", traffic_percentage=6) for i in range(16)
    ]
    allocation = calculate_optimal_allocation(variants, {}, rng=random.Random(0))

    assert allocation["control"] == pytest.approx(20)
    for i in range(16):
        assert allocation[f"arm_{i:02d}"] == pytest.approx(5)


@pytest.mark.parametrize("exploration", [-0.1, 1.5])
def test_exploration_out_of_range_raises(variants, exploration):
    """Test that exploration must be between 0 and 1."""
    with pytest.raises(ConfigurationError):
        calculate_optimal_allocation(variants, {}, exploration=exploration)


@pytest.mark.parametrize("entry", [
    {"conversions": -3, "participants": 100},
    {"conversions": 2, "participants": -1},
])
def test_negative_conversion_data_raises(variants, entry):
    """Test that negative counts are rejected before sampling."""
    with pytest.raises(ConfigurationError) as exc_info:
        calculate_optimal_allocation(variants, {"winner": entry}, rng=random.Random(0))

    assert "winner" in str(exc_info.value)


def test_beta_sample_in_unit_interval():
    """Test that Beta draws are valid probabilities."""
    rng = random.Random(11)
    for _ in range(1000):
        assert 0 <= beta_sample(1.0, 1.0, rng) <= 1


def test_posterior_params_uniform_prior():
    """Test that no data means Beta(1, 1)."""
    assert posterior_params(0, 0) == (1.0, 1.0)
    assert posterior_params(5, 20) == (6.0, 16.0)


@pytest.fixture
def variants():
    return [
        Variant(id="control", traffic_percentage=34, is_control=True),
        Variant(id="loser", traffic_percentage=33),
        Variant(id="winner", traffic_percentage=33),
    ]


@pytest.fixture
def conversion_data():
    return {
        "control": {"conversions": 50, "participants": 1000},
        "loser": {"conversions": 10, "participants": 1000},
        "winner": {"conversions": 400, "participants": 1000},
    }
