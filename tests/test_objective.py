"""Unit tests for the objective model."""

import numpy as np
import pytest

from budget_allocation.models import Allocation, Assumptions, ChannelPriors
from budget_allocation.objective import (
    CAC_EPSILON,
    deterministic_conversions,
    evaluate_objective,
    expected_funnel,
    monte_carlo_outcome,
    objective_from_conversions,
)

ALL_GOOGLE = Allocation(1.0, 0.0, 0.0, 0.0)
MIXED = Allocation(0.4, 0.3, 0.2, 0.1)


@pytest.fixture()
def point_priors():
    """Degenerate intervals: every draw equals the midpoint."""
    metrics = {"cpm": [10, 10], "ctr": [0.02, 0.02], "cvr": [0.1, 0.1]}
    return ChannelPriors.from_dict({channel: dict(metrics) for channel in ("google", "meta", "tiktok", "linkedin")})


class TestDeterministicConversions:
    def test_single_channel_funnel(self, priors):
        # 10000 / 15 * 1000 impressions * 0.035 ctr * 0.2 cvr
        expected = 10_000 / 15 * 1000 * 0.035 * 0.2
        assert deterministic_conversions(10_000, ALL_GOOGLE, priors) == pytest.approx(expected)

    def test_pure_function(self, priors):
        first = deterministic_conversions(10_000, MIXED, priors)
        second = deterministic_conversions(10_000, MIXED, priors)
        assert first == second

    def test_linear_in_budget(self, priors):
        assert deterministic_conversions(20_000, MIXED, priors) == pytest.approx(
            2 * deterministic_conversions(10_000, MIXED, priors)
        )

    def test_tiny_budget_positive(self, priors):
        assert deterministic_conversions(1, MIXED, priors) > 0


class TestObjectiveFromConversions:
    def test_demos_identity(self):
        assert objective_from_conversions("demos", 42.0, 1000) == 42.0

    def test_revenue_is_demos_times_deal_size(self, priors):
        demos = evaluate_objective(10_000, MIXED, priors, Assumptions(goal="demos"))
        revenue = evaluate_objective(10_000, MIXED, priors, Assumptions(goal="revenue", avg_deal_size=250))
        assert revenue == demos * 250

    def test_cac_strictly_decreasing_in_conversions(self):
        assert objective_from_conversions("cac", 20, 1000) < objective_from_conversions("cac", 10, 1000)

    def test_cac_zero_conversions_is_finite(self):
        value = objective_from_conversions("cac", 0.0, 1000)
        assert np.isfinite(value)
        assert value == pytest.approx(1000 / CAC_EPSILON)

    def test_vectorized(self):
        values = objective_from_conversions("cac", np.array([10.0, 20.0]), 100)
        assert values.tolist() == pytest.approx([10.0, 5.0])

    def test_unknown_goal(self):
        with pytest.raises(ValueError, match="Unknown goal"):
            objective_from_conversions("clicks", 1.0, 1.0)

    def test_cac_better_with_more_conversions(self, priors):
        cac = Assumptions(goal="cac")
        weak = Allocation(0.0, 0.0, 0.0, 1.0)
        strong = ALL_GOOGLE
        assert deterministic_conversions(10_000, strong, priors) > deterministic_conversions(10_000, weak, priors)
        assert evaluate_objective(10_000, strong, priors, cac) < evaluate_objective(10_000, weak, priors, cac)


class TestMonteCarloOutcome:
    def test_percentiles_ordered(self, priors):
        mc = monte_carlo_outcome(10_000, MIXED, priors, "demos", runs=500, rng=np.random.default_rng(0))
        assert mc.p10 <= mc.p50 <= mc.p90

    def test_seeded_reproducible(self, priors):
        first = monte_carlo_outcome(10_000, MIXED, priors, "demos", runs=300, rng=np.random.default_rng(3))
        second = monte_carlo_outcome(10_000, MIXED, priors, "demos", runs=300, rng=np.random.default_rng(3))
        assert first == second

    def test_degenerate_intervals_match_deterministic(self, point_priors):
        mc = monte_carlo_outcome(5000, MIXED, point_priors, "demos", runs=50)
        expected = deterministic_conversions(5000, MIXED, point_priors)
        assert mc.p10 == pytest.approx(expected)
        assert mc.p90 == pytest.approx(expected)

    def test_cac_distribution_positive(self, priors):
        mc = monte_carlo_outcome(10_000, MIXED, priors, "cac", runs=200, rng=np.random.default_rng(1))
        assert 0 < mc.p10 <= mc.p90

    def test_median_near_deterministic(self, priors):
        mc = monte_carlo_outcome(10_000, ALL_GOOGLE, priors, "demos", runs=4000, rng=np.random.default_rng(11))
        deterministic = deterministic_conversions(10_000, ALL_GOOGLE, priors)
        assert mc.p50 == pytest.approx(deterministic, rel=0.3)

    def test_runs_must_be_positive(self, priors):
        with pytest.raises(ValueError, match="runs"):
            monte_carlo_outcome(10_000, MIXED, priors, "demos", runs=0)


class TestExpectedFunnel:
    def test_total_matches_deterministic(self, priors):
        funnel = expected_funnel(10_000, MIXED, priors)
        assert funnel["total"]["conversions"] == pytest.approx(deterministic_conversions(10_000, MIXED, priors))
        assert funnel["total"]["spend"] == pytest.approx(10_000)

    def test_unfunded_channel_is_zero(self, priors):
        funnel = expected_funnel(10_000, ALL_GOOGLE, priors)
        assert funnel["linkedin"]["impressions"] == 0.0
