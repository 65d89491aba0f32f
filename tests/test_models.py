"""Unit tests for request and result data models."""

import math

import pytest

from budget_allocation.exceptions import InvalidInputError
from budget_allocation.models import (
    Allocation,
    Assumptions,
    BenchmarkAnalysis,
    ChannelPriors,
    EnhancementOptions,
    Interval,
    ValidationWarning,
    validate_budget,
)


class TestAllocation:
    def test_valid_allocation(self):
        allocation = Allocation(0.4, 0.3, 0.2, 0.1)
        assert allocation["meta"] == pytest.approx(0.3)
        assert allocation.as_array().sum() == pytest.approx(1.0)

    def test_sum_must_be_one(self):
        with pytest.raises(InvalidInputError, match="sum to 1"):
            Allocation(0.5, 0.3, 0.2, 0.1)

    def test_sum_tolerance(self):
        Allocation(0.25, 0.25, 0.25, 0.25 + 5e-6)

    def test_negative_share_raises(self):
        with pytest.raises(InvalidInputError, match="allocation.google"):
            Allocation(-0.1, 0.5, 0.3, 0.3)

    def test_from_mapping_fills_missing_channels(self):
        allocation = Allocation.from_mapping({"google": 0.6, "meta": 0.4})
        assert allocation.tiktok == 0.0
        assert allocation.linkedin == 0.0

    def test_from_mapping_rejects_unknown_channel(self):
        with pytest.raises(InvalidInputError, match="not a known channel"):
            Allocation.from_mapping({"google": 0.5, "snapchat": 0.5})

    def test_unknown_key_lookup(self):
        with pytest.raises(KeyError):
            Allocation.equal()["snapchat"]

    def test_rounded_key_merges_float_noise(self):
        a = Allocation(0.4, 0.3, 0.2, 0.1)
        b = Allocation(0.4 + 1e-9, 0.3 - 1e-9, 0.2, 0.1)
        assert a.rounded_key() == b.rounded_key()


class TestChannelPriors:
    def test_from_pairs(self, priors_dict):
        priors = ChannelPriors.from_dict(priors_dict)
        assert priors.google.cpm == Interval(10, 20)
        assert priors.google.cpm.midpoint == 15

    def test_from_low_high_mapping(self, priors_dict):
        priors_dict["meta"]["ctr"] = {"low": 0.01, "high": 0.02}
        priors = ChannelPriors.from_dict(priors_dict)
        assert priors.meta.ctr == Interval(0.01, 0.02)

    def test_from_mean_and_std_dev(self, priors_dict):
        priors_dict["google"]["ctr"] = {"mean": 0.03, "std_dev": 0.01}
        priors = ChannelPriors.from_dict(priors_dict)
        assert priors.google.ctr.low == pytest.approx(0.01)
        assert priors.google.ctr.high == pytest.approx(0.05)

    def test_mean_and_std_dev_clamped_to_rate_range(self, priors_dict):
        priors_dict["google"]["cvr"] = {"mean": 0.05, "std_dev": 0.1}
        priors = ChannelPriors.from_dict(priors_dict)
        assert priors.google.cvr.low == 0.0

    def test_missing_channel(self, priors_dict):
        del priors_dict["meta"]
        with pytest.raises(InvalidInputError, match="priors.meta is missing"):
            ChannelPriors.from_dict(priors_dict)

    def test_missing_metric(self, priors_dict):
        del priors_dict["tiktok"]["cvr"]
        with pytest.raises(InvalidInputError, match="priors.tiktok.cvr is missing"):
            ChannelPriors.from_dict(priors_dict)

    def test_rate_out_of_range(self, priors_dict):
        priors_dict["google"]["ctr"] = [0.5, 1.5]
        with pytest.raises(InvalidInputError, match="priors.google.ctr"):
            ChannelPriors.from_dict(priors_dict)

    def test_non_positive_cpm(self, priors_dict):
        priors_dict["linkedin"]["cpm"] = [0, 10]
        with pytest.raises(InvalidInputError, match="priors.linkedin.cpm"):
            ChannelPriors.from_dict(priors_dict)

    def test_low_above_high(self, priors_dict):
        priors_dict["meta"]["cpm"] = [20, 10]
        with pytest.raises(InvalidInputError, match="low must not exceed high"):
            ChannelPriors.from_dict(priors_dict)

    def test_invalid_input_is_value_error(self, priors_dict):
        priors_dict["meta"]["cpm"] = ["a", "b"]
        with pytest.raises(ValueError):
            ChannelPriors.from_dict(priors_dict)

    def test_to_dict_roundtrip(self, priors):
        assert ChannelPriors.from_dict(priors.to_dict()) == priors


class TestAssumptions:
    def test_defaults(self):
        assumptions = Assumptions(goal="demos")
        assert assumptions.min_pct == {}
        assert assumptions.max_pct == {}

    def test_unknown_goal(self):
        with pytest.raises(InvalidInputError, match="assumptions.goal"):
            Assumptions(goal="clicks")

    def test_revenue_requires_deal_size(self):
        with pytest.raises(InvalidInputError, match="avg_deal_size"):
            Assumptions(goal="revenue")

    def test_min_above_max(self):
        with pytest.raises(InvalidInputError, match="min_pct.google"):
            Assumptions(goal="demos", min_pct={"google": 0.6}, max_pct={"google": 0.4})

    def test_unknown_constraint_channel(self):
        with pytest.raises(InvalidInputError, match="not a known channel"):
            Assumptions(goal="demos", min_pct={"snapchat": 0.1})

    def test_jointly_infeasible_floors_accepted(self):
        assumptions = Assumptions(
            goal="demos", min_pct={"google": 0.5, "meta": 0.4, "tiktok": 0.3, "linkedin": 0.2}
        )
        assert sum(assumptions.min_pct.values()) == pytest.approx(1.4)

    def test_from_dict_drops_none_constraints(self):
        assumptions = Assumptions.from_dict({"goal": "cac", "min_pct": {"google": None, "meta": 0.1}})
        assert assumptions.min_pct == {"meta": 0.1}

    @pytest.mark.parametrize("key", ["minPct", "min_pcts", "budget"])
    def test_from_dict_unknown_field(self, key):
        with pytest.raises(InvalidInputError, match=f"assumptions.{key} is not a recognized field"):
            Assumptions.from_dict({"goal": "demos", key: {"linkedin": 0.4}})


class TestValidateBudget:
    @pytest.mark.parametrize("budget", [0, -5, math.nan, math.inf, True, "100"])
    def test_invalid_budget(self, budget):
        with pytest.raises(InvalidInputError, match="budget"):
            validate_budget(budget)

    def test_valid_budget(self):
        assert validate_budget(1) == 1.0


class TestEnhancementOptions:
    def test_defaults(self):
        options = EnhancementOptions()
        assert options.level == "standard"
        assert options.enable_external_validation is None

    def test_unknown_level(self):
        with pytest.raises(InvalidInputError, match="options.level"):
            EnhancementOptions(level="ludicrous")

    def test_negative_timeout(self):
        with pytest.raises(InvalidInputError, match="timeout_ms"):
            EnhancementOptions(timeout_ms=-1)

    def test_from_dict_unknown_option(self):
        with pytest.raises(InvalidInputError, match="options.turbo"):
            EnhancementOptions.from_dict({"turbo": True})

    def test_from_dict_none(self):
        assert EnhancementOptions.from_dict(None) == EnhancementOptions()


class TestResultTypes:
    def test_warning_severity_validated(self):
        with pytest.raises(ValueError, match="severity"):
            ValidationWarning(type="x", message="y", severity="critical")

    def test_neutral_benchmark(self):
        neutral = BenchmarkAnalysis.neutral()
        assert neutral.deviation_score == 0.0
        assert neutral.warnings == []
        assert set(neutral.channel_deviations.values()) == {0.0}
