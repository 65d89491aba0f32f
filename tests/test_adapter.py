"""Integration tests for the enhancement service and its pipeline wrapper."""

import logging
from dataclasses import replace

import pytest

from budget_allocation.adapter import (
    AlternativeRanking,
    EnhanceComponent,
    EnhancementService,
    enhance_optimization,
    normalized_performance,
    rank_alternatives,
    tier_config,
)
from budget_allocation.exceptions import InfeasibleConstraintsError, InvalidInputError
from budget_allocation.models import CHANNELS, AlgorithmResult, Allocation, Assumptions
from budget_allocation.semantic import HeuristicSemanticValidator, SemanticValidation, SemanticWarning
from budget_allocation.solver import Direction

TOL = 1e-6


@pytest.fixture()
def service(quick_config):
    return EnhancementService(config=quick_config, seed=0)


class _AgreeingValidator:
    def validate(self, allocation, context):
        return SemanticValidation(
            confidence=0.9,
            reasoning="Sensible split.",
            warnings=[SemanticWarning(type="note", message="Watch linkedin CPM", severity="low", channel="linkedin")],
            suggestions=["Review creatives quarterly"],
        )

    def explain(self, allocation, assumptions):
        return "Google converts best per dollar."


class _UnreachableValidator:
    def validate(self, allocation, context):
        raise ConnectionError("service unreachable")

    def explain(self, allocation, assumptions):
        raise ConnectionError("service unreachable")


class TestEnhance:
    def test_feasible_request(self, service, priors, demos):
        result = service.enhance(10_000, priors, demos)
        assert result.allocation.as_array().sum() == pytest.approx(1.0)
        assert result.performance > 0
        assert result.deterministic_outcome > 0
        assert result.objective == "demos"
        assert 0.0 <= result.confidence.overall <= 1.0
        assert result.stages == [
            "setup",
            "run_primary",
            "run_validators",
            "combine",
            "score_confidence",
            "build_alternatives",
            "done",
        ]
        assert [r.name for r in result.validation.alternative_algorithms] == ["gradient", "bayesian", "heuristic"]
        assert result.monte_carlo.p10 <= result.monte_carlo.p50 <= result.monte_carlo.p90
        assert result.summary.startswith("Recommended split:")

    def test_constraints_respected(self, service, priors, constrained):
        result = service.enhance(10_000, priors, constrained)
        assert result.allocation.linkedin >= 0.2 - TOL
        assert result.allocation.tiktok <= 0.2 + TOL
        for allocation in result.alternatives.top_allocations:
            assert allocation.linkedin >= 0.2 - TOL

    def test_alternatives_exclude_final(self, service, priors, demos):
        result = service.enhance(10_000, priors, demos)
        top = result.alternatives.top_allocations
        assert len(top) <= 3
        keys = [a.rounded_key() for a in top]
        assert len(set(keys)) == len(keys)
        assert result.allocation.rounded_key() not in keys
        assert result.alternatives.reasoning.startswith("Final allocation determined by combining results")

    def test_alternatives_not_requested(self, service, priors, demos):
        result = service.enhance(10_000, priors, demos, {"include_alternatives": False})
        assert result.alternatives.top_allocations == []
        assert result.alternatives.reasoning == "Alternative allocations not requested."

    def test_jointly_infeasible_raises(self, service, priors):
        assumptions = Assumptions(
            goal="demos", min_pct={"google": 0.5, "meta": 0.4, "tiktok": 0.3, "linkedin": 0.2}
        )
        with pytest.raises(InfeasibleConstraintsError) as excinfo:
            service.enhance(10_000, priors, assumptions)
        assert excinfo.value.jointly_infeasible

    def test_coarse_grid_degrades_to_heuristic(self, service, priors, caplog):
        assumptions = Assumptions(goal="demos", min_pct={"google": 0.05}, max_pct={"google": 0.08})
        with caplog.at_level(logging.WARNING, logger="budget_allocation.adapter"):
            result = service.enhance(10_000, priors, assumptions)
        assert 0.05 - TOL <= result.allocation.google <= 0.08 + TOL
        grid = [w for w in result.validation.warnings if w.type == "grid_infeasible"]
        assert grid and grid[0].severity == "high"
        assert "Grid search degraded" in caplog.text

    def test_zero_timeout_keeps_primary(self, service, priors, demos):
        result = service.enhance(10_000, priors, demos, {"timeout_ms": 0})
        assert result.validation.alternative_algorithms == []
        assert "algorithm_unavailable" in {w.type for w in result.validation.warnings}
        assert result.confidence.overall > 0
        assert [r.name for r in result.confidence.algorithms] == ["grid_search"]

    def test_cac_goal(self, service, priors):
        result = service.enhance(10_000, priors, Assumptions(goal="cac", target_cac=50))
        assert result.objective == "cac"
        assert result.performance > 0
        assert "cost per acquisition" in result.summary

    def test_revenue_goal(self, service, priors):
        result = service.enhance(10_000, priors, {"goal": "revenue", "avg_deal_size": 250})
        assert result.performance == pytest.approx(result.deterministic_outcome * 250)

    def test_benchmark_disabled_is_neutral(self, service, priors, demos):
        result = service.enhance(10_000, priors, demos, {"validate_against_benchmarks": False})
        assert result.validation.benchmark_comparison.deviation_score == 0.0
        assert not any("benchmark" in w.type for w in result.validation.warnings)

    def test_seeded_requests_repeat(self, quick_config, priors, demos):
        first = EnhancementService(config=quick_config, seed=7).enhance(10_000, priors, demos)
        second = EnhancementService(config=quick_config, seed=7).enhance(10_000, priors, demos)
        assert first.allocation.as_array() == pytest.approx(second.allocation.as_array())
        assert first.monte_carlo == second.monte_carlo

    def test_invalid_budget(self, service, priors, demos):
        with pytest.raises(InvalidInputError, match="budget"):
            service.enhance(-5, priors, demos)

    def test_unknown_option(self, service, priors, demos):
        with pytest.raises(InvalidInputError, match="options.speed"):
            service.enhance(10_000, priors, demos, {"speed": "max"})

    def test_module_level_entry_point(self, quick_config, priors_dict):
        result = enhance_optimization(10_000, priors_dict, {"goal": "demos"}, config=quick_config, seed=1)
        assert set(result.allocation.as_dict()) == set(CHANNELS)

    def test_camel_case_constraints_applied(self, quick_config, priors_dict):
        assumptions = {"goal": "demos", "minPct": {"linkedin": 0.4}}
        result = enhance_optimization(10_000, priors_dict, assumptions, config=quick_config, seed=1)
        assert result.allocation.linkedin >= 0.4 - TOL

    def test_misspelled_constraint_rejected(self, service, priors):
        with pytest.raises(InvalidInputError, match="assumptions.min_pcts"):
            service.enhance(10_000, priors, {"goal": "demos", "min_pcts": {"linkedin": 0.4}})


class TestExternalValidation:
    def test_agreeing_validator(self, quick_config, priors, demos):
        service = EnhancementService(config=quick_config, semantic_validator=_AgreeingValidator(), seed=0)
        result = service.enhance(10_000, priors, demos, {"enable_external_validation": True})
        assert "external_validate" in result.stages
        assert result.validation.external["confidence"] == pytest.approx(0.9)
        assert "Review creatives quarterly" in result.recommendations
        assert result.alternatives.reasoning == "Google converts best per dollar."
        assert any(w.type == "note" and w.channel == "linkedin" for w in result.validation.warnings)

    def test_unreachable_validator_degrades(self, quick_config, priors, demos, caplog):
        service = EnhancementService(config=quick_config, semantic_validator=_UnreachableValidator(), seed=0)
        with caplog.at_level(logging.WARNING, logger="budget_allocation.adapter"):
            result = service.enhance(10_000, priors, demos, {"enable_external_validation": True})
        assert result.validation.external is None
        unavailable = [w for w in result.validation.warnings if w.type == "external_validation_unavailable"]
        assert unavailable and unavailable[0].severity == "low"
        assert "External validation unavailable" in caplog.text
        assert 0.0 <= result.confidence.overall <= 1.0

    def test_heuristic_validator(self, quick_config, priors, demos):
        service = EnhancementService(config=quick_config, semantic_validator=HeuristicSemanticValidator(), seed=0)
        result = service.enhance(10_000, priors, demos, {"enable_external_validation": True})
        assert result.validation.external["reasoning"].startswith("External validation unavailable")
        assert result.alternatives.reasoning.startswith("This allocation prioritizes")

    def test_tier_default_without_validator_adds_no_signal(self, quick_config, priors, demos):
        tier_on = EnhancementService(config=replace(quick_config, external_validation=True), seed=0)
        tier_off = EnhancementService(config=quick_config, seed=0)
        with_tier = tier_on.enhance(10_000, priors, demos)
        without = tier_off.enhance(10_000, priors, demos)
        assert with_tier.validation.external is None
        assert "external_validate" not in with_tier.stages
        assert not any(w.type == "external_validation_unavailable" for w in with_tier.validation.warnings)
        assert with_tier.confidence.overall == pytest.approx(without.confidence.overall)

    def test_requested_without_validator_warns(self, service, priors, demos):
        result = service.enhance(10_000, priors, demos, {"enable_external_validation": True})
        assert result.validation.external is None
        assert "external_validate" not in result.stages
        assert "external_validation_unavailable" in {w.type for w in result.validation.warnings}

    def test_disabled_by_default(self, service, priors, demos):
        result = service.enhance(10_000, priors, demos)
        assert result.validation.external is None
        assert "external_validate" not in result.stages


class TestTierConfig:
    def test_fast(self):
        config = tier_config("fast")
        assert not config.bayesian.enabled
        assert config.gradient.max_iterations == 200
        assert config.global_timeout_ms == 3000

    def test_standard(self):
        config = tier_config("standard")
        assert config.bayesian.enabled
        assert config.bayesian.max_iterations == 30
        assert not config.external_validation

    def test_thorough(self):
        config = tier_config("thorough")
        assert config.external_validation
        assert config.global_timeout_ms == 15_000

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown level"):
            tier_config("exhaustive")


class TestRankAlternatives:
    def _result(self, name, shares, confidence, performance):
        return AlgorithmResult(name, Allocation(*shares), confidence, performance)

    def test_dedup_and_exclude_final(self):
        final = Allocation(0.4, 0.3, 0.2, 0.1)
        results = [
            self._result("grid_search", (0.4, 0.3, 0.2, 0.1), 0.9, 100.0),
            self._result("gradient", (0.5, 0.2, 0.2, 0.1), 0.8, 110.0),
            self._result("bayesian", (0.5, 0.2, 0.2, 0.1), 0.6, 90.0),
            self._result("heuristic", (0.3, 0.3, 0.3, 0.1), 0.7, 80.0),
        ]
        top = rank_alternatives(results, final, Direction.MAXIMIZE)
        assert top == [Allocation(0.5, 0.2, 0.2, 0.1), Allocation(0.3, 0.3, 0.3, 0.1)]

    def test_count_limit(self):
        results = [self._result(f"r{i}", (0.1 * i, 0.5 - 0.1 * i, 0.25, 0.25), 0.8, 1.0) for i in range(5)]
        top = rank_alternatives(results, Allocation.equal(), Direction.MAXIMIZE, AlternativeRanking(count=2))
        assert len(top) == 2

    def test_normalized_performance_direction(self):
        assert normalized_performance([10.0, 20.0], Direction.MAXIMIZE).tolist() == [0.0, 1.0]
        assert normalized_performance([10.0, 20.0], Direction.MINIMIZE).tolist() == [1.0, 0.0]
        assert normalized_performance([5.0, 5.0], Direction.MINIMIZE).tolist() == [1.0, 1.0]


class TestEnhanceComponent:
    def test_execute(self, quick_config, sample_event):
        component = EnhanceComponent(EnhancementService(config=quick_config, seed=0))
        result = component.execute(sample_event)
        assert set(result) >= {"allocation", "monte_carlo", "confidence", "validation", "alternatives", "stages"}
        assert result["allocation"]["linkedin"] >= 0.2 - TOL
        assert result["allocation"]["tiktok"] <= 0.2 + TOL
        assert result["objective"] == "demos"
        assert all(isinstance(bounds, list) for bounds in result["intervals"].values())

    def test_execute_rejects_unknown_option(self, quick_config, sample_event):
        sample_event["options"]["turbo"] = True
        with pytest.raises(InvalidInputError, match="options.turbo"):
            EnhanceComponent(EnhancementService(config=quick_config)).execute(sample_event)
