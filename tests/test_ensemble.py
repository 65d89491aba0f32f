"""Unit tests for the ensemble combiner."""

import numpy as np
import pytest

from budget_allocation.ensemble import EnsembleCombiner, EnsembleSettings, portfolio_warnings
from budget_allocation.models import AlgorithmResult, Allocation
from budget_allocation.solver import Direction


def _result(name, shares, confidence=0.8, performance=100.0):
    return AlgorithmResult(name=name, allocation=Allocation(*shares), confidence=confidence, performance=performance)


@pytest.fixture()
def agreeing_results():
    return [
        _result("grid_search", (0.4, 0.3, 0.2, 0.1)),
        _result("gradient", (0.42, 0.28, 0.2, 0.1)),
        _result("heuristic", (0.38, 0.32, 0.2, 0.1), confidence=0.7),
    ]


class TestConsensus:
    def test_identical_results_agree_fully(self):
        results = [_result(name, (0.4, 0.3, 0.2, 0.1)) for name in ("a", "b", "c")]
        consensus = EnsembleCombiner().consensus(results)
        assert consensus.agreement == pytest.approx(1.0)
        assert consensus.outlier_count == 0
        assert max(consensus.variance.values()) == pytest.approx(0.0, abs=1e-12)

    def test_disagreement_lowers_agreement(self, agreeing_results):
        spread = [
            _result("a", (1.0, 0.0, 0.0, 0.0)),
            _result("b", (0.0, 1.0, 0.0, 0.0)),
            _result("c", (0.0, 0.0, 1.0, 0.0)),
        ]
        combiner = EnsembleCombiner()
        assert combiner.consensus(spread).agreement < combiner.consensus(agreeing_results).agreement

    def test_agreement_in_unit_interval(self):
        results = [_result("a", (1.0, 0.0, 0.0, 0.0)), _result("b", (0.0, 0.0, 0.0, 1.0))]
        agreement = EnsembleCombiner().consensus(results).agreement
        assert 0.0 <= agreement <= 1.0

    def test_outlier_counted(self):
        results = [_result(f"r{i}", (0.4, 0.3, 0.2, 0.1)) for i in range(4)]
        results.append(_result("odd", (0.0, 0.0, 0.0, 1.0)))
        consensus = EnsembleCombiner().consensus(results)
        assert 1 <= consensus.outlier_count <= len(results)


class TestCombine:
    def test_empty_raises(self):
        with pytest.raises(ValueError, match="At least one"):
            EnsembleCombiner().combine([], Direction.MAXIMIZE)

    def test_single_result_passthrough(self):
        only = _result("grid_search", (0.4, 0.3, 0.2, 0.1))
        combined = EnsembleCombiner().combine([only], Direction.MAXIMIZE)
        assert combined.allocation == only.allocation
        assert combined.weights == [1.0]

    def test_weighted_average_on_simplex(self, agreeing_results):
        combined = EnsembleCombiner().combine(agreeing_results, Direction.MAXIMIZE)
        assert combined.allocation.as_array().sum() == pytest.approx(1.0)
        assert sum(combined.weights) == pytest.approx(1.0)
        assert 0.38 <= combined.allocation.google <= 0.42

    def test_confidence_weighting(self):
        results = [
            _result("confident", (1.0, 0.0, 0.0, 0.0), confidence=0.9),
            _result("doubtful", (0.0, 1.0, 0.0, 0.0), confidence=0.1),
        ]
        combined = EnsembleCombiner().combine(results, Direction.MAXIMIZE)
        assert combined.allocation.google == pytest.approx(0.9)

    def test_performance_weighting_respects_direction(self):
        results = [
            _result("cheap", (1.0, 0.0, 0.0, 0.0), performance=10.0),
            _result("costly", (0.0, 1.0, 0.0, 0.0), performance=20.0),
        ]
        combiner = EnsembleCombiner()
        minimized = combiner.combine(results, Direction.MINIMIZE)
        maximized = combiner.combine(results, Direction.MAXIMIZE)
        assert minimized.allocation.google > 0.5
        assert maximized.allocation.google < 0.5

    def test_outlier_excluded(self):
        results = [
            _result("a", (0.4, 0.3, 0.2, 0.1)),
            _result("b", (0.4, 0.3, 0.2, 0.1)),
            _result("c", (0.4, 0.3, 0.2, 0.1)),
            _result("odd", (0.0, 0.0, 0.0, 1.0)),
        ]
        combined = EnsembleCombiner().combine(results, Direction.MAXIMIZE)
        assert combined.outliers == ["odd"]
        assert combined.weights[3] == 0.0
        assert combined.allocation.as_array() == pytest.approx(np.array([0.4, 0.3, 0.2, 0.1]))
        assert any(w.type == "outlier_detected" for w in combined.warnings)

    def test_outlier_down_weighted(self):
        results = [_result(name, (0.4, 0.3, 0.2, 0.1)) for name in ("a", "b", "c")]
        results.append(_result("odd", (0.0, 0.0, 0.0, 1.0)))
        combined = EnsembleCombiner(EnsembleSettings(outlier_weight=0.5)).combine(results, Direction.MAXIMIZE)
        assert 0 < combined.weights[3] < combined.weights[0]

    def test_low_consensus_warning(self):
        results = [
            _result("a", (1.0, 0.0, 0.0, 0.0)),
            _result("b", (0.0, 1.0, 0.0, 0.0)),
        ]
        combined = EnsembleCombiner().combine(results, Direction.MAXIMIZE)
        types = {w.type for w in combined.warnings}
        assert "low_consensus" in types
        assert "high_channel_variance" in types


class TestPortfolioWarnings:
    def test_concentration(self):
        warnings = portfolio_warnings(Allocation(0.9, 0.1, 0.0, 0.0))
        concentration = [w for w in warnings if w.type == "portfolio_concentration"]
        assert concentration[0].severity == "high"
        assert concentration[0].channel == "google"

    def test_insufficient_diversification(self):
        warnings = portfolio_warnings(Allocation(1.0, 0.0, 0.0, 0.0))
        assert "insufficient_diversification" in {w.type for w in warnings}

    def test_balanced_portfolio_clean(self):
        assert portfolio_warnings(Allocation.equal()) == []
