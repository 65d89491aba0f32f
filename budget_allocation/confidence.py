"""Confidence scoring of the final recommendation.

Blends average algorithm confidence, consensus agreement, result stability,
performance convergence, benchmark deviation and, when available, external
semantic validation into one score. Signals that were not computed for a
request are left out and the remaining weights are renormalized.
"""

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from budget_allocation.models import (
    CHANNELS,
    AlgorithmResult,
    BenchmarkAnalysis,
    ConfidenceMetrics,
    ConsensusMetrics,
    StabilityMetrics,
)
from budget_allocation.semantic import SemanticValidation


@dataclass(frozen=True)
class ConfidenceWeights:
    """Relative weights of the confidence signals."""

    algorithms: float = 0.20
    consensus: float = 0.25
    stability: float = 0.20
    benchmark: float = 0.15
    performance: float = 0.10
    external: float = 0.10


@dataclass(frozen=True)
class ConfidenceSettings:
    """Scaling constants of the confidence scorer.

    Parameters
    ----------
    stability_variance_scale : float
        Stability is ``1 - scale * variance``.
    channel_variance_scale : float
        Per-channel consensus is ``1 - scale * variance``.
    channel_deviation_scale : float
        Per-channel benchmark score is ``1 - scale * deviation``.
    warning_penalty, max_warning_penalty : float
        Confidence removed per external warning, and its cap.
    low_overall, low_stability, low_channel : float
        Thresholds below which recommendations are emitted.
    """

    stability_variance_scale: float = 10.0
    channel_variance_scale: float = 5.0
    channel_deviation_scale: float = 2.0
    warning_penalty: float = 0.1
    max_warning_penalty: float = 0.3
    low_overall: float = 0.5
    low_stability: float = 0.6
    low_channel: float = 0.4


def _clip(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


def _blend(terms: dict[str, float | None], weights: ConfidenceWeights) -> float:
    available = {name: value for name, value in terms.items() if value is not None}
    total = sum(getattr(weights, name) for name in available)
    if total <= 0:
        return 0.0
    return _clip(sum(getattr(weights, name) * value for name, value in available.items()) / total)


class ConfidenceScorer:
    """Derive stability and composite confidence metrics.

    Parameters
    ----------
    weights : ConfidenceWeights, optional
        Blend weights.
    settings : ConfidenceSettings, optional
        Scaling constants and recommendation thresholds.
    """

    def __init__(self, weights: ConfidenceWeights | None = None, settings: ConfidenceSettings | None = None) -> None:
        self.weights = weights or ConfidenceWeights()
        self.settings = settings or ConfidenceSettings()

    def assess_stability(self, results: Sequence[AlgorithmResult]) -> StabilityMetrics:
        """How tightly the algorithm results cluster.

        Raises
        ------
        ValueError
            If ``results`` is empty.
        """
        if not results:
            raise ValueError("Cannot assess stability without results.")
        if len(results) == 1:
            return StabilityMetrics(overall=1.0, per_channel={channel: 1.0 for channel in CHANNELS}, convergence=1.0)

        scale = self.settings.stability_variance_scale
        matrix = np.array([r.allocation.as_array() for r in results])
        variance = matrix.var(axis=0)
        per_channel = {channel: _clip(1 - scale * variance[i]) for i, channel in enumerate(CHANNELS)}

        performances = np.array([r.performance for r in results], dtype=float)
        mean = abs(float(performances.mean()))
        # Coefficient of variation keeps the score independent of the goal's units.
        spread = float(performances.std()) / mean if mean > 0 else 0.0
        return StabilityMetrics(
            overall=_clip(1 - scale * float(variance.mean())),
            per_channel=per_channel,
            convergence=_clip(1 - spread),
        )

    def allocation_confidence(self, validations: Sequence[SemanticValidation]) -> float:
        """Confidence-weighted validator confidence, less a per-warning penalty.

        Returns 0.5 without validations and 0.1 when every validator reports
        zero confidence.
        """
        if not validations:
            return 0.5
        total = sum(v.confidence for v in validations)
        if total == 0:
            return 0.1
        weighted = sum(v.confidence * v.confidence / total for v in validations if v.is_valid)
        warnings = sum(len(v.warnings) for v in validations)
        penalty = min(warnings * self.settings.warning_penalty, self.settings.max_warning_penalty)
        return _clip(weighted - penalty)

    def comprehensive(
        self,
        results: Sequence[AlgorithmResult],
        consensus: ConsensusMetrics,
        stability: StabilityMetrics,
        benchmark: BenchmarkAnalysis | None = None,
        external_confidence: float | None = None,
    ) -> ConfidenceMetrics:
        """Composite confidence of the final allocation.

        Parameters
        ----------
        results : Sequence[AlgorithmResult]
            Every contributing result, primary included.
        consensus : ConsensusMetrics
            Agreement between the results.
        stability : StabilityMetrics
            Output of :meth:`assess_stability`.
        benchmark : BenchmarkAnalysis, optional
            Omitted from the blend when ``None``.
        external_confidence : float, optional
            External semantic-validation confidence; omitted when ``None``.

        Returns
        -------
        ConfidenceMetrics
        """
        s = self.settings
        average_confidence = float(np.mean([r.confidence for r in results])) if results else None
        overall = _blend(
            {
                "algorithms": average_confidence,
                "consensus": consensus.agreement,
                "stability": stability.overall,
                "benchmark": None if benchmark is None else 1 - benchmark.deviation_score,
                "performance": stability.convergence,
                "external": external_confidence,
            },
            self.weights,
        )

        per_channel = {}
        for channel in CHANNELS:
            deviation = None if benchmark is None else benchmark.channel_deviations[channel]
            per_channel[channel] = _blend(
                {
                    "algorithms": average_confidence,
                    "consensus": _clip(1 - s.channel_variance_scale * consensus.variance[channel]),
                    "stability": stability.per_channel[channel],
                    "benchmark": None if deviation is None else _clip(1 - s.channel_deviation_scale * deviation),
                    "performance": stability.convergence,
                },
                self.weights,
            )

        return ConfidenceMetrics(
            overall=overall,
            per_channel=per_channel,
            stability=stability.overall,
            algorithms=list(results),
            consensus=consensus,
        )

    def recommendations(self, metrics: ConfidenceMetrics) -> list[str]:
        """Follow-up suggestions for weak confidence signals."""
        s = self.settings
        notes = []
        if metrics.overall < s.low_overall:
            notes.append("Overall confidence is low. Consider reviewing input parameters or constraints.")
        if metrics.stability < s.low_stability:
            notes.append("Results show low stability. Different algorithms disagree on the split.")
        for channel in CHANNELS:
            if metrics.per_channel[channel] < s.low_channel:
                notes.append(f"{channel} allocation has low confidence. Consider reviewing its constraints or priors.")
        if not notes:
            notes.append("Confidence metrics indicate reliable optimization results.")
        return notes
