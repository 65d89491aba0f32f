"""Ensemble combiner: merges optimizer results into one recommendation.

Computes cross-algorithm consensus, down-weights outlying results, and
forms the final allocation as a confidence- and performance-weighted average
of the individual allocations. Pure computation; no I/O or timing.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np

from budget_allocation.models import (
    CHANNELS,
    AlgorithmResult,
    Allocation,
    ConsensusMetrics,
    ValidationWarning,
)
from budget_allocation.solver._common import Direction, normalize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnsembleSettings:
    """Tuning constants of the ensemble combiner.

    Parameters
    ----------
    outlier_distance : float
        A result whose mean Euclidean distance to the other allocations
        exceeds this is treated as an outlier when weighting.
    outlier_sigma : float
        Multiple of the per-channel standard deviation beyond which a result
        counts towards ``ConsensusMetrics.outlier_count``.
    outlier_weight : float
        Weight multiplier applied to outliers (0 excludes them).
    min_results_for_outliers : int
        Outliers are only assessed with at least this many results.
    min_performance_factor : float
        Floor of the performance normalization factor.
    max_mean_variance : float
        Mean per-channel variance at which agreement reaches 0.
    low_consensus, very_low_consensus : float
        Agreement thresholds for medium and high severity warnings.
    channel_variance_warning, channel_variance_high : float
        Per-channel variance thresholds for medium and high severity warnings.
    concentration : float
        Largest single-channel share before warning about concentration.
    material_share : float
        Share above which a channel counts as active.
    min_active_channels : int
        Fewer active channels than this triggers a diversification warning.
    """

    outlier_distance: float = 0.5
    outlier_sigma: float = 1.5
    outlier_weight: float = 0.0
    min_results_for_outliers: int = 3
    min_performance_factor: float = 0.1
    max_mean_variance: float = 0.0625
    low_consensus: float = 0.5
    very_low_consensus: float = 0.3
    channel_variance_warning: float = 0.05
    channel_variance_high: float = 0.1
    concentration: float = 0.8
    material_share: float = 0.05
    min_active_channels: int = 2


@dataclass(frozen=True)
class EnsembledResult:
    """Combined recommendation.

    Parameters
    ----------
    allocation : Allocation
        Weighted-average allocation.
    weights : list[float]
        Normalized weight of each input result, in input order.
    performance : float
        Weight-averaged objective value.
    consensus : ConsensusMetrics
        Agreement between the input allocations.
    outliers : list[str]
        Names of results excluded or down-weighted as outliers.
    warnings : list[ValidationWarning]
        Consensus and portfolio warnings.
    """

    allocation: Allocation
    weights: list[float]
    performance: float
    consensus: ConsensusMetrics
    outliers: list[str] = field(default_factory=list)
    warnings: list[ValidationWarning] = field(default_factory=list)


def portfolio_warnings(allocation: Allocation, settings: EnsembleSettings | None = None) -> list[ValidationWarning]:
    """Concentration and diversification warnings for a final allocation."""
    settings = settings or EnsembleSettings()
    shares = allocation.as_array()
    warnings = []
    largest = float(shares.max())
    if largest > settings.concentration:
        warnings.append(
            ValidationWarning(
                type="portfolio_concentration",
                message=(
                    f"Portfolio is over-concentrated with {largest * 100:.1f}% in a single channel. "
                    "Consider diversification."
                ),
                severity="high",
                channel=CHANNELS[int(shares.argmax())],
            )
        )
    active = int((shares > settings.material_share).sum())
    if active < settings.min_active_channels:
        warnings.append(
            ValidationWarning(
                type="insufficient_diversification",
                message=f"Portfolio uses only {active} channel(s). Consider diversifying across multiple channels.",
                severity="medium",
            )
        )
    return warnings


class EnsembleCombiner:
    """Combine algorithm results into a single allocation.

    Parameters
    ----------
    settings : EnsembleSettings, optional
        Tuning constants; defaults to :class:`EnsembleSettings`.
    """

    def __init__(self, settings: EnsembleSettings | None = None) -> None:
        self.settings = settings or EnsembleSettings()

    def consensus(self, results: Sequence[AlgorithmResult]) -> ConsensusMetrics:
        """Per-channel variance, agreement and outlier count of ``results``."""
        matrix = np.array([r.allocation.as_array() for r in results])
        variance = matrix.var(axis=0)
        mean_variance = float(variance.mean())
        cap = self.settings.max_mean_variance
        agreement = 1.0 - min(mean_variance, cap) / cap

        outlier_count = 0
        if len(results) >= self.settings.min_results_for_outliers:
            std = np.maximum(np.sqrt(variance), 1e-9)
            deviations = np.abs(matrix - matrix.mean(axis=0)) > self.settings.outlier_sigma * std
            outlier_count = int(deviations.any(axis=1).sum())

        return ConsensusMetrics(
            agreement=float(np.clip(agreement, 0.0, 1.0)),
            variance={channel: float(variance[i]) for i, channel in enumerate(CHANNELS)},
            outlier_count=outlier_count,
        )

    def detect_outliers(self, results: Sequence[AlgorithmResult]) -> np.ndarray:
        """Boolean mask of results far from the others on average.

        If every result would be flagged, none is.
        """
        n = len(results)
        flagged = np.zeros(n, dtype=bool)
        if n < self.settings.min_results_for_outliers:
            return flagged
        matrix = np.array([r.allocation.as_array() for r in results])
        distances = np.linalg.norm(matrix[:, None, :] - matrix[None, :, :], axis=-1)
        average = distances.sum(axis=1) / (n - 1)
        flagged = average > self.settings.outlier_distance
        if flagged.all():
            return np.zeros(n, dtype=bool)
        return flagged

    def performance_factors(self, performances: np.ndarray, direction: Direction) -> np.ndarray:
        """Each performance relative to the best one, in (floor, 1]."""
        best = performances[direction.best_index(performances)]
        if best <= 0 or np.any(performances <= 0):
            return np.ones(len(performances))
        ratio = performances / best if direction is Direction.MAXIMIZE else best / performances
        return np.clip(ratio, self.settings.min_performance_factor, 1.0)

    def combine(self, results: Sequence[AlgorithmResult], direction: Direction) -> EnsembledResult:
        """Weighted combination of ``results``.

        Parameters
        ----------
        results : Sequence[AlgorithmResult]
            At least one result; the primary result is typically first.
        direction : Direction
            Whether larger or smaller performance values are better.

        Returns
        -------
        EnsembledResult

        Raises
        ------
        ValueError
            If ``results`` is empty.
        """
        if not results:
            raise ValueError("At least one algorithm result is required.")

        consensus = self.consensus(results)
        if len(results) == 1:
            only = results[0]
            return EnsembledResult(
                allocation=only.allocation,
                weights=[1.0],
                performance=only.performance,
                consensus=consensus,
                warnings=portfolio_warnings(only.allocation, self.settings),
            )

        matrix = np.array([r.allocation.as_array() for r in results])
        performances = np.array([r.performance for r in results], dtype=float)
        confidences = np.array([r.confidence for r in results], dtype=float)
        outliers = self.detect_outliers(results)

        weights = confidences * self.performance_factors(performances, direction)
        weights = np.where(outliers, weights * self.settings.outlier_weight, weights)
        if weights.sum() <= 0:
            weights = np.where(outliers, 0.0, 1.0)
        weights = weights / weights.sum()

        allocation = Allocation.from_array(normalize(weights @ matrix))
        outlier_names = [r.name for r, flagged in zip(results, outliers) if flagged]
        if outlier_names:
            logger.info("Ensemble: down-weighted outliers %s", ", ".join(outlier_names))

        warnings = self._consensus_warnings(consensus, outlier_names)
        warnings += portfolio_warnings(allocation, self.settings)
        return EnsembledResult(
            allocation=allocation,
            weights=weights.tolist(),
            performance=float(weights @ performances),
            consensus=consensus,
            outliers=outlier_names,
            warnings=warnings,
        )

    def _consensus_warnings(self, consensus: ConsensusMetrics, outlier_names: list[str]) -> list[ValidationWarning]:
        s = self.settings
        warnings = []
        if consensus.agreement < s.low_consensus:
            warnings.append(
                ValidationWarning(
                    type="low_consensus",
                    message=(
                        f"Low agreement between algorithms ({consensus.agreement * 100:.1f}%). "
                        "Results may be less reliable."
                    ),
                    severity="high" if consensus.agreement < s.very_low_consensus else "medium",
                )
            )
        for channel, variance in consensus.variance.items():
            if variance > s.channel_variance_warning:
                warnings.append(
                    ValidationWarning(
                        type="high_channel_variance",
                        message=f"High variance in {channel} allocation across algorithms.",
                        severity="high" if variance > s.channel_variance_high else "medium",
                        channel=channel,
                    )
                )
        if outlier_names:
            warnings.append(
                ValidationWarning(
                    type="outlier_detected",
                    message=f"Outlier algorithms detected: {', '.join(outlier_names)}. Their weight was reduced.",
                    severity="high" if len(outlier_names) > 1 else "medium",
                )
            )
        return warnings
