"""Benchmark comparison of an allocation against an expected industry pattern.

The expected pattern is the performance-proportional allocation implied by
the priors (``ctr * cvr / cpm`` at midpoints), shifted by industry and
company-size adjustments and renormalized.
"""

import logging
from dataclasses import dataclass, field
from typing import Literal

import numpy as np

from budget_allocation.models import (
    CHANNELS,
    Allocation,
    Assumptions,
    BenchmarkAnalysis,
    ChannelPriors,
    ValidationWarning,
)

logger = logging.getLogger(__name__)

CompanySize = Literal["small", "medium", "large"]

STANDARD_RANGES: dict[str, tuple[float, float]] = {
    "google": (0.25, 0.50),
    "meta": (0.20, 0.45),
    "tiktok": (0.05, 0.25),
    "linkedin": (0.05, 0.30),
}

REFERENCE_ALLOCATION: dict[str, float] = {"google": 0.35, "meta": 0.30, "tiktok": 0.15, "linkedin": 0.20}

INDUSTRY_ADJUSTMENTS: dict[str, dict[str, float]] = {
    "b2b": {"google": 0.05, "meta": -0.05, "tiktok": -0.10, "linkedin": 0.10},
    "ecommerce": {"google": 0.10, "meta": 0.10, "tiktok": 0.05, "linkedin": -0.25},
    "saas": {"google": 0.05, "meta": -0.05, "tiktok": -0.05, "linkedin": 0.05},
}

SIZE_ADJUSTMENTS: dict[str, dict[str, float]] = {
    "small": {"google": 0.10, "meta": 0.05, "tiktok": -0.10, "linkedin": -0.05},
    "medium": {"google": 0.0, "meta": 0.0, "tiktok": 0.0, "linkedin": 0.0},
    "large": {"google": -0.05, "meta": -0.05, "tiktok": 0.05, "linkedin": 0.05},
}


@dataclass(frozen=True)
class BenchmarkThresholds:
    """Thresholds of the benchmark validator.

    Parameters
    ----------
    deviation_warning : float
        Per-channel deviation above which a medium warning is raised.
    extreme_deviation : float
        Per-channel deviation above which a high warning is raised instead.
    min_allocation : float
        Non-zero shares below this are flagged as not viable.
    max_allocation : float
        Shares above this are flagged as excessive.
    small_budget, medium_budget : float
        Budget bounds used to infer the company size.
    """

    deviation_warning: float = 0.15
    extreme_deviation: float = 0.30
    min_allocation: float = 0.05
    max_allocation: float = 0.70
    small_budget: float = 10_000
    medium_budget: float = 100_000
    standard_ranges: dict[str, tuple[float, float]] = field(default_factory=lambda: dict(STANDARD_RANGES))


@dataclass(frozen=True)
class ValidationContext:
    """Request context used to adjust the expected allocation."""

    budget: float
    assumptions: Assumptions
    industry_type: str | None = None
    company_size: CompanySize | None = None

    @classmethod
    def infer(
        cls, budget: float, assumptions: Assumptions, thresholds: BenchmarkThresholds | None = None
    ) -> "ValidationContext":
        """Infer industry from the goal and deal economics, size from the budget."""
        thresholds = thresholds or BenchmarkThresholds()
        industry = None
        if assumptions.goal == "cac" and (assumptions.target_cac or 0) > 500:
            industry = "b2b"
        elif assumptions.goal == "revenue" and (assumptions.avg_deal_size or 0) < 200:
            industry = "ecommerce"
        elif assumptions.goal == "demos":
            industry = "saas"

        if budget < thresholds.small_budget:
            size = "small"
        elif budget < thresholds.medium_budget:
            size = "medium"
        else:
            size = "large"
        return cls(budget=budget, assumptions=assumptions, industry_type=industry, company_size=size)


def _normalize_clipped(values: dict[str, float]) -> dict[str, float]:
    clipped = {channel: max(0.0, values[channel]) for channel in CHANNELS}
    total = sum(clipped.values())
    if total <= 0:
        return {channel: 1.0 / len(CHANNELS) for channel in CHANNELS}
    return {channel: value / total for channel, value in clipped.items()}


def performance_based_allocation(priors: ChannelPriors) -> dict[str, float]:
    """Share proportional to midpoint ``ctr * cvr / max(cpm, 0.01)``."""
    scores = priors.midpoints("ctr") * priors.midpoints("cvr") / np.maximum(priors.midpoints("cpm"), 0.01)
    return _normalize_clipped(dict(zip(CHANNELS, scores.tolist())))


def expected_allocation(priors: ChannelPriors, context: ValidationContext | None = None) -> dict[str, float]:
    """Performance-based allocation with industry and size adjustments applied."""
    expected = performance_based_allocation(priors)
    if context is None:
        return expected
    adjusted = dict(expected)
    for table, key in ((INDUSTRY_ADJUSTMENTS, context.industry_type), (SIZE_ADJUSTMENTS, context.company_size)):
        if key in table:
            for channel in CHANNELS:
                adjusted[channel] += table[key][channel]
    return _normalize_clipped(adjusted)


def industry_recommendations(industry_type: str) -> dict[str, float] | None:
    """Reference allocation adjusted for ``industry_type``, or ``None`` if unknown."""
    if industry_type not in INDUSTRY_ADJUSTMENTS:
        return None
    adjustments = INDUSTRY_ADJUSTMENTS[industry_type]
    return _normalize_clipped({channel: REFERENCE_ALLOCATION[channel] + adjustments[channel] for channel in CHANNELS})


class BenchmarkValidator:
    """Compare allocations with the expected industry pattern.

    Parameters
    ----------
    thresholds : BenchmarkThresholds, optional
        Warning thresholds; defaults to :class:`BenchmarkThresholds`.
    """

    def __init__(self, thresholds: BenchmarkThresholds | None = None) -> None:
        self.thresholds = thresholds or BenchmarkThresholds()

    def validate(
        self,
        allocation: Allocation,
        priors: ChannelPriors,
        context: ValidationContext | None = None,
    ) -> BenchmarkAnalysis:
        """Per-channel deviation from the expected allocation plus warnings.

        Parameters
        ----------
        allocation : Allocation
            Allocation under review.
        priors : ChannelPriors
            Priors defining the performance-based expectation.
        context : ValidationContext, optional
            Industry and company size adjustments, and the goal for
            goal-specific checks.

        Returns
        -------
        BenchmarkAnalysis
            ``deviation_score`` is the summed absolute deviation divided by
            its maximum of 2, capped at 1.
        """
        expected = expected_allocation(priors, context)
        deviations = {}
        warnings: list[ValidationWarning] = []
        for channel in CHANNELS:
            share = allocation[channel]
            deviations[channel] = abs(share - expected[channel])
            warnings += self._channel_warnings(channel, share, expected[channel], deviations[channel])
        warnings += self._goal_warnings(allocation, context)

        score = min(1.0, sum(deviations.values()) / 2)
        logger.debug("Benchmark deviation score %.3f with %d warnings", score, len(warnings))
        return BenchmarkAnalysis(
            deviation_score=score,
            channel_deviations=deviations,
            warnings=warnings,
            expected_allocation=expected,
        )

    def _channel_warnings(self, channel: str, share: float, expected: float, deviation: float) -> list[ValidationWarning]:
        t = self.thresholds
        warnings = []
        if 0 < share < t.min_allocation:
            warnings.append(
                ValidationWarning(
                    type="unrealistic_allocation",
                    message=(
                        f"{channel} allocation ({share * 100:.1f}%) is below minimum viable threshold "
                        f"({t.min_allocation * 100:.1f}%)"
                    ),
                    severity="medium",
                    channel=channel,
                )
            )
        if share > t.max_allocation:
            warnings.append(
                ValidationWarning(
                    type="unrealistic_allocation",
                    message=(
                        f"{channel} allocation ({share * 100:.1f}%) exceeds maximum recommended threshold "
                        f"({t.max_allocation * 100:.1f}%)"
                    ),
                    severity="high",
                    channel=channel,
                )
            )
        low, high = t.standard_ranges[channel]
        if share > 0 and not low <= share <= high:
            warnings.append(
                ValidationWarning(
                    type="industry_range_deviation",
                    message=(
                        f"{channel} allocation ({share * 100:.1f}%) is outside typical industry range "
                        f"({low * 100:.1f}%-{high * 100:.1f}%)"
                    ),
                    severity="high" if share < low * 0.5 or share > high * 1.5 else "medium",
                    channel=channel,
                )
            )
        if deviation > t.extreme_deviation:
            warnings.append(
                ValidationWarning(
                    type="extreme_benchmark_deviation",
                    message=(
                        f"{channel} allocation ({share * 100:.1f}%) deviates extremely from benchmark "
                        f"expectation ({expected * 100:.1f}%)"
                    ),
                    severity="high",
                    channel=channel,
                )
            )
        elif deviation > t.deviation_warning:
            warnings.append(
                ValidationWarning(
                    type="benchmark_deviation",
                    message=(
                        f"{channel} allocation ({share * 100:.1f}%) deviates significantly from benchmark "
                        f"expectation ({expected * 100:.1f}%)"
                    ),
                    severity="medium",
                    channel=channel,
                )
            )
        return warnings

    def _goal_warnings(self, allocation: Allocation, context: ValidationContext | None) -> list[ValidationWarning]:
        if context is None:
            return []
        goal = context.assumptions.goal
        if goal == "cac" and context.industry_type == "b2b" and allocation.linkedin < 0.1:
            return [
                ValidationWarning(
                    type="goal_channel_mismatch",
                    message="For B2B CAC optimization, consider allocating more budget to LinkedIn.",
                    severity="low",
                    channel="linkedin",
                )
            ]
        if goal == "revenue" and allocation.google < 0.2:
            return [
                ValidationWarning(
                    type="goal_channel_mismatch",
                    message="For revenue optimization, consider allocating more budget to Google.",
                    severity="low",
                    channel="google",
                )
            ]
        return []
