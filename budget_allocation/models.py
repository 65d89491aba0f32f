"""Data models for budget allocation requests and results.

All value types are frozen dataclasses validated in ``__post_init__``.
Boundary parsing (plain dicts coming from a request) lives in the
``from_dict`` / ``from_mapping`` constructors, which report the offending
field by its dotted path.
"""

import math
from collections.abc import Iterator, Mapping
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

import numpy as np

from budget_allocation.exceptions import InvalidInputError

Channel = Literal["google", "meta", "tiktok", "linkedin"]
Goal = Literal["demos", "revenue", "cac"]
Severity = Literal["low", "medium", "high"]
Level = Literal["fast", "standard", "thorough"]

CHANNELS: tuple[Channel, ...] = ("google", "meta", "tiktok", "linkedin")
GOALS: tuple[Goal, ...] = ("demos", "revenue", "cac")
SEVERITIES: tuple[Severity, ...] = ("low", "medium", "high")
LEVELS: tuple[Level, ...] = ("fast", "standard", "thorough")
METRICS = ("cpm", "ctr", "cvr")

SUM_TOLERANCE = 1e-5
_BOUND_TOLERANCE = 1e-9


def _check_channels(keys, field_name: str) -> None:
    unknown = sorted(set(keys) - set(CHANNELS))
    if unknown:
        raise InvalidInputError(f"{field_name}.{unknown[0]} is not a known channel")


def validate_budget(budget: Any) -> float:
    """Return ``budget`` as a float, rejecting non-finite or non-positive values.

    Raises
    ------
    InvalidInputError
        If the budget is not a positive finite number.
    """
    if isinstance(budget, bool) or not isinstance(budget, (int, float)):
        raise InvalidInputError("budget must be a number")
    if not math.isfinite(budget) or budget <= 0:
        raise InvalidInputError("budget must be a positive finite number")
    return float(budget)


@dataclass(frozen=True)
class Allocation:
    """Fractional budget split across the four channels.

    Parameters
    ----------
    google, meta, tiktok, linkedin : float
        Share of the budget, each in [0, 1]; the four shares sum to 1.
    """

    google: float
    meta: float
    tiktok: float
    linkedin: float

    def __post_init__(self) -> None:
        """Validate bounds and the unit-sum invariant."""
        for channel in CHANNELS:
            value = getattr(self, channel)
            if not math.isfinite(value):
                raise InvalidInputError(f"allocation.{channel} must be finite")
            if value < -_BOUND_TOLERANCE or value > 1 + _BOUND_TOLERANCE:
                raise InvalidInputError(f"allocation.{channel} must lie within [0, 1]")
        total = sum(getattr(self, channel) for channel in CHANNELS)
        if abs(total - 1.0) > SUM_TOLERANCE:
            raise InvalidInputError(f"allocation must sum to 1 (got {total:.6f})")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, float]) -> "Allocation":
        """Build from a channel mapping; absent channels receive zero."""
        _check_channels(mapping, "allocation")
        return cls(**{channel: float(mapping.get(channel, 0.0)) for channel in CHANNELS})

    @classmethod
    def from_array(cls, values) -> "Allocation":
        """Build from a length-4 sequence in ``CHANNELS`` order."""
        values = np.asarray(values, dtype=float)
        if values.shape != (len(CHANNELS),):
            raise InvalidInputError("allocation array must have one entry per channel")
        return cls(*(float(v) for v in values))

    @classmethod
    def equal(cls) -> "Allocation":
        return cls(0.25, 0.25, 0.25, 0.25)

    def __getitem__(self, channel: str) -> float:
        if channel not in CHANNELS:
            raise KeyError(channel)
        return getattr(self, channel)

    def as_dict(self) -> dict[str, float]:
        return {channel: getattr(self, channel) for channel in CHANNELS}

    def as_array(self) -> np.ndarray:
        return np.array([getattr(self, channel) for channel in CHANNELS], dtype=float)

    def rounded_key(self, digits: int = 6) -> tuple[float, ...]:
        """Key for structural de-duplication of nearly identical allocations."""
        return tuple(round(getattr(self, channel), digits) + 0.0 for channel in CHANNELS)


@dataclass(frozen=True)
class Interval:
    """Closed interval ``[low, high]``."""

    low: float
    high: float

    def __post_init__(self) -> None:
        """Validate finiteness and ordering."""
        if not (math.isfinite(self.low) and math.isfinite(self.high)):
            raise InvalidInputError("interval bounds must be finite")
        if self.low > self.high:
            raise InvalidInputError("interval low must not exceed high")

    @property
    def midpoint(self) -> float:
        return (self.low + self.high) / 2


@dataclass(frozen=True)
class ChannelPrior:
    """Uncertain performance of one channel.

    Parameters
    ----------
    cpm : Interval
        Cost per thousand impressions.
    ctr : Interval
        Click-through rate.
    cvr : Interval
        Conversion rate (clicks to conversions).
    """

    cpm: Interval
    ctr: Interval
    cvr: Interval


def _metric_to_interval(raw: Any, path: str, metric: str) -> Interval:
    """Parse a ``[low, high]`` pair or a ``{mean, std_dev}`` mapping."""
    if isinstance(raw, Interval):
        return raw
    if isinstance(raw, Mapping):
        if "mean" in raw and "std_dev" in raw:
            try:
                mean, sd = float(raw["mean"]), float(raw["std_dev"])
            except (TypeError, ValueError) as exc:
                raise InvalidInputError(f"{path} mean and std_dev must be numbers") from exc
            if not (math.isfinite(mean) and math.isfinite(sd)) or sd < 0:
                raise InvalidInputError(f"{path} mean must be finite and std_dev non-negative")
            low, high = mean - 2 * sd, mean + 2 * sd
            floor, ceiling = (1e-9, math.inf) if metric == "cpm" else (0.0, 1.0)
            low, high = max(floor, low), min(ceiling, high)
            return Interval(low, max(low, high))
        if "low" in raw and "high" in raw:
            raw = (raw["low"], raw["high"])
    if isinstance(raw, (list, tuple)) and len(raw) == 2:
        try:
            low, high = float(raw[0]), float(raw[1])
        except (TypeError, ValueError) as exc:
            raise InvalidInputError(f"{path} bounds must be numbers") from exc
        if not (math.isfinite(low) and math.isfinite(high)):
            raise InvalidInputError(f"{path} bounds must be finite")
        if low > high:
            raise InvalidInputError(f"{path} low must not exceed high")
        return Interval(low, high)
    raise InvalidInputError(f"{path} must be a [low, high] pair or a {{mean, std_dev}} mapping")


@dataclass(frozen=True)
class ChannelPriors:
    """Per-channel priors for every channel in ``CHANNELS``."""

    google: ChannelPrior
    meta: ChannelPrior
    tiktok: ChannelPrior
    linkedin: ChannelPrior

    def __post_init__(self) -> None:
        """Validate metric ranges, naming the offending field."""
        for channel in CHANNELS:
            prior = getattr(self, channel)
            if not isinstance(prior, ChannelPrior):
                raise InvalidInputError(f"priors.{channel} must be a ChannelPrior")
            if prior.cpm.low <= 0:
                raise InvalidInputError(f"priors.{channel}.cpm must be positive")
            for metric in ("ctr", "cvr"):
                interval = getattr(prior, metric)
                if interval.low < 0 or interval.high > 1:
                    raise InvalidInputError(f"priors.{channel}.{metric} must lie within [0, 1]")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChannelPriors":
        """Parse priors given as plain mappings.

        Each metric may be a ``[low, high]`` pair or a ``{"mean", "std_dev"}``
        mapping, which is converted to mean ± 2 standard deviations and clamped
        to the metric's legal range.

        Raises
        ------
        InvalidInputError
            If a channel is missing or unknown, or a metric is malformed.
        """
        if isinstance(data, ChannelPriors):
            return data
        if not isinstance(data, Mapping):
            raise InvalidInputError("priors must be a mapping of channel to metrics")
        _check_channels(data, "priors")
        parsed = {}
        for channel in CHANNELS:
            if channel not in data:
                raise InvalidInputError(f"priors.{channel} is missing")
            raw = data[channel]
            if isinstance(raw, ChannelPrior):
                parsed[channel] = raw
                continue
            if not isinstance(raw, Mapping):
                raise InvalidInputError(f"priors.{channel} must be a mapping of metrics")
            metrics = {}
            for metric in METRICS:
                if metric not in raw:
                    raise InvalidInputError(f"priors.{channel}.{metric} is missing")
                metrics[metric] = _metric_to_interval(raw[metric], f"priors.{channel}.{metric}", metric)
            parsed[channel] = ChannelPrior(**metrics)
        return cls(**parsed)

    def __getitem__(self, channel: str) -> ChannelPrior:
        if channel not in CHANNELS:
            raise KeyError(channel)
        return getattr(self, channel)

    def items(self) -> Iterator[tuple[Channel, ChannelPrior]]:
        return ((channel, getattr(self, channel)) for channel in CHANNELS)

    def midpoints(self, metric: str) -> np.ndarray:
        """Midpoints of ``metric`` for every channel, in ``CHANNELS`` order."""
        return np.array([getattr(prior, metric).midpoint for _, prior in self.items()])

    def bounds(self, metric: str) -> tuple[np.ndarray, np.ndarray]:
        """Lower and upper bounds of ``metric``, in ``CHANNELS`` order."""
        low = np.array([getattr(prior, metric).low for _, prior in self.items()])
        high = np.array([getattr(prior, metric).high for _, prior in self.items()])
        return low, high

    def to_dict(self) -> dict[str, dict[str, list[float]]]:
        return {
            channel: {metric: [getattr(prior, metric).low, getattr(prior, metric).high] for metric in METRICS}
            for channel, prior in self.items()
        }


def _fraction_mapping(raw: Mapping[str, Any] | None, field_name: str) -> dict[str, float]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise InvalidInputError(f"{field_name} must be a mapping of channel to fraction")
    _check_channels(raw, field_name)
    result = {}
    for channel, value in raw.items():
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise InvalidInputError(f"{field_name}.{channel} must be a finite number")
        if not 0 <= value <= 1:
            raise InvalidInputError(f"{field_name}.{channel} must lie within [0, 1]")
        result[channel] = float(value)
    return result


@dataclass(frozen=True)
class Assumptions:
    """Business goal and per-channel constraints for one request.

    Parameters
    ----------
    goal : Goal
        ``"demos"`` (maximize conversions), ``"revenue"`` (maximize
        conversions times deal size) or ``"cac"`` (minimize cost per
        acquisition).
    avg_deal_size : float, optional
        Revenue per conversion. Required when ``goal == "revenue"``.
    target_cac : float, optional
        Informational target cost per acquisition.
    min_pct, max_pct : dict[str, float]
        Partial per-channel floors and ceilings on the budget share.

    Notes
    -----
    Jointly infeasible constraints (floors summing above 1) are accepted here
    and detected by the solvers.
    """

    goal: Goal
    avg_deal_size: float | None = None
    target_cac: float | None = None
    min_pct: dict[str, float] = field(default_factory=dict)
    max_pct: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate the goal, deal size and constraint ranges."""
        if self.goal not in GOALS:
            raise InvalidInputError(f"assumptions.goal must be one of {', '.join(GOALS)}")
        for name in ("avg_deal_size", "target_cac"):
            value = getattr(self, name)
            if value is not None and (not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0):
                raise InvalidInputError(f"assumptions.{name} must be a non-negative finite number")
        if self.goal == "revenue" and not self.avg_deal_size:
            raise InvalidInputError("assumptions.avg_deal_size is required when goal is revenue")
        min_pct = _fraction_mapping(self.min_pct, "assumptions.min_pct")
        max_pct = _fraction_mapping(self.max_pct, "assumptions.max_pct")
        for channel in set(min_pct) & set(max_pct):
            if min_pct[channel] > max_pct[channel]:
                raise InvalidInputError(f"assumptions.min_pct.{channel} must not exceed max_pct.{channel}")
        object.__setattr__(self, "min_pct", min_pct)
        object.__setattr__(self, "max_pct", max_pct)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Assumptions":
        """Parse assumptions from a plain mapping (snake_case keys)."""
        if isinstance(data, Assumptions):
            return data
        if not isinstance(data, Mapping) or "goal" not in data:
            raise InvalidInputError("assumptions.goal is missing")
        unknown = sorted(set(data) - set(cls.__dataclass_fields__))
        if unknown:
            raise InvalidInputError(f"assumptions.{unknown[0]} is not a recognized field")
        return cls(
            goal=data["goal"],
            avg_deal_size=data.get("avg_deal_size"),
            target_cac=data.get("target_cac"),
            min_pct=data.get("min_pct") or {},
            max_pct=data.get("max_pct") or {},
        )


@dataclass(frozen=True)
class ValidationWarning:
    """Structured warning attached to a result."""

    type: str
    message: str
    severity: Severity = "medium"
    channel: Channel | None = None

    def __post_init__(self) -> None:
        """Validate severity and channel."""
        if self.severity not in SEVERITIES:
            raise ValueError(f"severity must be one of {', '.join(SEVERITIES)}")
        if self.channel is not None and self.channel not in CHANNELS:
            raise ValueError(f"unknown channel: {self.channel}")


@dataclass(frozen=True)
class MonteCarloSummary:
    """Order statistics of a Monte Carlo objective distribution."""

    p10: float
    p50: float
    p90: float


@dataclass(frozen=True)
class AlgorithmResult:
    """Output of one optimizer.

    Parameters
    ----------
    name : str
        Algorithm identifier, e.g. ``"grid_search"``.
    allocation : Allocation
        Recommended split.
    confidence : float
        Self-assessed confidence in [0, 1].
    performance : float
        Objective value in the goal's units.
    detail : dict[str, Any]
        Algorithm-specific diagnostics.
    """

    name: str
    allocation: Allocation
    confidence: float
    performance: float
    detail: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate the confidence range."""
        if not 0 <= self.confidence <= 1:
            raise ValueError("confidence must be between 0 and 1")


@dataclass(frozen=True)
class ConsensusMetrics:
    """Agreement between algorithm allocations."""

    agreement: float
    variance: dict[str, float]
    outlier_count: int


@dataclass(frozen=True)
class StabilityMetrics:
    """How tightly algorithm results cluster."""

    overall: float
    per_channel: dict[str, float]
    convergence: float


@dataclass(frozen=True)
class BenchmarkAnalysis:
    """Deviation of an allocation from the expected industry pattern."""

    deviation_score: float
    channel_deviations: dict[str, float]
    warnings: list[ValidationWarning] = field(default_factory=list)
    expected_allocation: dict[str, float] = field(default_factory=dict)

    @classmethod
    def neutral(cls) -> "BenchmarkAnalysis":
        """Zero-deviation default used when benchmark validation is off."""
        return cls(deviation_score=0.0, channel_deviations={channel: 0.0 for channel in CHANNELS})


@dataclass(frozen=True)
class ConfidenceMetrics:
    """Composite confidence of the final recommendation."""

    overall: float
    per_channel: dict[str, float]
    stability: float
    algorithms: list[AlgorithmResult]
    consensus: ConsensusMetrics


@dataclass(frozen=True)
class ValidationReport:
    """Evidence gathered while validating the final allocation."""

    alternative_algorithms: list[AlgorithmResult]
    consensus: ConsensusMetrics
    benchmark_comparison: BenchmarkAnalysis
    warnings: list[ValidationWarning]
    external: dict[str, Any] | None = None


@dataclass(frozen=True)
class Alternatives:
    """Runner-up allocations and the reasoning behind the recommendation."""

    top_allocations: list[Allocation]
    reasoning: str


@dataclass(frozen=True)
class EnhancementOptions:
    """Per-request options of :func:`budget_allocation.enhance_optimization`.

    Parameters
    ----------
    level : Level
        Quality/speed tier selecting algorithms and timeouts.
    include_alternatives : bool
        Populate ``alternatives.top_allocations``.
    validate_against_benchmarks : bool
        Run the benchmark comparison; otherwise a zero-deviation default is used.
    enable_external_validation : bool, optional
        Call the external semantic validator. ``None`` defers to the tier.
    timeout_ms : int, optional
        Override of the global validator-stage timeout.
    """

    level: Level = "standard"
    include_alternatives: bool = True
    validate_against_benchmarks: bool = True
    enable_external_validation: bool | None = None
    timeout_ms: int | None = None

    def __post_init__(self) -> None:
        """Validate the tier and timeout."""
        if self.level not in LEVELS:
            raise InvalidInputError(f"options.level must be one of {', '.join(LEVELS)}")
        if self.timeout_ms is not None and (
            isinstance(self.timeout_ms, bool) or not isinstance(self.timeout_ms, (int, float)) or self.timeout_ms < 0
        ):
            raise InvalidInputError("options.timeout_ms must be a non-negative number")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "EnhancementOptions":
        """Parse options from a plain mapping (snake_case keys)."""
        if isinstance(data, EnhancementOptions):
            return data
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise InvalidInputError("options must be a mapping")
        unknown = sorted(set(data) - set(cls.__dataclass_fields__))
        if unknown:
            raise InvalidInputError(f"options.{unknown[0]} is not a recognized option")
        return cls(**{key: value for key, value in data.items() if value is not None})


@dataclass(frozen=True)
class EnhancedModelResult:
    """Full response of one enhancement request.

    ``deterministic_outcome`` is the midpoint conversion count of the final
    allocation, ``performance`` its deterministic objective value in the
    goal's units, ``monte_carlo`` its objective distribution, and
    ``intervals`` the per-channel spread among the best grid candidates.
    """

    allocation: Allocation
    deterministic_outcome: float
    performance: float
    monte_carlo: MonteCarloSummary
    intervals: dict[str, tuple[float, float]]
    objective: Goal
    summary: str
    confidence: ConfidenceMetrics
    validation: ValidationReport
    alternatives: Alternatives
    recommendations: list[str] = field(default_factory=list)
    stages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to plain Python types."""
        result = asdict(self)
        result["intervals"] = {channel: list(bounds) for channel, bounds in self.intervals.items()}
        return result
