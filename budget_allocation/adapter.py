"""ENHANCE component: multi-algorithm budget allocation with validation.

Runs the grid search as the primary optimizer, the gradient, Bayesian and
heuristic optimizers as timeout-bounded validators, combines the results and
scores confidence. Also exposes the pipeline wrapper that maps camelCase
request fields to the Python API.
"""

import logging
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Protocol

import numpy as np

from budget_allocation.benchmark import BenchmarkValidator, ValidationContext
from budget_allocation.confidence import ConfidenceScorer
from budget_allocation.ensemble import EnsembleCombiner
from budget_allocation.exceptions import InfeasibleConstraintsError
from budget_allocation.models import (
    CHANNELS,
    AlgorithmResult,
    Allocation,
    Alternatives,
    Assumptions,
    BenchmarkAnalysis,
    ChannelPriors,
    EnhancedModelResult,
    EnhancementOptions,
    Level,
    MonteCarloSummary,
    ValidationReport,
    ValidationWarning,
    validate_budget,
)
from budget_allocation.objective import (
    DEFAULT_RUNS,
    deterministic_conversions,
    evaluate_objective,
    monte_carlo_outcome,
)
from budget_allocation.runner import ValidatorTask, call_with_timeout, run_validators
from budget_allocation.semantic import (
    OptimizationContext,
    SemanticValidation,
    SemanticValidator,
)
from budget_allocation.solver import (
    AllocationSolver,
    BayesianSolver,
    Direction,
    GradientSolver,
    GridSearchSolver,
    HeuristicSolver,
    project_to_constraints,
    respects_constraints,
    to_algorithm_result,
)

logger = logging.getLogger(__name__)

GOAL_LABELS = {"demos": "conversions", "revenue": "revenue", "cac": "cost per acquisition"}


class PipelineStage(Enum):
    """Stages of one enhancement request, in execution order."""

    SETUP = "setup"
    RUN_PRIMARY = "run_primary"
    RUN_VALIDATORS = "run_validators"
    COMBINE = "combine"
    SCORE_CONFIDENCE = "score_confidence"
    EXTERNAL_VALIDATE = "external_validate"
    BUILD_ALTERNATIVES = "build_alternatives"
    DONE = "done"


@dataclass(frozen=True)
class AlgorithmConfig:
    """Whether and for how long a validator algorithm runs.

    Parameters
    ----------
    enabled : bool
        Run the algorithm at all.
    timeout_ms : int
        Per-algorithm deadline.
    max_iterations : int, optional
        Iteration cap for iterative algorithms; their default when ``None``.
    """

    enabled: bool = True
    timeout_ms: int = 5000
    max_iterations: int | None = None


@dataclass(frozen=True)
class EnhancementConfig:
    """Algorithm subset and timeouts of one quality tier.

    Parameters
    ----------
    gradient, bayesian, heuristic : AlgorithmConfig
        Validator algorithm settings.
    global_timeout_ms : int
        Deadline of the whole validator stage.
    external_validation : bool
        Call the semantic validator unless the request says otherwise.
    external_timeout_ms : int
        Deadline of each semantic validator call.
    monte_carlo_runs : int
        Draws per Monte Carlo evaluation.
    max_workers : int, optional
        Validator thread pool size; one per algorithm when ``None``.
    """

    gradient: AlgorithmConfig = field(default_factory=AlgorithmConfig)
    bayesian: AlgorithmConfig = field(default_factory=AlgorithmConfig)
    heuristic: AlgorithmConfig = field(default_factory=AlgorithmConfig)
    global_timeout_ms: int = 10_000
    external_validation: bool = False
    external_timeout_ms: int = 5000
    monte_carlo_runs: int = DEFAULT_RUNS
    max_workers: int | None = None


def tier_config(level: Level) -> EnhancementConfig:
    """Preset configuration for ``fast``, ``standard`` or ``thorough``.

    Raises
    ------
    ValueError
        If ``level`` is not a known tier.
    """
    if level == "fast":
        return EnhancementConfig(
            gradient=AlgorithmConfig(timeout_ms=2000, max_iterations=200),
            bayesian=AlgorithmConfig(enabled=False),
            heuristic=AlgorithmConfig(timeout_ms=1000),
            global_timeout_ms=3000,
        )
    if level == "standard":
        return EnhancementConfig(
            gradient=AlgorithmConfig(timeout_ms=5000, max_iterations=1000),
            bayesian=AlgorithmConfig(timeout_ms=8000, max_iterations=30),
            heuristic=AlgorithmConfig(timeout_ms=2000),
            global_timeout_ms=10_000,
        )
    if level == "thorough":
        return EnhancementConfig(
            gradient=AlgorithmConfig(timeout_ms=10_000, max_iterations=1000),
            bayesian=AlgorithmConfig(timeout_ms=15_000, max_iterations=50),
            heuristic=AlgorithmConfig(timeout_ms=5000),
            global_timeout_ms=15_000,
            external_validation=True,
            external_timeout_ms=10_000,
        )
    raise ValueError(f"Unknown level: {level}")


@dataclass(frozen=True)
class AlternativeRanking:
    """Blend used to rank runner-up allocations.

    Score is ``confidence_weight * confidence + performance_weight *
    normalized_performance``, where performance is min-max normalized across
    the results and oriented so that 1 is best.
    """

    confidence_weight: float = 0.6
    performance_weight: float = 0.4
    count: int = 3
    digits: int = 6


def normalized_performance(performances: Sequence[float], direction: Direction) -> np.ndarray:
    """Min-max normalize ``performances`` so that the best value maps to 1."""
    values = np.asarray(performances, dtype=float)
    spread = values.max() - values.min()
    if spread <= 0:
        return np.ones(len(values))
    if direction is Direction.MAXIMIZE:
        return (values - values.min()) / spread
    return (values.max() - values) / spread


def rank_alternatives(
    results: Sequence[AlgorithmResult],
    final: Allocation,
    direction: Direction,
    ranking: AlternativeRanking | None = None,
) -> list[Allocation]:
    """Top distinct allocations other than ``final``, best first."""
    ranking = ranking or AlternativeRanking()
    if not results:
        return []
    performance = normalized_performance([r.performance for r in results], direction)
    scores = [
        ranking.confidence_weight * r.confidence + ranking.performance_weight * performance[i]
        for i, r in enumerate(results)
    ]
    seen = {final.rounded_key(ranking.digits)}
    picks = []
    for i in sorted(range(len(results)), key=lambda i: -scores[i]):
        key = results[i].allocation.rounded_key(ranking.digits)
        if key in seen:
            continue
        seen.add(key)
        picks.append(results[i].allocation)
        if len(picks) == ranking.count:
            break
    return picks


def _solve(
    solver: AllocationSolver,
    budget: float,
    priors: ChannelPriors,
    assumptions: Assumptions,
    cancel_event: threading.Event,
) -> AlgorithmResult:
    started = time.monotonic()
    result = to_algorithm_result(solver(budget, priors, assumptions, cancel_event=cancel_event))
    logger.debug("Algorithm %s finished in %.3fs", result.name, time.monotonic() - started)
    return result


class EnhancementService:
    """Orchestrate optimization, validation and confidence scoring.

    Parameters
    ----------
    config : EnhancementConfig, optional
        Fixed configuration. When omitted, :func:`tier_config` of the
        request's ``level`` is used.
    ensemble : EnsembleCombiner, optional
        Result combiner.
    scorer : ConfidenceScorer, optional
        Confidence scorer.
    benchmark : BenchmarkValidator, optional
        Benchmark comparison.
    semantic_validator : SemanticValidator, optional
        External validator. Without one the external stage is skipped and
        confidence uses local signals only.
    ranking : AlternativeRanking, optional
        Alternative ranking blend.
    seed : int, optional
        Seed for every random draw of a request. Requests with the same seed
        and inputs draw the same numbers.
    """

    def __init__(
        self,
        config: EnhancementConfig | None = None,
        ensemble: EnsembleCombiner | None = None,
        scorer: ConfidenceScorer | None = None,
        benchmark: BenchmarkValidator | None = None,
        semantic_validator: SemanticValidator | None = None,
        ranking: AlternativeRanking | None = None,
        seed: int | None = None,
    ) -> None:
        self.config = config
        self.ensemble = ensemble or EnsembleCombiner()
        self.scorer = scorer or ConfidenceScorer()
        self.benchmark = benchmark or BenchmarkValidator()
        self.semantic_validator = semantic_validator
        self.ranking = ranking or AlternativeRanking()
        self.seed = seed

    def enhance(
        self,
        budget: float,
        priors: ChannelPriors | Mapping[str, Any],
        assumptions: Assumptions | Mapping[str, Any],
        options: EnhancementOptions | Mapping[str, Any] | None = None,
    ) -> EnhancedModelResult:
        """Run one enhancement request.

        Parameters
        ----------
        budget : float
            Total spend; must be positive and finite.
        priors : ChannelPriors or Mapping[str, Any]
            Channel performance intervals.
        assumptions : Assumptions or Mapping[str, Any]
            Goal and per-channel constraints.
        options : EnhancementOptions or Mapping[str, Any], optional
            Tier and feature switches.

        Returns
        -------
        EnhancedModelResult

        Raises
        ------
        InvalidInputError
            If any input fails validation.
        InfeasibleConstraintsError
            If the constraints admit no allocation at all.
        """
        started = time.monotonic()
        budget, priors, assumptions, options = parse_request(budget, priors, assumptions, options)
        config = self.config or tier_config(options.level)
        direction = Direction.for_goal(assumptions.goal)
        stages = [PipelineStage.SETUP]
        warnings: list[ValidationWarning] = []

        stages.append(PipelineStage.RUN_PRIMARY)
        primary_solution = self._run_primary(budget, priors, assumptions, config, warnings)
        primary = to_algorithm_result(primary_solution)
        logger.info("Primary %s done: objective=%.6g", primary.name, primary.performance)

        stages.append(PipelineStage.RUN_VALIDATORS)
        baseline = MonteCarloSummary(**primary.detail["monte_carlo"])
        tasks = self._validator_tasks(budget, priors, assumptions, config, primary.allocation, baseline)
        global_timeout_ms = options.timeout_ms if options.timeout_ms is not None else config.global_timeout_ms
        outcome = run_validators(tasks, global_timeout_ms / 1000, config.max_workers)
        if outcome.missing:
            warnings.append(
                ValidationWarning(
                    type="algorithm_unavailable",
                    message=(
                        f"Algorithms unavailable (timed out or failed): {', '.join(outcome.missing)}. "
                        "Results are based on the remaining algorithms."
                    ),
                    severity="low",
                )
            )
        results = [primary, *outcome.results]

        stages.append(PipelineStage.COMBINE)
        ensembled = self.ensemble.combine(results, direction)
        final = ensembled.allocation
        if not respects_constraints(final, assumptions.min_pct, assumptions.max_pct):
            final = Allocation.from_array(
                project_to_constraints(final.as_array(), assumptions.min_pct, assumptions.max_pct)
            )
        warnings += ensembled.warnings
        logger.info("Combined %d results, agreement=%.3f", len(results), ensembled.consensus.agreement)

        stages.append(PipelineStage.SCORE_CONFIDENCE)
        stability = self.scorer.assess_stability(results)
        benchmark = self._benchmark(final, budget, priors, assumptions, options)
        if benchmark is not None:
            warnings += benchmark.warnings
        confidence = self.scorer.comprehensive(results, ensembled.consensus, stability, benchmark)

        external = explanation = None
        use_external = options.enable_external_validation
        if use_external is None:
            use_external = config.external_validation
        if use_external and self.semantic_validator is None:
            logger.info("External validation requested but no semantic validator is configured")
            if options.enable_external_validation:
                warnings.append(
                    ValidationWarning(
                        type="external_validation_unavailable",
                        message="No external validator is configured. Confidence uses local signals only.",
                        severity="low",
                    )
                )
        elif use_external:
            stages.append(PipelineStage.EXTERNAL_VALIDATE)
            context = OptimizationContext(budget=budget, priors=priors, assumptions=assumptions)
            external = self._external_validation(final, context, config, warnings)
            if external is not None:
                warnings += [w.to_warning() for w in external.warnings]
                confidence = self.scorer.comprehensive(
                    results,
                    ensembled.consensus,
                    stability,
                    benchmark,
                    external_confidence=self.scorer.allocation_confidence([external]),
                )
                explanation = self._explanation(final, assumptions, config)

        stages.append(PipelineStage.BUILD_ALTERNATIVES)
        if options.include_alternatives:
            top = rank_alternatives(results, final, direction, self.ranking)
            reasoning = explanation or self._reasoning(results, len(top))
        else:
            top, reasoning = [], "Alternative allocations not requested."

        recommendations = self.scorer.recommendations(confidence)
        if external is not None:
            recommendations += external.suggestions

        rng = np.random.default_rng(self.seed)
        monte_carlo = monte_carlo_outcome(
            budget, final, priors, assumptions.goal, assumptions.avg_deal_size, config.monte_carlo_runs, rng
        )
        performance = evaluate_objective(budget, final, priors, assumptions)
        stages.append(PipelineStage.DONE)
        logger.info(
            "Enhancement complete in %.2fs: %d algorithms, confidence=%.3f",
            time.monotonic() - started,
            len(results),
            confidence.overall,
        )
        return EnhancedModelResult(
            allocation=final,
            deterministic_outcome=deterministic_conversions(budget, final, priors),
            performance=performance,
            monte_carlo=monte_carlo,
            intervals=primary.detail["intervals"],
            objective=assumptions.goal,
            summary=self._summary(final, performance, assumptions, confidence.overall),
            confidence=confidence,
            validation=ValidationReport(
                alternative_algorithms=list(outcome.results),
                consensus=ensembled.consensus,
                benchmark_comparison=benchmark or BenchmarkAnalysis.neutral(),
                warnings=warnings,
                external=None if external is None else external.model_dump(),
            ),
            alternatives=Alternatives(top_allocations=top, reasoning=reasoning),
            recommendations=recommendations,
            stages=[stage.value for stage in stages],
        )

    def _run_primary(
        self,
        budget: float,
        priors: ChannelPriors,
        assumptions: Assumptions,
        config: EnhancementConfig,
        warnings: list[ValidationWarning],
    ) -> dict:
        try:
            return GridSearchSolver(runs=config.monte_carlo_runs, seed=self.seed)(budget, priors, assumptions)
        except InfeasibleConstraintsError as exc:
            if exc.jointly_infeasible:
                raise
            logger.warning("Grid search degraded to heuristic allocation: %s", exc)

        solution = HeuristicSolver()(budget, priors, assumptions)
        allocation = solution["allocation"]
        mc = monte_carlo_outcome(
            budget,
            allocation,
            priors,
            assumptions.goal,
            assumptions.avg_deal_size,
            config.monte_carlo_runs,
            np.random.default_rng(self.seed),
        )
        warnings.append(
            ValidationWarning(
                type="grid_infeasible",
                message=(
                    "No 10% grid allocation satisfies the constraints. "
                    "The primary result is the constraint-projected heuristic allocation."
                ),
                severity="high",
            )
        )
        solution["status"] = "Degraded"
        solution["rule"] = "heuristic_fallback"
        solution["detail"] = {
            **solution["detail"],
            "deterministic_outcome": deterministic_conversions(budget, allocation, priors),
            "monte_carlo": asdict(mc),
            "intervals": {channel: (allocation[channel], allocation[channel]) for channel in CHANNELS},
        }
        return solution

    def _validator_tasks(
        self,
        budget: float,
        priors: ChannelPriors,
        assumptions: Assumptions,
        config: EnhancementConfig,
        primary: Allocation,
        baseline: MonteCarloSummary,
    ) -> list[ValidatorTask]:
        solvers: dict[str, tuple[AlgorithmConfig, AllocationSolver]] = {}
        if config.gradient.enabled:
            solvers["gradient"] = (
                config.gradient,
                GradientSolver(
                    max_iterations=config.gradient.max_iterations or 1000,
                    seeds=[primary],
                    baseline=baseline,
                    seed=self.seed,
                ),
            )
        if config.bayesian.enabled:
            solvers["bayesian"] = (
                config.bayesian,
                BayesianSolver(max_iterations=config.bayesian.max_iterations or 50, seed=self.seed),
            )
        if config.heuristic.enabled:
            solvers["heuristic"] = (config.heuristic, HeuristicSolver())
        return [
            ValidatorTask(
                name=name,
                solver_fn=partial(_solve, solver, budget, priors, assumptions),
                timeout_s=algorithm.timeout_ms / 1000,
            )
            for name, (algorithm, solver) in solvers.items()
        ]

    def _benchmark(
        self,
        allocation: Allocation,
        budget: float,
        priors: ChannelPriors,
        assumptions: Assumptions,
        options: EnhancementOptions,
    ) -> BenchmarkAnalysis | None:
        if not options.validate_against_benchmarks:
            return None
        context = ValidationContext.infer(budget, assumptions, self.benchmark.thresholds)
        try:
            return self.benchmark.validate(allocation, priors, context)
        except Exception:
            logger.exception("Benchmark validation failed, continuing without it")
            return None

    def _external_validation(
        self,
        allocation: Allocation,
        context: OptimizationContext,
        config: EnhancementConfig,
        warnings: list[ValidationWarning],
    ) -> SemanticValidation | None:
        try:
            return call_with_timeout(
                self.semantic_validator.validate, config.external_timeout_ms / 1000, allocation, context
            )
        except Exception as exc:
            logger.warning("External validation unavailable: %s", exc)
            warnings.append(
                ValidationWarning(
                    type="external_validation_unavailable",
                    message="External validation was unavailable. Confidence uses local signals only.",
                    severity="low",
                )
            )
            return None

    def _explanation(self, allocation: Allocation, assumptions: Assumptions, config: EnhancementConfig) -> str | None:
        explain = getattr(self.semantic_validator, "explain", None)
        if explain is None:
            return None
        try:
            return call_with_timeout(explain, config.external_timeout_ms / 1000, allocation, assumptions)
        except Exception as exc:
            logger.warning("External explanation unavailable: %s", exc)
            return None

    @staticmethod
    def _reasoning(results: Sequence[AlgorithmResult], n_alternatives: int) -> str:
        names = ", ".join(r.name for r in results)
        average = float(np.mean([r.confidence for r in results]))
        return (
            f"Final allocation determined by combining results from {names}. "
            f"Average algorithm confidence: {average * 100:.1f}%. "
            f"{n_alternatives} alternative allocations provided based on individual algorithm recommendations."
        )

    @staticmethod
    def _summary(allocation: Allocation, performance: float, assumptions: Assumptions, confidence: float) -> str:
        split = ", ".join(f"{channel} {allocation[channel] * 100:.1f}%" for channel in CHANNELS)
        return (
            f"Recommended split: {split}. Expected {GOAL_LABELS[assumptions.goal]}: {performance:,.2f}. "
            f"Overall confidence {confidence * 100:.0f}%."
        )


def enhance_optimization(
    budget: float,
    priors: ChannelPriors | Mapping[str, Any],
    assumptions: Assumptions | Mapping[str, Any],
    options: EnhancementOptions | Mapping[str, Any] | None = None,
    **kwargs: Any,
) -> EnhancedModelResult:
    """Run one request with a fresh :class:`EnhancementService`.

    Keyword arguments are passed to the service constructor.
    """
    return EnhancementService(**kwargs).enhance(budget, priors, assumptions, options)


class PipelineComponent(Protocol):
    """Structural interface for pipeline stage components."""

    def execute(self, event: dict) -> dict:
        """Process event and return result."""
        ...


_FIELD_MAP_IN: dict[str, str] = {
    "avgDealSize": "avg_deal_size",
    "targetCAC": "target_cac",
    "minPct": "min_pct",
    "maxPct": "max_pct",
    "includeAlternatives": "include_alternatives",
    "validateAgainstBenchmarks": "validate_against_benchmarks",
    "enableExternalValidation": "enable_external_validation",
    "timeoutMs": "timeout_ms",
}


def _to_service_format(fields: Mapping[str, Any] | None) -> dict[str, Any]:
    """Map request field names to service field names.

    Parameters
    ----------
    fields : Mapping[str, Any], optional
        Request fields, camelCase or snake_case.

    Returns
    -------
    dict[str, Any]
        Fields with service names.
    """
    return {_FIELD_MAP_IN.get(key, key): value for key, value in (fields or {}).items()}


def parse_request(
    budget: float,
    priors: ChannelPriors | Mapping[str, Any],
    assumptions: Assumptions | Mapping[str, Any],
    options: EnhancementOptions | Mapping[str, Any] | None = None,
) -> tuple[float, ChannelPriors, Assumptions, EnhancementOptions]:
    """Validate one request, accepting camelCase or snake_case field names.

    Raises
    ------
    InvalidInputError
        If any input fails validation or carries an unrecognized field.
    """
    if isinstance(assumptions, Mapping):
        assumptions = _to_service_format(assumptions)
    if isinstance(options, Mapping):
        options = _to_service_format(options)
    return (
        validate_budget(budget),
        ChannelPriors.from_dict(priors),
        Assumptions.from_dict(assumptions),
        EnhancementOptions.from_dict(options),
    )


class EnhanceComponent(PipelineComponent):
    """Pipeline stage wrapping :class:`EnhancementService`.

    Parameters
    ----------
    service : EnhancementService, optional
        Service to delegate to. Defaults to a service with default settings.
    """

    def __init__(self, service: EnhancementService | None = None) -> None:
        self._service = service or EnhancementService()

    def execute(self, event: dict) -> dict:
        """Run enhancement and return the serialized result.

        Parameters
        ----------
        event : dict
            Must contain ``budget``, ``priors`` and ``assumptions``; may
            contain ``options``. Field names may be camelCase.

        Returns
        -------
        dict
            Serialized :class:`EnhancedModelResult`.
        """
        result = self._service.enhance(event["budget"], event["priors"], event["assumptions"], event.get("options"))
        logger.info(
            "Enhancement complete: goal=%s, confidence=%.3f, warnings=%d",
            result.objective,
            result.confidence.overall,
            len(result.validation.warnings),
        )
        return result.to_dict()
