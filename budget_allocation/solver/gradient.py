"""Local search by numerical gradient over the constrained simplex.

From each seed allocation the solver estimates a forward-difference gradient
of the deterministic objective, with each perturbed point projected onto the
constraints so binding floors do not hide a direction. It steps along the
gradient (ascending, or descending for ``cac``), projects back onto the
constrained simplex and keeps the step only if it improves the objective.
Rejected steps shrink the learning rate.
"""

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from budget_allocation.models import CHANNELS, Allocation, Assumptions, ChannelPriors, MonteCarloSummary
from budget_allocation.objective import DEFAULT_RUNS, evaluate_objective, monte_carlo_outcome
from budget_allocation.solver._common import (
    Direction,
    equal_allocation_with_constraints,
    project_to_constraints,
)
from budget_allocation.solver._types import SolverResult
from budget_allocation.solver.heuristic import heuristic_allocation

logger = logging.getLogger(__name__)

MIN_LEARNING_RATE = 1e-8
LEARNING_RATE_DECAY = 0.9
SMALL_GRADIENT = 1e-4


@dataclass(frozen=True)
class MonteCarloComparison:
    """Monte Carlo re-score of an allocation against a baseline.

    Parameters
    ----------
    monte_carlo : MonteCarloSummary
        Distribution of the re-scored allocation.
    performance_difference : float
        Absolute gap between the two medians.
    relative_performance : float
        Ratio oriented so that values >= 1 mean at least as good as the
        baseline, for both maximized and minimized goals.
    is_competitive : bool
        ``relative_performance`` reaches the required margin.
    """

    monte_carlo: MonteCarloSummary
    performance_difference: float
    relative_performance: float
    is_competitive: bool


def compare_with_monte_carlo(
    allocation: Allocation,
    baseline: MonteCarloSummary,
    budget: float,
    priors: ChannelPriors,
    assumptions: Assumptions,
    runs: int = DEFAULT_RUNS,
    margin: float = 0.8,
    seed: int | None = None,
) -> MonteCarloComparison:
    """Re-score ``allocation`` by Monte Carlo and compare medians with ``baseline``.

    Parameters
    ----------
    allocation : Allocation
        Allocation to re-score.
    baseline : MonteCarloSummary
        Distribution of the reference (grid search) allocation.
    budget : float
        Total spend.
    priors : ChannelPriors
        Channel performance intervals.
    assumptions : Assumptions
        Goal and deal size.
    runs : int
        Monte Carlo draws.
    margin : float
        Minimum relative performance to count as competitive.
    seed : int, optional
        Seed for the draws.

    Returns
    -------
    MonteCarloComparison
    """
    direction = Direction.for_goal(assumptions.goal)
    mc = monte_carlo_outcome(
        budget,
        allocation,
        priors,
        assumptions.goal,
        assumptions.avg_deal_size,
        runs,
        np.random.default_rng(seed),
    )
    ours, theirs = mc.p50, baseline.p50
    numerator, denominator = (ours, theirs) if direction is Direction.MAXIMIZE else (theirs, ours)
    if denominator <= 0:
        relative = 1.0 if numerator <= 0 else float("inf")
    else:
        relative = numerator / denominator
    return MonteCarloComparison(
        monte_carlo=mc,
        performance_difference=abs(ours - theirs),
        relative_performance=relative,
        is_competitive=relative >= margin,
    )


class GradientSolver:
    """Projected finite-difference gradient search.

    Parameters
    ----------
    learning_rate : float
        Initial step scale. The gradient is taken relative to the current
        objective value, so the step is independent of the goal's units.
    max_iterations : int
        Iteration cap per seed.
    tolerance : float
        Stop when the relative gradient norm or the relative improvement
        falls below this value.
    step_size : float
        Finite-difference perturbation.
    seeds : Sequence[Allocation], optional
        Additional starting points. The equal split (respecting floors) and
        the heuristic allocation are always used.
    baseline : MonteCarloSummary, optional
        Grid search distribution; when given, the result's confidence rewards
        being competitive with it.
    competitive_margin : float
        Relative performance needed to count as competitive.
    seed : int, optional
        Seed for the Monte Carlo comparison.
    """

    def __init__(
        self,
        learning_rate: float = 0.01,
        max_iterations: int = 1000,
        tolerance: float = 1e-6,
        step_size: float = 1e-4,
        seeds: Sequence[Allocation] | None = None,
        baseline: MonteCarloSummary | None = None,
        competitive_margin: float = 0.8,
        seed: int | None = None,
    ) -> None:
        if learning_rate <= 0 or step_size <= 0:
            raise ValueError("learning_rate and step_size must be positive.")
        self.learning_rate = learning_rate
        self.max_iterations = max_iterations
        self.tolerance = tolerance
        self.step_size = step_size
        self.seeds = list(seeds or [])
        self.baseline = baseline
        self.competitive_margin = competitive_margin
        self.seed = seed

    def _gradient(self, x: np.ndarray, base: float, objective, assumptions: Assumptions) -> np.ndarray:
        gradient = np.zeros(len(CHANNELS))
        for i in range(len(CHANNELS)):
            perturbed = x.copy()
            perturbed[i] += self.step_size
            # Binding floors and ceilings are kept by projecting; only a
            # channel already pinned at its ceiling contributes nothing.
            perturbed = project_to_constraints(perturbed, assumptions.min_pct, assumptions.max_pct)
            if perturbed[i] > x[i]:
                gradient[i] = (objective(perturbed) - base) / self.step_size
        return gradient / max(abs(base), 1e-12)

    def _descend(
        self,
        start: np.ndarray,
        objective,
        direction: Direction,
        assumptions: Assumptions,
        cancel_event: threading.Event | None,
    ) -> dict:
        x = start
        value = objective(x)
        learning_rate = self.learning_rate
        gradient_norm = 0.0
        converged = cancelled = False
        iteration = 0

        for iteration in range(1, self.max_iterations + 1):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            gradient = self._gradient(x, value, objective, assumptions)
            gradient_norm = float(np.linalg.norm(gradient))
            if gradient_norm < self.tolerance:
                converged = True
                break

            candidate = project_to_constraints(
                x + direction.sign * learning_rate * gradient, assumptions.min_pct, assumptions.max_pct
            )
            candidate_value = objective(candidate)
            if direction.is_better(candidate_value, value):
                improvement = abs(candidate_value - value) / max(abs(value), 1e-12)
                x, value = candidate, candidate_value
                if improvement < self.tolerance:
                    converged = True
                    break
            else:
                learning_rate *= LEARNING_RATE_DECAY
                if learning_rate < MIN_LEARNING_RATE:
                    converged = True
                    break

        logger.debug("Gradient search: %d iterations, objective=%.6g, converged=%s", iteration, value, converged)
        return {
            "x": x,
            "value": value,
            "iterations": iteration,
            "converged": converged,
            "cancelled": cancelled,
            "gradient_norm": gradient_norm,
        }

    def __call__(
        self,
        budget: float,
        priors: ChannelPriors,
        assumptions: Assumptions,
        cancel_event: threading.Event | None = None,
    ) -> SolverResult:
        """Run the search from every seed and keep the best end point.

        Returns
        -------
        SolverResult
            ``status`` is ``"Converged"``, ``"MaxIterations"`` or
            ``"Cancelled"``.
        """
        direction = Direction.for_goal(assumptions.goal)

        def objective(x: np.ndarray) -> float:
            return evaluate_objective(budget, x, priors, assumptions)

        starts = [
            equal_allocation_with_constraints(assumptions.min_pct, assumptions.max_pct),
            heuristic_allocation(priors, assumptions),
        ]
        starts += [project_to_constraints(s.as_array(), assumptions.min_pct, assumptions.max_pct) for s in self.seeds]

        runs = []
        for start in starts:
            runs.append(self._descend(start, objective, direction, assumptions, cancel_event))
            if runs[-1]["cancelled"]:
                break
        best = runs[direction.best_index([r["value"] for r in runs])]

        allocation = Allocation.from_array(best["x"])
        if any(r["cancelled"] for r in runs):
            status = "Cancelled"
        else:
            status = "Converged" if best["converged"] else "MaxIterations"

        confidence = 0.5
        if best["converged"]:
            confidence += 0.3
        if best["gradient_norm"] < SMALL_GRADIENT:
            confidence += 0.1

        detail = {
            "iterations": sum(r["iterations"] for r in runs),
            "converged": best["converged"],
            "gradient_norm": best["gradient_norm"],
            "seeds": len(runs),
        }
        if self.baseline is not None:
            comparison = compare_with_monte_carlo(
                allocation, self.baseline, budget, priors, assumptions, margin=self.competitive_margin, seed=self.seed
            )
            if comparison.is_competitive:
                confidence += 0.1
            detail["relative_performance"] = comparison.relative_performance
            detail["is_competitive"] = comparison.is_competitive

        return {
            "status": status,
            "allocation": allocation,
            "objective_value": best["value"],
            "confidence": min(1.0, confidence),
            "rule": "gradient",
            "detail": detail,
        }
