"""Grid search with Monte Carlo re-scoring.

Enumerates every allocation on a simplex grid with 10% steps, scores each
constraint-respecting candidate by the median of its Monte Carlo objective
distribution, and reports a per-channel spread across the best candidates.
This is the primary optimizer of every request.
"""

import logging
import math
import threading
from dataclasses import asdict

import numpy as np

from budget_allocation.exceptions import InfeasibleConstraintsError
from budget_allocation.models import CHANNELS, Allocation, Assumptions, ChannelPriors
from budget_allocation.objective import (
    DEFAULT_RUNS,
    deterministic_conversions,
    evaluate_objective,
    monte_carlo_outcome,
)
from budget_allocation.solver._common import Direction, check_feasibility, respects_constraints
from budget_allocation.solver._types import SolverResult

logger = logging.getLogger(__name__)

PRIMARY_CONFIDENCE = 0.8


def simplex_grid(steps: int = 10) -> list[np.ndarray]:
    """All allocations whose shares are multiples of ``1 / steps``.

    For ``steps=10`` this yields the 286 points of the 10% grid, ordered by
    google, then meta, then tiktok share.
    """
    grid = []
    for g in range(steps + 1):
        for m in range(steps + 1 - g):
            for t in range(steps + 1 - g - m):
                grid.append(np.array([g, m, t, steps - g - m - t]) / steps)
    return grid


def spread_intervals(candidates: list[np.ndarray]) -> dict[str, tuple[float, float]]:
    """Per-channel ``[10th, 90th]`` percentile-ranked share among ``candidates``."""
    k = len(candidates)
    lo_index, hi_index = math.floor(0.1 * (k - 1)), math.floor(0.9 * (k - 1))
    intervals = {}
    for i, channel in enumerate(CHANNELS):
        values = sorted(float(c[i]) for c in candidates)
        intervals[channel] = (values[lo_index], values[hi_index])
    return intervals


class GridSearchSolver:
    """Exhaustive grid search ranked by Monte Carlo median.

    Parameters
    ----------
    runs : int
        Monte Carlo draws per candidate.
    top_k : int
        Number of best candidates used for the spread intervals.
    steps : int
        Grid resolution; 10 gives 10% increments.
    seed : int, optional
        Seed for the Monte Carlo draws. Each call builds its own generator.
    """

    def __init__(self, runs: int = DEFAULT_RUNS, top_k: int = 5, steps: int = 10, seed: int | None = None) -> None:
        if runs < 1:
            raise ValueError("runs must be positive.")
        if top_k < 1:
            raise ValueError("top_k must be positive.")
        self.runs = runs
        self.top_k = top_k
        self.steps = steps
        self.seed = seed

    def __call__(
        self,
        budget: float,
        priors: ChannelPriors,
        assumptions: Assumptions,
        cancel_event: threading.Event | None = None,
    ) -> SolverResult:
        """Run the grid search.

        The search is not interruptible; ``cancel_event`` is accepted for
        protocol compatibility only.

        Returns
        -------
        SolverResult

        Raises
        ------
        InfeasibleConstraintsError
            If no grid point satisfies the constraints. ``jointly_infeasible``
            tells whether any allocation at all could.
        """
        direction = Direction.for_goal(assumptions.goal)
        rng = np.random.default_rng(self.seed)

        candidates = [
            c for c in simplex_grid(self.steps) if respects_constraints(c, assumptions.min_pct, assumptions.max_pct)
        ]
        if not candidates:
            feasible = check_feasibility(assumptions.min_pct, assumptions.max_pct)
            if feasible:
                message = "No candidate splits satisfy constraints: the constraints are too tight for the 10% grid"
            else:
                message = "No candidate splits satisfy constraints: minimum and maximum shares are jointly infeasible"
            raise InfeasibleConstraintsError(message, jointly_infeasible=not feasible)

        logger.info("Grid search: scoring %d feasible candidates", len(candidates))
        scored = []
        for candidate in candidates:
            allocation = Allocation.from_array(candidate)
            mc = monte_carlo_outcome(
                budget, allocation, priors, assumptions.goal, assumptions.avg_deal_size, self.runs, rng
            )
            scored.append((allocation, deterministic_conversions(budget, allocation, priors), mc))

        p50s = [mc.p50 for _, _, mc in scored]
        best_allocation, best_conversions, best_mc = scored[direction.best_index(p50s)]
        top = direction.rank(p50s)[: self.top_k]

        return {
            "status": "Optimal",
            "allocation": best_allocation,
            "objective_value": evaluate_objective(budget, best_allocation, priors, assumptions),
            "confidence": PRIMARY_CONFIDENCE,
            "rule": "grid_search",
            "detail": {
                "deterministic_outcome": best_conversions,
                "monte_carlo": asdict(best_mc),
                "intervals": spread_intervals([candidates[i] for i in top]),
                "candidates_evaluated": len(candidates),
                "top_candidates": [
                    {"allocation": scored[i][0].as_dict(), "p50": scored[i][2].p50} for i in top
                ],
            },
        }
