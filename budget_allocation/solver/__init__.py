"""Budget allocation solvers.

Provides the grid search (primary), gradient, Bayesian and heuristic
optimizers, the shared constraint utilities, and the ``AllocationSolver``
protocol that all optimizers satisfy.

Convenience function ``solve_grid_search`` validates plain inputs and runs
the grid search in a single call for standalone usage.
"""

from collections.abc import Mapping
from typing import Any

from budget_allocation.models import Assumptions, ChannelPriors, validate_budget
from budget_allocation.solver._common import (
    Direction,
    check_feasibility,
    equal_allocation_with_constraints,
    nearest_feasible_allocation,
    normalize,
    project_to_constraints,
    random_feasible_allocation,
    respects_constraints,
    to_algorithm_result,
)
from budget_allocation.solver._types import AllocationSolver, SolverResult
from budget_allocation.solver.bayesian import BayesianSolver
from budget_allocation.solver.gradient import GradientSolver, MonteCarloComparison, compare_with_monte_carlo
from budget_allocation.solver.grid_search import GridSearchSolver, simplex_grid
from budget_allocation.solver.heuristic import HeuristicSolver, heuristic_allocation

__all__ = [
    "AllocationSolver",
    "BayesianSolver",
    "Direction",
    "GradientSolver",
    "GridSearchSolver",
    "HeuristicSolver",
    "MonteCarloComparison",
    "SolverResult",
    "check_feasibility",
    "compare_with_monte_carlo",
    "equal_allocation_with_constraints",
    "heuristic_allocation",
    "nearest_feasible_allocation",
    "normalize",
    "project_to_constraints",
    "random_feasible_allocation",
    "respects_constraints",
    "simplex_grid",
    "solve_grid_search",
    "to_algorithm_result",
]


def solve_grid_search(
    budget: float,
    priors: ChannelPriors | Mapping[str, Any],
    assumptions: Assumptions | Mapping[str, Any],
    runs: int = 800,
    seed: int | None = None,
) -> SolverResult:
    """Validate inputs and run the grid search in one call.

    Parameters
    ----------
    budget : float
        Total spend; must be positive and finite.
    priors : ChannelPriors or Mapping[str, Any]
        Channel priors, parsed with :meth:`ChannelPriors.from_dict`.
    assumptions : Assumptions or Mapping[str, Any]
        Goal and constraints, parsed with :meth:`Assumptions.from_dict`.
    runs : int
        Monte Carlo draws per candidate.
    seed : int, optional
        Seed for the draws.

    Returns
    -------
    SolverResult

    Raises
    ------
    InvalidInputError
        If any input fails validation.
    InfeasibleConstraintsError
        If no grid point satisfies the constraints.
    """
    solver = GridSearchSolver(runs=runs, seed=seed)
    return solver(validate_budget(budget), ChannelPriors.from_dict(priors), Assumptions.from_dict(assumptions))
