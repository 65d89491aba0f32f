"""Shared utilities for allocation solvers.

Contains the optimization ``Direction``, the constraint checker, projection
onto the constrained simplex, feasible starting points, and the PuLP linear
programs used to decide feasibility and to find the nearest feasible split.
"""

import logging
from collections.abc import Mapping, Sequence
from enum import Enum

import numpy as np
import pulp as lp

from budget_allocation.exceptions import InfeasibleConstraintsError
from budget_allocation.models import CHANNELS, AlgorithmResult, Allocation, Goal
from budget_allocation.solver._types import SolverResult

logger = logging.getLogger(__name__)

CONSTRAINT_TOLERANCE = 1e-9
_SUM_EPS = 1e-12


class Direction(Enum):
    """Whether larger or smaller objective values are better."""

    MAXIMIZE = 1
    MINIMIZE = -1

    @classmethod
    def for_goal(cls, goal: Goal) -> "Direction":
        """``cac`` is minimized; ``demos`` and ``revenue`` are maximized."""
        return cls.MINIMIZE if goal == "cac" else cls.MAXIMIZE

    @property
    def sign(self) -> int:
        return self.value

    def is_better(self, candidate: float, incumbent: float) -> bool:
        """Strict improvement of ``candidate`` over ``incumbent``."""
        return self.value * (candidate - incumbent) > 0

    def sort_key(self, value: float) -> float:
        """Ascending key that puts the best value first."""
        return -self.value * value

    def best_index(self, values: Sequence[float]) -> int:
        """Index of the best value; ties go to the first occurrence."""
        values = np.asarray(values, dtype=float)
        return int(np.argmax(values) if self is Direction.MAXIMIZE else np.argmin(values))

    def rank(self, values: Sequence[float]) -> list[int]:
        """Indices ordered best first, stable for ties."""
        return sorted(range(len(values)), key=lambda i: self.sort_key(values[i]))


def constraint_bounds(
    min_pct: Mapping[str, float] | None = None,
    max_pct: Mapping[str, float] | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Per-channel lower and upper bounds in ``CHANNELS`` order."""
    min_pct = min_pct or {}
    max_pct = max_pct or {}
    lower = np.array([min_pct.get(channel, 0.0) for channel in CHANNELS], dtype=float)
    upper = np.array([max_pct.get(channel, 1.0) for channel in CHANNELS], dtype=float)
    return lower, upper


def respects_constraints(
    allocation: Allocation | np.ndarray,
    min_pct: Mapping[str, float] | None = None,
    max_pct: Mapping[str, float] | None = None,
    tol: float = CONSTRAINT_TOLERANCE,
) -> bool:
    """Check an allocation against per-channel floors and ceilings.

    Does not mutate or renormalize the allocation.

    Parameters
    ----------
    allocation : Allocation or numpy.ndarray
        Shares in ``CHANNELS`` order when given as an array.
    min_pct, max_pct : Mapping[str, float], optional
        Partial floors and ceilings.
    tol : float
        Slack allowed on each bound.

    Returns
    -------
    bool
    """
    values = allocation.as_array() if isinstance(allocation, Allocation) else np.asarray(allocation, dtype=float)
    lower, upper = constraint_bounds(min_pct, max_pct)
    return bool(np.all(values >= lower - tol) and np.all(values <= upper + tol))


def normalize(values) -> np.ndarray:
    """Clip negatives and scale to unit sum; equal split when nothing is left."""
    values = np.clip(np.asarray(values, dtype=float), 0.0, None)
    total = values.sum()
    if total <= 0:
        return np.full(len(values), 1.0 / len(values))
    return values / total


def check_feasibility(
    min_pct: Mapping[str, float] | None = None,
    max_pct: Mapping[str, float] | None = None,
) -> bool:
    """Decide whether any allocation satisfies the constraints.

    Solves the linear feasibility problem ``lower <= x <= upper``,
    ``sum(x) == 1`` with CBC.
    """
    lower, upper = constraint_bounds(min_pct, max_pct)
    if np.any(lower > upper):
        return False
    prob = lp.LpProblem("Allocation_Feasibility", lp.LpMinimize)
    x = {
        channel: lp.LpVariable(f"share_{channel}", float(lower[i]), float(upper[i]))
        for i, channel in enumerate(CHANNELS)
    }
    prob += lp.lpSum(x.values())
    prob += lp.lpSum(x.values()) == 1
    try:
        prob.solve(lp.PULP_CBC_CMD(msg=False))
    except Exception:
        logger.exception("Error solving feasibility problem")
        return bool(lower.sum() <= 1 + CONSTRAINT_TOLERANCE and upper.sum() >= 1 - CONSTRAINT_TOLERANCE)
    return prob.status == lp.LpStatusOptimal


def nearest_feasible_allocation(
    target,
    min_pct: Mapping[str, float] | None = None,
    max_pct: Mapping[str, float] | None = None,
) -> Allocation | None:
    """Feasible allocation closest to ``target`` in L1 distance.

    Parameters
    ----------
    target : array-like
        Desired shares in ``CHANNELS`` order; need not be feasible.
    min_pct, max_pct : Mapping[str, float], optional
        Partial floors and ceilings.

    Returns
    -------
    Allocation or None
        ``None`` if the constraints are jointly infeasible.
    """
    target = np.asarray(target, dtype=float)
    lower, upper = constraint_bounds(min_pct, max_pct)
    if np.any(lower > upper):
        return None

    prob = lp.LpProblem("Nearest_Feasible_Allocation", lp.LpMinimize)
    x = {
        channel: lp.LpVariable(f"share_{channel}", float(lower[i]), float(upper[i]))
        for i, channel in enumerate(CHANNELS)
    }
    d = lp.LpVariable.dicts("distance", list(CHANNELS), 0)

    prob += lp.lpSum(d.values())
    prob += lp.lpSum(x.values()) == 1
    for i, channel in enumerate(CHANNELS):
        prob += d[channel] >= x[channel] - float(target[i])
        prob += d[channel] >= float(target[i]) - x[channel]

    try:
        prob.solve(lp.PULP_CBC_CMD(msg=False))
    except Exception:
        logger.exception("Error solving nearest feasible allocation problem")
        return None
    if prob.status != lp.LpStatusOptimal:
        logger.info("Nearest feasible allocation: status = %s", lp.LpStatus[prob.status])
        return None

    values = np.array([x[channel].varValue or 0.0 for channel in CHANNELS])
    return Allocation.from_array(np.clip(normalize(values), lower, upper))


def project_to_constraints(
    values,
    min_pct: Mapping[str, float] | None = None,
    max_pct: Mapping[str, float] | None = None,
    max_passes: int = 50,
) -> np.ndarray:
    """Project shares onto the constrained simplex.

    Clamps every channel to its ``[min, max]`` range, then spreads the
    residual mass proportionally over channels not pinned at the bound in the
    direction of the correction, repeating until the shares sum to 1. If the
    clamp-and-redistribute passes do not settle, the L1-nearest feasible
    allocation is used instead.

    Raises
    ------
    InfeasibleConstraintsError
        If the constraints admit no allocation.
    """
    lower, upper = constraint_bounds(min_pct, max_pct)
    if lower.sum() > 1 + CONSTRAINT_TOLERANCE or upper.sum() < 1 - CONSTRAINT_TOLERANCE or np.any(lower > upper):
        raise InfeasibleConstraintsError(
            f"Constraints are infeasible: minimums sum to {lower.sum():.2f}, maximums sum to {upper.sum():.2f}"
        )

    x = normalize(values)
    for _ in range(max_passes):
        x = np.clip(x, lower, upper)
        residual = 1.0 - x.sum()
        if abs(residual) <= _SUM_EPS:
            return x
        room = upper - x if residual > 0 else x - lower
        free = room > _SUM_EPS
        if not free.any():
            break
        share = np.where(free, x, 0.0)
        if share.sum() <= 0:
            share = free.astype(float)
        x = x + residual * share / share.sum()

    nearest = nearest_feasible_allocation(x, min_pct, max_pct)
    if nearest is None:
        raise InfeasibleConstraintsError("Constraints are infeasible")
    return nearest.as_array()


def equal_allocation_with_constraints(
    min_pct: Mapping[str, float] | None = None,
    max_pct: Mapping[str, float] | None = None,
) -> np.ndarray:
    """Floors first, then the remainder split equally over channels without a floor."""
    min_pct = min_pct or {}
    lower, _ = constraint_bounds(min_pct, max_pct)
    x = lower.copy()
    remaining = 1.0 - x.sum()
    if remaining > 0:
        unconstrained = np.array([channel not in min_pct for channel in CHANNELS])
        if unconstrained.any():
            x[unconstrained] += remaining / unconstrained.sum()
        else:
            x += remaining / len(CHANNELS)
    return project_to_constraints(x, min_pct, max_pct)


def random_feasible_allocation(
    rng: np.random.Generator,
    min_pct: Mapping[str, float] | None = None,
    max_pct: Mapping[str, float] | None = None,
    attempts: int = 100,
) -> np.ndarray:
    """Random allocation: floors plus a Dirichlet split of the remaining mass.

    Retries up to ``attempts`` times to satisfy the ceilings, then falls back
    to :func:`equal_allocation_with_constraints`.
    """
    lower, _ = constraint_bounds(min_pct, max_pct)
    remaining = 1.0 - lower.sum()
    if remaining >= 0:
        for _ in range(attempts):
            x = lower + remaining * rng.dirichlet(np.ones(len(CHANNELS)))
            if respects_constraints(x, min_pct, max_pct):
                return x
    return equal_allocation_with_constraints(min_pct, max_pct)


def to_algorithm_result(result: SolverResult, name: str | None = None) -> AlgorithmResult:
    """Convert a :class:`SolverResult` to the ensemble's input type."""
    return AlgorithmResult(
        name=name or result["rule"],
        allocation=result["allocation"],
        confidence=float(min(1.0, max(0.0, result["confidence"]))),
        performance=float(result["objective_value"]),
        detail={"status": result["status"], **result["detail"]},
    )
