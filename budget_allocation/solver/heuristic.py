"""Closed-form heuristic allocation.

Allocates proportionally to each channel's conversions per unit spend at
interval midpoints, ``ctr * cvr / cpm``, then projects onto the constraints.
"""

import threading

import numpy as np

from budget_allocation.models import CHANNELS, Allocation, Assumptions, ChannelPriors
from budget_allocation.objective import evaluate_objective
from budget_allocation.solver._common import normalize, project_to_constraints
from budget_allocation.solver._types import SolverResult

HEURISTIC_CONFIDENCE = 0.7


def channel_scores(priors: ChannelPriors) -> np.ndarray:
    """Midpoint ``ctr * cvr / cpm`` per channel, in ``CHANNELS`` order."""
    return priors.midpoints("ctr") * priors.midpoints("cvr") / priors.midpoints("cpm")


def heuristic_allocation(priors: ChannelPriors, assumptions: Assumptions) -> np.ndarray:
    return project_to_constraints(normalize(channel_scores(priors)), assumptions.min_pct, assumptions.max_pct)


class HeuristicSolver:
    """Score-proportional allocation with fixed confidence."""

    def __init__(self, confidence: float = HEURISTIC_CONFIDENCE) -> None:
        if not 0 <= confidence <= 1:
            raise ValueError("Confidence must be between 0 and 1.")
        self.confidence = confidence

    def __call__(
        self,
        budget: float,
        priors: ChannelPriors,
        assumptions: Assumptions,
        cancel_event: threading.Event | None = None,
    ) -> SolverResult:
        allocation = Allocation.from_array(heuristic_allocation(priors, assumptions))
        return {
            "status": "Optimal",
            "allocation": allocation,
            "objective_value": evaluate_objective(budget, allocation, priors, assumptions),
            "confidence": self.confidence,
            "rule": "heuristic",
            "detail": {"scores": dict(zip(CHANNELS, channel_scores(priors).tolist()))},
        }
