"""Type definitions for the solver protocol and result contract."""

import threading
from typing import Any, Protocol, TypedDict

from budget_allocation.models import Allocation, Assumptions, ChannelPriors


class SolverResult(TypedDict):
    """Common output contract all optimizers must satisfy.

    Parameters
    ----------
    status : str
        Termination status (e.g. ``"Optimal"``, ``"Converged"``,
        ``"MaxIterations"``, ``"Cancelled"``).
    allocation : Allocation
        Best allocation found; always respects the request's constraints.
    objective_value : float
        Deterministic objective of ``allocation`` in the goal's units.
    confidence : float
        Self-assessed confidence in [0, 1].
    rule : str
        Identifier for the optimizer (e.g. ``"gradient"``).
    detail : dict[str, Any]
        Optimizer-specific diagnostics, opaque to the orchestrator.
    """

    status: str
    allocation: Allocation
    objective_value: float
    confidence: float
    rule: str
    detail: dict[str, Any]


class AllocationSolver(Protocol):
    """Protocol for allocation optimizers.

    Implementations receive validated inputs and return a
    :class:`SolverResult`. Iterative implementations check ``cancel_event``
    between iterations and return their best result so far once it is set.
    """

    def __call__(
        self,
        budget: float,
        priors: ChannelPriors,
        assumptions: Assumptions,
        cancel_event: threading.Event | None = None,
    ) -> SolverResult: ...
