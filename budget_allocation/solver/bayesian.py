"""Bayesian optimization with a Gaussian-process surrogate.

Keeps a growing set of observed (allocation, objective) pairs, fits a GP to
them each iteration, and evaluates the candidate that maximizes the chosen
acquisition function: Expected Improvement (``"ei"``), Upper Confidence
Bound (``"ucb"``) or Probability of Improvement (``"pi"``).
"""

import logging
import math
import threading

import numpy as np

from budget_allocation.models import Allocation, Assumptions, ChannelPriors
from budget_allocation.objective import evaluate_objective
from budget_allocation.solver._common import Direction, project_to_constraints, random_feasible_allocation
from budget_allocation.solver._gaussian_process import GaussianProcess
from budget_allocation.solver._types import SolverResult

logger = logging.getLogger(__name__)

ACQUISITIONS = ("ei", "ucb", "pi")
RANDOM_CANDIDATE_SHARE = 0.7
PERTURBATION = 0.05
TOP_POINTS = 3

# Abramowitz & Stegun 7.1.26
_AS_P = 0.3275911
_AS_A = (0.254829592, -0.284496736, 1.421413741, -1.453152027, 1.061405429)


def erf(x):
    """Abramowitz-Stegun approximation of the error function (|error| < 1.5e-7)."""
    x = np.asarray(x, dtype=float)
    sign = np.sign(x)
    x = np.abs(x)
    t = 1.0 / (1.0 + _AS_P * x)
    a1, a2, a3, a4, a5 = _AS_A
    poly = ((((a5 * t + a4) * t + a3) * t + a2) * t + a1) * t
    return sign * (1.0 - poly * np.exp(-x * x))


def normal_cdf(z):
    return 0.5 * (1.0 + erf(np.asarray(z, dtype=float) / math.sqrt(2.0)))


def normal_pdf(z):
    z = np.asarray(z, dtype=float)
    return np.exp(-0.5 * z * z) / math.sqrt(2.0 * math.pi)


def _improvement_z(mean, std, best, direction: Direction) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    improvement = direction.sign * (np.asarray(mean, dtype=float) - best)
    std = np.asarray(std, dtype=float)
    positive = std > 0
    z = np.where(positive, improvement / np.where(positive, std, 1.0), 0.0)
    return improvement, z, positive


def expected_improvement(mean, std, best: float, direction: Direction) -> np.ndarray:
    """Expected improvement over ``best``; zero where the posterior is certain."""
    improvement, z, positive = _improvement_z(mean, std, best, direction)
    ei = improvement * normal_cdf(z) + np.asarray(std, dtype=float) * normal_pdf(z)
    return np.where(positive, ei, 0.0)


def upper_confidence_bound(mean, std, direction: Direction, exploration_weight: float = 2.0) -> np.ndarray:
    """Optimistic bound; the mean is sign-flipped for minimized goals."""
    return direction.sign * np.asarray(mean, dtype=float) + exploration_weight * np.asarray(std, dtype=float)


def probability_of_improvement(mean, std, best: float, direction: Direction) -> np.ndarray:
    """Probability of improving on ``best``; zero where the posterior is certain."""
    _, z, positive = _improvement_z(mean, std, best, direction)
    return np.where(positive, normal_cdf(z), 0.0)


def bayesian_confidence(posterior_variance: float, kernel_variance: float, acquisition_trace: list[float]) -> float:
    """Confidence of a Bayesian optimization run.

    Base 0.6, up to +0.2 for a posterior variance at the best point that is
    small relative to the kernel variance, and up to +0.2 for a healthy mean
    acquisition value.
    """
    confidence = 0.6
    confidence += 0.2 * (1 - min(1.0, posterior_variance / kernel_variance))
    if acquisition_trace:
        average = float(np.mean(acquisition_trace))
        confidence += 0.2 * min(1.0, max(0.0, average / 10))
    return min(1.0, confidence)


class BayesianSolver:
    """GP-based Bayesian optimizer.

    Parameters
    ----------
    max_iterations : int
        Number of acquisition-driven evaluations after initialization.
    acquisition : str
        ``"ei"``, ``"ucb"`` or ``"pi"``.
    exploration_weight : float
        Standard-deviation multiplier for UCB.
    length_scale, kernel_variance, noise_variance : float
        Surrogate hyperparameters; the kernel variance applies to
        standardized objective values.
    n_initial : int
        Random feasible allocations evaluated before the loop.
    n_candidates : int
        Candidates scored by the acquisition function per iteration.
    seed : int, optional
        Seed for candidate generation. Each call builds its own generator.

    Raises
    ------
    ValueError
        If the acquisition name is unknown or a count is not positive.
    """

    def __init__(
        self,
        max_iterations: int = 50,
        acquisition: str = "ei",
        exploration_weight: float = 2.0,
        length_scale: float = 0.1,
        kernel_variance: float = 1.0,
        noise_variance: float = 0.01,
        n_initial: int = 5,
        n_candidates: int = 100,
        seed: int | None = None,
    ) -> None:
        if acquisition not in ACQUISITIONS:
            raise ValueError(f"Acquisition must be one of {', '.join(ACQUISITIONS)}.")
        if n_initial < 1 or n_candidates < 1 or max_iterations < 0:
            raise ValueError("Iteration and candidate counts must be positive.")
        self.max_iterations = max_iterations
        self.acquisition = acquisition
        self.exploration_weight = exploration_weight
        self.length_scale = length_scale
        self.kernel_variance = kernel_variance
        self.noise_variance = noise_variance
        self.n_initial = n_initial
        self.n_candidates = n_candidates
        self.seed = seed

    def _surrogate(self) -> GaussianProcess:
        return GaussianProcess(self.length_scale, self.kernel_variance, self.noise_variance)

    def _candidates(
        self,
        rng: np.random.Generator,
        observed: list[np.ndarray],
        values: list[float],
        direction: Direction,
        assumptions: Assumptions,
    ) -> np.ndarray:
        n_random = round(RANDOM_CANDIDATE_SHARE * self.n_candidates)
        candidates = [
            random_feasible_allocation(rng, assumptions.min_pct, assumptions.max_pct, attempts=50)
            for _ in range(n_random)
        ]
        top = [observed[i] for i in direction.rank(values)[:TOP_POINTS]]
        for i in range(self.n_candidates - n_random):
            centre = top[i % len(top)]
            noise = rng.uniform(-PERTURBATION, PERTURBATION, size=centre.shape)
            candidates.append(project_to_constraints(centre + noise, assumptions.min_pct, assumptions.max_pct))
        return np.array(candidates)

    def _acquire(self, mean: np.ndarray, std: np.ndarray, best: float, direction: Direction) -> np.ndarray:
        if self.acquisition == "ucb":
            return upper_confidence_bound(mean, std, direction, self.exploration_weight)
        if self.acquisition == "pi":
            return probability_of_improvement(mean, std, best, direction)
        return expected_improvement(mean, std, best, direction)

    def __call__(
        self,
        budget: float,
        priors: ChannelPriors,
        assumptions: Assumptions,
        cancel_event: threading.Event | None = None,
    ) -> SolverResult:
        """Run Bayesian optimization and return the best observed allocation.

        Returns
        -------
        SolverResult
            ``status`` is ``"Completed"`` or ``"Cancelled"``. ``detail``
            carries the posterior mean and variance at the best point and the
            per-iteration acquisition trace.
        """
        direction = Direction.for_goal(assumptions.goal)
        rng = np.random.default_rng(self.seed)

        def objective(x: np.ndarray) -> float:
            return evaluate_objective(budget, x, priors, assumptions)

        observed = [
            random_feasible_allocation(rng, assumptions.min_pct, assumptions.max_pct) for _ in range(self.n_initial)
        ]
        values = [objective(x) for x in observed]
        trace: list[float] = []
        status = "Completed"

        for iteration in range(self.max_iterations):
            if cancel_event is not None and cancel_event.is_set():
                status = "Cancelled"
                break
            gp = self._surrogate().fit(observed, values)
            candidates = self._candidates(rng, observed, values, direction, assumptions)
            mean, variance = gp.predict_standardized(candidates)
            best = float(gp.standardize(values[direction.best_index(values)]))
            acquisition = self._acquire(mean, np.sqrt(variance), best, direction)

            pick = int(np.argmax(acquisition))
            observed.append(candidates[pick])
            values.append(objective(candidates[pick]))
            trace.append(float(acquisition[pick]))
            logger.debug("Bayesian iteration %d: acquisition=%.4g, value=%.6g", iteration, trace[-1], values[-1])

        best_index = direction.best_index(values)
        gp = self._surrogate().fit(observed, values)
        mean, _ = gp.predict(observed[best_index][None, :])
        _, variance = gp.predict_standardized(observed[best_index][None, :])
        posterior_variance = float(variance[0])

        return {
            "status": status,
            "allocation": Allocation.from_array(observed[best_index]),
            "objective_value": values[best_index],
            "confidence": bayesian_confidence(posterior_variance, self.kernel_variance, trace),
            "rule": "bayesian",
            "detail": {
                "iterations": len(trace),
                "evaluations": len(values),
                "acquisition": self.acquisition,
                "acquisition_values": trace,
                "posterior_mean": float(mean[0]),
                "posterior_variance": posterior_variance,
            },
        }
