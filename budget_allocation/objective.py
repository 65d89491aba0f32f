"""Objective model: expected conversions, revenue or CAC of an allocation.

Spend is linear within each evaluation: for every channel,
``impressions = spend / cpm * 1000``, ``clicks = impressions * ctr`` and
``conversions = clicks * cvr``. The deterministic evaluation uses interval
midpoints; the Monte Carlo evaluation draws each rate uniformly from its
interval.
"""

import numpy as np

from budget_allocation.models import (
    CHANNELS,
    Allocation,
    Assumptions,
    ChannelPriors,
    Goal,
    MonteCarloSummary,
)

CAC_EPSILON = 1e-9
DEFAULT_RUNS = 800
PERCENTILES = (0.1, 0.5, 0.9)


def _funnel(spend: np.ndarray, cpm: np.ndarray, ctr: np.ndarray, cvr: np.ndarray) -> np.ndarray:
    impressions = spend / cpm * 1000
    clicks = impressions * ctr
    return clicks * cvr


def deterministic_conversions(budget: float, allocation: Allocation, priors: ChannelPriors) -> float:
    """Total conversions at interval midpoints.

    Parameters
    ----------
    budget : float
        Total spend.
    allocation : Allocation
        Budget split.
    priors : ChannelPriors
        Channel performance intervals.

    Returns
    -------
    float
        Expected conversions summed over channels.
    """
    spend = budget * allocation.as_array()
    conversions = _funnel(spend, priors.midpoints("cpm"), priors.midpoints("ctr"), priors.midpoints("cvr"))
    return float(conversions.sum())


def objective_from_conversions(
    goal: Goal,
    conversions,
    budget: float,
    avg_deal_size: float | None = None,
):
    """Map a conversion count to the goal's objective value.

    Works elementwise when ``conversions`` is a numpy array.

    Parameters
    ----------
    goal : Goal
        ``demos`` returns conversions, ``revenue`` conversions times
        ``avg_deal_size`` and ``cac`` the budget per conversion.
    conversions : float or numpy.ndarray
        Conversion count(s).
    budget : float
        Total spend, used for ``cac``.
    avg_deal_size : float, optional
        Revenue per conversion; treated as 0 when absent.

    Returns
    -------
    float or numpy.ndarray
        Objective value(s). Lower is better for ``cac``.
    """
    if goal == "demos":
        return conversions
    if goal == "revenue":
        return conversions * (avg_deal_size or 0.0)
    if goal == "cac":
        return budget / np.maximum(conversions, CAC_EPSILON)
    raise ValueError(f"Unknown goal: {goal}")


def evaluate_objective(
    budget: float,
    allocation: Allocation | np.ndarray,
    priors: ChannelPriors,
    assumptions: Assumptions,
) -> float:
    """Deterministic objective value of ``allocation`` in the goal's units."""
    if not isinstance(allocation, Allocation):
        allocation = Allocation.from_array(allocation)
    conversions = deterministic_conversions(budget, allocation, priors)
    return float(objective_from_conversions(assumptions.goal, conversions, budget, assumptions.avg_deal_size))


def monte_carlo_outcome(
    budget: float,
    allocation: Allocation,
    priors: ChannelPriors,
    goal: Goal,
    avg_deal_size: float | None = None,
    runs: int = DEFAULT_RUNS,
    rng: np.random.Generator | None = None,
) -> MonteCarloSummary:
    """Objective distribution under uniform sampling within the prior intervals.

    Each run draws cpm, ctr and cvr independently per channel, computes total
    conversions and maps them through :func:`objective_from_conversions`. The
    sorted outcomes are summarized at index ``floor(q * (runs - 1))`` for
    q = 0.1, 0.5 and 0.9.

    Parameters
    ----------
    budget : float
        Total spend.
    allocation : Allocation
        Budget split.
    priors : ChannelPriors
        Channel performance intervals.
    goal : Goal
        Objective to report.
    avg_deal_size : float, optional
        Revenue per conversion.
    runs : int
        Number of draws.
    rng : numpy.random.Generator, optional
        Random source. A fresh unseeded generator is used when omitted.

    Returns
    -------
    MonteCarloSummary
    """
    if runs < 1:
        raise ValueError("runs must be positive")
    rng = rng or np.random.default_rng()
    size = (runs, len(CHANNELS))
    draws = {}
    for metric in ("cpm", "ctr", "cvr"):
        low, high = priors.bounds(metric)
        draws[metric] = rng.uniform(low, high, size=size)

    spend = budget * allocation.as_array()
    conversions = _funnel(spend, draws["cpm"], draws["ctr"], draws["cvr"]).sum(axis=1)
    outcomes = np.sort(objective_from_conversions(goal, conversions, budget, avg_deal_size))
    p10, p50, p90 = (float(outcomes[int(np.floor(q * (runs - 1)))]) for q in PERCENTILES)
    return MonteCarloSummary(p10=p10, p50=p50, p90=p90)


def expected_funnel(budget: float, allocation: Allocation, priors: ChannelPriors) -> dict[str, dict[str, float]]:
    """Per-channel spend, impressions, clicks and conversions at midpoints.

    Returns
    -------
    dict[str, dict[str, float]]
        One entry per channel plus a ``"total"`` entry.
    """
    spend = budget * allocation.as_array()
    impressions = spend / priors.midpoints("cpm") * 1000
    clicks = impressions * priors.midpoints("ctr")
    conversions = clicks * priors.midpoints("cvr")
    funnel = {
        channel: {
            "spend": float(spend[i]),
            "impressions": float(impressions[i]),
            "clicks": float(clicks[i]),
            "conversions": float(conversions[i]),
        }
        for i, channel in enumerate(CHANNELS)
    }
    funnel["total"] = {
        "spend": float(spend.sum()),
        "impressions": float(impressions.sum()),
        "clicks": float(clicks.sum()),
        "conversions": float(conversions.sum()),
    }
    return funnel
