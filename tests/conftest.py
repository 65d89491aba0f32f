"""Shared fixtures for budget allocation tests."""

import pytest

from budget_allocation.adapter import AlgorithmConfig, EnhancementConfig
from budget_allocation.models import Assumptions, ChannelPriors


@pytest.fixture()
def priors_dict():
    """Channel priors with google clearly the most efficient channel."""
    return {
        "google": {"cpm": [10, 20], "ctr": [0.02, 0.05], "cvr": [0.1, 0.3]},
        "meta": {"cpm": [8, 15], "ctr": [0.01, 0.03], "cvr": [0.05, 0.15]},
        "tiktok": {"cpm": [5, 12], "ctr": [0.01, 0.025], "cvr": [0.02, 0.08]},
        "linkedin": {"cpm": [30, 60], "ctr": [0.005, 0.015], "cvr": [0.1, 0.25]},
    }


@pytest.fixture()
def priors(priors_dict):
    return ChannelPriors.from_dict(priors_dict)


@pytest.fixture()
def demos():
    return Assumptions(goal="demos")


@pytest.fixture()
def constrained():
    """Floor on linkedin and ceiling on tiktok."""
    return Assumptions(goal="demos", min_pct={"linkedin": 0.2}, max_pct={"tiktok": 0.2})


@pytest.fixture()
def quick_config():
    """Small iteration counts and generous timeouts so tests are fast and complete."""
    return EnhancementConfig(
        gradient=AlgorithmConfig(timeout_ms=30_000, max_iterations=100),
        bayesian=AlgorithmConfig(timeout_ms=30_000, max_iterations=5),
        heuristic=AlgorithmConfig(timeout_ms=30_000),
        global_timeout_ms=60_000,
        monte_carlo_runs=200,
    )


@pytest.fixture()
def sample_event(priors_dict):
    """Pipeline-shaped event with camelCase field names."""
    return {
        "budget": 10_000,
        "priors": priors_dict,
        "assumptions": {"goal": "demos", "minPct": {"linkedin": 0.2}, "maxPct": {"tiktok": 0.2}},
        "options": {"level": "standard", "includeAlternatives": True, "validateAgainstBenchmarks": True},
    }
