"""Multi-algorithm advertising budget allocation under uncertain channel performance."""

from budget_allocation.adapter import (
    EnhanceComponent,
    EnhancementConfig,
    EnhancementService,
    enhance_optimization,
    parse_request,
    tier_config,
)
from budget_allocation.cache import CachedEnhancer
from budget_allocation.exceptions import (
    BudgetAllocationError,
    ExternalValidationError,
    InfeasibleConstraintsError,
    InvalidInputError,
)
from budget_allocation.models import (
    Allocation,
    Assumptions,
    ChannelPriors,
    EnhancedModelResult,
    EnhancementOptions,
)
from budget_allocation.objective import deterministic_conversions, monte_carlo_outcome, objective_from_conversions
from budget_allocation.solver import solve_grid_search

__all__ = [
    "Allocation",
    "Assumptions",
    "BudgetAllocationError",
    "CachedEnhancer",
    "ChannelPriors",
    "EnhanceComponent",
    "EnhancedModelResult",
    "EnhancementConfig",
    "EnhancementOptions",
    "EnhancementService",
    "ExternalValidationError",
    "InfeasibleConstraintsError",
    "InvalidInputError",
    "deterministic_conversions",
    "enhance_optimization",
    "monte_carlo_outcome",
    "objective_from_conversions",
    "parse_request",
    "solve_grid_search",
    "tier_config",
]
