"""Exception types raised by the budget allocation core."""


class BudgetAllocationError(Exception):
    """Base class for errors raised by this package."""


class InvalidInputError(BudgetAllocationError, ValueError):
    """Budget, priors, assumptions or options failed validation.

    The message names the offending field, e.g. ``priors.google.ctr``.
    """


class InfeasibleConstraintsError(BudgetAllocationError, ValueError):
    """No allocation satisfies the requested min/max constraints.

    Parameters
    ----------
    message : str
        Human-readable description.
    jointly_infeasible : bool
        ``True`` when the constraints admit no allocation at all (for example
        minimums summing above 1). ``False`` when a feasible allocation exists
        but the search grid is too coarse to hit it.
    """

    def __init__(self, message: str, jointly_infeasible: bool = True) -> None:
        super().__init__(message)
        self.jointly_infeasible = jointly_infeasible


class ExternalValidationError(BudgetAllocationError):
    """The external semantic validator failed or returned a malformed response."""
