"""Exception hierarchy for deming.

Extended Summary
----------------
Every error raised by the package derives from :class:`DemingError` and
from the closest built-in exception, so callers can catch either.

Routine Listings
----------------
DemingError : class
    Base class of all deming errors.
InvalidInputError : class
    Shape or dimension mismatch in user supplied data or functions.
SingularInputError : class
    A decomposition primitive produced non-finite factors.
IterationBudgetExceededError : class
    An internal iterative procedure ran out of iterations.

Notes
-----
Numerical rank deficiency is not an error. It is handled by zero-filling
beyond the numerical rank and reported through ``rank`` fields.
"""


class DemingError(Exception):
    """Base class for all deming errors."""


class InvalidInputError(DemingError, ValueError):
    """Inconsistent shapes or otherwise unusable input.

    Raised eagerly on the host before any computation is traced. It is
    never retried.
    """


class SingularInputError(DemingError, ArithmeticError):
    """A decomposition produced non-finite factors."""


class IterationBudgetExceededError(DemingError, RuntimeError):
    """An iterative sub-procedure exhausted its iteration budget.

    Parameters
    ----------
    procedure : str
        Name of the procedure that ran out of iterations.
    max_iterations : int
        The exhausted budget.
    detail : str, optional
        Extra context appended to the message.
    """

    def __init__(
        self, procedure: str, max_iterations: int, detail: str = ""
    ) -> None:
        self.procedure = procedure
        self.max_iterations = max_iterations
        message = f"{procedure} did not converge within {max_iterations} iterations"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
