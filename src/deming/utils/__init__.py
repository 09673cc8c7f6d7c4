"""Common utilities used throughout deming.

Extended Summary
----------------
Error taxonomy, dense decomposition primitives and helpers for writing
model callbacks.

Submodules
----------
errors
    Exception hierarchy
linalg
    Dense decomposition primitives consumed by the solver
models
    Autodiff construction of structured model callbacks

Routine Listings
----------------
batched_qr : function
    Complete QR factorisation of a stack of small matrices
check_finite : function
    Host-side guard raising SingularInputError
cholesky_solve : function
    Solve a symmetric positive definite system
default_rank_rtol : function
    Default relative rank tolerance
fgg_from_model : function
    Derive fgg from a per-observation model
masked_triangular_solve : function
    Batched triangular solve with zero-filled negligible pivots
urv_decomp : function
    Rank-revealing URV decomposition
DemingError : class
    Base class of all deming errors
InvalidInputError : class
    Inconsistent shapes or unusable input
IterationBudgetExceededError : class
    Iterative sub-procedure ran out of iterations
SingularInputError : class
    Decomposition produced non-finite factors
"""

from .errors import (
    DemingError,
    InvalidInputError,
    IterationBudgetExceededError,
    SingularInputError,
)
from .linalg import (
    batched_qr,
    check_finite,
    cholesky_solve,
    default_rank_rtol,
    masked_triangular_solve,
    urv_decomp,
)
from .models import fgg_from_model

__all__: list[str] = [
    "DemingError",
    "InvalidInputError",
    "IterationBudgetExceededError",
    "SingularInputError",
    "batched_qr",
    "check_finite",
    "cholesky_solve",
    "default_rank_rtol",
    "fgg_from_model",
    "masked_triangular_solve",
    "urv_decomp",
]
