"""Type definitions for deming.

Extended Summary
----------------
PyTree containers and scalar type aliases shared by the structured
total least squares solver.

Routine Listings
----------------
:class:`TLSState`
    Accepted base point of a structured TLS problem.
:class:`NewtonStep`
    Undamped least-squares step and numerical rank.
:class:`RegularizedStep`
    Levenberg-Marquardt step with scaled norm and λ-derivative.
:class:`TrialMove`
    Predicted and actual loss of an uncommitted step.
:class:`TLSReport`
    User-facing snapshot of the accepted state.
:class:`NewtonFactors`
    Intermediate factorisation exposed for verification.
:class:`UrvDecomposition`
    Rank-revealing orthogonal decomposition.
:class:`TLSFitResult`
    Outcome of the trust-region driver.

Notes
-----
Always build :class:`TLSState` through the factories in :mod:`deming.tls`
so that block shapes are validated.
"""

from .common_types import (
    NonJaxNumber,
    ScalarBool,
    ScalarFloat,
    ScalarInteger,
    ScalarNumeric,
)
from .tls_types import (
    NewtonFactors,
    NewtonStep,
    RegularizedStep,
    TLSFitResult,
    TLSReport,
    TLSState,
    TrialMove,
    UrvDecomposition,
)

__all__: list[str] = [
    "NewtonFactors",
    "NewtonStep",
    "NonJaxNumber",
    "RegularizedStep",
    "ScalarBool",
    "ScalarFloat",
    "ScalarInteger",
    "ScalarNumeric",
    "TLSFitResult",
    "TLSReport",
    "TLSState",
    "TrialMove",
    "UrvDecomposition",
]
