"""Structured trust-region total least squares.

Extended Summary
----------------
Errors-in-variables regression: fit ``f(p, x + dx) ~ y`` jointly in the
parameters ``p`` and the data corrections ``dx``. The Jacobian of the
stacked residual ``[dx; f - y]`` is held as three blocks and every
factorisation works observation by observation, so a Newton step costs
``O(M)`` rather than ``O(M^3)``.

Submodules
----------
jacobian
    Structured Jacobian model and block products
newton
    Undamped and Levenberg-Marquardt Newton steps
cauchy
    Cauchy point along the gradient
solver
    State lifecycle and trial-move evaluation
diagnostics
    Read-only projections for verification
fit
    Reference trust-region driver

Routine Listings
----------------
accept_move : function
    Commit a step and rebuild the state
cauchy_travel : function
    Step length along the gradient minimising the quadratic model
column_norms : function
    Euclidean norms of the Jacobian columns
compute_newton : function
    Undamped Newton step and numerical rank
compute_newton_regularized : function
    Damped Newton step, scaled parameter norm and its λ-derivative
consider_move : function
    Predicted and actual loss of an uncommitted step
dense_jacobian : function
    Dense Jacobian assembled for verification
fit_tls : function
    Solve a TLS problem end to end
hebden_search : function
    Damping placing the regularised step on the trust-region boundary
init_tls_solver : function
    Evaluate the model and build the initial state
jacobian_entry : function
    One entry of the virtual dense Jacobian
jacobian_matvec : function
    Block product ``J @ v``
jacobian_rmatvec : function
    Block product ``J^T @ u``
loss_and_gradient : function
    Mean squared residual and its gradient
make_tls_state : function
    Validated factory building a state from Jacobian blocks
newton_factors : function
    Intermediate factorisation of the Newton step engine
normalize_qr_signs : function
    Remove the sign ambiguity of QR factors
predict_loss : function
    Gauss-Newton model of the loss after a step
report : function
    Snapshot of the accepted state
split_unknowns : function
    Split ``[dx; p]`` into its blocks

Notes
-----
States are immutable PyTrees. The step engines are jitted pure functions
of the state; functions that call the user model run on the host.
"""

from .cauchy import cauchy_travel
from .diagnostics import (
    dense_jacobian,
    jacobian_entry,
    newton_factors,
    normalize_qr_signs,
)
from .fit import fit_tls, hebden_search
from .jacobian import (
    column_norms,
    jacobian_matvec,
    jacobian_rmatvec,
    loss_and_gradient,
    make_tls_state,
    split_unknowns,
)
from .newton import compute_newton, compute_newton_regularized
from .solver import (
    accept_move,
    consider_move,
    init_tls_solver,
    predict_loss,
    report,
)

__all__: list[str] = [
    "accept_move",
    "cauchy_travel",
    "column_norms",
    "compute_newton",
    "compute_newton_regularized",
    "consider_move",
    "dense_jacobian",
    "fit_tls",
    "hebden_search",
    "init_tls_solver",
    "jacobian_entry",
    "jacobian_matvec",
    "jacobian_rmatvec",
    "loss_and_gradient",
    "make_tls_state",
    "newton_factors",
    "normalize_qr_signs",
    "predict_loss",
    "report",
    "split_unknowns",
]
