"""PyTree containers for structured total least squares.

Extended Summary
----------------
Immutable data structures passed between the structured Jacobian model,
the Newton and Cauchy step engines, the trial-move evaluator and the
trust-region driver. All array-valued containers are JAX PyTrees so they
can cross ``jax.jit`` boundaries.

The unknown vector is laid out as ``X = [dx.ravel(), p]`` with length
``N = M*NX + NP`` and the residual vector as
``F = [dx.ravel(), (f(p, x + dx) - y).ravel()]`` with length
``L = M*NX + M*NY``. The Jacobian ``dF/dX`` is never stored densely; it is
held as three blocks::

    J = [[J11,   0],
         [J21, J22]]

where ``J11`` and ``J21`` are block diagonal (one ``NX x NX`` resp.
``NY x NX`` block per observation) and ``J22`` is dense.

Routine Listings
----------------
TLSState : NamedTuple
    Accepted base point of a structured TLS problem.
NewtonStep : NamedTuple
    Undamped least-squares step and numerical rank.
RegularizedStep : NamedTuple
    Levenberg-Marquardt step with its scaled norm and λ-derivative.
TrialMove : NamedTuple
    Predicted and actual loss of an uncommitted step.
TLSReport : NamedTuple
    User-facing snapshot of the accepted state.
NewtonFactors : NamedTuple
    Intermediate factorisation exposed for verification.
UrvDecomposition : NamedTuple
    Rank-revealing orthogonal decomposition ``A = U diag(s) V^T``.
TLSFitResult : NamedTuple
    Outcome of the trust-region driver.

Notes
-----
Use :func:`deming.tls.make_tls_state` or :func:`deming.tls.init_tls_solver`
to build a :class:`TLSState`; both validate shapes before construction.
"""

from beartype.typing import Any, Callable, NamedTuple, Optional, Tuple
from jax.tree_util import register_pytree_node_class
from jaxtyping import Array, Bool, Float, Int

from .common_types import ScalarBool


@register_pytree_node_class
class TLSState(NamedTuple):
    """Accepted base point of a structured total least squares problem.

    Attributes
    ----------
    x0 : Float[Array, " N"]
        Unknowns ``[dx.ravel(), p]`` at the last accepted point.
    f0 : Float[Array, " L"]
        Residuals ``[dx.ravel(), (f - y).ravel()]`` at ``x0``.
    j11 : Float[Array, " M NX NX"]
        Per-observation blocks of ``d(dx residual)/d(dx)``.
    j21 : Float[Array, " M NY NX"]
        Per-observation blocks of ``d(model residual)/d(dx)``.
    j22 : Float[Array, " M NY NP"]
        Per-observation rows of ``d(model residual)/dp``.
    d : Float[Array, " N"]
        Column scaling used for scale invariant damping.
    loss : Float[Array, " "]
        ``sum(f0**2) / L``.
    gradient : Float[Array, " N"]
        ``2/L * J^T f0``.
    data_x : Float[Array, " M NX"]
        Observed predictor data.
    data_y : Float[Array, " M NY"]
        Observed response data.
    fgg : Callable, optional
        User function ``fgg(p, x) -> (f, df/dp, df/dx)``. Static.
    dx_shape : tuple of int
        User-facing shape of ``dx``. Static.
    dy_shape : tuple of int
        User-facing shape of the model residual. Static.
    """

    x0: Float[Array, " N"]
    f0: Float[Array, " L"]
    j11: Float[Array, " M NX NX"]
    j21: Float[Array, " M NY NX"]
    j22: Float[Array, " M NY NP"]
    d: Float[Array, " N"]
    loss: Float[Array, " "]
    gradient: Float[Array, " N"]
    data_x: Float[Array, " M NX"]
    data_y: Float[Array, " M NY"]
    fgg: Optional[Callable[..., Any]]
    dx_shape: Tuple[int, ...]
    dy_shape: Tuple[int, ...]

    @property
    def n_obs(self) -> int:
        """Number of observations ``M``."""
        return self.j11.shape[0]

    @property
    def n_x(self) -> int:
        """Predictor dimension per observation ``NX``."""
        return self.j11.shape[1]

    @property
    def n_y(self) -> int:
        """Response dimension per observation ``NY``."""
        return self.j21.shape[1]

    @property
    def n_params(self) -> int:
        """Number of model parameters ``NP``."""
        return self.j22.shape[2]

    def tree_flatten(self) -> Tuple[Tuple[Array, ...], Tuple[Any, ...]]:
        """Flatten into array children and static metadata."""
        return (
            (
                self.x0,
                self.f0,
                self.j11,
                self.j21,
                self.j22,
                self.d,
                self.loss,
                self.gradient,
                self.data_x,
                self.data_y,
            ),
            (self.fgg, self.dx_shape, self.dy_shape),
        )

    @classmethod
    def tree_unflatten(
        cls,
        aux_data: Tuple[Any, ...],
        children: Tuple[Array, ...],
    ) -> "TLSState":
        """Rebuild a TLSState from children and static metadata."""
        return cls(*children, *aux_data)


class NewtonStep(NamedTuple):
    """Undamped least-squares step.

    Attributes
    ----------
    step : Float[Array, " N"]
        Step ``dX`` minimising ``||J dX + F0||`` (minimum scaled norm when
        rank deficient).
    rank : Int[Array, " "]
        Numerical rank of the scaled full system.
    """

    step: Float[Array, " N"]
    rank: Int[Array, " "]


class RegularizedStep(NamedTuple):
    """Levenberg-Marquardt step for a given damping λ.

    Attributes
    ----------
    step : Float[Array, " N"]
        Regularised step ``dX(λ)``.
    rank : Int[Array, " "]
        Numerical rank of the scaled full system.
    norm : Float[Array, " "]
        Scaled parameter step norm ``||D_p * dp(λ)||``.
    dnorm : Float[Array, " "]
        Derivative of ``norm`` with respect to λ.
    """

    step: Float[Array, " N"]
    rank: Int[Array, " "]
    norm: Float[Array, " "]
    dnorm: Float[Array, " "]


class TrialMove(NamedTuple):
    """Loss of an uncommitted step.

    Attributes
    ----------
    loss_predicted : Float[Array, " "]
        Gauss-Newton model ``||F0 + J dX||^2 / L``.
    loss_actual : Float[Array, " "]
        Loss from re-evaluating the user function at ``X0 + dX``.
    """

    loss_predicted: Float[Array, " "]
    loss_actual: Float[Array, " "]


class TLSReport(NamedTuple):
    """Snapshot of the accepted state in user-facing shapes."""

    p: Float[Array, " NP"]
    dx: Float[Array, " ..."]
    loss: Float[Array, " "]
    dloss_dp: Float[Array, " NP"]
    dloss_ddx: Float[Array, " ..."]
    dy: Float[Array, " ..."]


class UrvDecomposition(NamedTuple):
    """Rank-revealing decomposition ``A = U diag(s) V^T``.

    Attributes
    ----------
    u : Float[Array, " m n"]
        Left factor.
    s : Float[Array, " n"]
        Non-increasing non-negative diagonal of the middle factor.
    v : Float[Array, " n n"]
        Orthogonal right factor.
    rank : Int[Array, " "]
        Number of diagonal entries above the rank tolerance.
    """

    u: Float[Array, " m n"]
    s: Float[Array, " n"]
    v: Float[Array, " n n"]
    rank: Int[Array, " "]


class NewtonFactors(NamedTuple):
    """Factorisation of the scaled structured Jacobian.

    For every observation ``i``::

        Q_i^T [[A11_i, 0    ],   = [[R_i, T_i],
               [A21_i, A22_i]]      [0,   S_i]]

    where ``A = J D^-1`` and the stacked ``S`` is decomposed by a URV.

    Attributes
    ----------
    q : Float[Array, " M K K"]
        Per-observation orthogonal factors, ``K = NX + NY``.
    r : Float[Array, " M NX NX"]
        Per-observation upper triangular data factors.
    t : Float[Array, " M NX NP"]
        Coupling of data rows to parameter columns.
    s : Float[Array, " MNY NP"]
        Reduced parameter system.
    g : Float[Array, " M NX"]
        Rotated residual, data rows.
    h : Float[Array, " MNY"]
        Rotated residual, reduced rows.
    urv : UrvDecomposition
        Rank-revealing decomposition of ``s``.
    pivot_ok : Bool[Array, " M NX"]
        Whether each diagonal entry of ``r`` is above the rank tolerance.
    data_rank : Int[Array, " "]
        Number of non-negligible diagonals across all ``R_i``.
    """

    q: Float[Array, " M K K"]
    r: Float[Array, " M NX NX"]
    t: Float[Array, " M NX NP"]
    s: Float[Array, " MNY NP"]
    g: Float[Array, " M NX"]
    h: Float[Array, " MNY"]
    urv: UrvDecomposition
    pivot_ok: Bool[Array, " M NX"]
    data_rank: Int[Array, " "]


class TLSFitResult(NamedTuple):
    """Outcome of :func:`deming.tls.fit_tls`.

    Attributes
    ----------
    state : TLSState
        Final accepted state.
    report : TLSReport
        Snapshot of ``state``.
    iterations : int
        Number of outer iterations performed.
    converged : ScalarBool
        Whether a convergence criterion was met.
    radius : float
        Final trust-region radius.
    lam : float
        Damping used for the last trial step.
    message : str
        Reason for termination.
    """

    state: TLSState
    report: TLSReport
    iterations: int
    converged: ScalarBool
    radius: float
    lam: float
    message: str
