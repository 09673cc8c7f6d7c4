"""State lifecycle and trial-move evaluation.

Extended Summary
----------------
Host-side entry points that call the user function
``fgg(p, x) -> (f, df/dp, df/dx)`` and build or advance a
:class:`~deming.types.TLSState`, plus the jitted quadratic loss model the
driving loop compares against.

A state is created once per problem by :func:`init_tls_solver` and
replaced, never mutated, by :func:`accept_move`. :func:`consider_move`
evaluates a step without committing it.

Routine Listings
----------------
init_tls_solver : function
    Evaluate ``fgg`` at ``(p0, x + dx0)`` and build the initial state.
predict_loss : function
    Gauss-Newton model of the loss at ``X0 + dX``.
consider_move : function
    Predicted and actual loss of an uncommitted step.
accept_move : function
    Commit ``X0 <- X0 + dX`` and rebuild residual and Jacobian blocks.
report : function
    Snapshot of the accepted state in user-facing shapes.

Notes
-----
``fgg`` must accept the corrected data in the same shape as ``x``. ``y``
is subtracted by this module, so ``fgg`` returns the model value, not the
residual.
"""

import logging

import jax
import jax.numpy as jnp
from beartype import beartype
from beartype.typing import Any, Callable, Optional, Tuple
from jaxtyping import Array, Float, jaxtyped

from deming.types import TLSReport, TLSState, TrialMove
from deming.utils import InvalidInputError

from .jacobian import column_norms, jacobian_matvec, make_tls_state

logger = logging.getLogger(__name__)


def _evaluate_model(
    fgg: Callable[..., Any],
    p: Float[Array, " NP"],
    corrected: Float[Array, " ..."],
    require_finite: bool = True,
) -> Tuple[
    Float[Array, " M NY"],
    Float[Array, " M NY NP"],
    Float[Array, " M NY NX"],
    Tuple[int, ...],
]:
    """Call ``fgg`` and coerce its outputs into per-observation blocks.

    Raises
    ------
    InvalidInputError
        If the returned shapes do not match ``p`` and ``corrected``, or if
        ``require_finite`` and an output contains NaN or inf.
    """
    n_obs: int = corrected.shape[0]
    n_x: int = 1 if corrected.ndim == 1 else corrected.shape[1]
    n_params: int = p.shape[0]
    outputs = fgg(p, corrected)
    if not isinstance(outputs, (tuple, list)) or len(outputs) != 3:
        raise InvalidInputError(
            "fgg must return a tuple (f, df/dp, df/dx)"
        )
    f = jnp.asarray(outputs[0], dtype=jnp.float64)
    df_dp = jnp.asarray(outputs[1], dtype=jnp.float64)
    df_dx = jnp.asarray(outputs[2], dtype=jnp.float64)
    if f.size == 0 or f.size % n_obs != 0:
        raise InvalidInputError(
            f"fgg returned f with {f.size} entries, which is not a positive "
            f"multiple of the {n_obs} observations"
        )
    n_y: int = f.size // n_obs
    allowed_dp = {(n_obs * n_y, n_params), f.shape + (n_params,)}
    if df_dp.shape not in allowed_dp:
        raise InvalidInputError(
            f"fgg returned df/dp with shape {df_dp.shape}, expected one of "
            f"{sorted(allowed_dp)}"
        )
    allowed_dx = {(n_obs * n_y, n_x), f.shape + corrected.shape[1:]}
    if df_dx.shape not in allowed_dx:
        raise InvalidInputError(
            f"fgg returned df/dx with shape {df_dx.shape}, expected one of "
            f"{sorted(allowed_dx)}"
        )
    if require_finite and not all(
        bool(jnp.all(jnp.isfinite(a))) for a in (f, df_dp, df_dx)
    ):
        raise InvalidInputError("fgg returned non-finite values")
    return (
        f.reshape(n_obs, n_y),
        df_dp.reshape(n_obs, n_y, n_params),
        df_dx.reshape(n_obs, n_y, n_x),
        tuple(f.shape),
    )


def _residual(
    dx: Float[Array, " M NX"],
    f: Float[Array, " M NY"],
    data_y: Float[Array, " M NY"],
) -> Float[Array, " L"]:
    """Stacked residual ``[dx; f - y]``."""
    return jnp.concatenate([dx.ravel(), (f - data_y).ravel()])


def _unit_blocks(n_obs: int, n_x: int) -> Float[Array, " M NX NX"]:
    """``J11``: the dx residual is ``dx`` itself."""
    return jnp.broadcast_to(
        jnp.eye(n_x, dtype=jnp.float64), (n_obs, n_x, n_x)
    )


def init_tls_solver(
    fgg: Callable[..., Any],
    x: Any,
    y: Any,
    p0: Any,
    dx0: Optional[Any] = None,
) -> TLSState:
    """Build the initial state of a structured TLS problem.

    Parameters
    ----------
    fgg : Callable
        ``fgg(p, x) -> (f, df/dp, df/dx)``, evaluated at the corrected data
        ``x + dx``. ``df/dx`` holds only the per-observation blocks.
    x : array_like
        Observed predictors, ``(M,)`` or ``(M, NX)``.
    y : array_like
        Observed responses with as many entries as ``f``.
    p0 : array_like
        Initial parameters, ``(NP,)``.
    dx0 : array_like, optional
        Initial data corrections, same shape as ``x``. Defaults to zero.

    Returns
    -------
    state : TLSState
        State with ``F0`` and the Jacobian blocks evaluated at
        ``(p0, dx0)`` and ``D`` set to the column norms of ``J``.

    Raises
    ------
    InvalidInputError
        If any shape is inconsistent, or ``fgg`` returns non-finite values.

    Examples
    --------
    >>> from deming.utils import fgg_from_model
    >>> fgg = fgg_from_model(lambda p, xi: p[0] + p[1] * xi)
    >>> state = init_tls_solver(fgg, x, y, jnp.zeros(2))
    """
    x = jnp.asarray(x, dtype=jnp.float64)
    p0 = jnp.asarray(p0, dtype=jnp.float64)
    if x.ndim not in (1, 2) or x.shape[0] < 1:
        raise InvalidInputError(
            f"x must have shape (M,) or (M, NX) with M >= 1, got {x.shape}"
        )
    if p0.ndim != 1 or p0.shape[0] < 1:
        raise InvalidInputError(
            f"p0 must be a non-empty vector, got shape {p0.shape}"
        )
    dx0 = (
        jnp.zeros_like(x)
        if dx0 is None
        else jnp.asarray(dx0, dtype=jnp.float64)
    )
    if dx0.shape != x.shape:
        raise InvalidInputError(
            f"dx0 must have the shape of x {x.shape}, got {dx0.shape}"
        )
    n_obs: int = x.shape[0]
    n_x: int = 1 if x.ndim == 1 else x.shape[1]
    f, j22, j21, dy_shape = _evaluate_model(fgg, p0, x + dx0)
    y = jnp.asarray(y, dtype=jnp.float64)
    if y.size != f.size:
        raise InvalidInputError(
            f"y has {y.size} entries but fgg returned {f.size}"
        )
    data_y: Float[Array, " M NY"] = y.reshape(f.shape)
    dx_block: Float[Array, " M NX"] = dx0.reshape(n_obs, n_x)
    state: TLSState = make_tls_state(
        x0=jnp.concatenate([dx_block.ravel(), p0]),
        f0=_residual(dx_block, f, data_y),
        j11=_unit_blocks(n_obs, n_x),
        j21=j21,
        j22=j22,
        data_x=x.reshape(n_obs, n_x),
        data_y=data_y,
        fgg=fgg,
        dx_shape=x.shape,
        dy_shape=dy_shape,
    )
    logger.debug(
        f"Initialised TLS state: M={n_obs}, NX={n_x}, NY={state.n_y}, "
        f"NP={state.n_params}, loss={float(state.loss):.6e}"
    )
    return state


@jax.jit
@jaxtyped(typechecker=beartype)
def predict_loss(
    state: TLSState,
    step: Float[Array, " N"],
) -> Float[Array, " "]:
    """Gauss-Newton model ``||F0 + J step||^2 / L``.

    Equal to ``loss + G0 . step + step^T J^T J step / L``.
    """
    linearised: Float[Array, " L"] = state.f0 + jacobian_matvec(
        state.j11, state.j21, state.j22, step
    )
    return jnp.sum(linearised**2) / linearised.shape[0]


def _check_step(state: TLSState, step: Any) -> Float[Array, " N"]:
    step = jnp.asarray(step, dtype=jnp.float64)
    if step.shape != state.x0.shape:
        raise InvalidInputError(
            f"step must have shape {state.x0.shape}, got {step.shape}"
        )
    if state.fgg is None:
        raise InvalidInputError(
            "state has no fgg; build it with init_tls_solver"
        )
    return step


def _split_point(
    state: TLSState, x1: Float[Array, " N"]
) -> Tuple[Float[Array, " M NX"], Float[Array, " NP"]]:
    n_data: int = state.n_obs * state.n_x
    return x1[:n_data].reshape(state.n_obs, state.n_x), x1[n_data:]


def consider_move(state: TLSState, step: Any) -> TrialMove:
    """Evaluate a step without committing it.

    Parameters
    ----------
    state : TLSState
        Accepted base point. Not modified.
    step : array_like
        Candidate ``dX`` of length ``N``.

    Returns
    -------
    trial : TrialMove
        ``loss_predicted`` from :func:`predict_loss` and ``loss_actual``
        from re-evaluating ``fgg`` at ``X0 + dX``. A non-finite model value
        gives a non-finite ``loss_actual``, which the driver rejects.

    Raises
    ------
    InvalidInputError
        If ``step`` has the wrong length or ``fgg`` returns bad shapes.
    """
    step = _check_step(state, step)
    dx1: Float[Array, " M NX"]
    p1: Float[Array, " NP"]
    dx1, p1 = _split_point(state, state.x0 + step)
    f1, _, _, _ = _evaluate_model(
        state.fgg,
        p1,
        (state.data_x + dx1).reshape(state.dx_shape),
        require_finite=False,
    )
    if f1.shape != state.data_y.shape:
        raise InvalidInputError(
            f"fgg changed its output shape from {state.data_y.shape} "
            f"to {f1.shape}"
        )
    residual: Float[Array, " L"] = _residual(dx1, f1, state.data_y)
    return TrialMove(
        loss_predicted=predict_loss(state, step),
        loss_actual=jnp.sum(residual**2) / residual.shape[0],
    )


def accept_move(state: TLSState, step: Any) -> TLSState:
    """Commit ``X0 <- X0 + step`` and rebuild the state there.

    The residual and Jacobian blocks are re-evaluated, the scaling is
    updated to ``max(D, column norms of the new J)`` and loss and gradient
    are recomputed.

    Raises
    ------
    InvalidInputError
        If ``step`` has the wrong length, or ``fgg`` returns bad shapes or
        non-finite values at the new point.
    """
    step = _check_step(state, step)
    x1: Float[Array, " N"] = state.x0 + step
    dx1: Float[Array, " M NX"]
    p1: Float[Array, " NP"]
    dx1, p1 = _split_point(state, x1)
    f1, j22, j21, dy_shape = _evaluate_model(
        state.fgg, p1, (state.data_x + dx1).reshape(state.dx_shape)
    )
    if dy_shape != state.dy_shape:
        raise InvalidInputError(
            f"fgg changed its output shape from {state.dy_shape} to {dy_shape}"
        )
    j11: Float[Array, " M NX NX"] = state.j11
    new: TLSState = make_tls_state(
        x0=x1,
        f0=_residual(dx1, f1, state.data_y),
        j11=j11,
        j21=j21,
        j22=j22,
        d=jnp.maximum(state.d, column_norms(j11, j21, j22)),
        data_x=state.data_x,
        data_y=state.data_y,
        fgg=state.fgg,
        dx_shape=state.dx_shape,
        dy_shape=state.dy_shape,
    )
    logger.debug(
        f"Accepted move: loss {float(state.loss):.6e} -> {float(new.loss):.6e}"
    )
    return new


@jaxtyped(typechecker=beartype)
def report(state: TLSState) -> TLSReport:
    """Snapshot of the accepted state.

    Returns
    -------
    snapshot : TLSReport
        ``p``, ``dx`` (shape of ``x``), ``loss``, ``dloss_dp``,
        ``dloss_ddx`` (shape of ``x``) and ``dy = f(p, x + dx) - y``
        (shape of ``f``).
    """
    n_data: int = state.n_obs * state.n_x
    return TLSReport(
        p=state.x0[n_data:],
        dx=state.x0[:n_data].reshape(state.dx_shape),
        loss=state.loss,
        dloss_dp=state.gradient[n_data:],
        dloss_ddx=state.gradient[:n_data].reshape(state.dx_shape),
        dy=state.f0[n_data:].reshape(state.dy_shape),
    )
