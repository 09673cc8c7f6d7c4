"""Newton step engine for the structured TLS Jacobian.

Extended Summary
----------------
Solves ``argmin_s ||J s + F0||`` (optionally with Levenberg-Marquardt
damping on the parameter columns) without forming the dense Jacobian.

The pipeline is:

1. Scale the columns by ``D``: ``A = J D^-1`` with ``D = 0`` columns
   dropped.
2. For every observation, a Householder QR of ``[A11_i; A21_i]`` is
   applied to ``[0; A22_i]`` and to the residual. The data unknowns of
   observation ``i`` then only appear in the ``NX`` rows
   ``R_i z_dx_i + T_i z_p + g_i``.
3. The remaining ``M*NY`` rows ``S z_p + h`` are the reduced parameter
   system. A rank-revealing URV of ``S`` gives the numerical rank; the
   parameter step is zero-filled beyond it.
4. The data step is recovered by back substitution per observation.

Routine Listings
----------------
compute_newton : function
    Undamped least-squares step and numerical rank.
compute_newton_regularized : function
    Damped step with the scaled parameter norm and its λ-derivative.
newton_factors : function
    The intermediate factorisation, for verification.

Notes
-----
Work is ``O(M (NX+NY)^2 NX + M NY NP^2)`` against ``O(L N^2)`` for a dense
solve. When the reduced system is rank deficient, the undamped step is the
minimum-norm solution of the scaled system ``||D dX||``, which agrees with a
dense minimum-norm least-squares solve.
"""

from functools import partial

import jax
import jax.numpy as jnp
from beartype import beartype
from beartype.typing import Optional, Tuple
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from deming.types import (
    NewtonFactors,
    NewtonStep,
    RegularizedStep,
    ScalarNumeric,
    TLSState,
    UrvDecomposition,
)
from deming.utils import (
    InvalidInputError,
    batched_qr,
    cholesky_solve,
    default_rank_rtol,
    masked_triangular_solve,
    urv_decomp,
)


def _safe_reciprocal(d: Float[Array, " n"]) -> Float[Array, " n"]:
    """``1/d`` where ``d > 0`` and exactly zero elsewhere."""
    positive: Bool[Array, " n"] = d > 0
    return jnp.where(positive, 1.0 / jnp.where(positive, d, 1.0), 0.0)


@partial(jax.jit, static_argnums=(1,))
@jaxtyped(typechecker=beartype)
def newton_factors(
    state: TLSState,
    rtol: Optional[float] = None,
) -> NewtonFactors:
    """Factorise the column-scaled structured Jacobian.

    Parameters
    ----------
    state : TLSState
        Accepted base point.
    rtol : float, optional
        Relative rank tolerance, static under ``jit``. Defaults to
        :func:`~deming.utils.default_rank_rtol` of the matrix being ranked.

    Returns
    -------
    factors : NewtonFactors
        Per-observation ``Q_i, R_i, T_i``, the reduced system ``S`` and
        its URV, and the rotated residual.
    """
    n_obs: int = state.n_obs
    n_x: int = state.n_x
    n_y: int = state.n_y
    n_params: int = state.n_params
    inv_d: Float[Array, " N"] = _safe_reciprocal(state.d)
    inv_dx: Float[Array, " M NX"] = inv_d[: n_obs * n_x].reshape(n_obs, n_x)
    inv_dp: Float[Array, " NP"] = inv_d[n_obs * n_x :]

    a11: Float[Array, " M NX NX"] = state.j11 * inv_dx[:, None, :]
    a21: Float[Array, " M NY NX"] = state.j21 * inv_dx[:, None, :]
    a22: Float[Array, " M NY NP"] = state.j22 * inv_dp[None, None, :]

    q: Float[Array, " M K K"]
    r_full: Float[Array, " M K NX"]
    q, r_full = batched_qr(jnp.concatenate([a11, a21], axis=1))
    qt: Float[Array, " M K K"] = jnp.swapaxes(q, 1, 2)
    r: Float[Array, " M NX NX"] = r_full[:, :n_x, :]

    coupled: Float[Array, " M K NP"] = jnp.concatenate(
        [jnp.zeros((n_obs, n_x, n_params), dtype=a22.dtype), a22], axis=1
    )
    rotated: Float[Array, " M K NP"] = jnp.einsum("mij,mjq->miq", qt, coupled)
    residual: Float[Array, " M K"] = jnp.concatenate(
        [
            state.f0[: n_obs * n_x].reshape(n_obs, n_x),
            state.f0[n_obs * n_x :].reshape(n_obs, n_y),
        ],
        axis=1,
    )
    rotated_f: Float[Array, " M K"] = jnp.einsum("mij,mj->mi", qt, residual)

    reduced: Float[Array, " MNY NP"] = rotated[:, n_x:, :].reshape(
        n_obs * n_y, n_params
    )
    urv: UrvDecomposition = urv_decomp(reduced, rtol)

    pivots: Float[Array, " M NX"] = jnp.abs(
        jnp.diagonal(r, axis1=1, axis2=2)
    )
    data_rtol: float = (
        rtol if rtol is not None else default_rank_rtol(n_x + n_y, n_x)
    )
    pivot_ok: Bool[Array, " M NX"] = pivots > data_rtol * jnp.max(pivots)
    return NewtonFactors(
        q=q,
        r=r,
        t=rotated[:, :n_x, :],
        s=reduced,
        g=rotated_f[:, :n_x],
        h=rotated_f[:, n_x:].ravel(),
        urv=urv,
        pivot_ok=pivot_ok,
        data_rank=jnp.sum(pivot_ok).astype(jnp.int32),
    )


def _parameter_step(
    urv: UrvDecomposition,
    h: Float[Array, " MNY"],
    lam: ScalarNumeric,
) -> Tuple[Float[Array, " NP"], Float[Array, " NP"], Bool[Array, " NP"]]:
    """Filtered URV solve of ``min ||S z + h||^2 + lam ||z||^2``.

    Returns the step, its derivative with respect to ``lam`` and the mask
    of directions inside the numerical rank.
    """
    mask: Bool[Array, " NP"] = jnp.arange(urv.s.shape[0]) < urv.rank
    beta: Float[Array, " NP"] = urv.u.T @ h
    denom: Float[Array, " NP"] = jnp.where(mask, urv.s**2 + lam, 1.0)
    weighted: Float[Array, " NP"] = jnp.where(mask, urv.s * beta, 0.0)
    z_p: Float[Array, " NP"] = -(urv.v @ (weighted / denom))
    dz_p: Float[Array, " NP"] = urv.v @ (weighted / denom**2)
    return z_p, dz_p, mask


def _data_step(
    factors: NewtonFactors,
    z_p: Float[Array, " NP"],
) -> Float[Array, " M NX"]:
    """Back substitution ``z_dx_i = -R_i^-1 (g_i + T_i z_p)``."""
    rhs: Float[Array, " M NX"] = factors.g + jnp.einsum(
        "maq,q->ma", factors.t, z_p
    )
    return -masked_triangular_solve(
        factors.r, rhs[:, :, None], factors.pivot_ok
    )[:, :, 0]


def _solve(
    state: TLSState,
    factors: NewtonFactors,
    lam: ScalarNumeric,
) -> Tuple[
    Float[Array, " N"], Int[Array, " "], Float[Array, " "], Float[Array, " "]
]:
    """Scaled solve shared by the undamped and damped entry points."""
    n_obs: int = state.n_obs
    n_x: int = state.n_x
    n_params: int = state.n_params
    urv: UrvDecomposition = factors.urv
    z_p: Float[Array, " NP"]
    dz_p: Float[Array, " NP"]
    mask: Bool[Array, " NP"]
    z_p, dz_p, mask = _parameter_step(urv, factors.h, lam)
    z_dx: Float[Array, " MNX"] = _data_step(factors, z_p).ravel()

    # Undamped: add the null-space component of S that minimises the
    # full scaled step, z_p -> z_p + N w, z_dx -> z_dx + B w.
    null: Float[Array, " NP NP"] = urv.v * (~mask)[None, :]
    b: Float[Array, " MNX NP"] = -masked_triangular_solve(
        factors.r,
        jnp.einsum("maq,qk->mak", factors.t, null),
        factors.pivot_ok,
    ).reshape(n_obs * n_x, n_params)
    gram: Float[Array, " NP NP"] = b.T @ b + jnp.eye(n_params, dtype=b.dtype)
    w: Float[Array, " NP"] = cholesky_solve(gram, -(b.T @ z_dx + null.T @ z_p))
    w = jnp.where(lam == 0, w, 0.0)
    z_p = z_p + null @ w
    z_dx = z_dx + b @ w

    inv_d: Float[Array, " N"] = _safe_reciprocal(state.d)
    step: Float[Array, " N"] = jnp.concatenate([z_dx, z_p]) * inv_d
    rank: Int[Array, " "] = (factors.data_rank + urv.rank).astype(jnp.int32)
    norm: Float[Array, " "] = jnp.linalg.norm(z_p)
    dnorm: Float[Array, " "] = jnp.where(
        norm > 0, jnp.dot(z_p, dz_p) / jnp.where(norm > 0, norm, 1.0), 0.0
    )
    return step, rank, norm, dnorm


@partial(jax.jit, static_argnums=(1,))
@jaxtyped(typechecker=beartype)
def compute_newton(
    state: TLSState,
    rtol: Optional[float] = None,
) -> NewtonStep:
    """Undamped Gauss-Newton step of the structured problem.

    Parameters
    ----------
    state : TLSState
        Accepted base point. Not modified.
    rtol : float, optional
        Relative rank tolerance, static under ``jit``.

    Returns
    -------
    newton : NewtonStep
        ``step`` minimises ``||J step + F0||``; among all minimisers it has
        the smallest ``||D step||``. Components whose ``D`` entry is zero
        are exactly zero. ``rank`` is the numerical rank of the scaled
        system.

    Notes
    -----
    Rank deficiency is not an error. It lowers ``rank`` and zero-fills
    the step beyond it.
    """
    factors: NewtonFactors = newton_factors(state, rtol)
    step: Float[Array, " N"]
    rank: Int[Array, " "]
    step, rank, _, _ = _solve(state, factors, jnp.asarray(0.0))
    return NewtonStep(step=step, rank=rank)


@partial(jax.jit, static_argnums=(2,))
@jaxtyped(typechecker=beartype)
def _regularized_step(
    state: TLSState,
    lam: ScalarNumeric,
    rtol: Optional[float] = None,
) -> RegularizedStep:
    factors: NewtonFactors = newton_factors(state, rtol)
    step: Float[Array, " N"]
    rank: Int[Array, " "]
    norm: Float[Array, " "]
    dnorm: Float[Array, " "]
    step, rank, norm, dnorm = _solve(
        state, factors, jnp.asarray(lam, dtype=jnp.float64)
    )
    return RegularizedStep(step=step, rank=rank, norm=norm, dnorm=dnorm)


def compute_newton_regularized(
    state: TLSState,
    lam: ScalarNumeric,
    rtol: Optional[float] = None,
) -> RegularizedStep:
    """Levenberg-Marquardt step with parameter damping ``lam``.

    Minimises ``||J s + F0||^2 + lam ||D_p s_p||^2``. The data block is
    never damped.

    Parameters
    ----------
    state : TLSState
        Accepted base point. Not modified.
    lam : ScalarNumeric
        Damping ``lam >= 0``. Integers are accepted.
    rtol : float, optional
        Relative rank tolerance, static under ``jit``.

    Returns
    -------
    regularized : RegularizedStep
        ``step``, ``rank``, ``norm = ||D_p s_p(lam)||`` and
        ``dnorm = d norm / d lam``, the latter from the URV filter factors
        in closed form. ``lam = 0`` gives the same step and rank as
        :func:`compute_newton`.

    Raises
    ------
    InvalidInputError
        If a concrete ``lam`` is negative or not finite.

    Notes
    -----
    The check on ``lam`` is skipped when it is traced under an outer
    ``jax.jit``; a negative traced ``lam`` yields non-finite entries.
    """
    if not isinstance(lam, jax.core.Tracer):
        value: float = float(lam)
        if not (value >= 0.0 and jnp.isfinite(value)):
            raise InvalidInputError(
                f"damping lam must be finite and non-negative, got {value}"
            )
    return _regularized_step(state, lam, rtol)
