"""Diagnostic interface for verifying the structured solver.

Extended Summary
----------------
Read-only projections of a :class:`~deming.types.TLSState` used by tests
and by users checking a hand-written ``fgg``. Nothing here is used by the
step engines, and nothing is cached on the state.

Routine Listings
----------------
jacobian_entry : function
    Entry ``J[i, j]`` of the virtual dense Jacobian.
dense_jacobian : function
    The full ``L x N`` Jacobian assembled from :func:`jacobian_entry`.
newton_factors : function
    Intermediate factorisation of the Newton step engine.
normalize_qr_signs : function
    Fix the sign ambiguity of a QR factorisation.

Notes
-----
Orthogonal factors are only unique up to the signs of their columns.
Compare ``Q`` and ``R`` from different code paths only after
:func:`normalize_qr_signs`.
"""

import jax
import jax.numpy as jnp
from beartype import beartype
from beartype.typing import Tuple
from jaxtyping import Array, Float, Int, jaxtyped

from deming.types import ScalarInteger, TLSState
from deming.utils import InvalidInputError

from .newton import newton_factors


@jax.jit
def _entry(
    state: TLSState,
    i: Int[Array, " "],
    j: Int[Array, " "],
) -> Float[Array, " "]:
    n_obs: int = state.n_obs
    n_x: int = state.n_x
    n_y: int = state.n_y
    n_data: int = n_obs * n_x
    row_is_dx = i < n_data
    col_is_dx = j < n_data

    obs_dx_row = jnp.clip(i // n_x, 0, n_obs - 1)
    y_row = i - n_data
    obs_y_row = jnp.clip(y_row // n_y, 0, n_obs - 1)
    k = jnp.maximum(y_row, 0) % n_y
    obs_col = jnp.clip(j // n_x, 0, n_obs - 1)
    b = j % n_x
    q = jnp.clip(j - n_data, 0, state.n_params - 1)

    from_j11 = jnp.where(
        col_is_dx & (obs_dx_row == obs_col),
        state.j11[obs_dx_row, i % n_x, b],
        0.0,
    )
    from_j21 = jnp.where(
        obs_y_row == obs_col, state.j21[obs_y_row, k, b], 0.0
    )
    from_j22 = state.j22[obs_y_row, k, q]
    return jnp.where(
        row_is_dx,
        from_j11,
        jnp.where(col_is_dx, from_j21, from_j22),
    )


@jaxtyped(typechecker=beartype)
def jacobian_entry(
    state: TLSState,
    i: ScalarInteger,
    j: ScalarInteger,
) -> Float[Array, " "]:
    """Entry ``J[i, j]`` of the stacked residual Jacobian.

    Parameters
    ----------
    state : TLSState
        Accepted base point.
    i : ScalarInteger
        Residual index, ``0 <= i < L``.
    j : ScalarInteger
        Unknown index, ``0 <= j < N``.

    Returns
    -------
    value : Float[Array, " "]
        ``dF_i / dX_j``, zero outside the three blocks.

    Raises
    ------
    InvalidInputError
        If ``i`` or ``j`` is out of range.
    """
    n_res: int = state.f0.shape[0]
    n_unknowns: int = state.x0.shape[0]
    if not (0 <= int(i) < n_res and 0 <= int(j) < n_unknowns):
        raise InvalidInputError(
            f"index ({int(i)}, {int(j)}) outside a {n_res} x {n_unknowns} "
            "Jacobian"
        )
    return _entry(
        state, jnp.asarray(i, dtype=jnp.int32), jnp.asarray(j, dtype=jnp.int32)
    )


@jax.jit
@jaxtyped(typechecker=beartype)
def dense_jacobian(state: TLSState) -> Float[Array, " L N"]:
    """Assemble the dense Jacobian from :func:`jacobian_entry`.

    Verification only: the result is ``O(L N)`` and is never stored on the
    state. Repeated calls on the same state give identical arrays.
    """
    rows: Int[Array, " L"] = jnp.arange(state.f0.shape[0], dtype=jnp.int32)
    cols: Int[Array, " N"] = jnp.arange(state.x0.shape[0], dtype=jnp.int32)
    return jax.vmap(
        lambda i: jax.vmap(lambda j: _entry(state, i, j))(cols)
    )(rows)


@jaxtyped(typechecker=beartype)
def normalize_qr_signs(
    q: Float[Array, " ... K C"],
    r: Float[Array, " ... C n"],
) -> Tuple[Float[Array, " ... K C"], Float[Array, " ... C n"]]:
    """Flip signs so that the diagonal of ``r`` is non-negative.

    ``q @ r`` is unchanged. Works on stacks of factorisations.
    """
    diag: Float[Array, " ... c"] = jnp.diagonal(r, axis1=-2, axis2=-1)
    signs = jnp.where(diag < 0, -1.0, 1.0)
    pad: int = r.shape[-2] - diag.shape[-1]
    signs = jnp.concatenate(
        [signs, jnp.ones(signs.shape[:-1] + (pad,), dtype=signs.dtype)],
        axis=-1,
    )
    return q * signs[..., None, :], r * signs[..., :, None]
