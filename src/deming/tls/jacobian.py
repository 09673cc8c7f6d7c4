"""Structured Jacobian model for errors-in-variables least squares.

Extended Summary
----------------
The stacked residual ``F = [dx; f(p, x + dx) - y]`` has a Jacobian with
respect to ``X = [dx; p]`` of the form::

    J = [[J11,   0],
         [J21, J22]]

``J11`` (``M`` blocks of ``NX x NX``) and ``J21`` (``M`` blocks of
``NY x NX``) are block diagonal, ``J22`` (``M*NY x NP``) is dense. This
module stores only the blocks and implements every product with ``J``
block by block, so the cost is ``O(M (NX^2 + NX NY + NP NY))`` instead of
``O(L N)``.

Routine Listings
----------------
make_tls_state : function
    Validated factory building a TLSState from blocks.
jacobian_matvec : function
    ``J @ v`` from the blocks.
jacobian_rmatvec : function
    ``J^T @ u`` from the blocks.
column_norms : function
    Euclidean norms of the columns of ``J``.
loss_and_gradient : function
    ``sum(F**2) / L`` and ``2/L J^T F``.
split_unknowns : function
    Split ``X`` into ``(dx, p)`` blocks.

Notes
-----
Nothing here ever materialises the dense ``L x N`` Jacobian; see
:mod:`deming.tls.diagnostics` for the verification-only projection.
"""

import jax
import jax.numpy as jnp
from beartype import beartype
from beartype.typing import Any, Callable, Optional, Tuple
from jaxtyping import Array, Float, jaxtyped

from deming.types import TLSState
from deming.utils import InvalidInputError


@jaxtyped(typechecker=beartype)
def split_unknowns(
    v: Float[Array, " N"],
    n_obs: int,
    n_x: int,
) -> Tuple[Float[Array, " M NX"], Float[Array, " NP"]]:
    """Split ``[dx.ravel(), p]`` into an ``(M, NX)`` block and ``p``."""
    n_data: int = n_obs * n_x
    return v[:n_data].reshape(n_obs, n_x), v[n_data:]


@jax.jit
@jaxtyped(typechecker=beartype)
def jacobian_matvec(
    j11: Float[Array, " M NX NX"],
    j21: Float[Array, " M NY NX"],
    j22: Float[Array, " M NY NP"],
    v: Float[Array, " N"],
) -> Float[Array, " L"]:
    """Compute ``J @ v`` block by block.

    Parameters
    ----------
    j11 : Float[Array, " M NX NX"]
        Data-to-data blocks.
    j21 : Float[Array, " M NY NX"]
        Data-to-model blocks.
    j22 : Float[Array, " M NY NP"]
        Parameter-to-model rows.
    v : Float[Array, " N"]
        Vector laid out like ``X``.

    Returns
    -------
    jv : Float[Array, " L"]
        Vector laid out like ``F``.
    """
    v_dx: Float[Array, " M NX"]
    v_p: Float[Array, " NP"]
    v_dx, v_p = split_unknowns(v, j11.shape[0], j11.shape[1])
    top: Float[Array, " M NX"] = jnp.einsum("mab,mb->ma", j11, v_dx)
    bottom: Float[Array, " M NY"] = jnp.einsum(
        "mkb,mb->mk", j21, v_dx
    ) + jnp.einsum("mkq,q->mk", j22, v_p)
    return jnp.concatenate([top.ravel(), bottom.ravel()])


@jax.jit
@jaxtyped(typechecker=beartype)
def jacobian_rmatvec(
    j11: Float[Array, " M NX NX"],
    j21: Float[Array, " M NY NX"],
    j22: Float[Array, " M NY NP"],
    u: Float[Array, " L"],
) -> Float[Array, " N"]:
    """Compute ``J^T @ u`` block by block.

    The data part is ``J11^T u_dx + J21^T u_y`` per observation and the
    parameter part is ``J22^T u_y``.
    """
    n_obs: int = j11.shape[0]
    n_x: int = j11.shape[1]
    n_y: int = j21.shape[1]
    u_dx: Float[Array, " M NX"] = u[: n_obs * n_x].reshape(n_obs, n_x)
    u_y: Float[Array, " M NY"] = u[n_obs * n_x :].reshape(n_obs, n_y)
    g_dx: Float[Array, " M NX"] = jnp.einsum(
        "mab,ma->mb", j11, u_dx
    ) + jnp.einsum("mkb,mk->mb", j21, u_y)
    g_p: Float[Array, " NP"] = jnp.einsum("mkq,mk->q", j22, u_y)
    return jnp.concatenate([g_dx.ravel(), g_p])


@jax.jit
@jaxtyped(typechecker=beartype)
def column_norms(
    j11: Float[Array, " M NX NX"],
    j21: Float[Array, " M NY NX"],
    j22: Float[Array, " M NY NP"],
) -> Float[Array, " N"]:
    """Euclidean norm of every column of ``J``."""
    data_sq: Float[Array, " M NX"] = jnp.sum(j11**2, axis=1) + jnp.sum(
        j21**2, axis=1
    )
    param_sq: Float[Array, " NP"] = jnp.sum(j22**2, axis=(0, 1))
    return jnp.sqrt(jnp.concatenate([data_sq.ravel(), param_sq]))


@jax.jit
@jaxtyped(typechecker=beartype)
def loss_and_gradient(
    f0: Float[Array, " L"],
    j11: Float[Array, " M NX NX"],
    j21: Float[Array, " M NY NX"],
    j22: Float[Array, " M NY NP"],
) -> Tuple[Float[Array, " "], Float[Array, " N"]]:
    """Mean squared residual and its gradient.

    Returns
    -------
    loss : Float[Array, " "]
        ``sum(f0**2) / L``.
    gradient : Float[Array, " N"]
        ``2/L * J^T f0``.
    """
    n_res: int = f0.shape[0]
    loss: Float[Array, " "] = jnp.sum(f0**2) / n_res
    gradient: Float[Array, " N"] = (2.0 / n_res) * jacobian_rmatvec(
        j11, j21, j22, f0
    )
    return loss, gradient


def make_tls_state(
    x0: Any,
    f0: Any,
    j11: Any,
    j21: Any,
    j22: Any,
    d: Optional[Any] = None,
    data_x: Optional[Any] = None,
    data_y: Optional[Any] = None,
    fgg: Optional[Callable[..., Any]] = None,
    dx_shape: Optional[Tuple[int, ...]] = None,
    dy_shape: Optional[Tuple[int, ...]] = None,
) -> TLSState:
    """Build a validated :class:`TLSState` from Jacobian blocks.

    Loss and gradient are derived from the blocks; they are never taken
    from the caller.

    Parameters
    ----------
    x0 : array_like
        Unknowns ``[dx.ravel(), p]`` of length ``M*NX + NP``.
    f0 : array_like
        Residuals of length ``M*NX + M*NY``.
    j11 : array_like
        ``(M, NX, NX)`` data-to-data blocks.
    j21 : array_like
        ``(M, NY, NX)`` data-to-model blocks.
    j22 : array_like
        ``(M, NY, NP)`` parameter-to-model rows.
    d : array_like, optional
        Column scaling. Defaults to :func:`column_norms`.
    data_x : array_like, optional
        Observed predictors ``(M, NX)``. Defaults to zeros.
    data_y : array_like, optional
        Observed responses ``(M, NY)``. Defaults to zeros.
    fgg : Callable, optional
        User function, required only by host-side operations that
        re-evaluate the model.
    dx_shape, dy_shape : tuple of int, optional
        User-facing shapes used by :func:`deming.tls.report`.

    Returns
    -------
    state : TLSState
        Validated state.

    Raises
    ------
    InvalidInputError
        If any block or vector has an inconsistent shape.
    """
    j11 = jnp.asarray(j11, dtype=jnp.float64)
    j21 = jnp.asarray(j21, dtype=jnp.float64)
    j22 = jnp.asarray(j22, dtype=jnp.float64)
    x0 = jnp.asarray(x0, dtype=jnp.float64)
    f0 = jnp.asarray(f0, dtype=jnp.float64)
    if j11.ndim != 3 or j11.shape[1] != j11.shape[2]:
        raise InvalidInputError(
            f"j11 must have shape (M, NX, NX), got {j11.shape}"
        )
    n_obs, n_x = j11.shape[0], j11.shape[1]
    if j21.ndim != 3 or j21.shape[0] != n_obs or j21.shape[2] != n_x:
        raise InvalidInputError(
            f"j21 must have shape ({n_obs}, NY, {n_x}), got {j21.shape}"
        )
    n_y = j21.shape[1]
    if j22.ndim != 3 or j22.shape[:2] != (n_obs, n_y):
        raise InvalidInputError(
            f"j22 must have shape ({n_obs}, {n_y}, NP), got {j22.shape}"
        )
    n_params = j22.shape[2]
    if n_obs < 1 or n_x < 1 or n_y < 1 or n_params < 1:
        raise InvalidInputError(
            "M, NX, NY and NP must all be positive, got "
            f"M={n_obs}, NX={n_x}, NY={n_y}, NP={n_params}"
        )
    n_unknowns = n_obs * n_x + n_params
    n_res = n_obs * (n_x + n_y)
    if x0.shape != (n_unknowns,):
        raise InvalidInputError(
            f"x0 must have shape ({n_unknowns},), got {x0.shape}"
        )
    if f0.shape != (n_res,):
        raise InvalidInputError(f"f0 must have shape ({n_res},), got {f0.shape}")
    if d is None:
        d = column_norms(j11, j21, j22)
    d = jnp.asarray(d, dtype=jnp.float64)
    if d.shape != (n_unknowns,):
        raise InvalidInputError(
            f"d must have shape ({n_unknowns},), got {d.shape}"
        )
    if data_x is None:
        data_x = jnp.zeros((n_obs, n_x))
    if data_y is None:
        data_y = jnp.zeros((n_obs, n_y))
    data_x = jnp.asarray(data_x, dtype=jnp.float64).reshape(n_obs, n_x)
    data_y = jnp.asarray(data_y, dtype=jnp.float64).reshape(n_obs, n_y)
    loss, gradient = loss_and_gradient(f0, j11, j21, j22)
    return TLSState(
        x0=x0,
        f0=f0,
        j11=j11,
        j21=j21,
        j22=j22,
        d=d,
        loss=loss,
        gradient=gradient,
        data_x=data_x,
        data_y=data_y,
        fgg=fgg,
        dx_shape=tuple(dx_shape) if dx_shape is not None else (n_obs, n_x),
        dy_shape=tuple(dy_shape) if dy_shape is not None else (n_obs, n_y),
    )
