"""Cauchy step engine.

Extended Summary
----------------
The Cauchy point minimises the Gauss-Newton model of the loss along the
gradient direction. With ``G0 = 2/L J^T F0`` the model along ``c G0`` is::

    m(c) = ||F0 + c J G0||^2 / L
         = loss + c ||G0||^2 + c^2 ||J G0||^2 / L

so ``m'(c) = 0`` at ``c = -||G0||^2 / (2 ||J G0||^2 / L)``.

Routine Listings
----------------
cauchy_travel : function
    Non-positive step length along ``G0`` minimising the model.
"""

import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from deming.types import TLSState

from .jacobian import jacobian_matvec


@jax.jit
@jaxtyped(typechecker=beartype)
def cauchy_travel(state: TLSState) -> Float[Array, " "]:
    """Step length ``c <= 0`` minimising ``m(c)`` along the gradient.

    Parameters
    ----------
    state : TLSState
        Accepted base point.

    Returns
    -------
    c : Float[Array, " "]
        Minimiser of the quadratic model along ``state.gradient``. Zero
        when the curvature along the gradient is not positive.
    """
    g: Float[Array, " N"] = state.gradient
    jg: Float[Array, " L"] = jacobian_matvec(state.j11, state.j21, state.j22, g)
    curvature: Float[Array, " "] = 2.0 * jnp.sum(jg**2) / state.f0.shape[0]
    positive = curvature > 0
    return jnp.where(
        positive,
        -jnp.sum(g**2) / jnp.where(positive, curvature, 1.0),
        0.0,
    )
