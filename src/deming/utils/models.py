"""Build structured model callbacks with JAX autodiff.

Extended Summary
----------------
The solver consumes a function ``fgg(p, x) -> (f, df/dp, df/dx)`` whose
``df/dx`` is block diagonal across observations. Writing the derivatives by
hand is error prone, so this module derives ``fgg`` from a model written
for a single observation.

Routine Listings
----------------
fgg_from_model : function
    Derive ``fgg`` from ``model(p, x_i)`` with ``vmap`` and ``jacfwd``.

Notes
-----
Because the model is evaluated one observation at a time, the Jacobian
with respect to the data is block diagonal by construction and only the
diagonal blocks are ever computed.
"""

import jax
import jax.numpy as jnp
from beartype import beartype
from beartype.typing import Callable, Tuple
from jaxtyping import Array, Float, jaxtyped


@jaxtyped(typechecker=beartype)
def fgg_from_model(
    model: Callable[..., Array],
) -> Callable[..., Tuple[Array, Array, Array]]:
    """Derive a structured ``fgg`` from a per-observation model.

    Parameters
    ----------
    model : Callable
        ``model(p, x_i)`` returning a scalar or an ``(NY,)`` vector for a
        single observation ``x_i`` (a scalar when the data is ``(M,)``, an
        ``(NX,)`` vector when it is ``(M, NX)``).

    Returns
    -------
    fgg : Callable
        ``fgg(p, x)`` returning ``f`` of shape ``(M,)`` or ``(M, NY)``,
        ``df/dp`` of shape ``f.shape + (NP,)`` and ``df/dx`` of shape
        ``f.shape + x.shape[1:]``.

    Examples
    --------
    >>> def line(p, xi):
    ...     return p[0] + p[1] * xi
    >>> fgg = fgg_from_model(line)
    >>> f, df_dp, df_dx = fgg(jnp.array([1.0, 2.0]), jnp.arange(3.0))
    """
    jac_p: Callable[..., Array] = jax.jacfwd(model, argnums=0)
    jac_x: Callable[..., Array] = jax.jacfwd(model, argnums=1)

    def _fgg(
        p: Float[Array, " NP"],
        x: Float[Array, " M ..."],
    ) -> Tuple[Array, Array, Array]:
        p = jnp.asarray(p, dtype=jnp.float64)
        x = jnp.asarray(x, dtype=jnp.float64)
        f: Array = jax.vmap(model, in_axes=(None, 0))(p, x)
        df_dp: Array = jax.vmap(jac_p, in_axes=(None, 0))(p, x)
        df_dx: Array = jax.vmap(jac_x, in_axes=(None, 0))(p, x)
        return f, df_dp, df_dx

    return _fgg
