"""Dense decomposition primitives used as building blocks.

Extended Summary
----------------
Thin, jit-compatible wrappers around ``jax.numpy.linalg`` and
``jax.scipy.linalg`` that add the rank bookkeeping needed by the
structured solver. These are consumed by :mod:`deming.tls.newton`; they are
not meant as a general decomposition library.

Routine Listings
----------------
default_rank_rtol : function
    Default relative rank tolerance for an ``m x n`` matrix.
urv_decomp : function
    Rank-revealing URV decomposition ``A = U diag(s) V^T``.
batched_qr : function
    Complete QR factorisation of a stack of small matrices.
masked_triangular_solve : function
    Batched upper triangular solve that zero-fills negligible pivots.
cholesky_solve : function
    Solve a symmetric positive definite system.
check_finite : function
    Host-side guard raising :class:`SingularInputError`.

Notes
-----
JAX reports decomposition failures as NaN instead of raising. The
host-side :func:`check_finite` converts that into a
:class:`~deming.utils.errors.SingularInputError` where a caller needs it.
"""

import jax
import jax.numpy as jnp
import jax.scipy.linalg as jsp_linalg
from beartype import beartype
from beartype.typing import Optional, Tuple
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from deming.types import ScalarFloat, UrvDecomposition

from .errors import SingularInputError


def default_rank_rtol(m: int, n: int) -> float:
    """Return ``max(m, n) * eps``, the numpy ``matrix_rank`` convention."""
    return max(m, n, 1) * float(jnp.finfo(jnp.float64).eps)


@jaxtyped(typechecker=beartype)
def urv_decomp(
    a: Float[Array, " m n"],
    rtol: Optional[ScalarFloat] = None,
) -> UrvDecomposition:
    """Rank-revealing URV decomposition of a dense matrix.

    Computes ``A = U R V^T`` with ``R = diag(s)`` upper triangular with
    non-increasing diagonal and ``V`` orthogonal. The numerical rank is the
    number of ``s`` above ``rtol * s[0]``.

    Parameters
    ----------
    a : Float[Array, " m n"]
        Matrix to decompose.
    rtol : ScalarFloat, optional
        Relative rank tolerance. Defaults to :func:`default_rank_rtol`.

    Returns
    -------
    urv : UrvDecomposition
        ``u`` has shape ``(m, n)``, ``s`` shape ``(n,)`` and ``v`` shape
        ``(n, n)``.

    Notes
    -----
    For ``m >= n`` the matrix is first reduced by a thin QR so that the SVD
    only sees an ``n x n`` triangle. For ``m < n`` it is padded with zero
    rows; the columns of ``u`` are then not orthonormal, but
    ``u.T @ b`` still equals the rotated right-hand side of the padded
    system ``[b; 0]``, which is all the least-squares solves need.
    """
    m: int = a.shape[0]
    n: int = a.shape[1]
    if rtol is None:
        rtol = default_rank_rtol(m, n)
    q: Float[Array, " m n"]
    r: Float[Array, " n n"]
    if m >= n:
        q, r = jnp.linalg.qr(a, mode="reduced")
    else:
        q = jnp.eye(m, n, dtype=a.dtype)
        r = jnp.concatenate([a, jnp.zeros((n - m, n), dtype=a.dtype)], axis=0)
    w: Float[Array, " n n"]
    s: Float[Array, " n"]
    vt: Float[Array, " n n"]
    w, s, vt = jnp.linalg.svd(r, full_matrices=True)
    tol: Float[Array, " "] = rtol * s[0]
    rank: Int[Array, " "] = jnp.sum(s > tol).astype(jnp.int32)
    return UrvDecomposition(u=q @ w, s=s, v=vt.T, rank=rank)


@jax.jit
@jaxtyped(typechecker=beartype)
def batched_qr(
    blocks: Float[Array, " b k n"],
) -> Tuple[Float[Array, " b k k"], Float[Array, " b k n"]]:
    """Complete Householder QR of every matrix in a stack."""
    q: Float[Array, " b k k"]
    r: Float[Array, " b k n"]
    q, r = jnp.linalg.qr(blocks, mode="complete")
    return q, r


@jaxtyped(typechecker=beartype)
def masked_triangular_solve(
    r: Float[Array, " b n n"],
    rhs: Float[Array, " b n k"],
    pivot_ok: Bool[Array, " b n"],
) -> Float[Array, " b n k"]:
    """Solve ``R_i X_i = B_i`` for a stack of upper triangular ``R_i``.

    Rows whose pivot is flagged negligible are replaced by unit rows with a
    zero right-hand side, so the matching solution entries are exactly
    zero.
    """
    eye: Float[Array, " n n"] = jnp.eye(r.shape[1], dtype=r.dtype)
    safe_r: Float[Array, " b n n"] = jnp.where(
        pivot_ok[:, :, None], r, eye[None, :, :]
    )
    safe_rhs: Float[Array, " b n k"] = jnp.where(pivot_ok[:, :, None], rhs, 0.0)
    return jax.vmap(
        lambda ri, bi: jsp_linalg.solve_triangular(ri, bi, lower=False)
    )(safe_r, safe_rhs)


@jaxtyped(typechecker=beartype)
def cholesky_solve(
    a: Float[Array, " n n"],
    b: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Solve ``A x = b`` for symmetric positive definite ``A``."""
    factor = jsp_linalg.cho_factor(a, lower=True)
    return jsp_linalg.cho_solve(factor, b)


def check_finite(name: str, *arrays: Array) -> None:
    """Raise :class:`SingularInputError` if any array has non-finite values.

    Host-side only; call it on concrete arrays outside of ``jax.jit``.
    """
    for array in arrays:
        if not bool(jnp.all(jnp.isfinite(array))):
            raise SingularInputError(
                f"{name} produced non-finite values; the decomposition failed"
            )
