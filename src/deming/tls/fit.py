"""Reference trust-region driver for structured total least squares.

Extended Summary
----------------
A host-side loop around the step engines. Each iteration:

1. Computes the undamped Newton step. If its scaled parameter norm
   ``||D_p dp||`` fits in the trust radius it is the candidate.
2. Otherwise searches for the damping λ whose regularised step lies on
   the boundary (Hebden iteration as in MINPACK ``lmpar``, using the
   closed-form ``d norm / d λ``).
3. Compares the candidate with the Cauchy point truncated to the radius
   and keeps whichever the quadratic model prefers.
4. Evaluates the candidate with :func:`~deming.tls.consider_move`, forms
   the agreement ratio ρ, resizes the radius and accepts the step when
   ρ is large enough.

Routine Listings
----------------
fit_tls : function
    Solve a TLS problem end to end.
hebden_search : function
    Damping λ placing the regularised step on the trust-region boundary.

Notes
-----
The driver runs outside ``jit``. It calls the user function and logs
every iteration; the step engines it calls are jitted.
"""

import logging

import jax.numpy as jnp
from beartype.typing import Any, Callable, Optional, Tuple
from jaxtyping import Array, Float

from deming.types import (
    NewtonFactors,
    NewtonStep,
    RegularizedStep,
    TLSFitResult,
    TLSState,
    TrialMove,
)
from deming.utils import IterationBudgetExceededError, check_finite

from .cauchy import cauchy_travel
from .newton import compute_newton, compute_newton_regularized, newton_factors
from .solver import (
    accept_move,
    consider_move,
    init_tls_solver,
    predict_loss,
    report,
)

logger = logging.getLogger(__name__)

TRUST_REGION_EXCELLENT = 0.75
TRUST_REGION_ACCEPTABLE = 0.25
ACCEPT_THRESHOLD = 1e-4
HEBDEN_TOLERANCE = 0.1
RADIUS_FACTOR = 100.0
RADIUS_SHRINK = 0.25
RADIUS_GROW = 2.0
CONVERGENCE_TOL = 1e-12
LOSS_ZERO_TOL = 1e-28
LAMBDA_FLOOR = 1e-10


def _scaled_parameter_norm(state: TLSState, step: Float[Array, " N"]) -> float:
    n_data: int = state.n_obs * state.n_x
    return float(jnp.linalg.norm(state.d[n_data:] * step[n_data:]))


def hebden_search(
    state: TLSState,
    radius: float,
    max_iterations: int = 32,
    rtol: Optional[float] = None,
) -> Tuple[float, RegularizedStep]:
    """Find λ with ``||D_p dp(λ)||`` within 10% of ``radius``.

    Parameters
    ----------
    state : TLSState
        Accepted base point.
    radius : float
        Trust-region radius in the scaled parameter norm.
    max_iterations : int
        Iteration budget.
    rtol : float, optional
        Relative rank tolerance forwarded to the step engine.

    Returns
    -------
    lam : float
        Damping found.
    regularized : RegularizedStep
        Step at ``lam``.

    Raises
    ------
    IterationBudgetExceededError
        If no acceptable λ is found within ``max_iterations``.

    Notes
    -----
    The bracket starts at ``[0, ||S^T h|| / radius]`` where ``S`` and
    ``h`` are the reduced parameter system; the norm of the regularised
    step at the upper end cannot exceed ``radius``. Updates follow
    ``λ <- λ - (φ / φ') (norm / radius)`` with ``φ = norm - radius`` and
    fall back to ``max(1e-3 hi, sqrt(lo hi))`` when they leave the
    bracket.
    """
    factors: NewtonFactors = newton_factors(state, rtol)
    lo: float = 0.0
    hi: float = float(jnp.linalg.norm(factors.s.T @ factors.h)) / radius
    if hi <= 0.0:
        hi = 1.0
    ceiling: float = hi
    lam: float = 0.0
    for _ in range(max_iterations):
        reg: RegularizedStep = compute_newton_regularized(state, lam, rtol)
        norm: float = float(reg.norm)
        dnorm: float = float(reg.dnorm)
        phi: float = norm - radius
        if abs(phi) <= HEBDEN_TOLERANCE * radius:
            return lam, reg
        if phi < 0 and lo == 0.0 and lam <= LAMBDA_FLOOR * ceiling:
            # The boundary is not reachable for any positive λ.
            return lam, reg
        if phi > 0:
            lo = lam
        else:
            hi = lam
        candidate: float = (
            lam - (phi / dnorm) * (norm / radius) if dnorm < 0 else -1.0
        )
        if not lo < candidate < hi:
            candidate = max(1e-3 * hi, (lo * hi) ** 0.5)
        lam = candidate
    raise IterationBudgetExceededError(
        "Hebden search",
        max_iterations,
        f"radius={radius:.3e}, bracket=[{lo:.3e}, {hi:.3e}]",
    )


def fit_tls(
    fgg: Callable[..., Any],
    x: Any,
    y: Any,
    p0: Any,
    dx0: Optional[Any] = None,
    max_iterations: int = 100,
    initial_radius: Optional[float] = None,
    hebden_maxiter: int = 32,
    ftol: float = LOSS_ZERO_TOL,
    gtol: float = 1e-14,
    rtol: Optional[float] = None,
) -> TLSFitResult:
    """Fit ``f(p, x + dx) ~ y`` jointly in ``p`` and ``dx``.

    Parameters
    ----------
    fgg : Callable
        ``fgg(p, x) -> (f, df/dp, df/dx)``; see
        :func:`~deming.tls.init_tls_solver`.
    x : array_like
        Observed predictors, ``(M,)`` or ``(M, NX)``.
    y : array_like
        Observed responses.
    p0 : array_like
        Initial parameters.
    dx0 : array_like, optional
        Initial data corrections. Defaults to zero.
    max_iterations : int
        Maximum number of outer iterations.
    initial_radius : float, optional
        Initial trust radius in the scaled parameter norm. Defaults to
        ``100 ||D_p p0||`` or ``100`` when that is zero.
    hebden_maxiter : int
        Iteration budget of each λ search.
    ftol : float
        Stop when the loss is at or below this value.
    gtol : float
        Stop when the largest gradient component is at or below this
        value.
    rtol : float, optional
        Relative rank tolerance of the Newton step engine.

    Returns
    -------
    result : TLSFitResult
        Final state, its report and the termination details.

    Raises
    ------
    InvalidInputError
        If the problem shapes are inconsistent.
    SingularInputError
        If the Newton step has non-finite entries.
    IterationBudgetExceededError
        If a λ search runs out of iterations.
    """
    state: TLSState = init_tls_solver(fgg, x, y, p0, dx0)
    if initial_radius is None:
        p_norm: float = _scaled_parameter_norm(state, state.x0)
        radius: float = RADIUS_FACTOR * p_norm if p_norm > 0 else RADIUS_FACTOR
    else:
        radius = float(initial_radius)
    lam: float = 0.0
    converged: bool = False
    message: str = "maximum number of iterations reached"
    iteration: int = 0
    for iteration in range(1, max_iterations + 1):
        loss: float = float(state.loss)
        if loss <= ftol:
            converged, message = True, "loss below ftol"
            break
        if float(jnp.max(jnp.abs(state.gradient))) <= gtol:
            converged, message = True, "gradient below gtol"
            break

        newton: NewtonStep = compute_newton(state, rtol)
        check_finite("compute_newton", newton.step)
        step: Float[Array, " N"] = newton.step
        lam = 0.0
        if _scaled_parameter_norm(state, step) > radius:
            reg: RegularizedStep
            lam, reg = hebden_search(state, radius, hebden_maxiter, rtol)
            check_finite("compute_newton_regularized", reg.step)
            step = reg.step

        cauchy: Float[Array, " N"] = cauchy_travel(state) * state.gradient
        cauchy_norm: float = _scaled_parameter_norm(state, cauchy)
        if cauchy_norm > radius:
            cauchy = cauchy * (radius / cauchy_norm)
        predicted_step: float = float(predict_loss(state, step))
        if float(predict_loss(state, cauchy)) < predicted_step:
            logger.debug("Cauchy point preferred over the damped step")
            step = cauchy
            predicted_step = float(predict_loss(state, cauchy))

        predicted_reduction: float = loss - predicted_step
        if predicted_reduction <= CONVERGENCE_TOL * loss:
            converged, message = True, "predicted reduction negligible"
            break

        trial: TrialMove = consider_move(state, step)
        actual_loss: float = float(trial.loss_actual)
        rho: float = (
            (loss - actual_loss) / predicted_reduction
            if jnp.isfinite(actual_loss)
            else -jnp.inf
        )
        step_norm: float = _scaled_parameter_norm(state, step)
        if rho < TRUST_REGION_ACCEPTABLE:
            radius *= RADIUS_SHRINK
        elif (
            rho > TRUST_REGION_EXCELLENT
            and step_norm >= (1.0 - HEBDEN_TOLERANCE) * radius
        ):
            radius *= RADIUS_GROW
        logger.info(
            f"Iteration {iteration}: loss={loss:.6e}, "
            f"trial={actual_loss:.6e}, rho={float(rho):.3f}, "
            f"lambda={lam:.3e}, radius={radius:.3e}, rank={int(newton.rank)}"
        )
        if rho > ACCEPT_THRESHOLD:
            state = accept_move(state, step)
            if loss - float(state.loss) <= CONVERGENCE_TOL * loss:
                converged = True
                message = "relative loss improvement below tolerance"
                break
        if radius <= CONVERGENCE_TOL * max(
            _scaled_parameter_norm(state, state.x0), 1.0
        ):
            message = "trust radius collapsed"
            break

    if converged:
        logger.info(
            f"TLS fit converged after {iteration} iterations "
            f"({message}), loss={float(state.loss):.6e}"
        )
    else:
        logger.warning(
            f"TLS fit stopped without converging after {iteration} "
            f"iterations ({message}), loss={float(state.loss):.6e}"
        )
    return TLSFitResult(
        state=state,
        report=report(state),
        iterations=iteration,
        converged=converged,
        radius=radius,
        lam=lam,
        message=message,
    )
