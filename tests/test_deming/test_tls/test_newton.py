"""Tests for the structured Newton step engine."""

import chex
import jax.numpy as jnp
from absl.testing import parameterized
from tls_models import (
    line_fgg,
    random_state,
    scaled_dense_lstsq,
    with_dependent_parameter,
)

from deming.tls import (
    accept_move,
    compute_newton,
    compute_newton_regularized,
    dense_jacobian,
    init_tls_solver,
    newton_factors,
    normalize_qr_signs,
)
from deming.utils import InvalidInputError

PROBLEMS = (
    dict(testcase_name="overdetermined", n_obs=6, n_x=1, n_y=1, n_params=3),
    dict(
        testcase_name="overdetermined_blocks", n_obs=5, n_x=2, n_y=3, n_params=4
    ),
    dict(testcase_name="underdetermined", n_obs=2, n_x=1, n_y=1, n_params=4),
    dict(
        testcase_name="underdetermined_blocks",
        n_obs=2,
        n_x=2,
        n_y=2,
        n_params=7,
    ),
    dict(
        testcase_name="sparse",
        n_obs=8,
        n_x=2,
        n_y=2,
        n_params=3,
        zero_fraction=0.6,
    ),
    dict(
        testcase_name="decoupled",
        n_obs=4,
        n_x=2,
        n_y=2,
        n_params=3,
        couple=False,
    ),
)


def _scaled_parameter_norm(state, step):
    n_data = state.n_obs * state.n_x
    return jnp.linalg.norm(state.d[n_data:] * step[n_data:])


class TestComputeNewton(chex.TestCase, parameterized.TestCase):
    """Undamped step against a dense least-squares solve."""

    @chex.variants(with_jit=True, without_jit=True)
    @parameterized.named_parameters(*PROBLEMS)
    def test_matches_dense_lstsq(self, **kwargs) -> None:
        """The structured step is the dense minimum-norm solution."""
        state = random_state(3, **kwargs)
        newton = self.variant(compute_newton)(state)
        dense = dense_jacobian(state)
        expected = scaled_dense_lstsq(dense, state.d, -state.f0)
        chex.assert_shape(newton.step, state.x0.shape)
        chex.assert_trees_all_close(newton.step, expected, atol=1e-9)
        scaled = dense / state.d[None, :]
        chex.assert_trees_all_equal(
            int(newton.rank), int(jnp.linalg.matrix_rank(scaled))
        )

    @parameterized.named_parameters(
        dict(testcase_name="single_output", n_obs=7, n_x=1, n_y=1, n_params=3),
        dict(testcase_name="multi_output", n_obs=4, n_x=2, n_y=3, n_params=5),
    )
    def test_rank_deficient_parameters(self, **kwargs) -> None:
        """A dependent parameter column lowers the rank by one."""
        full = random_state(11, **kwargs)
        state = with_dependent_parameter(full)
        newton = compute_newton(state)
        expected = scaled_dense_lstsq(
            dense_jacobian(state), state.d, -state.f0
        )
        chex.assert_trees_all_close(newton.step, expected, atol=1e-9)
        chex.assert_trees_all_equal(
            int(newton.rank), int(compute_newton(full).rank) - 1
        )

    def test_residual_is_orthogonal_to_columns(self) -> None:
        """Normal equations hold at the Newton step."""
        state = random_state(5, n_obs=9, n_x=2, n_y=1, n_params=3)
        dense = dense_jacobian(state)
        newton = compute_newton(state)
        residual = state.f0 + dense @ newton.step
        chex.assert_trees_all_close(
            dense.T @ residual, jnp.zeros(state.x0.shape), atol=1e-10
        )

    def test_zero_scaling_entry_freezes_parameter(self) -> None:
        """A zero in the parameter scaling gives an exactly zero component."""
        state = random_state(7, n_obs=6, n_x=1, n_y=1, n_params=3)
        reference = compute_newton(state)
        frozen = state._replace(d=state.d.at[-2].set(0.0))
        newton = compute_newton(frozen)
        chex.assert_trees_all_equal(newton.step[-2], jnp.array(0.0))
        chex.assert_trees_all_equal(
            int(newton.rank), int(reference.rank) - 1
        )
        dense = dense_jacobian(frozen).at[:, -2].set(0.0)
        expected = scaled_dense_lstsq(dense, frozen.d, -frozen.f0)
        chex.assert_trees_all_close(newton.step, expected, atol=1e-9)

    def test_state_is_not_modified(self) -> None:
        """Computing a step leaves every array of the state untouched."""
        state = random_state(2, n_obs=3, n_x=2, n_y=2, n_params=2)
        before = [jnp.array(leaf) for leaf in (state.j11, state.f0, state.d)]
        compute_newton(state)
        compute_newton_regularized(state, 0.3)
        chex.assert_trees_all_equal(
            before, [state.j11, state.f0, state.d]
        )

    def test_custom_rank_tolerance(self) -> None:
        """A loose tolerance drops small singular directions."""
        state = random_state(4, n_obs=6, n_x=1, n_y=1, n_params=3)
        s = newton_factors(state).urv.s
        loose = float(jnp.sqrt(s[-1] * s[-2]) / s[0])
        factors = newton_factors(state, loose)
        dropped = compute_newton(state, loose)
        chex.assert_trees_all_equal(int(factors.urv.rank), state.n_params - 1)
        chex.assert_trees_all_equal(
            int(dropped.rank),
            int(factors.data_rank) + state.n_params - 1,
        )
        chex.assert_trees_all_equal(
            int(compute_newton(state).rank),
            int(newton_factors(state).data_rank) + state.n_params,
        )

    def test_linear_model_converges_in_one_step(self) -> None:
        """A noiseless straight line is fitted exactly by one Newton step."""
        x = jnp.linspace(-2.0, 3.0, 5)
        p_true = jnp.array([1.5, -0.7])
        y = p_true[0] + p_true[1] * x
        state = init_tls_solver(line_fgg, x, y, jnp.array([-0.3, 2.4]))
        newton = compute_newton(state)
        moved = accept_move(state, newton.step)
        chex.assert_trees_all_close(moved.loss, 0.0, atol=1e-24)
        chex.assert_trees_all_close(moved.x0[5:], p_true, atol=1e-12)
        chex.assert_trees_all_close(moved.x0[:5], jnp.zeros(5), atol=1e-12)


class TestComputeNewtonRegularized(chex.TestCase, parameterized.TestCase):
    """Damped step, its norm and the λ-derivative of the norm."""

    @chex.variants(with_jit=True, without_jit=True)
    @parameterized.named_parameters(*PROBLEMS)
    def test_zero_damping_matches_newton(self, **kwargs) -> None:
        """λ = 0 reproduces the undamped step and rank."""
        state = random_state(13, **kwargs)
        newton = compute_newton(state)
        regularized = self.variant(compute_newton_regularized)(state, 0.0)
        chex.assert_trees_all_close(
            regularized.step, newton.step, atol=1e-12
        )
        chex.assert_trees_all_equal(regularized.rank, newton.rank)
        chex.assert_trees_all_close(
            regularized.norm,
            _scaled_parameter_norm(state, newton.step),
            atol=1e-12,
        )

    @parameterized.named_parameters(
        ("small", 1e-3),
        ("moderate", 0.5),
        ("large", 40.0),
    )
    def test_matches_augmented_dense_system(self, lam: float) -> None:
        """Damping equals appending ``sqrt(λ) D_p`` rows."""
        state = random_state(17, n_obs=5, n_x=2, n_y=2, n_params=4)
        n_data = state.n_obs * state.n_x
        n_params = state.n_params
        dense = dense_jacobian(state)
        damping_rows = jnp.concatenate(
            [
                jnp.zeros((n_params, n_data)),
                jnp.sqrt(lam) * jnp.diag(state.d[n_data:]),
            ],
            axis=1,
        )
        augmented = jnp.concatenate([dense, damping_rows], axis=0)
        rhs = jnp.concatenate([-state.f0, jnp.zeros(n_params)])
        expected = jnp.linalg.lstsq(augmented, rhs)[0]
        regularized = compute_newton_regularized(state, lam)
        chex.assert_trees_all_close(regularized.step, expected, atol=1e-9)
        chex.assert_trees_all_close(
            regularized.norm,
            _scaled_parameter_norm(state, expected),
            rtol=1e-9,
        )

    @parameterized.named_parameters(
        ("full_rank", False),
        ("rank_deficient", True),
    )
    def test_norm_derivative_matches_finite_difference(
        self, deficient: bool
    ) -> None:
        """``dnorm`` is the derivative of ``norm`` with respect to λ."""
        state = random_state(19, n_obs=6, n_x=1, n_y=2, n_params=3)
        if deficient:
            state = with_dependent_parameter(state)
        lam, h = 0.7, 1e-5
        center = compute_newton_regularized(state, lam)
        upper = compute_newton_regularized(state, lam + h)
        lower = compute_newton_regularized(state, lam - h)
        finite_difference = (upper.norm - lower.norm) / (2.0 * h)
        chex.assert_trees_all_close(
            center.dnorm, finite_difference, rtol=1e-6, atol=1e-12
        )
        assert float(center.dnorm) <= 0.0

    def test_norm_decreases_with_damping(self) -> None:
        """More damping never lengthens the parameter step."""
        state = random_state(23, n_obs=8, n_x=2, n_y=1, n_params=4)
        norms = jnp.array(
            [
                compute_newton_regularized(state, lam).norm
                for lam in (1e-4, 1e-2, 1.0, 100.0)
            ]
        )
        assert bool(jnp.all(jnp.diff(norms) <= 0.0))

    def test_data_block_is_not_damped(self) -> None:
        """Huge damping stops the parameters but still corrects the data."""
        state = random_state(29, n_obs=4, n_x=1, n_y=1, n_params=2)
        n_data = state.n_obs * state.n_x
        regularized = compute_newton_regularized(state, 1e12)
        chex.assert_trees_all_close(
            regularized.step[n_data:], jnp.zeros(2), atol=1e-9
        )
        frozen = compute_newton(state._replace(d=state.d.at[n_data:].set(0.0)))
        chex.assert_trees_all_close(
            regularized.step[:n_data], frozen.step[:n_data], atol=1e-8
        )

    @parameterized.named_parameters(
        ("python_int", 0),
        ("int_array", jnp.array(0)),
    )
    def test_integer_zero_damping(self, lam) -> None:
        """An integer λ is accepted and 0 reproduces the undamped step."""
        state = random_state(3, n_obs=4, n_x=1, n_y=1, n_params=2)
        newton = compute_newton(state)
        regularized = compute_newton_regularized(state, lam)
        chex.assert_trees_all_close(
            regularized.step, newton.step, atol=1e-12
        )
        chex.assert_trees_all_equal(regularized.rank, newton.rank)
        chex.assert_trees_all_close(
            compute_newton_regularized(state, 2).step,
            compute_newton_regularized(state, 2.0).step,
        )

    @parameterized.named_parameters(
        ("negative", -0.5),
        ("negative_int", -1),
        ("nan", float("nan")),
        ("infinite", float("inf")),
    )
    def test_rejects_invalid_damping(self, lam) -> None:
        state = random_state(3, n_obs=4, n_x=1, n_y=1, n_params=2)
        with self.assertRaises(InvalidInputError):
            compute_newton_regularized(state, lam)


class TestNewtonFactors(chex.TestCase):
    """Per-observation elimination."""

    def test_blocks_reduce_to_triangular_form(self) -> None:
        """``Q_i^T [A11_i; A21_i]`` is ``[R_i; 0]`` up to column signs."""
        state = random_state(31, n_obs=3, n_x=2, n_y=3, n_params=2)
        factors = newton_factors(state)
        n_data = state.n_obs * state.n_x
        inv_dx = (1.0 / state.d[:n_data]).reshape(state.n_obs, state.n_x)
        blocks = jnp.concatenate(
            [
                state.j11 * inv_dx[:, None, :],
                state.j21 * inv_dx[:, None, :],
            ],
            axis=1,
        )
        rotated = jnp.einsum("mji,mjk->mik", factors.q, blocks)
        chex.assert_trees_all_close(
            rotated[:, state.n_x :, :],
            jnp.zeros((state.n_obs, state.n_y, state.n_x)),
            atol=1e-12,
        )
        reference_q, reference_r = jnp.linalg.qr(blocks, mode="complete")
        _, normalized = normalize_qr_signs(factors.q, rotated)
        _, reference = normalize_qr_signs(reference_q, reference_r)
        chex.assert_trees_all_close(
            normalized[:, : state.n_x], reference[:, : state.n_x], atol=1e-12
        )
        chex.assert_trees_all_equal(int(factors.data_rank), n_data)
