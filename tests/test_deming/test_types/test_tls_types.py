"""Tests for PyTree structures in deming.types."""

import chex
import jax
import jax.numpy as jnp
import jax.tree_util as tree

from deming.tls import make_tls_state
from deming.types import NewtonStep, TLSReport, TLSState, TrialMove


def _quadratic_fgg(p, x):
    return p[0] * x**2, (x**2)[:, None], 2.0 * p[0] * x


class TestTLSStatePyTree(chex.TestCase):
    """TLSState carries arrays as leaves and the callable as metadata."""

    def setUp(self) -> None:
        super().setUp()
        self.state = make_tls_state(
            x0=jnp.array([0.1, -0.2, 0.3, 1.5]),
            f0=jnp.arange(6.0),
            j11=jnp.ones((3, 1, 1)),
            j21=jnp.full((3, 1, 1), 2.0),
            j22=jnp.ones((3, 1, 1)),
            fgg=_quadratic_fgg,
            dx_shape=(3,),
            dy_shape=(3,),
        )

    def test_is_pytree(self) -> None:
        leaves, treedef = tree.tree_flatten(self.state)
        chex.assert_equal(len(leaves), 10)
        reconstructed = tree.tree_unflatten(treedef, leaves)
        assert isinstance(reconstructed, TLSState)
        chex.assert_trees_all_close(reconstructed.x0, self.state.x0)
        chex.assert_trees_all_close(reconstructed.j21, self.state.j21)
        assert reconstructed.fgg is _quadratic_fgg
        chex.assert_equal(reconstructed.dx_shape, (3,))

    def test_tree_map_keeps_metadata(self) -> None:
        doubled = jax.tree_util.tree_map(lambda x: 2 * x, self.state)
        chex.assert_trees_all_close(doubled.f0, 2 * self.state.f0)
        assert doubled.fgg is _quadratic_fgg
        chex.assert_equal(doubled.dy_shape, self.state.dy_shape)

    def test_dimensions(self) -> None:
        chex.assert_equal(self.state.n_obs, 3)
        chex.assert_equal(self.state.n_x, 1)
        chex.assert_equal(self.state.n_y, 1)
        chex.assert_equal(self.state.n_params, 1)

    def test_crosses_jit_boundary(self) -> None:
        @jax.jit
        def shifted_loss(state: TLSState) -> jnp.ndarray:
            return state.loss + jnp.sum(state.x0)

        chex.assert_trees_all_close(
            shifted_loss(self.state),
            self.state.loss + jnp.sum(self.state.x0),
        )

    def test_derived_loss_and_gradient(self) -> None:
        chex.assert_trees_all_close(
            self.state.loss, jnp.sum(jnp.arange(6.0) ** 2) / 6
        )
        chex.assert_shape(self.state.gradient, (4,))


class TestResultContainers(chex.TestCase):
    def test_named_fields(self) -> None:
        step = NewtonStep(step=jnp.zeros(3), rank=jnp.array(2))
        chex.assert_equal(int(step.rank), 2)
        trial = TrialMove(
            loss_predicted=jnp.array(1.0), loss_actual=jnp.array(2.0)
        )
        chex.assert_trees_all_close(
            trial.loss_actual - trial.loss_predicted, 1.0
        )
        snapshot = TLSReport(
            p=jnp.ones(2),
            dx=jnp.zeros(3),
            loss=jnp.array(0.0),
            dloss_dp=jnp.zeros(2),
            dloss_ddx=jnp.zeros(3),
            dy=jnp.zeros(3),
        )
        chex.assert_equal(snapshot._fields[0], "p")
        chex.assert_equal(snapshot._fields[-1], "dy")
