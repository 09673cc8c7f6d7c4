"""Tests for building structured model callbacks with autodiff."""

import chex
import jax
import jax.numpy as jnp

from deming.utils import fgg_from_model


class TestFggFromModel(chex.TestCase):
    def test_scalar_data(self) -> None:
        """Derivatives of an exponential decay match the closed form."""

        def decay(p, xi):
            return p[0] * jnp.exp(-p[1] * xi)

        fgg = fgg_from_model(decay)
        p = jnp.array([2.0, 0.7])
        x = jnp.linspace(0.0, 3.0, 6)
        f, df_dp, df_dx = fgg(p, x)
        e = jnp.exp(-p[1] * x)
        chex.assert_trees_all_close(f, p[0] * e)
        chex.assert_trees_all_close(
            df_dp, jnp.stack([e, -p[0] * x * e], axis=-1)
        )
        chex.assert_trees_all_close(df_dx, -p[0] * p[1] * e)

    def test_vector_data(self) -> None:
        """Two outputs of two inputs give ``(M, NY, NX)`` blocks."""

        def model(p, xi):
            return jnp.stack([p[0] * xi[0] * xi[1], p[1] + xi[1] ** 2])

        fgg = fgg_from_model(model)
        p = jnp.array([1.5, -0.5])
        x = jax.random.normal(jax.random.PRNGKey(0), (4, 2))
        f, df_dp, df_dx = fgg(p, x)
        chex.assert_shape(f, (4, 2))
        chex.assert_shape(df_dp, (4, 2, 2))
        chex.assert_shape(df_dx, (4, 2, 2))
        chex.assert_trees_all_close(df_dp[:, 0, 0], x[:, 0] * x[:, 1])
        chex.assert_trees_all_close(df_dp[:, 1, 1], jnp.ones(4))
        chex.assert_trees_all_close(df_dx[:, 0, 0], p[0] * x[:, 1])
        chex.assert_trees_all_close(df_dx[:, 0, 1], p[0] * x[:, 0])
        chex.assert_trees_all_close(df_dx[:, 1, 0], jnp.zeros(4))
        chex.assert_trees_all_close(df_dx[:, 1, 1], 2.0 * x[:, 1])

    def test_outputs_are_float64(self) -> None:
        fgg = fgg_from_model(lambda p, xi: p[0] * xi)
        f, df_dp, df_dx = fgg(jnp.array([1]), jnp.arange(3))
        chex.assert_type([f, df_dp, df_dx], jnp.float64)
