"""Tests for the deming exception hierarchy."""

import chex
from absl.testing import parameterized

from deming.utils import (
    DemingError,
    InvalidInputError,
    IterationBudgetExceededError,
    SingularInputError,
)


class TestErrors(chex.TestCase, parameterized.TestCase):
    @parameterized.named_parameters(
        ("invalid_input", InvalidInputError, ValueError),
        ("singular_input", SingularInputError, ArithmeticError),
    )
    def test_hierarchy(self, error, builtin) -> None:
        assert issubclass(error, DemingError)
        assert issubclass(error, builtin)
        with self.assertRaises(DemingError):
            raise error("boom")

    def test_iteration_budget_message(self) -> None:
        error = IterationBudgetExceededError("Hebden search", 32, "radius=1")
        assert isinstance(error, RuntimeError)
        chex.assert_equal(error.procedure, "Hebden search")
        chex.assert_equal(error.max_iterations, 32)
        chex.assert_equal(
            str(error),
            "Hebden search did not converge within 32 iterations: radius=1",
        )
        chex.assert_equal(
            str(IterationBudgetExceededError("bisection", 5)),
            "bisection did not converge within 5 iterations",
        )
