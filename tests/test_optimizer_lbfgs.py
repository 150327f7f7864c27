#!/usr/bin/env python
"""
Tests for the L-BFGS and L-BFGS-B optimizer wrappers.
"""

import numpy as np
import pytest

from ffdreg.errors import ConfigurationError
from ffdreg.optimizer_lbfgs import LBFGSBOptimizer, LBFGSOptimizer, StopReason


def quadratic(center, weights):
    center = np.asarray(center, dtype=float)
    weights = np.asarray(weights, dtype=float)

    def cost(x):
        diff = x - center
        return float(np.sum(weights * diff**2)), 2.0 * weights * diff

    return cost


def rosenbrock(x):
    value = 100.0 * (x[1] - x[0] ** 2) ** 2 + (1.0 - x[0]) ** 2
    gradient = np.array(
        [
            -400.0 * x[0] * (x[1] - x[0] ** 2) - 2.0 * (1.0 - x[0]),
            200.0 * (x[1] - x[0] ** 2),
        ]
    )
    return value, gradient


class TestLBFGSOptimizer:
    """Test suite for LBFGSOptimizer."""

    def test_quadratic_converges(self):
        optimizer = LBFGSOptimizer()
        state = optimizer.optimize(quadratic([3.0, -1.0, 2.0], [1.0, 4.0, 0.5]), np.zeros(3))

        np.testing.assert_allclose(state.parameters, [3.0, -1.0, 2.0], atol=1e-4)
        assert state.stop_reason in (StopReason.GRADIENT_CONVERGED, StopReason.VALUE_CONVERGED)
        assert state.value < state.initial_value
        assert state.evaluations >= 2
        assert state.lower_bounds is None and state.bounds_active is None
        print(f"\n✓ Converged in {state.iteration} iterations ({state.stop_reason.value})")

    def test_parameter_scales_do_not_move_the_minimum(self):
        optimizer = LBFGSOptimizer(parameter_scales=[100.0, 1.0, 0.1])
        state = optimizer.optimize(quadratic([0.5, -1.0, 2.0], [1.0, 1.0, 1.0]), np.zeros(3))

        np.testing.assert_allclose(state.parameters, [0.5, -1.0, 2.0], atol=1e-3)
        np.testing.assert_allclose(state.gradient, 2.0 * (state.parameters - [0.5, -1.0, 2.0]))

    def test_iteration_limit(self):
        optimizer = LBFGSOptimizer(number_of_iterations=2)
        state = optimizer.optimize(rosenbrock, np.array([-1.2, 1.0]))

        assert state.stop_reason == StopReason.ITERATION_LIMIT
        assert state.iteration <= 2
        assert state.value <= state.initial_value
        print("✓ Iteration limit reported")

    def test_evaluation_limit(self):
        optimizer = LBFGSOptimizer(
            number_of_iterations=100, maximum_number_of_function_evaluations=3
        )
        state = optimizer.optimize(rosenbrock, np.array([-1.2, 1.0]))

        assert state.stop_reason == StopReason.EVALUATION_LIMIT
        assert state.value <= state.initial_value

    def test_returns_best_parameters(self):
        """The returned state is the best evaluation, whatever scipy ends on."""
        history = []

        def cost(x):
            value, gradient = rosenbrock(x)
            history.append(value)
            return value, gradient

        state = LBFGSOptimizer(number_of_iterations=5).optimize(cost, np.array([-1.2, 1.0]))

        assert state.value == min(history)
        assert np.isclose(rosenbrock(state.parameters)[0], state.value)

    def test_invalid_scales(self):
        with pytest.raises(ConfigurationError):
            LBFGSOptimizer(parameter_scales=[1.0, -1.0])
        optimizer = LBFGSOptimizer(parameter_scales=[1.0, 2.0])
        with pytest.raises(ConfigurationError):
            optimizer.optimize(quadratic([0, 0, 0], [1, 1, 1]), np.ones(3))

    def test_invalid_limits(self):
        with pytest.raises(ConfigurationError):
            LBFGSOptimizer(number_of_iterations=0)
        with pytest.raises(ConfigurationError):
            LBFGSOptimizer(maximum_number_of_function_evaluations=0)


class TestLBFGSBOptimizer:
    """Test suite for LBFGSBOptimizer."""

    def test_bounds_are_respected(self):
        optimizer = LBFGSBOptimizer()
        optimizer.set_bounds(-1.0, 1.0)
        state = optimizer.optimize(quadratic([3.0, 0.5], [1.0, 1.0]), np.zeros(2))

        np.testing.assert_allclose(state.parameters, [1.0, 0.5], atol=1e-6)
        np.testing.assert_array_equal(state.bounds_active, [True, False])
        np.testing.assert_array_equal(state.lower_bounds, [-1.0, -1.0])
        print("\n✓ Solution clamped to the upper bound")

    def test_per_parameter_bounds_with_scales(self):
        optimizer = LBFGSBOptimizer(parameter_scales=[10.0, 0.5])
        optimizer.set_bounds([-1.0, 0.0], [1.0, 0.2])
        state = optimizer.optimize(quadratic([-3.0, 3.0], [1.0, 1.0]), np.zeros(2))

        np.testing.assert_allclose(state.parameters, [-1.0, 0.2], atol=1e-6)
        assert np.all(state.bounds_active)

    def test_zero_width_bounds_mean_unconstrained(self):
        """Without explicit bounds the optimizer behaves like L-BFGS."""
        optimizer = LBFGSBOptimizer()
        state = optimizer.optimize(quadratic([3.0, -4.0], [1.0, 1.0]), np.zeros(2))

        np.testing.assert_allclose(state.parameters, [3.0, -4.0], atol=1e-4)
        assert np.all(np.isinf(state.lower_bounds))
        assert not np.any(state.bounds_active)

    def test_invalid_bounds(self):
        optimizer = LBFGSBOptimizer()
        with pytest.raises(ConfigurationError):
            optimizer.set_bounds(1.0, -1.0)
        with pytest.raises(ConfigurationError):
            optimizer.set_bounds([0.0, 1.0], 2.0)

        optimizer.set_bounds([-1.0, -1.0], [1.0, 1.0])
        with pytest.raises(ConfigurationError):
            optimizer.optimize(quadratic([0, 0, 0], [1, 1, 1]), np.zeros(3))
