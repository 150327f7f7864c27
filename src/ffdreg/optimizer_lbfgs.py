"""Limited-memory quasi-Newton optimizers driving the registration levels.

Both optimizers run ``scipy.optimize.minimize`` with the L-BFGS-B method on a
cost function returning ``(value, gradient)``. ``LBFGSOptimizer`` never passes
bounds; ``LBFGSBOptimizer`` projects steps onto per-parameter boxes.

Parameters are optimized in a scaled space ``x = parameters * scales`` so that
parameters of different units (radians and millimetres for rigid transforms)
produce comparable steps. The gradient handed to scipy is scaled accordingly.

The optimizers always return the best parameters evaluated so far. When the
line search fails the returned state is still usable and its stop reason tells
the caller what happened.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import minimize

from ffdreg.errors import ConfigurationError
from ffdreg.ffdreg_base import FFDRegBase

CostFunction = Callable[[NDArray], tuple[float, NDArray]]


class StopReason(Enum):
    """Why an optimization stopped."""

    GRADIENT_CONVERGED = "gradient_converged"
    VALUE_CONVERGED = "value_converged"
    ITERATION_LIMIT = "iteration_limit"
    EVALUATION_LIMIT = "evaluation_limit"
    LINE_SEARCH_FAILURE = "line_search_failure"


@dataclass
class OptimizerState:
    """Result of one optimization, handed back to the caller by value.

    Attributes:
        parameters: Best parameters found (unscaled)
        value: Cost at ``parameters``
        gradient: Cost gradient at ``parameters`` (unscaled)
        iteration: Number of quasi-Newton iterations performed
        evaluations: Number of cost function evaluations
        initial_value: Cost at the initial parameters
        lower_bounds: Lower bounds per parameter, None when unbounded
        upper_bounds: Upper bounds per parameter, None when unbounded
        bounds_active: Per-parameter flag, True where the result lies on a bound
        stop_reason: Why the optimization stopped
    """

    parameters: NDArray
    value: float
    gradient: NDArray
    iteration: int = 0
    evaluations: int = 0
    initial_value: float | None = None
    lower_bounds: NDArray | None = None
    upper_bounds: NDArray | None = None
    bounds_active: NDArray | None = None
    stop_reason: StopReason | None = None
    message: str = field(default="", repr=False)


class LBFGSOptimizer(FFDRegBase):
    """Unbounded limited-memory BFGS optimizer.

    Attributes:
        number_of_iterations (int): Maximum number of iterations
        maximum_number_of_function_evaluations (int): Maximum cost evaluations
        gradient_convergence_tolerance (float): Stop when the largest scaled
            gradient component falls below this value
        cost_function_convergence_factor (float): Stop when the relative
            reduction of the cost is below this factor times machine epsilon
        maximum_number_of_corrections (int): Size of the L-BFGS history
        parameter_scales (NDArray | None): Per-parameter scales, None for ones
    """

    def __init__(
        self,
        number_of_iterations: int = 100,
        maximum_number_of_function_evaluations: int = 500,
        gradient_convergence_tolerance: float = 1e-5,
        cost_function_convergence_factor: float = 1e7,
        maximum_number_of_corrections: int = 5,
        parameter_scales=None,
        log_level: int | str = logging.INFO,
    ):
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

        if number_of_iterations < 1:
            raise ConfigurationError(
                f"Number of iterations must be >= 1, got {number_of_iterations}"
            )
        if maximum_number_of_function_evaluations < 1:
            raise ConfigurationError(
                "Maximum number of function evaluations must be >= 1, got "
                f"{maximum_number_of_function_evaluations}"
            )

        self.number_of_iterations = int(number_of_iterations)
        self.maximum_number_of_function_evaluations = int(
            maximum_number_of_function_evaluations
        )
        self.gradient_convergence_tolerance = gradient_convergence_tolerance
        self.cost_function_convergence_factor = cost_function_convergence_factor
        self.maximum_number_of_corrections = int(maximum_number_of_corrections)
        self.parameter_scales = None
        if parameter_scales is not None:
            self.set_parameter_scales(parameter_scales)

    def set_parameter_scales(self, parameter_scales) -> None:
        scales = np.asarray(parameter_scales, dtype=np.float64).reshape(-1)
        if np.any(scales <= 0):
            raise ConfigurationError(f"Parameter scales must be positive, got {scales}")
        self.parameter_scales = scales

    def _get_scales(self, number_of_parameters: int) -> NDArray:
        if self.parameter_scales is None:
            return np.ones(number_of_parameters)
        if self.parameter_scales.size != number_of_parameters:
            raise ConfigurationError(
                f"{self.parameter_scales.size} parameter scales given for "
                f"{number_of_parameters} parameters"
            )
        return self.parameter_scales

    def _get_bounds(self, number_of_parameters: int):
        """Lower and upper bound arrays, or (None, None) when unbounded."""
        return None, None

    @staticmethod
    def _stop_reason(result, iterations_limit: int) -> StopReason:
        message = str(result.message).upper()
        if result.status == 0:
            if "GRADIENT" in message:
                return StopReason.GRADIENT_CONVERGED
            return StopReason.VALUE_CONVERGED
        if result.status == 1:
            if result.nit >= iterations_limit or "ITERATION" in message:
                return StopReason.ITERATION_LIMIT
            return StopReason.EVALUATION_LIMIT
        return StopReason.LINE_SEARCH_FAILURE

    def optimize(self, cost_function: CostFunction, initial_parameters) -> OptimizerState:
        """Minimize ``cost_function`` starting from ``initial_parameters``.

        Args:
            cost_function: Callable returning ``(value, gradient)`` for a
                parameter vector
            initial_parameters: Starting parameter vector

        Returns:
            OptimizerState: Best parameters found and how the search ended
        """
        initial_parameters = np.asarray(initial_parameters, dtype=np.float64).reshape(-1)
        number_of_parameters = initial_parameters.size
        scales = self._get_scales(number_of_parameters)
        lower, upper = self._get_bounds(number_of_parameters)

        best = {"value": np.inf, "parameters": initial_parameters.copy(), "gradient": None}
        counters = {"evaluations": 0, "iteration": 0}
        initial = {"value": None}

        def scaled_cost(scaled_parameters):
            parameters = scaled_parameters / scales
            value, gradient = cost_function(parameters)
            value = float(value)
            gradient = np.asarray(gradient, dtype=np.float64)
            counters["evaluations"] += 1
            if initial["value"] is None:
                initial["value"] = value
            if value < best["value"]:
                best["value"] = value
                best["parameters"] = parameters.copy()
                best["gradient"] = gradient.copy()
            return value, gradient / scales

        def iteration_callback(scaled_parameters):
            counters["iteration"] += 1
            self.log_debug(
                "Iteration %d: value %.6f", counters["iteration"], best["value"]
            )

        bounds = None
        if lower is not None:
            bounds = [
                (
                    None if np.isinf(lo) else lo * s,
                    None if np.isinf(hi) else hi * s,
                )
                for lo, hi, s in zip(lower, upper, scales)
            ]

        result = minimize(
            scaled_cost,
            initial_parameters * scales,
            jac=True,
            method="L-BFGS-B",
            bounds=bounds,
            callback=iteration_callback,
            options={
                "maxiter": self.number_of_iterations,
                "maxfun": self.maximum_number_of_function_evaluations,
                "gtol": self.gradient_convergence_tolerance,
                "ftol": self.cost_function_convergence_factor * np.finfo(float).eps,
                "maxcor": self.maximum_number_of_corrections,
            },
        )

        stop_reason = self._stop_reason(result, self.number_of_iterations)
        if stop_reason == StopReason.LINE_SEARCH_FAILURE:
            self.log_warning(
                "Line search failed after %d evaluations, keeping best value %.6f",
                counters["evaluations"],
                best["value"],
            )

        bounds_active = None
        if lower is not None:
            tolerance = 1e-8 * np.maximum(1.0, np.abs(best["parameters"]))
            bounds_active = (np.abs(best["parameters"] - lower) <= tolerance) | (
                np.abs(best["parameters"] - upper) <= tolerance
            )

        state = OptimizerState(
            parameters=best["parameters"],
            value=best["value"],
            gradient=best["gradient"],
            iteration=int(max(result.nit, counters["iteration"])),
            evaluations=counters["evaluations"],
            initial_value=initial["value"],
            lower_bounds=lower,
            upper_bounds=upper,
            bounds_active=bounds_active,
            stop_reason=stop_reason,
            message=str(result.message),
        )
        self.log_info(
            "Stopped (%s) after %d iterations, %d evaluations: %.6f -> %.6f",
            stop_reason.value,
            state.iteration,
            state.evaluations,
            state.initial_value,
            state.value,
        )
        return state


class LBFGSBOptimizer(LBFGSOptimizer):
    """L-BFGS optimizer with per-parameter box constraints.

    Bounds default to zero width. A parameter whose lower and upper bounds are
    equal is left unconstrained, so an optimizer without explicit bounds
    behaves like ``LBFGSOptimizer``. Infinite bounds are also unconstrained on
    that side.

    Example:
        >>> optimizer = LBFGSBOptimizer(number_of_iterations=30)
        >>> optimizer.set_bounds(-5.0, 5.0)  # broadcast to every parameter
        >>> state = optimizer.optimize(cost_function, initial_parameters)
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lower_bound = 0.0
        self.upper_bound = 0.0

    def set_bounds(self, lower, upper) -> None:
        """Set scalar or per-parameter bounds in unscaled parameter units."""
        lower = np.asarray(lower, dtype=np.float64)
        upper = np.asarray(upper, dtype=np.float64)
        if lower.shape != upper.shape:
            raise ConfigurationError(
                f"Lower bound shape {lower.shape} differs from upper bound shape {upper.shape}"
            )
        if np.any(lower > upper):
            raise ConfigurationError("Lower bounds must not exceed upper bounds")
        self.lower_bound = lower
        self.upper_bound = upper

    def _get_bounds(self, number_of_parameters: int):
        try:
            lower = np.broadcast_to(self.lower_bound, (number_of_parameters,)).astype(np.float64)
            upper = np.broadcast_to(self.upper_bound, (number_of_parameters,)).astype(np.float64)
        except ValueError as err:
            raise ConfigurationError(
                f"Bounds of shape {np.shape(self.lower_bound)} do not fit "
                f"{number_of_parameters} parameters"
            ) from err
        unconstrained = lower == upper
        lower = np.where(unconstrained, -np.inf, lower)
        upper = np.where(unconstrained, np.inf, upper)
        return lower, upper
