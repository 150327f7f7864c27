"""Base class for multi-resolution intensity-based registration.

This module provides the RegisterImagesBase class that runs the shared
coarse-to-fine loop of FFDReg registrations. A registration is configured with
setters, then ``register()`` walks the pyramid schedule:

- Prepare: derive the level's smoothed and shrunk volumes, adapt the
  transform to the level and initialize the metric samples
- Optimize: minimize negative Mattes mutual information with L-BFGS
- Commit: keep the optimizer's best parameters as the level result

Subclasses decide the transform model, its per-level adaptation, the parameter
scales and the final checks by overriding the ``create_*``, ``prepare_*`` and
``finalize`` hooks.
"""

import logging
from dataclasses import dataclass

import numpy as np

from ffdreg.errors import ConfigurationError, OptimizerStallError, RegistrationError
from ffdreg.ffdreg_base import FFDRegBase
from ffdreg.image_pyramid import ImagePyramid, PyramidLevel
from ffdreg.metric_mattes_mi import MattesMutualInformationMetric
from ffdreg.optimizer_lbfgs import LBFGSOptimizer, OptimizerState, StopReason
from ffdreg.volume import Volume


@dataclass
class LevelResult:
    """Summary of one completed pyramid level."""

    level: int
    shrink_factor: int
    smoothing_sigma: float
    mesh_size: tuple[int, int, int] | None
    number_of_parameters: int
    initial_value: float
    final_value: float
    stop_reason: StopReason
    iterations: int
    evaluations: int


class RegisterImagesBase(FFDRegBase):
    """Base class for FFDReg registration methods.

    The fixed volume defines the space in which the metric is sampled and the
    transform is defined: the resulting transform maps fixed physical points
    to moving physical points, so resampling the moving volume through it
    yields a volume aligned with the fixed volume.

    Attributes:
        fixed_image (Volume): The reference volume
        fixed_image_mask (Volume): Optional region of interest of the fixed
            volume, metric samples are drawn where mask > 0
        number_of_levels (int): Levels of the default pyramid schedule
        last_committed_transform: Copy of the transform after the most recent
            completed level, None before the first level completes

    Example:
        >>> registrar = RegisterImagesRigid()
        >>> registrar.set_fixed_image(fixed_volume)
        >>> registrar.set_number_of_levels(3)
        >>> result = registrar.register(moving_volume)
        >>> transform = result["transform"]
    """

    def __init__(self, log_level: int | str = logging.INFO):
        """Initialize the registration with default settings.

        Args:
            log_level: Logging level (default: logging.INFO)
        """
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

        self.fixed_image = None
        self.fixed_image_mask = None
        self.moving_image = None

        self.number_of_levels = 2
        self.shrink_factors = None
        self.smoothing_sigmas = None
        self.smoothing_sigmas_in_physical_units = True

        self.number_of_histogram_bins = 50
        self.number_of_samples = 10000
        self.random_seed = 121212
        self.number_of_threads = 1

        self.number_of_iterations = 100
        self.maximum_number_of_function_evaluations = 500
        self.gradient_convergence_tolerance = 1e-5
        self.parameter_scales = None

        self.last_committed_transform = None

    def set_fixed_image(self, fixed_image: Volume) -> None:
        """Set the reference volume that defines the registration space."""
        if not isinstance(fixed_image, Volume):
            raise ConfigurationError(
                f"Fixed image must be a Volume, got {type(fixed_image).__name__}"
            )
        self.fixed_image = fixed_image

    def set_fixed_image_mask(self, fixed_image_mask: Volume | None) -> None:
        """Restrict metric sampling to the foreground of a mask.

        The mask must be sampled on the fixed volume's grid. Non-zero values
        are treated as foreground. Passing None removes the mask.
        """
        if fixed_image_mask is None:
            self.fixed_image_mask = None
            return
        if self.fixed_image is not None and fixed_image_mask.shape != self.fixed_image.shape:
            raise ConfigurationError(
                f"Fixed mask shape {fixed_image_mask.shape} does not match fixed "
                f"image shape {self.fixed_image.shape}"
            )
        self.fixed_image_mask = fixed_image_mask.copy_with_data(
            (fixed_image_mask.data > 0).astype(np.float64)
        )

    def set_number_of_levels(self, number_of_levels: int) -> None:
        """Use the default schedule with this many levels.

        Shrink factors are ``2**(N-1-l)`` and smoothing sigmas ``N-1-l`` for
        level ``l``. Clears any explicit schedule.
        """
        if number_of_levels < 1:
            raise ConfigurationError(
                f"Number of pyramid levels must be >= 1, got {number_of_levels}"
            )
        self.number_of_levels = int(number_of_levels)
        self.shrink_factors = None
        self.smoothing_sigmas = None

    def set_schedule(self, shrink_factors, smoothing_sigmas) -> None:
        """Use an explicit per-level schedule of shrink factors and sigmas.

        Raises:
            ConfigurationError: If the schedule is not strictly coarse-to-fine
        """
        shrink_factors = [int(s) for s in shrink_factors]
        smoothing_sigmas = [float(s) for s in smoothing_sigmas]
        ImagePyramid.from_schedule(shrink_factors, smoothing_sigmas)
        self.shrink_factors = shrink_factors
        self.smoothing_sigmas = smoothing_sigmas
        self.number_of_levels = len(shrink_factors)

    def set_smoothing_sigmas_in_physical_units(self, in_physical_units: bool) -> None:
        """Interpret smoothing sigmas in millimetres (True) or voxels (False)."""
        self.smoothing_sigmas_in_physical_units = bool(in_physical_units)

    def set_number_of_histogram_bins(self, number_of_histogram_bins: int) -> None:
        if number_of_histogram_bins < 5:
            raise ConfigurationError(
                f"At least 5 histogram bins are required, got {number_of_histogram_bins}"
            )
        self.number_of_histogram_bins = int(number_of_histogram_bins)

    def set_number_of_samples(self, number_of_samples: int | None) -> None:
        """Number of fixed voxels sampled by the metric, None for all voxels."""
        if number_of_samples is not None and number_of_samples < 1:
            raise ConfigurationError(
                f"Number of samples must be positive, got {number_of_samples}"
            )
        self.number_of_samples = number_of_samples

    def set_random_seed(self, random_seed: int) -> None:
        self.random_seed = int(random_seed)

    def set_number_of_threads(self, number_of_threads: int) -> None:
        if number_of_threads < 1:
            raise ConfigurationError(f"Number of threads must be >= 1, got {number_of_threads}")
        self.number_of_threads = int(number_of_threads)

    def set_number_of_iterations(self, number_of_iterations: int) -> None:
        """Set the maximum number of optimizer iterations per level."""
        if number_of_iterations < 1:
            raise ConfigurationError(
                f"Number of iterations must be >= 1, got {number_of_iterations}"
            )
        self.number_of_iterations = int(number_of_iterations)

    def set_maximum_number_of_function_evaluations(self, maximum: int) -> None:
        """Set the maximum number of metric evaluations per level."""
        if maximum < 1:
            raise ConfigurationError(
                f"Maximum number of function evaluations must be >= 1, got {maximum}"
            )
        self.maximum_number_of_function_evaluations = int(maximum)

    def set_gradient_convergence_tolerance(self, tolerance: float) -> None:
        if tolerance <= 0:
            raise ConfigurationError(
                f"Gradient convergence tolerance must be positive, got {tolerance}"
            )
        self.gradient_convergence_tolerance = float(tolerance)

    def set_parameter_scales(self, parameter_scales) -> None:
        """Set optimizer parameter scales, a scalar or one value per parameter.

        Pass None to restore the method's default scales.
        """
        if parameter_scales is None:
            self.parameter_scales = None
            return
        scales = np.asarray(parameter_scales, dtype=np.float64).reshape(-1)
        if scales.size == 0 or np.any(scales <= 0):
            raise ConfigurationError(f"Parameter scales must be positive, got {scales}")
        self.parameter_scales = scales

    def create_pyramid(self) -> ImagePyramid:
        """Build the validated pyramid schedule for this run."""
        if self.shrink_factors is not None:
            return ImagePyramid.from_schedule(
                self.shrink_factors,
                self.smoothing_sigmas,
                smoothing_sigmas_in_physical_units=self.smoothing_sigmas_in_physical_units,
                log_level=self.log_level,
            )
        return ImagePyramid.from_number_of_levels(
            self.number_of_levels,
            smoothing_sigmas_in_physical_units=self.smoothing_sigmas_in_physical_units,
            log_level=self.log_level,
        )

    def create_transform(self, initial_transform=None):
        """Create the transform optimized by this method."""
        raise NotImplementedError("This method should be implemented by the subclass.")

    def prepare_level_transform(self, transform, level_index: int, level: PyramidLevel):
        """Adapt the transform to a level before optimization.

        The default keeps the transform unchanged.
        """
        return transform

    def compute_parameter_scales(self, transform):
        """Per-parameter optimizer scales, None for unit scales."""
        if self.parameter_scales is None:
            return None
        if self.parameter_scales.size == 1:
            return np.full(transform.get_number_of_parameters(), self.parameter_scales[0])
        return self.parameter_scales

    def create_metric(self) -> MattesMutualInformationMetric:
        return MattesMutualInformationMetric(
            number_of_histogram_bins=self.number_of_histogram_bins,
            number_of_samples=self.number_of_samples,
            random_seed=self.random_seed,
            number_of_threads=self.number_of_threads,
            log_level=self.log_level,
        )

    def create_optimizer(self, transform) -> LBFGSOptimizer:
        return LBFGSOptimizer(
            number_of_iterations=self.number_of_iterations,
            maximum_number_of_function_evaluations=self.maximum_number_of_function_evaluations,
            gradient_convergence_tolerance=self.gradient_convergence_tolerance,
            parameter_scales=self.compute_parameter_scales(transform),
            log_level=self.log_level,
        )

    def check_optimizer_state(self, state: OptimizerState, level_index: int) -> None:
        """Decide whether a failed line search aborts the run.

        A line search failure is fatal only on the first level when no
        evaluation improved on the initial value; otherwise the best
        parameters found are kept and a warning is logged.

        Raises:
            OptimizerStallError: On a first-level stall without improvement
        """
        if state.stop_reason != StopReason.LINE_SEARCH_FAILURE:
            return
        if level_index == 0 and state.value >= state.initial_value:
            raise OptimizerStallError(
                f"Line search failed without improving the initial metric value "
                f"{state.initial_value:.6f}"
            )
        self.log_warning(
            "Level %d: line search failed, keeping best value %.6f (initial %.6f)",
            level_index,
            state.value,
            state.initial_value,
        )

    def finalize(self, transform, result: dict) -> dict:
        """Add method-specific outputs to the result dictionary."""
        return result

    def _run_level(self, pyramid, level_index, transform, moving_image, stage):
        level = pyramid[level_index]
        fixed_level, moving_level, mask_level = pyramid.get_level_volumes(
            level_index, self.fixed_image, moving_image, self.fixed_image_mask
        )
        transform = self.prepare_level_transform(transform, level_index, level)
        metric = self.create_metric()
        metric.initialize(fixed_level, moving_level, mask_level)
        optimizer = self.create_optimizer(transform)

        def cost_function(parameters):
            transform.set_parameters(parameters)
            return metric.get_value_and_derivative(transform)

        stage[0] = "optimize"
        state = optimizer.optimize(cost_function, transform.get_parameters())
        self.check_optimizer_state(state, level_index)

        stage[0] = "commit"
        transform.set_parameters(state.parameters)
        self.last_committed_transform = transform.copy()

        level_result = LevelResult(
            level=level_index,
            shrink_factor=level.shrink_factor,
            smoothing_sigma=level.smoothing_sigma,
            mesh_size=level.mesh_size,
            number_of_parameters=transform.get_number_of_parameters(),
            initial_value=state.initial_value,
            final_value=state.value,
            stop_reason=state.stop_reason,
            iterations=state.iteration,
            evaluations=state.evaluations,
        )
        return transform, level_result

    def register(self, moving_image: Volume, initial_transform=None) -> dict:
        """Register a moving volume to the fixed volume.

        Args:
            moving_image (Volume): The volume to align to the fixed volume
            initial_transform: Optional starting transform, interpreted by the
                subclass

        Returns:
            dict: Dictionary containing:
                - "transform": Fixed-to-moving transform after the last level
                - "loss": Final negative mutual information
                - "levels": LevelResult per completed level

        Raises:
            ConfigurationError: If no fixed image is set or the configuration
                is invalid
            RegistrationError: Any failure during a level, with ``level``,
                ``stage`` and ``last_transform`` attached
        """
        if self.fixed_image is None:
            raise ConfigurationError("Fixed image must be set before registration", stage="init")
        if not isinstance(moving_image, Volume):
            raise ConfigurationError(
                f"Moving image must be a Volume, got {type(moving_image).__name__}",
                stage="init",
            )
        self.moving_image = moving_image
        self.last_committed_transform = None

        self.log_section("%s registration", self.__class__.__name__)
        try:
            pyramid = self.create_pyramid()
            transform = self.create_transform(initial_transform)
        except RegistrationError as err:
            if err.stage is None:
                err.stage = "init"
            raise

        level_results = []
        for level_index in range(len(pyramid)):
            level = pyramid[level_index]
            self.log_info(
                "Level %d of %d: shrink %d, sigma %.3g",
                level_index + 1,
                len(pyramid),
                level.shrink_factor,
                level.smoothing_sigma,
            )
            stage = ["prepare"]
            try:
                transform, level_result = self._run_level(
                    pyramid, level_index, transform, moving_image, stage
                )
            except RegistrationError as err:
                if err.stage is None:
                    err.stage = stage[0]
                if err.level is None:
                    err.level = level_index
                err.last_transform = self.last_committed_transform
                self.log_error("Registration failed: %s", err)
                raise
            level_results.append(level_result)
            self.log_info(
                "Level %d committed: %.6f -> %.6f (%s)",
                level_index + 1,
                level_result.initial_value,
                level_result.final_value,
                level_result.stop_reason.value,
            )
            self.log_progress(level_index + 1, len(pyramid), prefix="Levels completed")

        result = {
            "transform": transform,
            "loss": level_results[-1].final_value,
            "levels": level_results,
        }
        try:
            return self.finalize(transform, result)
        except RegistrationError as err:
            if err.stage is None:
                err.stage = "finalize"
            err.last_transform = self.last_committed_transform
            raise
