"""Deformable registration with a cubic B-spline free-form deformation.

The control point lattice covers the full fixed volume. Its mesh is refined
between pyramid levels so that coarse levels recover large smooth motion and
fine levels recover local detail. Refinement keeps the deformation found so
far. A rigid result can be composed underneath the deformation.
"""

import logging

import numpy as np

from ffdreg.errors import ConfigurationError
from ffdreg.image_pyramid import ImagePyramid, PyramidLevel
from ffdreg.optimizer_lbfgs import LBFGSBOptimizer, LBFGSOptimizer
from ffdreg.register_images_base import RegisterImagesBase
from ffdreg.transform_base import ComposedTransform
from ffdreg.transform_bspline import BSplineTransform
from ffdreg.transform_tools import TransformTools


class RegisterImagesBSpline(RegisterImagesBase):
    """Multi-resolution B-spline FFD registration.

    Mesh sizes default to 4 cells per axis on the first level and double at
    each following level. The optimizer is unbounded L-BFGS unless
    displacement bounds are set, in which case L-BFGS-B keeps every control
    point displacement inside the box.

    After the last level the Jacobian determinant of the result is evaluated
    on the fixed grid and returned under ``"jacobian"``. Folding is logged as
    a warning.

    Example:
        >>> registrar = RegisterImagesBSpline()
        >>> registrar.set_fixed_image(fixed_volume)
        >>> registrar.set_mesh_size_per_level([4, 8, 16])
        >>> registrar.set_number_of_levels(3)
        >>> result = registrar.register(moving_volume, initial_transform=rigid)
        >>> result["jacobian"].folding_detected
        False
    """

    def __init__(self, log_level: int | str = logging.INFO):
        super().__init__(log_level=log_level)

        self.number_of_histogram_bins = 50
        self.number_of_levels = 2
        self.number_of_iterations = 30
        self.maximum_number_of_function_evaluations = 100
        self.gradient_convergence_tolerance = 1e-5

        self.initial_mesh_size = (4, 4, 4)
        self.mesh_size_per_level = None

        self.optimizer_type = "lbfgs"
        self.displacement_bounds = None

        self.transform_tools = TransformTools(log_level=log_level)

    def set_initial_mesh_size(self, mesh_size) -> None:
        """Mesh of the first level, doubled at each following level.

        Clears any explicit per-level mesh sizes.
        """
        mesh_size = self._as_mesh(mesh_size)
        self.initial_mesh_size = mesh_size
        self.mesh_size_per_level = None

    def set_mesh_size_per_level(self, mesh_sizes) -> None:
        """Explicit mesh per level, ints or triples, coarse to fine.

        The number of entries must match the number of levels when
        registration starts.
        """
        if len(mesh_sizes) == 0:
            raise ConfigurationError("At least one mesh size is required")
        self.mesh_size_per_level = [self._as_mesh(m) for m in mesh_sizes]

    @staticmethod
    def _as_mesh(mesh_size) -> tuple[int, int, int]:
        if np.isscalar(mesh_size):
            mesh_size = (mesh_size,) * 3
        mesh_size = tuple(int(m) for m in mesh_size)
        if len(mesh_size) != 3 or any(m < 1 for m in mesh_size):
            raise ConfigurationError(
                f"Mesh size must be one or three integers >= 1, got {mesh_size}"
            )
        return mesh_size

    def set_optimizer_type(self, optimizer_type: str) -> None:
        """Select "lbfgs" (unbounded) or "lbfgsb" (bounded)."""
        if optimizer_type not in ("lbfgs", "lbfgsb"):
            raise ConfigurationError(
                f"Optimizer type must be 'lbfgs' or 'lbfgsb', got {optimizer_type}"
            )
        self.optimizer_type = optimizer_type

    def set_displacement_bounds(self, lower: float, upper: float) -> None:
        """Bound every control point displacement component, in millimetres.

        The same bounds apply to every parameter at every level. Selects the
        bounded optimizer. Equal bounds leave the parameters unconstrained.
        """
        if lower > upper:
            raise ConfigurationError(
                f"Lower displacement bound {lower} exceeds upper bound {upper}"
            )
        self.displacement_bounds = (float(lower), float(upper))
        self.optimizer_type = "lbfgsb"

    def get_mesh_sizes(self, number_of_levels: int) -> list[tuple[int, int, int]]:
        if self.mesh_size_per_level is not None:
            return list(self.mesh_size_per_level)
        return [
            tuple(m * 2**level for m in self.initial_mesh_size)
            for level in range(number_of_levels)
        ]

    def create_pyramid(self) -> ImagePyramid:
        schedule = super().create_pyramid()
        return ImagePyramid.from_schedule(
            [level.shrink_factor for level in schedule],
            [level.smoothing_sigma for level in schedule],
            mesh_sizes=self.get_mesh_sizes(len(schedule)),
            smoothing_sigmas_in_physical_units=self.smoothing_sigmas_in_physical_units,
            log_level=self.log_level,
        )

    def create_transform(self, initial_transform=None):
        """Create the lattice over the fixed volume.

        ``initial_transform`` may be a linear transform (e.g. the rigid
        result), composed underneath the deformation, or a B-spline or
        composed transform to continue from.
        """
        if isinstance(initial_transform, (BSplineTransform, ComposedTransform)):
            return initial_transform.copy()

        bspline = BSplineTransform.from_volume(
            self.fixed_image,
            mesh_size=self.get_mesh_sizes(self.number_of_levels)[0],
            log_level=self.log_level,
        )
        if initial_transform is None:
            return bspline
        if not hasattr(initial_transform, "get_matrix"):
            raise ConfigurationError(
                "Initial transform must be linear, a BSplineTransform or a "
                f"ComposedTransform, got {type(initial_transform).__name__}"
            )
        self.log_info("Composing the deformation with the initial transform")
        return ComposedTransform(bspline, initial_transform.copy())

    def prepare_level_transform(self, transform, level_index: int, level: PyramidLevel):
        bspline = transform.active if isinstance(transform, ComposedTransform) else transform
        if bspline.mesh_size != level.mesh_size:
            bspline.set_mesh_size(level.mesh_size)
        self.log_info(
            "Level %d mesh %s: %d control points, %d parameters",
            level_index + 1,
            level.mesh_size,
            bspline.get_number_of_control_points(),
            bspline.get_number_of_parameters(),
        )
        return transform

    def create_optimizer(self, transform) -> LBFGSOptimizer:
        optimizer_class = LBFGSBOptimizer if self.optimizer_type == "lbfgsb" else LBFGSOptimizer
        optimizer = optimizer_class(
            number_of_iterations=self.number_of_iterations,
            maximum_number_of_function_evaluations=self.maximum_number_of_function_evaluations,
            gradient_convergence_tolerance=self.gradient_convergence_tolerance,
            parameter_scales=self.compute_parameter_scales(transform),
            log_level=self.log_level,
        )
        if self.optimizer_type == "lbfgsb" and self.displacement_bounds is not None:
            optimizer.set_bounds(*self.displacement_bounds)
        return optimizer

    def finalize(self, transform, result: dict) -> dict:
        self.log_info("Checking the Jacobian determinant on the fixed grid")
        report = self.transform_tools.check_jacobian(transform, self.fixed_image)
        result["jacobian"] = report
        return result
