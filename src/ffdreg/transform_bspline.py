"""Cubic B-spline free-form deformation transform.

A lattice of control points is laid over the physical domain of the fixed
volume. Each control point carries a physical displacement vector and the
displacement at a point is the tensor-product cubic B-spline blend of the
4x4x4 control points surrounding it:

    T(p) = p + sum_{a,b,c} w_a(x) w_b(y) w_c(z) d[i+a, j+b, k+c]

With ``mesh_size`` cells along an axis the lattice has ``mesh_size + 3``
control points along that axis: one before the domain start and two past the
domain end, so that every point of the domain has a full 4-point support.
The lattice axes follow the fixed volume direction cosines.

The mesh can be refined between pyramid levels with ``set_mesh_size``. The
current displacement field is re-expressed on the new lattice, exactly when
the new mesh is the same or an integer multiple of the old one (nested spline
spaces) and in the least-squares sense otherwise.
"""

import copy
import itertools
import logging

import numpy as np
from numpy.typing import NDArray

from ffdreg.errors import ConfigurationError
from ffdreg.ffdreg_base import FFDRegBase

SPLINE_ORDER = 3


def cubic_bspline_weights(t: NDArray) -> NDArray:
    """Weights of the four control points around a cell for fraction ``t``.

    Args:
        t: Fractional position inside the cell, values in [0, 1]

    Returns:
        Array of shape (len(t), 4)
    """
    t = np.asarray(t, dtype=np.float64)
    t2 = t * t
    t3 = t2 * t
    one_minus = 1.0 - t
    return np.stack(
        [
            one_minus * one_minus * one_minus / 6.0,
            (3.0 * t3 - 6.0 * t2 + 4.0) / 6.0,
            (-3.0 * t3 + 3.0 * t2 + 3.0 * t + 1.0) / 6.0,
            t3 / 6.0,
        ],
        axis=-1,
    )


def _support_start_and_weights(
    grid_index: NDArray, mesh_size: int
) -> tuple[NDArray, NDArray, NDArray]:
    """First control point of the support, weights and inside flag per point.

    ``grid_index`` is the continuous control point index, where control point
    1 sits at the domain start and control point ``mesh_size + 1`` at the end.
    """
    inside = (grid_index >= 1.0) & (grid_index <= mesh_size + 1.0)
    cell = np.floor(grid_index)
    # the domain end belongs to the last cell
    cell = np.clip(cell, 1, mesh_size)
    fraction = np.where(inside, grid_index - cell, 0.0)
    start = (cell - 1).astype(np.int64)
    weights = cubic_bspline_weights(fraction)
    weights[~inside] = 0.0
    return start, weights, inside


def _basis_matrix(positions: NDArray, mesh_size: int, length: float) -> NDArray:
    """Evaluate all 1-D basis functions of a lattice at domain positions."""
    grid_index = positions / (length / mesh_size) + 1.0
    start, weights, _ = _support_start_and_weights(grid_index, mesh_size)
    matrix = np.zeros((positions.size, mesh_size + SPLINE_ORDER))
    rows = np.arange(positions.size)
    for offset in range(SPLINE_ORDER + 1):
        matrix[rows, start + offset] += weights[:, offset]
    return matrix


def _refinement_matrix(old_mesh: int, new_mesh: int, length: float) -> NDArray:
    """Matrix mapping 1-D coefficients of the old lattice to the new one."""
    samples_per_cell = 8
    positions = np.linspace(0.0, length, max(old_mesh, new_mesh) * samples_per_cell + 1)
    old_basis = _basis_matrix(positions, old_mesh, length)
    new_basis = _basis_matrix(positions, new_mesh, length)
    transfer, *_ = np.linalg.lstsq(new_basis, old_basis, rcond=None)
    return transfer


def _as_mesh_size(mesh_size) -> tuple[int, int, int]:
    if np.isscalar(mesh_size):
        mesh_size = [mesh_size] * 3
    mesh = tuple(int(m) for m in mesh_size)
    if len(mesh) != 3 or any(m < 1 for m in mesh):
        raise ConfigurationError(
            f"Mesh size must be three integers >= 1, got {mesh_size}"
        )
    return mesh


class BSplineTransform(FFDRegBase):
    """Deformable transform driven by a cubic B-spline control point lattice.

    Attributes:
        domain_origin (NDArray): Physical position of the domain corner
        domain_physical_dimensions (NDArray): Domain size along its axes
        domain_direction (NDArray): 3x3 direction cosines of the domain axes
        mesh_size (tuple): Number of cells per axis
        coefficients (NDArray): Control point displacements, shape
            (3, mesh_x + 3, mesh_y + 3, mesh_z + 3)

    Example:
        >>> tfm = BSplineTransform.from_volume(fixed_volume, mesh_size=4)
        >>> tfm.get_number_of_parameters()
        1029
        >>> tfm.set_mesh_size(8)  # keeps the current deformation
    """

    def __init__(
        self,
        domain_origin,
        domain_physical_dimensions,
        domain_direction=None,
        mesh_size=4,
        log_level: int | str = logging.INFO,
    ):
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

        self.domain_origin = np.asarray(domain_origin, dtype=np.float64).reshape(3)
        self.domain_physical_dimensions = np.asarray(
            domain_physical_dimensions, dtype=np.float64
        ).reshape(3)
        if np.any(self.domain_physical_dimensions <= 0):
            raise ConfigurationError(
                "B-spline domain dimensions must be positive, got "
                f"{self.domain_physical_dimensions}"
            )
        self.domain_direction = (
            np.eye(3)
            if domain_direction is None
            else np.asarray(domain_direction, dtype=np.float64)
        )

        self.mesh_size = _as_mesh_size(mesh_size)
        self.coefficients = np.zeros((3,) + self.get_grid_size())

    @classmethod
    def from_volume(cls, volume, mesh_size=4, log_level: int | str = logging.INFO):
        """Create an identity B-spline transform covering a volume.

        The domain spans the full voxel extent of the volume, from index -0.5
        to index n - 0.5 along each axis.
        """
        domain_origin = volume.index_to_physical(np.full(3, -0.5))
        return cls(
            domain_origin=domain_origin,
            domain_physical_dimensions=volume.get_physical_extent(),
            domain_direction=volume.direction,
            mesh_size=mesh_size,
            log_level=log_level,
        )

    def get_grid_size(self) -> tuple[int, int, int]:
        return tuple(m + SPLINE_ORDER for m in self.mesh_size)

    def get_grid_spacing(self) -> NDArray:
        return self.domain_physical_dimensions / np.array(self.mesh_size)

    def get_number_of_control_points(self) -> int:
        return int(np.prod(self.get_grid_size()))

    def get_number_of_parameters(self) -> int:
        return 3 * self.get_number_of_control_points()

    def get_parameters(self) -> NDArray:
        return self.coefficients.reshape(-1).copy()

    def set_parameters(self, parameters) -> None:
        parameters = np.asarray(parameters, dtype=np.float64).reshape(-1)
        if parameters.size != self.get_number_of_parameters():
            raise ConfigurationError(
                f"BSplineTransform with mesh {self.mesh_size} expects "
                f"{self.get_number_of_parameters()} parameters, got {parameters.size}"
            )
        self.coefficients = parameters.reshape(self.coefficients.shape).copy()

    def get_coefficients(self) -> NDArray:
        return self.coefficients.copy()

    def set_identity(self) -> None:
        self.coefficients = np.zeros((3,) + self.get_grid_size())

    def _compute_supports(self, points: NDArray):
        """Per-axis support start indices and weights for physical points."""
        local = (np.asarray(points, dtype=np.float64) - self.domain_origin) @ self.domain_direction
        grid_index = local / self.get_grid_spacing() + 1.0

        starts = []
        weights = []
        inside = np.ones(grid_index.shape[0], dtype=bool)
        for axis in range(3):
            start, weight, axis_inside = _support_start_and_weights(
                grid_index[:, axis], self.mesh_size[axis]
            )
            starts.append(start)
            weights.append(weight)
            inside &= axis_inside
        # identity outside the support region, even if only one axis is outside
        for weight in weights:
            weight[~inside] = 0.0
        return starts, weights

    def get_displacements(self, points: NDArray) -> NDArray:
        """Displacement vectors at physical points, shape (N, 3)."""
        starts, weights = self._compute_supports(points)
        displacement = np.zeros((starts[0].size, 3))
        for a, b, c in itertools.product(range(SPLINE_ORDER + 1), repeat=3):
            w = weights[0][:, a] * weights[1][:, b] * weights[2][:, c]
            coeff = self.coefficients[:, starts[0] + a, starts[1] + b, starts[2] + c]
            displacement += (w * coeff).T
        return displacement

    def transform_points(self, points: NDArray) -> NDArray:
        points = np.asarray(points, dtype=np.float64)
        return points + self.get_displacements(points)

    def transform_point(self, point) -> NDArray:
        return self.transform_points(np.asarray(point, dtype=np.float64)[None, :])[0]

    def compute_jacobian_transpose_product(
        self, points: NDArray, vectors: NDArray
    ) -> NDArray:
        vectors = np.asarray(vectors, dtype=np.float64)
        starts, weights = self._compute_supports(points)
        grid_size = self.get_grid_size()
        number_of_control_points = self.get_number_of_control_points()

        gradient = np.zeros((3, number_of_control_points))
        for a, b, c in itertools.product(range(SPLINE_ORDER + 1), repeat=3):
            w = weights[0][:, a] * weights[1][:, b] * weights[2][:, c]
            flat = np.ravel_multi_index(
                (starts[0] + a, starts[1] + b, starts[2] + c), grid_size
            )
            for dim in range(3):
                gradient[dim] += np.bincount(
                    flat, weights=w * vectors[:, dim], minlength=number_of_control_points
                )
        return gradient.reshape(-1)

    def set_mesh_size(self, mesh_size) -> None:
        """Change the lattice resolution, keeping the current deformation.

        Args:
            mesh_size: Int or three ints, number of cells per axis
        """
        new_mesh = _as_mesh_size(mesh_size)
        if new_mesh == self.mesh_size:
            return

        coefficients = self.coefficients
        for axis in range(3):
            transfer = _refinement_matrix(
                self.mesh_size[axis],
                new_mesh[axis],
                self.domain_physical_dimensions[axis],
            )
            coefficients = np.moveaxis(
                np.tensordot(transfer, coefficients, axes=([1], [axis + 1])), 0, axis + 1
            )

        self.log_debug(
            "Mesh refined from %s to %s (%d -> %d parameters)",
            self.mesh_size,
            new_mesh,
            self.get_number_of_parameters(),
            coefficients.size,
        )
        self.mesh_size = new_mesh
        self.coefficients = np.ascontiguousarray(coefficients)

    def copy(self) -> "BSplineTransform":
        # the shared logger is not deep-copied
        new_tfm = copy.copy(self)
        new_tfm.domain_origin = self.domain_origin.copy()
        new_tfm.domain_physical_dimensions = self.domain_physical_dimensions.copy()
        new_tfm.domain_direction = self.domain_direction.copy()
        new_tfm.coefficients = self.coefficients.copy()
        return new_tfm
