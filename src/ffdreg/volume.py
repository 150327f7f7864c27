"""In-memory 3-D scalar volume with physical geometry.

Samples are stored in a numpy array indexed ``[i, j, k]`` (x index first),
which is the transpose of the ``[k, j, i]`` order returned by
``itk.array_from_image``. The index to physical mapping is

    physical = origin + direction @ (spacing * index)
"""

from dataclasses import dataclass, field

import numpy as np
from numpy.typing import NDArray

from ffdreg.errors import GeometryMismatchError


@dataclass
class Volume:
    """Rectangular 3-D lattice of scalar samples with geometry metadata.

    Attributes:
        data: Samples, shape (ni, nj, nk)
        spacing: Voxel spacing, three strictly positive values
        origin: Physical position of voxel (0, 0, 0)
        direction: 3x3 orthonormal direction cosine matrix, columns are the
            physical directions of the i, j and k axes
    """

    data: NDArray
    spacing: NDArray = field(default_factory=lambda: np.ones(3))
    origin: NDArray = field(default_factory=lambda: np.zeros(3))
    direction: NDArray = field(default_factory=lambda: np.eye(3))

    def __post_init__(self) -> None:
        self.data = np.asarray(self.data)
        self.spacing = np.asarray(self.spacing, dtype=np.float64).reshape(-1)
        self.origin = np.asarray(self.origin, dtype=np.float64).reshape(-1)
        self.direction = np.asarray(self.direction, dtype=np.float64)

        if self.data.ndim != 3:
            raise GeometryMismatchError(
                f"Volume data must be 3-D, got shape {self.data.shape}"
            )
        if self.spacing.shape != (3,) or self.origin.shape != (3,):
            raise GeometryMismatchError(
                "Spacing and origin must have three components, got "
                f"{self.spacing.shape} and {self.origin.shape}"
            )
        if np.any(self.spacing <= 0):
            raise GeometryMismatchError(
                f"Spacing must be strictly positive, got {self.spacing}"
            )
        if self.direction.shape != (3, 3):
            raise GeometryMismatchError(
                f"Direction must be a 3x3 matrix, got shape {self.direction.shape}"
            )
        if not np.allclose(self.direction.T @ self.direction, np.eye(3), atol=1e-6):
            raise GeometryMismatchError("Direction matrix must be orthonormal")

    @property
    def shape(self) -> tuple[int, int, int]:
        return tuple(int(n) for n in self.data.shape)

    @property
    def number_of_voxels(self) -> int:
        return int(self.data.size)

    def index_to_physical(self, index: NDArray) -> NDArray:
        """Map continuous indices, shape (..., 3), to physical points."""
        index = np.asarray(index, dtype=np.float64)
        return self.origin + (index * self.spacing) @ self.direction.T

    def physical_to_index(self, points: NDArray) -> NDArray:
        """Map physical points, shape (..., 3), to continuous indices."""
        points = np.asarray(points, dtype=np.float64)
        return ((points - self.origin) @ self.direction) / self.spacing

    def get_voxel_indices(self) -> NDArray:
        """Integer indices of all voxels, shape (N, 3), in ``data.ravel()`` order."""
        return np.indices(self.shape).reshape(3, -1).T

    def get_physical_points(self) -> NDArray:
        """Physical positions of all voxel centres in ``data.ravel()`` order."""
        return self.index_to_physical(self.get_voxel_indices())

    def get_geometric_center(self) -> NDArray:
        """Centre of the bounding box spanned by the voxel centres."""
        return self.index_to_physical((np.array(self.shape) - 1) / 2.0)

    def get_physical_extent(self) -> NDArray:
        """Edge-to-edge size of the volume along each axis."""
        return np.array(self.shape) * self.spacing

    def copy_with_data(self, data: NDArray) -> "Volume":
        """Return a new volume sharing this geometry with different samples."""
        return Volume(
            data=data,
            spacing=self.spacing.copy(),
            origin=self.origin.copy(),
            direction=self.direction.copy(),
        )

    def has_same_geometry(self, other: "Volume", tolerance: float = 1e-6) -> bool:
        return (
            self.shape == other.shape
            and np.allclose(self.spacing, other.spacing, atol=tolerance)
            and np.allclose(self.origin, other.origin, atol=tolerance)
            and np.allclose(self.direction, other.direction, atol=tolerance)
        )
