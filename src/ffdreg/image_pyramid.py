"""Coarse-to-fine schedule of smoothed and shrunk volume pairs.

Each pyramid level combines a Gaussian smoothing sigma, an integer shrink
factor applied identically to the fixed and moving volumes and, for deformable
registration, the B-spline mesh size used at that level. The schedule is
validated once, before any optimization, and is never modified afterwards.
"""

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy import ndimage

from ffdreg.errors import ConfigurationError
from ffdreg.ffdreg_base import FFDRegBase
from ffdreg.volume import Volume


@dataclass(frozen=True)
class PyramidLevel:
    """One level of the registration schedule.

    Attributes:
        shrink_factor: Integer decimation factor, >= 1
        smoothing_sigma: Gaussian sigma applied before decimation, >= 0
        mesh_size: B-spline cells per axis at this level, None for rigid
    """

    shrink_factor: int
    smoothing_sigma: float
    mesh_size: tuple[int, int, int] | None = None

    def get_number_of_control_points(self) -> int:
        return int(np.prod([m + 3 for m in self.mesh_size]))


def _as_mesh(mesh_size) -> tuple[int, int, int]:
    if np.isscalar(mesh_size):
        return (int(mesh_size),) * 3
    return tuple(int(m) for m in mesh_size)


class ImagePyramid(FFDRegBase):
    """Validated pyramid schedule and per-level volume derivation.

    Example:
        >>> pyramid = ImagePyramid.from_number_of_levels(3, initial_mesh_size=4)
        >>> [level.shrink_factor for level in pyramid]
        [4, 2, 1]
        >>> fixed_level, moving_level, _ = pyramid.get_level_volumes(0, fixed, moving)
    """

    def __init__(
        self,
        levels: Sequence[PyramidLevel],
        require_mesh_sizes: bool = False,
        smoothing_sigmas_in_physical_units: bool = True,
        log_level: int | str = logging.INFO,
    ):
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

        self.levels = tuple(levels)
        self.require_mesh_sizes = require_mesh_sizes
        self.smoothing_sigmas_in_physical_units = smoothing_sigmas_in_physical_units
        self.validate_levels(self.levels, require_mesh_sizes)

    @classmethod
    def from_number_of_levels(
        cls,
        number_of_levels: int,
        initial_mesh_size=None,
        sigma_step: float = 1.0,
        smoothing_sigmas_in_physical_units: bool = True,
        log_level: int | str = logging.INFO,
    ) -> "ImagePyramid":
        """Generate the default schedule for ``number_of_levels`` levels.

        Shrink factors halve at each level down to 1, sigmas decrease by
        ``sigma_step`` down to 0, and mesh sizes (when ``initial_mesh_size`` is
        given) double at each level.

        Raises:
            ConfigurationError: If number_of_levels < 1 or sigma_step <= 0
        """
        if number_of_levels < 1:
            raise ConfigurationError(
                f"Number of pyramid levels must be >= 1, got {number_of_levels}"
            )
        if sigma_step <= 0:
            raise ConfigurationError(f"Sigma step must be positive, got {sigma_step}")

        levels = []
        for level in range(number_of_levels):
            remaining = number_of_levels - 1 - level
            mesh_size = None
            if initial_mesh_size is not None:
                mesh_size = tuple(m * 2**level for m in _as_mesh(initial_mesh_size))
            levels.append(
                PyramidLevel(
                    shrink_factor=2**remaining,
                    smoothing_sigma=sigma_step * remaining,
                    mesh_size=mesh_size,
                )
            )
        return cls(
            levels,
            require_mesh_sizes=initial_mesh_size is not None,
            smoothing_sigmas_in_physical_units=smoothing_sigmas_in_physical_units,
            log_level=log_level,
        )

    @classmethod
    def from_schedule(
        cls,
        shrink_factors: Sequence[int],
        smoothing_sigmas: Sequence[float],
        mesh_sizes: Sequence | None = None,
        smoothing_sigmas_in_physical_units: bool = True,
        log_level: int | str = logging.INFO,
    ) -> "ImagePyramid":
        """Build a pyramid from explicit per-level lists."""
        if len(shrink_factors) != len(smoothing_sigmas):
            raise ConfigurationError(
                f"{len(shrink_factors)} shrink factors but {len(smoothing_sigmas)} "
                "smoothing sigmas"
            )
        if mesh_sizes is not None and len(mesh_sizes) != len(shrink_factors):
            raise ConfigurationError(
                f"{len(mesh_sizes)} mesh sizes for {len(shrink_factors)} levels"
            )
        levels = [
            PyramidLevel(
                shrink_factor=shrink,
                smoothing_sigma=float(sigma),
                mesh_size=None if mesh_sizes is None else _as_mesh(mesh_sizes[index]),
            )
            for index, (shrink, sigma) in enumerate(zip(shrink_factors, smoothing_sigmas))
        ]
        return cls(
            levels,
            require_mesh_sizes=mesh_sizes is not None,
            smoothing_sigmas_in_physical_units=smoothing_sigmas_in_physical_units,
            log_level=log_level,
        )

    @staticmethod
    def validate_levels(levels: Sequence[PyramidLevel], require_mesh_sizes: bool) -> None:
        """Check a schedule is strictly coarse-to-fine.

        Raises:
            ConfigurationError: On an empty schedule, shrink factors that are
                not strictly decreasing integers ending at 1, sigmas that are
                not strictly decreasing non-negative values ending at 0, or
                (when required) mesh sizes whose control point counts are not
                strictly increasing
        """
        if len(levels) == 0:
            raise ConfigurationError("Pyramid schedule has no levels")

        for index, level in enumerate(levels):
            if int(level.shrink_factor) != level.shrink_factor or level.shrink_factor < 1:
                raise ConfigurationError(
                    f"Level {index}: shrink factor must be an integer >= 1, "
                    f"got {level.shrink_factor}"
                )
            if level.smoothing_sigma < 0:
                raise ConfigurationError(
                    f"Level {index}: smoothing sigma must be >= 0, got {level.smoothing_sigma}"
                )
            if index > 0:
                previous = levels[index - 1]
                if level.shrink_factor >= previous.shrink_factor:
                    raise ConfigurationError(
                        f"Shrink factors must strictly decrease, level {index - 1} has "
                        f"{previous.shrink_factor} and level {index} has {level.shrink_factor}"
                    )
                if level.smoothing_sigma >= previous.smoothing_sigma:
                    raise ConfigurationError(
                        f"Smoothing sigmas must strictly decrease, level {index - 1} has "
                        f"{previous.smoothing_sigma} and level {index} has "
                        f"{level.smoothing_sigma}"
                    )

        if levels[-1].shrink_factor != 1:
            raise ConfigurationError(
                f"Last shrink factor must be 1, got {levels[-1].shrink_factor}"
            )
        if levels[-1].smoothing_sigma != 0:
            raise ConfigurationError(
                f"Last smoothing sigma must be 0, got {levels[-1].smoothing_sigma}"
            )

        if not require_mesh_sizes:
            return

        for index, level in enumerate(levels):
            if level.mesh_size is None:
                raise ConfigurationError(f"Level {index} has no B-spline mesh size")
            if len(level.mesh_size) != 3 or any(m < 1 for m in level.mesh_size):
                raise ConfigurationError(
                    f"Level {index}: mesh size must be three integers >= 1, "
                    f"got {level.mesh_size}"
                )
            if index > 0:
                previous = levels[index - 1]
                if (
                    level.get_number_of_control_points()
                    <= previous.get_number_of_control_points()
                ):
                    raise ConfigurationError(
                        "Control point count must strictly increase, level "
                        f"{index - 1} has mesh {previous.mesh_size} and level {index} "
                        f"has mesh {level.mesh_size}"
                    )

    @property
    def number_of_levels(self) -> int:
        return len(self.levels)

    def __len__(self) -> int:
        return len(self.levels)

    def __iter__(self):
        return iter(self.levels)

    def __getitem__(self, index: int) -> PyramidLevel:
        return self.levels[index]

    def _shrink_indices(self, volume: Volume, shrink_factor: int) -> list:
        shrink_factor = int(shrink_factor)
        offset = (shrink_factor - 1) // 2
        indices = []
        for size in volume.shape:
            count = max(size // shrink_factor, 1)
            indices.append(np.minimum(offset + shrink_factor * np.arange(count), size - 1))
        return indices

    def _shrink(self, volume: Volume, data, shrink_factor: int) -> Volume:
        indices = self._shrink_indices(volume, shrink_factor)
        first = np.array([axis_indices[0] for axis_indices in indices])
        return Volume(
            data=data[np.ix_(*indices)],
            spacing=volume.spacing * shrink_factor,
            origin=volume.index_to_physical(first),
            direction=volume.direction.copy(),
        )

    def smooth_and_shrink(self, volume: Volume, level: PyramidLevel) -> Volume:
        """Gaussian-smooth then decimate a volume for one level.

        Voxel ``(f - 1) // 2 + f * m`` of the input becomes voxel ``m`` of the
        output, so physical positions of the retained voxels are unchanged.
        """
        data = np.asarray(volume.data, dtype=np.float64)
        if level.smoothing_sigma > 0:
            if self.smoothing_sigmas_in_physical_units:
                sigma = level.smoothing_sigma / volume.spacing
            else:
                sigma = np.full(3, level.smoothing_sigma)
            data = ndimage.gaussian_filter(data, sigma=sigma, mode="nearest")
        if level.shrink_factor == 1:
            return volume.copy_with_data(data)
        return self._shrink(volume, data, level.shrink_factor)

    def shrink_mask(self, mask: Volume, level: PyramidLevel) -> Volume:
        """Decimate a mask without smoothing."""
        if level.shrink_factor == 1:
            return mask
        return self._shrink(mask, mask.data, level.shrink_factor)

    def get_level_volumes(
        self,
        level_index: int,
        fixed_volume: Volume,
        moving_volume: Volume,
        fixed_mask: Volume | None = None,
    ) -> tuple[Volume, Volume, Volume | None]:
        """Derive the fixed, moving and mask volumes of one level."""
        level = self.levels[level_index]
        fixed_level = self.smooth_and_shrink(fixed_volume, level)
        moving_level = self.smooth_and_shrink(moving_volume, level)
        mask_level = None
        if fixed_mask is not None:
            mask_level = self.shrink_mask(fixed_mask, level)
        self.log_debug(
            "Level %d: fixed %s -> %s, moving %s -> %s",
            level_index,
            fixed_volume.shape,
            fixed_level.shape,
            moving_volume.shape,
            moving_level.shape,
        )
        return fixed_level, moving_level, mask_level
