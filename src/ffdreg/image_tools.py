"""
Image Tools for FFDReg

This module provides volume file I/O through ITK, conversion between ITK
images and FFDReg volumes, and the simple single-pass intensity utilities used
around a registration run (z-score normalization, foreground centroids,
isotropic resampling).
"""

import logging
from pathlib import Path
from typing import Any

import itk
import numpy as np
from numpy.typing import NDArray

from ffdreg.errors import EncodeError, VolumeDecodeError
from ffdreg.ffdreg_base import FFDRegBase
from ffdreg.transform_tools import TransformTools
from ffdreg.volume import Volume


class ImageTools(FFDRegBase):
    """
    Utilities for volume I/O, format conversion and intensity processing.

    ITK arrays are ordered (z, y, x) while FFDReg volumes are indexed
    [i, j, k]; the conversions transpose the samples and copy origin, spacing
    and direction so that physical positions are preserved.

    Example:
        >>> tools = ImageTools()
        >>> fixed = tools.read_volume('fixed.nii.gz')
        >>> normalized = tools.normalize_intensity(fixed)
        >>> tools.write_volume(normalized, 'fixed_normalized.nii.gz')
    """

    def __init__(self, log_level: int | str = logging.INFO) -> None:
        """Initialize ImageTools.

        Args:
            log_level: Logging level (default: logging.INFO)
        """
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

    def convert_itk_image_to_volume(self, itk_image: Any) -> Volume:
        """Convert a 3-D scalar ITK image to a Volume of float64 samples.

        Raises:
            GeometryMismatchError: If the image is not 3-D
        """
        array = itk.array_from_image(itk_image)
        data = np.ascontiguousarray(np.asarray(array, dtype=np.float64).T)
        return Volume(
            data=data,
            spacing=np.array(itk.spacing(itk_image), dtype=np.float64),
            origin=np.array(itk.origin(itk_image), dtype=np.float64),
            direction=np.asarray(itk.array_from_matrix(itk_image.GetDirection())),
        )

    def convert_volume_to_itk_image(self, volume: Volume, ptype: Any = np.float32) -> Any:
        """Convert a Volume to an ITK image with float pixels by default."""
        array = np.ascontiguousarray(volume.data.T.astype(ptype))
        itk_image = itk.image_from_array(array)
        itk_image.SetSpacing([float(s) for s in volume.spacing])
        itk_image.SetOrigin([float(o) for o in volume.origin])
        itk_image.SetDirection(itk.matrix_from_array(np.ascontiguousarray(volume.direction)))
        return itk_image

    def read_volume(self, filename: str | Path) -> Volume:
        """Read a 3-D scalar volume with float pixels.

        Args:
            filename: Any format ITK can read (.nii.gz, .mha, .nrrd, ...)

        Raises:
            VolumeDecodeError: If the file is missing, unreadable or not a
                3-D scalar image
        """
        filename = str(filename)
        if not Path(filename).exists():
            raise VolumeDecodeError(f"Volume file not found: {filename}", stage="read")
        try:
            itk_image = itk.imread(filename, itk.F)
        except (RuntimeError, OSError, ValueError, KeyError) as err:
            raise VolumeDecodeError(
                f"Could not decode volume {filename}: {err}", stage="read"
            ) from err

        if itk_image.GetImageDimension() != 3:
            raise VolumeDecodeError(
                f"Expected a 3-D volume in {filename}, got "
                f"{itk_image.GetImageDimension()}-D",
                stage="read",
            )
        volume = self.convert_itk_image_to_volume(itk_image)
        self.log_info("Read %s: size %s, spacing %s", filename, volume.shape, volume.spacing)
        return volume

    def write_volume(self, volume: Volume, filename: str | Path, compression: bool = True) -> None:
        """Write a volume with float pixels.

        Raises:
            EncodeError: If the output cannot be encoded or written
        """
        filename = str(filename)
        parent = Path(filename).parent
        if not parent.exists():
            raise EncodeError(f"Output directory does not exist: {parent}", stage="write")
        try:
            itk.imwrite(
                self.convert_volume_to_itk_image(volume), filename, compression=compression
            )
        except (RuntimeError, OSError, ValueError) as err:
            raise EncodeError(f"Could not write volume {filename}: {err}", stage="write") from err
        self.log_info("Wrote %s", filename)

    def normalize_intensity(self, volume: Volume) -> Volume:
        """Scale intensities to zero mean and unit variance.

        A constant volume has zero variance; it is returned centred (all
        zeros) and a warning is logged.
        """
        data = np.asarray(volume.data, dtype=np.float64)
        mean = float(data.mean())
        stddev = float(data.std())
        self.log_info("Intensity normalization: mean %.6g, stddev %.6g", mean, stddev)
        if stddev == 0:
            self.log_warning("Volume is constant, returning zero intensities")
            return volume.copy_with_data(data - mean)
        return volume.copy_with_data((data - mean) / stddev)

    def threshold_volume(
        self,
        volume: Volume,
        lower_threshold: float = 1.0,
        upper_threshold: float = 1e9,
    ) -> Volume:
        """Binary volume: 1 inside [lower_threshold, upper_threshold], else 0."""
        inside = (volume.data >= lower_threshold) & (volume.data <= upper_threshold)
        return volume.copy_with_data(inside.astype(np.float64))

    def compute_centroid(
        self,
        volume: Volume,
        lower_threshold: float = 1.0,
        upper_threshold: float = 1e9,
    ) -> NDArray:
        """Physical centre of gravity of the thresholded foreground.

        Raises:
            ValueError: If no voxel lies within the threshold range
        """
        mask = self.threshold_volume(volume, lower_threshold, upper_threshold).data > 0
        if not np.any(mask):
            raise ValueError(
                f"No voxels within threshold range [{lower_threshold}, {upper_threshold}]"
            )
        indices = np.argwhere(mask)
        return volume.index_to_physical(indices).mean(axis=0)

    def compute_centroid_distance(self, point_a: NDArray, point_b: NDArray) -> float:
        """Euclidean distance between two physical points."""
        return float(np.linalg.norm(np.asarray(point_a) - np.asarray(point_b)))

    def resample_to_spacing(self, volume: Volume, spacing: float | NDArray = 1.0) -> Volume:
        """Resample a volume onto a grid with new spacing and the same origin.

        The new size along each axis is ``floor(size * old_spacing / new_spacing)``
        and samples are linearly interpolated.
        """
        new_spacing = np.broadcast_to(np.asarray(spacing, dtype=np.float64), (3,)).copy()
        new_size = np.maximum(
            np.floor(np.array(volume.shape) * volume.spacing / new_spacing).astype(int), 1
        )
        reference = Volume(
            data=np.zeros(tuple(new_size)),
            spacing=new_spacing,
            origin=volume.origin.copy(),
            direction=volume.direction.copy(),
        )
        self.log_info(
            "Resampling %s spacing %s -> %s spacing %s",
            volume.shape,
            volume.spacing,
            reference.shape,
            new_spacing,
        )
        return TransformTools(log_level=self.log_level).transform_image(
            volume, None, reference, "linear"
        )
