"""
Tools for applying and checking FFDReg transforms.

This module provides the TransformTools class with utilities to resample a
volume through a transform onto a reference grid, to sample a transform as a
dense displacement field, and to check the field for spatial folding through
its Jacobian determinant.
"""

import logging
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray
from scipy import ndimage

from ffdreg.ffdreg_base import FFDRegBase
from ffdreg.volume import Volume

_INTERPOLATION_ORDERS = {"nearest": 0, "linear": 1, "bspline": 3}


@dataclass
class JacobianReport:
    """Summary of the Jacobian determinant of a transform on a grid.

    Attributes:
        minimum: Smallest determinant
        maximum: Largest determinant
        folding_detected: True when ``minimum`` is not positive
        jacobian: Determinant per voxel of the reference grid
    """

    minimum: float
    maximum: float
    folding_detected: bool
    jacobian: Volume


class TransformTools(FFDRegBase):
    """
    Utilities for resampling volumes and validating deformations.

    Example:
        >>> transform_tools = TransformTools()
        >>> registered = transform_tools.transform_image(moving, tfm, fixed)
        >>> report = transform_tools.check_jacobian(tfm, fixed)
        >>> report.folding_detected
        False
    """

    def __init__(self, log_level: int | str = logging.INFO):
        """Initialize the TransformTools class.

        Args:
            log_level: Logging level (default: logging.INFO)
        """
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

    def _reference_points_by_slab(self, reference_image: Volume, slab_size: int = 16):
        """Yield (slab slice, physical points) over the first grid axis."""
        ni, nj, nk = reference_image.shape
        jj, kk = np.meshgrid(np.arange(nj), np.arange(nk), indexing="ij")
        for start in range(0, ni, slab_size):
            stop = min(start + slab_size, ni)
            ii = np.arange(start, stop)[:, None, None]
            index = np.stack(
                np.broadcast_arrays(ii, jj[None], kk[None]), axis=-1
            ).reshape(-1, 3)
            yield slice(start, stop), reference_image.index_to_physical(index)

    def transform_image(
        self,
        img: Volume,
        tfm,
        reference_image: Volume,
        interpolation_method: str = "linear",
        default_value: float = 0.0,
    ) -> Volume:
        """
        Resample a volume through a transform onto a reference grid.

        For each voxel ``x`` of the reference grid the output is
        ``img(tfm(x))``. Points mapping outside ``img`` get ``default_value``.

        Args:
            img (Volume): The moving volume to resample
            tfm: Transform mapping reference points to ``img`` points, or None
                for the identity
            reference_image (Volume): Defines the output grid
            interpolation_method (str): "linear" (default), "nearest" or
                "bspline" (cubic)
            default_value (float): Value used outside ``img``

        Returns:
            Volume: Resampled volume on the reference grid

        Raises:
            ValueError: If the interpolation method is not supported
        """
        if interpolation_method not in _INTERPOLATION_ORDERS:
            raise ValueError(f"Invalid interpolation method: {interpolation_method}")
        order = _INTERPOLATION_ORDERS[interpolation_method]

        data = np.asarray(img.data, dtype=np.float64)
        if order > 1:
            data = ndimage.spline_filter(data, order=order)

        output = np.empty(reference_image.shape)
        for slab, points in self._reference_points_by_slab(reference_image):
            if tfm is not None:
                points = tfm.transform_points(points)
            index = img.physical_to_index(points)
            values = ndimage.map_coordinates(
                data,
                index.T,
                order=order,
                mode="constant",
                cval=default_value,
                prefilter=False,
            )
            output[slab] = values.reshape((-1,) + reference_image.shape[1:])
        return reference_image.copy_with_data(output)

    def convert_transform_to_displacement_field(
        self, tfm, reference_image: Volume
    ) -> NDArray:
        """
        Sample ``tfm(x) - x`` on every voxel of the reference grid.

        Returns:
            NDArray: Physical displacements, shape reference_image.shape + (3,)
        """
        field = np.empty(reference_image.shape + (3,))
        for slab, points in self._reference_points_by_slab(reference_image):
            displacement = tfm.transform_points(points) - points
            field[slab] = displacement.reshape((-1,) + reference_image.shape[1:] + (3,))
        return field

    def compute_jacobian_determinant_from_field(
        self, field: NDArray, reference_image: Volume
    ) -> Volume:
        """Compute the Jacobian determinant of ``x + u(x)`` at each voxel.

        Derivatives are central differences (one-sided at the border) taken
        along the grid axes, divided by the voxel spacing and rotated into
        physical space with the grid direction. A value of 1 means no local
        volume change, values in (0, 1) compression, values above 1 expansion
        and values <= 0 folding.

        Args:
            field (NDArray): Displacements, shape reference_image.shape + (3,)
            reference_image (Volume): Grid the field is sampled on

        Returns:
            Volume: Determinant per voxel
        """
        gradients = np.zeros(reference_image.shape + (3, 3))
        for axis in range(3):
            if reference_image.shape[axis] < 2:
                continue
            gradients[..., :, axis] = np.gradient(
                field, reference_image.spacing[axis], axis=axis
            )
        # du/dp = (du/d axis) @ direction^T
        jacobian = np.eye(3) + gradients @ reference_image.direction.T
        determinant = np.linalg.det(jacobian)
        return reference_image.copy_with_data(determinant)

    def detect_folding_in_field(self, jacobian_det: Volume, threshold: float = 0.0) -> bool:
        """Return True when the smallest determinant is <= ``threshold``."""
        return bool(np.min(jacobian_det.data) <= threshold)

    def check_jacobian(self, tfm, reference_image: Volume) -> JacobianReport:
        """Evaluate the Jacobian determinant of a transform on a grid.

        Non-positive determinants indicate folding. This is reported as a
        warning for the caller to judge, not raised.
        """
        field = self.convert_transform_to_displacement_field(tfm, reference_image)
        jacobian = self.compute_jacobian_determinant_from_field(field, reference_image)
        report = JacobianReport(
            minimum=float(np.min(jacobian.data)),
            maximum=float(np.max(jacobian.data)),
            folding_detected=self.detect_folding_in_field(jacobian),
            jacobian=jacobian,
        )
        self.log_info(
            "Jacobian determinant range [%.4f, %.4f]", report.minimum, report.maximum
        )
        if report.folding_detected:
            self.log_warning(
                "Non-positive Jacobian determinant (%.4f): the deformation folds",
                report.minimum,
            )
        return report
