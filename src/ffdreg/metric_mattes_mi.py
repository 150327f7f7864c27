"""Mattes mutual information between a fixed and a transformed moving volume.

The metric follows Mattes et al. (2003), "PET-CT image registration in the
chest using free-form deformations":

- a fixed-size, seeded random sample of fixed voxel positions is drawn once
  per pyramid level (restricted to a fixed mask when one is given)
- fixed intensities are binned with a zero-order (box) Parzen window
- moving intensities, linearly interpolated at the transformed sample
  positions, are binned with a cubic B-spline Parzen window so that the joint
  histogram is differentiable with respect to the transform parameters
- two padding bins are kept on each side of the intensity range

The value returned is the negative mutual information, so lower is better.
The derivative is analytic:

    dMI/dmu = 1/N sum_s sum_o log(p(f_s, m_o) / p(m_o))
              * dB3(m_o - term_s)/dm * (grad M(T(x_s)) . dT/dmu)

where the moving marginal term is the only one depending on the transform.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from numpy.typing import NDArray

from ffdreg.errors import ConfigurationError, DegenerateOverlapError
from ffdreg.ffdreg_base import FFDRegBase

HISTOGRAM_PADDING = 2


def cubic_bspline_kernel(x: NDArray) -> NDArray:
    """Centred cubic B-spline B3(x), support (-2, 2)."""
    ax = np.abs(x)
    return np.where(
        ax < 1.0,
        (4.0 - 6.0 * ax * ax + 3.0 * ax * ax * ax) / 6.0,
        np.where(ax < 2.0, (2.0 - ax) ** 3 / 6.0, 0.0),
    )


def cubic_bspline_kernel_derivative(x: NDArray) -> NDArray:
    """Derivative of ``cubic_bspline_kernel``."""
    ax = np.abs(x)
    return np.where(
        ax < 1.0,
        -2.0 * x + 1.5 * x * ax,
        np.where(ax < 2.0, -0.5 * (2.0 - ax) ** 2 * np.sign(x), 0.0),
    )


def interpolate_trilinear(
    data: NDArray, index: NDArray
) -> tuple[NDArray, NDArray, NDArray]:
    """Trilinear value and index-space gradient at continuous indices.

    The gradient is the exact derivative of the trilinear interpolant, so the
    metric value and derivative stay consistent for the line search.

    Args:
        data: Volume samples indexed [i, j, k]
        index: Continuous indices, shape (N, 3)

    Returns:
        Tuple (values (N,), gradients (N, 3), inside (N,) bool). Values and
        gradients of points outside the buffer are zero.
    """
    shape = np.array(data.shape)
    upper = shape - 1
    inside = np.all((index >= 0.0) & (index <= upper), axis=1)

    base = np.clip(np.floor(index), 0, np.maximum(upper - 1, 0)).astype(np.int64)
    fraction = np.clip(index - base, 0.0, 1.0)
    # single-sample axes have no neighbour
    step = (shape > 1).astype(np.int64)
    fraction = fraction * step

    values = np.zeros(index.shape[0])
    gradients = np.zeros((index.shape[0], 3))
    for corner in range(8):
        offsets = np.array([(corner >> 2) & 1, (corner >> 1) & 1, corner & 1])
        weights = np.where(offsets == 1, fraction, 1.0 - fraction)
        sample = data[
            base[:, 0] + offsets[0] * step[0],
            base[:, 1] + offsets[1] * step[1],
            base[:, 2] + offsets[2] * step[2],
        ]
        values += sample * weights[:, 0] * weights[:, 1] * weights[:, 2]
        signs = np.where(offsets == 1, 1.0, -1.0)
        gradients[:, 0] += sample * signs[0] * weights[:, 1] * weights[:, 2]
        gradients[:, 1] += sample * signs[1] * weights[:, 0] * weights[:, 2]
        gradients[:, 2] += sample * signs[2] * weights[:, 0] * weights[:, 1]
    gradients *= step

    values[~inside] = 0.0
    gradients[~inside] = 0.0
    return values, gradients, inside


class MattesMutualInformationMetric(FFDRegBase):
    """Mattes mutual information with analytic parameter derivative.

    Attributes:
        number_of_histogram_bins (int): Bins per axis of the joint histogram
        number_of_samples (int | None): Number of fixed voxels sampled, or None
            to use every voxel inside the mask
        random_seed (int): Seed of the sample selection
        minimum_valid_fraction (float): Fraction of samples that must map
            inside the moving volume
        number_of_threads (int): Worker threads for the per-sample
            accumulation
        number_of_valid_samples (int): Valid samples of the last evaluation
        last_value (float | None): Value of the last evaluation

    Example:
        >>> metric = MattesMutualInformationMetric(number_of_histogram_bins=50)
        >>> metric.initialize(fixed_volume, moving_volume)
        >>> value, gradient = metric.get_value_and_derivative(transform)
    """

    def __init__(
        self,
        number_of_histogram_bins: int = 50,
        number_of_samples: int | None = None,
        random_seed: int = 121212,
        minimum_valid_fraction: float = 0.1,
        number_of_threads: int = 1,
        log_level: int | str = logging.INFO,
    ):
        super().__init__(class_name=self.__class__.__name__, log_level=log_level)

        if number_of_histogram_bins < 5:
            raise ConfigurationError(
                f"At least 5 histogram bins are required, got {number_of_histogram_bins}"
            )
        if number_of_samples is not None and number_of_samples < 1:
            raise ConfigurationError(
                f"Number of samples must be positive, got {number_of_samples}"
            )
        if not 0.0 < minimum_valid_fraction <= 1.0:
            raise ConfigurationError(
                f"Minimum valid fraction must be in (0, 1], got {minimum_valid_fraction}"
            )
        if number_of_threads < 1:
            raise ConfigurationError(
                f"Number of threads must be >= 1, got {number_of_threads}"
            )

        self.number_of_histogram_bins = int(number_of_histogram_bins)
        self.number_of_samples = number_of_samples
        self.random_seed = random_seed
        self.minimum_valid_fraction = minimum_valid_fraction
        self.number_of_threads = int(number_of_threads)

        self.sample_points = None
        self.fixed_bins = None
        self.moving_data = None
        self.moving_origin = None
        self.moving_direction = None
        self.moving_spacing = None

        self.moving_bin_size = 1.0
        self.moving_normalized_min = 0.0

        self.number_of_valid_samples = 0
        self.last_value = None

    def _histogram_limits(self, data: NDArray) -> tuple[float, float]:
        """Bin size and normalized minimum for an intensity range."""
        lower = float(np.min(data))
        upper = float(np.max(data))
        usable_bins = self.number_of_histogram_bins - 2 * HISTOGRAM_PADDING
        bin_size = (upper - lower) / usable_bins
        if bin_size <= 0:
            bin_size = 1.0
        return bin_size, lower / bin_size - HISTOGRAM_PADDING

    def initialize(self, fixed_volume, moving_volume, fixed_mask=None) -> None:
        """Draw the fixed samples and set the histogram geometry for a level.

        Args:
            fixed_volume (Volume): Fixed volume of the current level
            moving_volume (Volume): Moving volume of the current level
            fixed_mask (Volume, optional): Samples are drawn where mask > 0

        Raises:
            ConfigurationError: If the mask has a different grid or is empty, or
                either volume holds NaN or infinite intensities
        """
        for role, volume in (("Fixed", fixed_volume), ("Moving", moving_volume)):
            non_finite = np.count_nonzero(~np.isfinite(volume.data))
            if non_finite:
                raise ConfigurationError(
                    f"{role} volume contains {non_finite} non-finite intensities"
                )

        indices = fixed_volume.get_voxel_indices()
        if fixed_mask is not None:
            if fixed_mask.shape != fixed_volume.shape:
                raise ConfigurationError(
                    f"Fixed mask shape {fixed_mask.shape} does not match fixed "
                    f"volume shape {fixed_volume.shape}"
                )
            indices = indices[fixed_mask.data.reshape(-1) > 0]
            if indices.shape[0] == 0:
                raise ConfigurationError("Fixed mask contains no foreground voxels")

        if self.number_of_samples is not None and self.number_of_samples < indices.shape[0]:
            rng = np.random.default_rng(self.random_seed)
            chosen = np.sort(
                rng.choice(indices.shape[0], size=self.number_of_samples, replace=False)
            )
            indices = indices[chosen]

        self.sample_points = fixed_volume.index_to_physical(indices)
        fixed_values = fixed_volume.data[indices[:, 0], indices[:, 1], indices[:, 2]]

        fixed_bin_size, fixed_normalized_min = self._histogram_limits(fixed_volume.data)
        fixed_term = fixed_values / fixed_bin_size - fixed_normalized_min
        self.fixed_bins = np.clip(
            np.floor(fixed_term).astype(np.int64),
            HISTOGRAM_PADDING,
            self.number_of_histogram_bins - HISTOGRAM_PADDING - 1,
        )

        self.moving_bin_size, self.moving_normalized_min = self._histogram_limits(
            moving_volume.data
        )
        self.moving_data = np.asarray(moving_volume.data, dtype=np.float64)
        self.moving_origin = moving_volume.origin
        self.moving_direction = moving_volume.direction
        self.moving_spacing = moving_volume.spacing

        self.log_debug(
            "Metric initialized with %d samples and %d bins",
            self.sample_points.shape[0],
            self.number_of_histogram_bins,
        )

    def _partitions(self) -> list[slice]:
        count = self.sample_points.shape[0]
        bounds = np.linspace(0, count, self.number_of_threads + 1).astype(int)
        return [slice(bounds[i], bounds[i + 1]) for i in range(self.number_of_threads)]

    def _map(self, function, partitions):
        if self.number_of_threads == 1:
            return [function(part) for part in partitions]
        with ThreadPoolExecutor(max_workers=self.number_of_threads) as executor:
            return list(executor.map(function, partitions))

    def _accumulate_histogram(self, transform, part: slice) -> dict:
        """Transform, interpolate and histogram one partition of samples."""
        bins = self.number_of_histogram_bins
        points = self.sample_points[part]
        moved = transform.transform_points(points)
        moving_index = (
            (moved - self.moving_origin) @ self.moving_direction
        ) / self.moving_spacing
        values, index_gradients, inside = interpolate_trilinear(
            self.moving_data, moving_index
        )

        fixed_bins = self.fixed_bins[part][inside]
        moving_term = values[inside] / self.moving_bin_size - self.moving_normalized_min
        moving_start = np.clip(np.floor(moving_term).astype(np.int64) - 1, 0, bins - 4)
        offsets = moving_start[:, None] + np.arange(4)[None, :]
        arguments = offsets - moving_term[:, None]
        weights = cubic_bspline_kernel(arguments)

        histogram = np.zeros(bins * bins)
        flat = fixed_bins[:, None] * bins + offsets
        histogram += np.bincount(
            flat.reshape(-1), weights=weights.reshape(-1), minlength=bins * bins
        )

        physical_gradients = (
            index_gradients[inside] / self.moving_spacing
        ) @ self.moving_direction.T

        return {
            "points": points[inside],
            "flat": flat,
            "arguments": arguments,
            "moving_gradients": physical_gradients,
            "histogram": histogram.reshape(bins, bins),
            "valid": int(np.count_nonzero(inside)),
        }

    def _evaluate(self, transform, compute_derivative: bool):
        if self.sample_points is None:
            raise ConfigurationError("Metric must be initialized before evaluation")

        partitions = self._partitions()
        partials = self._map(
            lambda part: self._accumulate_histogram(transform, part), partitions
        )

        total = self.sample_points.shape[0]
        valid = sum(partial["valid"] for partial in partials)
        self.number_of_valid_samples = valid
        if valid < self.minimum_valid_fraction * total or valid == 0:
            raise DegenerateOverlapError(
                f"Only {valid} of {total} metric samples map inside the moving volume"
            )

        joint = sum(partial["histogram"] for partial in partials)
        joint_pdf = joint / joint.sum()
        fixed_pdf = joint_pdf.sum(axis=1)
        moving_pdf = joint_pdf.sum(axis=0)

        nonzero = joint_pdf > 0
        denominator = np.outer(fixed_pdf, moving_pdf)
        mutual_information = float(
            np.sum(joint_pdf[nonzero] * np.log(joint_pdf[nonzero] / denominator[nonzero]))
        )
        self.last_value = -mutual_information

        if not compute_derivative:
            return self.last_value, None

        log_ratio = np.zeros_like(joint_pdf)
        ratio_mask = nonzero & (moving_pdf[None, :] > 0)
        log_ratio[ratio_mask] = np.log(
            joint_pdf[ratio_mask] / np.broadcast_to(moving_pdf, joint_pdf.shape)[ratio_mask]
        )
        log_ratio = log_ratio.reshape(-1)
        scale = -1.0 / (joint.sum() * self.moving_bin_size)

        def accumulate_derivative(partial):
            if partial["valid"] == 0:
                return np.zeros(transform.get_number_of_parameters())
            d_weights = cubic_bspline_kernel_derivative(partial["arguments"])
            coefficient = scale * np.sum(log_ratio[partial["flat"]] * d_weights, axis=1)
            vectors = coefficient[:, None] * partial["moving_gradients"]
            return transform.compute_jacobian_transpose_product(partial["points"], vectors)

        derivative = sum(self._map(accumulate_derivative, partials))
        # value is -MI
        return self.last_value, -derivative

    def get_value(self, transform) -> float:
        """Negative mutual information for the transform's current parameters."""
        value, _ = self._evaluate(transform, compute_derivative=False)
        return value

    def get_value_and_derivative(self, transform) -> tuple[float, NDArray]:
        """Negative mutual information and its derivative w.r.t. the parameters.

        Raises:
            DegenerateOverlapError: If fewer than ``minimum_valid_fraction`` of
                the samples map inside the moving volume
        """
        return self._evaluate(transform, compute_derivative=True)

    def evaluate(
        self, transform, fixed_volume, moving_volume, fixed_mask=None
    ) -> tuple[float, NDArray]:
        """Initialize on a volume pair and return value and derivative."""
        self.initialize(fixed_volume, moving_volume, fixed_mask=fixed_mask)
        return self.get_value_and_derivative(transform)
