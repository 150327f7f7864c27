"""Rigid transform parameterized by three Euler angles and a translation."""

import copy

import numpy as np
from numpy.typing import NDArray

from ffdreg.errors import ConfigurationError


def _rotation_x(angle: float) -> tuple[NDArray, NDArray]:
    c, s = np.cos(angle), np.sin(angle)
    rot = np.array([[1.0, 0.0, 0.0], [0.0, c, -s], [0.0, s, c]])
    d_rot = np.array([[0.0, 0.0, 0.0], [0.0, -s, -c], [0.0, c, -s]])
    return rot, d_rot


def _rotation_y(angle: float) -> tuple[NDArray, NDArray]:
    c, s = np.cos(angle), np.sin(angle)
    rot = np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])
    d_rot = np.array([[-s, 0.0, c], [0.0, 0.0, 0.0], [-c, 0.0, -s]])
    return rot, d_rot


def _rotation_z(angle: float) -> tuple[NDArray, NDArray]:
    c, s = np.cos(angle), np.sin(angle)
    rot = np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])
    d_rot = np.array([[-s, -c, 0.0], [c, -s, 0.0], [0.0, 0.0, 0.0]])
    return rot, d_rot


class Euler3DTransform:
    """Rigid 3-D transform about a fixed centre.

    Parameters are ``[angle_x, angle_y, angle_z, tx, ty, tz]`` with angles in
    radians and translations in physical units. The rotation matrix is
    ``R = Rz @ Ry @ Rx``: a vector is rotated about X first, then Y, then Z.
    The centre is a fixed parameter, not optimized.

        T(p) = R (p - center) + center + translation

    Example:
        >>> tfm = Euler3DTransform(center=[16.0, 16.0, 16.0])
        >>> tfm.set_parameters([0, 0, 0, 2.0, 0, 0])
        >>> tfm.transform_point([0.0, 0.0, 0.0])
        array([2., 0., 0.])
    """

    NUMBER_OF_PARAMETERS = 6

    def __init__(self, center=None):
        self.center = np.zeros(3) if center is None else np.asarray(center, dtype=np.float64)
        self.parameters = np.zeros(self.NUMBER_OF_PARAMETERS)

    def set_center(self, center) -> None:
        self.center = np.asarray(center, dtype=np.float64).reshape(3)

    def get_center(self) -> NDArray:
        return self.center.copy()

    def set_identity(self) -> None:
        self.parameters = np.zeros(self.NUMBER_OF_PARAMETERS)

    def get_parameters(self) -> NDArray:
        return self.parameters.copy()

    def set_parameters(self, parameters) -> None:
        parameters = np.asarray(parameters, dtype=np.float64).reshape(-1)
        if parameters.size != self.NUMBER_OF_PARAMETERS:
            raise ConfigurationError(
                f"Euler3DTransform expects {self.NUMBER_OF_PARAMETERS} parameters, "
                f"got {parameters.size}"
            )
        self.parameters = parameters.copy()

    def get_number_of_parameters(self) -> int:
        return self.NUMBER_OF_PARAMETERS

    def _rotation_and_derivatives(self) -> tuple[NDArray, list[NDArray]]:
        rot_x, d_rot_x = _rotation_x(self.parameters[0])
        rot_y, d_rot_y = _rotation_y(self.parameters[1])
        rot_z, d_rot_z = _rotation_z(self.parameters[2])
        rot = rot_z @ rot_y @ rot_x
        d_rot = [
            rot_z @ rot_y @ d_rot_x,
            rot_z @ d_rot_y @ rot_x,
            d_rot_z @ rot_y @ rot_x,
        ]
        return rot, d_rot

    def get_matrix(self) -> NDArray:
        return self._rotation_and_derivatives()[0]

    def get_translation(self) -> NDArray:
        return self.parameters[3:].copy()

    def get_offset(self) -> NDArray:
        """Offset ``o`` such that ``T(p) = R p + o``."""
        rot = self.get_matrix()
        return self.center + self.parameters[3:] - rot @ self.center

    def transform_points(self, points: NDArray) -> NDArray:
        points = np.asarray(points, dtype=np.float64)
        rot = self.get_matrix()
        return (points - self.center) @ rot.T + self.center + self.parameters[3:]

    def transform_point(self, point) -> NDArray:
        return self.transform_points(np.asarray(point, dtype=np.float64)[None, :])[0]

    def compute_jacobian_transpose_product(
        self, points: NDArray, vectors: NDArray
    ) -> NDArray:
        points = np.asarray(points, dtype=np.float64)
        vectors = np.asarray(vectors, dtype=np.float64)
        _, d_rot = self._rotation_and_derivatives()
        centered = points - self.center

        gradient = np.zeros(self.NUMBER_OF_PARAMETERS)
        for axis in range(3):
            gradient[axis] = np.sum(vectors * (centered @ d_rot[axis].T))
        gradient[3:] = vectors.sum(axis=0)
        return gradient

    def copy(self) -> "Euler3DTransform":
        return copy.deepcopy(self)
