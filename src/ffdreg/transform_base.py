"""Transform capability set shared by all FFDReg transforms.

Transforms are not related by inheritance. Any object providing the methods
of the ``Transform`` protocol can be optimized by the registration classes and
evaluated by the metric, the resampler and the Jacobian checker.

All transforms map fixed-space physical points to moving-space physical
points.
"""

from typing import Protocol

import numpy as np
from numpy.typing import NDArray


class Transform(Protocol):
    """Capability set of a parametric spatial transform."""

    def transform_points(self, points: NDArray) -> NDArray:
        """Map physical points, shape (N, 3)."""
        ...

    def get_parameters(self) -> NDArray:
        ...

    def set_parameters(self, parameters: NDArray) -> None:
        ...

    def get_number_of_parameters(self) -> int:
        ...

    def compute_jacobian_transpose_product(
        self, points: NDArray, vectors: NDArray
    ) -> NDArray:
        """Return ``sum_n J(points[n])^T @ vectors[n]``.

        ``J`` is the 3 x P derivative of the transformed point with respect to
        the parameters. The result has length P.
        """
        ...

    def copy(self) -> "Transform":
        ...


class ComposedTransform:
    """Transform ``initial(active(p))`` where only ``active`` is optimized.

    Used to seed deformable registration with a rigid result: the B-spline
    displacement is applied in fixed space and the rigid transform then maps
    the displaced point into moving space. ``initial`` must expose
    ``get_matrix()`` (it is linear), so its spatial Jacobian is constant.

    Args:
        active: The transform whose parameters are exposed and optimized
        initial: A linear transform applied after ``active``
    """

    def __init__(self, active, initial):
        self.active = active
        self.initial = initial

    def transform_points(self, points: NDArray) -> NDArray:
        return self.initial.transform_points(self.active.transform_points(points))

    def transform_point(self, point: NDArray) -> NDArray:
        return self.transform_points(np.asarray(point, dtype=np.float64)[None, :])[0]

    def get_parameters(self) -> NDArray:
        return self.active.get_parameters()

    def set_parameters(self, parameters: NDArray) -> None:
        self.active.set_parameters(parameters)

    def get_number_of_parameters(self) -> int:
        return self.active.get_number_of_parameters()

    def compute_jacobian_transpose_product(
        self, points: NDArray, vectors: NDArray
    ) -> NDArray:
        # d initial(q)/dq is the constant matrix of the linear transform
        matrix = self.initial.get_matrix()
        return self.active.compute_jacobian_transpose_product(
            points, np.asarray(vectors) @ matrix
        )

    def copy(self) -> "ComposedTransform":
        return ComposedTransform(self.active.copy(), self.initial.copy())
