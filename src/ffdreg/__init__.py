"""
FFDReg - Multi-resolution rigid and B-spline FFD registration of 3-D volumes.

Volumes are aligned by maximizing Mattes mutual information with limited-memory
quasi-Newton optimizers over a coarse-to-fine pyramid. Deformable registration
refines a cubic B-spline control point lattice between levels and reports the
Jacobian determinant of the result to flag folding.

Main Components:
    - Volume: 3-D samples with spacing, origin and direction
    - Euler3DTransform, BSplineTransform, ComposedTransform: Transform models
    - MattesMutualInformationMetric: Similarity metric with analytic gradient
    - LBFGSOptimizer, LBFGSBOptimizer: Optimizers
    - ImagePyramid: Validated multi-resolution schedule
    - RegisterImagesRigid, RegisterImagesBSpline: Registration methods
    - WorkflowRegisterImages: Rigid then deformable pipeline
    - ImageTools, TransformTools: I/O, resampling and Jacobian checks
    - FFDRegBase: Base class with standardized logging
"""

__version__ = "2026.10.0"

from .errors import (
    ConfigurationError,
    DegenerateOverlapError,
    EncodeError,
    GeometryMismatchError,
    OptimizerStallError,
    RegistrationError,
    VolumeDecodeError,
)

# Base classes
from .ffdreg_base import FFDRegBase

# Data model
from .volume import Volume

# Transforms
from .transform_base import ComposedTransform, Transform
from .transform_bspline import BSplineTransform
from .transform_euler3d import Euler3DTransform

# Registration components
from .image_pyramid import ImagePyramid, PyramidLevel
from .metric_mattes_mi import MattesMutualInformationMetric
from .optimizer_lbfgs import LBFGSBOptimizer, LBFGSOptimizer, OptimizerState, StopReason

# Registration classes
from .register_images_base import LevelResult, RegisterImagesBase
from .register_images_bspline import RegisterImagesBSpline
from .register_images_rigid import RegisterImagesRigid

# Utility classes
from .image_tools import ImageTools
from .transform_tools import JacobianReport, TransformTools

# Workflows
from .workflow_register_images import WorkflowRegisterImages

__all__ = [
    "BSplineTransform",
    "ComposedTransform",
    "ConfigurationError",
    "DegenerateOverlapError",
    "EncodeError",
    "Euler3DTransform",
    "FFDRegBase",
    "GeometryMismatchError",
    "ImagePyramid",
    "ImageTools",
    "JacobianReport",
    "LBFGSBOptimizer",
    "LBFGSOptimizer",
    "LevelResult",
    "MattesMutualInformationMetric",
    "OptimizerStallError",
    "OptimizerState",
    "PyramidLevel",
    "RegisterImagesBSpline",
    "RegisterImagesBase",
    "RegisterImagesRigid",
    "RegistrationError",
    "StopReason",
    "Transform",
    "TransformTools",
    "Volume",
    "VolumeDecodeError",
    "WorkflowRegisterImages",
]
