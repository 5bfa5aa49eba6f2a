"""
Bundle Adjustment module

Refines camera poses, camera intrinsics and optionally 3D structure of a
sparse reconstruction by minimizing reprojection error with a robust
nonlinear least-squares solver.

Key Features:
- Closed set of camera models (pinhole, radial K1/K3, Brown T2, fisheye)
- Per-category refinement flags (rotation, translation, focal, principal point,
  distortion, structure)
- Partial refinement driven by a reconstruction graph
- Manifold-aware pose updates and robust loss
- Dense and sparse solver presets

Usage:
    from sfmba.core.bundle_adjustment import BundleAdjuster, BARefine

    adjuster = BundleAdjuster(config)
    result = adjuster.adjust(sfm_data, BARefine.ALL)
"""

from .config import (
    BARefine,
    REFINE_ALL,
    BundleAdjustmentConfig,
    LinearSolverType,
    Preconditioner,
    ReconstructionGraphConfig,
    RobustLoss,
    RobustLossOptions,
    SolverOptions,
    SparseBackend,
)
from .camera_models import CameraModel, CameraModelSpec, UnsupportedCameraModelError, get_model_spec
from .residuals import ReprojectionResidual, ResidualFactory
from .robust_loss import RobustLossFunction
from .parameters import (
    FixityPolicy,
    ParameterBlock,
    ParameterBlockManager,
    extract_intrinsic_parameters,
    extract_pose_parameters,
)
from .reconstruction_graph import ReconstructionGraph, ReconstructionGraphBuilder, ViewNode
from .problem import DegenerateProblemError, ObservationStats, Problem, ProblemBuilder
from .solver import SolverDriver, SolverOutcome, SolverSummary
from .integrator import ResultIntegrator
from .adjuster import AdjustmentResult, BundleAdjuster, FailureReason

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "BARefine",
    "REFINE_ALL",
    "BundleAdjustmentConfig",
    "SolverOptions",
    "LinearSolverType",
    "SparseBackend",
    "Preconditioner",
    "RobustLoss",
    "RobustLossOptions",
    "ReconstructionGraphConfig",

    # Camera models / residuals / loss
    "CameraModel",
    "CameraModelSpec",
    "UnsupportedCameraModelError",
    "get_model_spec",
    "ReprojectionResidual",
    "ResidualFactory",
    "RobustLossFunction",

    # Parameter blocks
    "FixityPolicy",
    "ParameterBlock",
    "ParameterBlockManager",
    "extract_pose_parameters",
    "extract_intrinsic_parameters",

    # Reconstruction graph
    "ReconstructionGraph",
    "ReconstructionGraphBuilder",
    "ViewNode",

    # Problem / solver / integration
    "Problem",
    "ProblemBuilder",
    "ObservationStats",
    "DegenerateProblemError",
    "SolverDriver",
    "SolverOutcome",
    "SolverSummary",
    "ResultIntegrator",

    # Main entry point
    "BundleAdjuster",
    "AdjustmentResult",
    "FailureReason",
]
