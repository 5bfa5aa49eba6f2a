"""
SfM Bundle Adjustment Package
Refinement of camera poses, intrinsics and structure for sparse reconstructions
"""

__version__ = "0.1.0"


# Lazy imports - only import when actually used
def __getattr__(name):
    """Lazy import for module attributes"""

    if name in ("SfMData", "Pose", "Intrinsic", "View", "Landmark", "Observation"):
        from .core import sfm_data
        return getattr(sfm_data, name)
    elif name in ("BundleAdjuster", "BundleAdjustmentConfig", "BARefine", "SolverOptions",
                  "ReconstructionGraph", "ReconstructionGraphBuilder", "CameraModel"):
        from .core import bundle_adjustment
        return getattr(bundle_adjustment, name)
    elif name == "ReprojectionStatistics":
        from .utils.quality_metrics import ReprojectionStatistics
        return ReprojectionStatistics

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "SfMData",
    "Pose",
    "Intrinsic",
    "View",
    "Landmark",
    "Observation",
    "BundleAdjuster",
    "BundleAdjustmentConfig",
    "BARefine",
    "SolverOptions",
    "ReconstructionGraph",
    "ReconstructionGraphBuilder",
    "CameraModel",
    "ReprojectionStatistics",
]
