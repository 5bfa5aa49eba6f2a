"""
Quality metrics for sparse reconstruction evaluation
"""

import numpy as np
import logging
from typing import Dict
from dataclasses import dataclass

from ..core.bundle_adjustment.camera_models import UnsupportedCameraModelError
from ..core.sfm_data import SfMData

logger = logging.getLogger(__name__)


def compute_reprojection_errors(sfm_data: SfMData) -> np.ndarray:
    """
    Pixel reprojection error norm of every resolvable observation

    Observations whose view, pose or intrinsic is missing, or whose intrinsic
    model is unsupported, are skipped.
    """
    errors = []
    for landmark in sfm_data.structure.values():
        for view_id, observation in landmark.observations.items():
            view = sfm_data.views.get(view_id)
            if not sfm_data.is_pose_and_intrinsic_defined(view):
                continue
            intrinsic = sfm_data.intrinsics[view.intrinsic_id]
            try:
                spec = intrinsic.spec
            except UnsupportedCameraModelError:
                continue
            point_cam = sfm_data.get_pose(view).transform(landmark.X)
            projected = spec.project(intrinsic.params, point_cam)
            errors.append(np.linalg.norm(projected - observation.x))
    return np.asarray(errors, dtype=np.float64)


@dataclass
class ReprojectionStatistics:
    """Summary of reprojection errors in pixels"""

    count: int
    mean: float
    median: float
    max: float
    rmse: float

    @classmethod
    def from_errors(cls, errors: np.ndarray) -> "ReprojectionStatistics":
        if errors.size == 0:
            nan = float("nan")
            return cls(count=0, mean=nan, median=nan, max=nan, rmse=nan)
        return cls(
            count=int(errors.size),
            mean=float(np.mean(errors)),
            median=float(np.median(errors)),
            max=float(np.max(errors)),
            rmse=float(np.sqrt(np.mean(errors ** 2))),
        )

    @classmethod
    def from_sfm_data(cls, sfm_data: SfMData) -> "ReprojectionStatistics":
        return cls.from_errors(compute_reprojection_errors(sfm_data))

    def to_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "mean": self.mean,
            "median": self.median,
            "max": self.max,
            "rmse": self.rmse,
        }
