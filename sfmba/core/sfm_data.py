"""
Reconstruction data model

Views, poses, intrinsics and landmarks as they come out of an SfM pipeline.
The bundle adjustment core reads these structures and only writes them back
through the result integrator.
"""

from __future__ import annotations

import numpy as np
from typing import Dict, Optional, Union, TYPE_CHECKING
from dataclasses import dataclass, field

if TYPE_CHECKING:
    from .bundle_adjustment.camera_models import CameraModel, CameraModelSpec


@dataclass
class Pose:
    """Rigid world-to-camera transform stored as rotation + camera center"""

    rotation: np.ndarray  # (3, 3) world -> camera
    center: np.ndarray  # (3,) camera center in world coordinates

    def __post_init__(self):
        self.rotation = np.asarray(self.rotation, dtype=np.float64).reshape(3, 3)
        self.center = np.asarray(self.center, dtype=np.float64).reshape(3)

    @property
    def translation(self) -> np.ndarray:
        """t such that X_cam = R @ X + t"""
        return -self.rotation @ self.center

    @classmethod
    def from_rotation_translation(cls, rotation: np.ndarray, translation: np.ndarray) -> "Pose":
        rotation = np.asarray(rotation, dtype=np.float64).reshape(3, 3)
        translation = np.asarray(translation, dtype=np.float64).reshape(3)
        return cls(rotation=rotation, center=-rotation.T @ translation)

    def transform(self, X: np.ndarray) -> np.ndarray:
        """Map world point(s) (..., 3) into the camera frame"""
        return (np.asarray(X, dtype=np.float64) - self.center) @ self.rotation.T

    def copy(self) -> "Pose":
        return Pose(self.rotation.copy(), self.center.copy())


@dataclass
class Intrinsic:
    """Camera intrinsic: model variant plus its parameter vector"""

    model: Union["CameraModel", str]
    params: np.ndarray
    width: int = 0
    height: int = 0

    def __post_init__(self):
        self.params = np.asarray(self.params, dtype=np.float64).reshape(-1)

    @property
    def camera_model(self) -> "CameraModel":
        """Resolve the model variant (raises UnsupportedCameraModelError)"""
        from .bundle_adjustment.camera_models import CameraModel
        return CameraModel.parse(self.model)

    @property
    def spec(self) -> "CameraModelSpec":
        """Parameter layout of the resolved variant (raises UnsupportedCameraModelError)"""
        from .bundle_adjustment.camera_models import get_model_spec
        return get_model_spec(self.camera_model)

    @property
    def focal(self) -> float:
        return float(self.params[0])

    @property
    def principal_point(self) -> np.ndarray:
        return self.params[1:3].copy()

    def copy(self) -> "Intrinsic":
        return Intrinsic(self.model, self.params.copy(), self.width, self.height)


@dataclass
class View:
    """Binds an image to a pose id and an intrinsic id"""

    view_id: int
    pose_id: int
    intrinsic_id: int
    image_path: str = ""


@dataclass
class Observation:
    """2D measurement of a landmark in one view"""

    x: np.ndarray  # (2,) pixel coordinates
    feature_id: int = -1

    def __post_init__(self):
        self.x = np.asarray(self.x, dtype=np.float64).reshape(2)


@dataclass
class Landmark:
    """3D point with its observations keyed by view id"""

    X: np.ndarray
    observations: Dict[int, Observation] = field(default_factory=dict)

    def __post_init__(self):
        self.X = np.asarray(self.X, dtype=np.float64).reshape(3)

    def track_length(self) -> int:
        return len(self.observations)


@dataclass
class SfMData:
    """Container for a sparse reconstruction"""

    views: Dict[int, View] = field(default_factory=dict)
    poses: Dict[int, Pose] = field(default_factory=dict)
    intrinsics: Dict[int, Intrinsic] = field(default_factory=dict)
    structure: Dict[int, Landmark] = field(default_factory=dict)

    def is_pose_and_intrinsic_defined(self, view: Optional[View]) -> bool:
        if view is None:
            return False
        return view.pose_id in self.poses and view.intrinsic_id in self.intrinsics

    def get_pose(self, view: View) -> Pose:
        return self.poses[view.pose_id]

    def __repr__(self) -> str:
        return (
            f"SfMData(views={len(self.views)}, poses={len(self.poses)}, "
            f"intrinsics={len(self.intrinsics)}, landmarks={len(self.structure)})"
        )
