"""
Reprojection residuals

One residual per 2D observation:
    r = π(K, R·X + t) - x_obs

Parameter blocks seen by a residual:
    pose       [angle_axis(3), t(3)]
    intrinsic  model-specific layout (see camera_models)
    point      X(3)

Pose derivatives are taken with respect to a left rotation increment
(R <- exp([ε]x)·R) and a translation increment, which is what the pose
manifold in ``parameters`` expects.
"""

import cv2
import numpy as np
import logging
from typing import Optional, Tuple

from .camera_models import CameraModelSpec, UnsupportedCameraModelError, FOCAL_INDEX
from ..sfm_data import Intrinsic, Observation

logger = logging.getLogger(__name__)

# Relative step for central differences
NUMERIC_DIFF_STEP = 1e-6


def angle_axis_to_rotation(angle_axis: np.ndarray) -> np.ndarray:
    R, _ = cv2.Rodrigues(np.asarray(angle_axis, dtype=np.float64).reshape(3, 1))
    return R


def rotation_to_angle_axis(rotation: np.ndarray) -> np.ndarray:
    rvec, _ = cv2.Rodrigues(np.asarray(rotation, dtype=np.float64).reshape(3, 3))
    return rvec.reshape(3)


def skew(v: np.ndarray) -> np.ndarray:
    return np.array([
        [0.0, -v[2], v[1]],
        [v[2], 0.0, -v[0]],
        [-v[1], v[0], 0.0],
    ])


class ReprojectionResidual:
    """Pixel reprojection error of a single observation"""

    num_residuals = 2
    pose_size = 6
    point_size = 3

    def __init__(self, spec: CameraModelSpec, observation: np.ndarray):
        self.spec = spec
        self.observation = np.asarray(observation, dtype=np.float64).reshape(2)

    @property
    def intrinsic_size(self) -> int:
        return self.spec.num_params

    @property
    def parameter_sizes(self) -> Tuple[int, int, int]:
        return self.pose_size, self.intrinsic_size, self.point_size

    def evaluate(
        self,
        pose_params: np.ndarray,
        intrinsic_params: np.ndarray,
        point: np.ndarray,
        rotation: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Args:
            pose_params: [angle_axis, t]
            intrinsic_params: model parameter vector
            point: world point
            rotation: precomputed rotation matrix for pose_params (optional)

        Returns:
            Projected minus observed pixel, shape (2,)
        """
        if rotation is None:
            rotation = angle_axis_to_rotation(pose_params[:3])
        point_cam = rotation @ point + pose_params[3:6]
        return self.spec.project(intrinsic_params, point_cam) - self.observation

    def evaluate_with_jacobians(
        self,
        pose_params: np.ndarray,
        intrinsic_params: np.ndarray,
        point: np.ndarray,
        rotation: Optional[np.ndarray] = None,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Returns:
            (residual (2,), J_pose (2, 6), J_intrinsic (2, k), J_point (2, 3))
        """
        if rotation is None:
            rotation = angle_axis_to_rotation(pose_params[:3])
        rotated = rotation @ point
        point_cam = rotated + pose_params[3:6]
        projected = self.spec.project(intrinsic_params, point_cam)
        residual = projected - self.observation

        d_pix_d_cam = self._projection_jacobian(intrinsic_params, point_cam)

        J_pose = np.empty((2, 6))
        J_pose[:, :3] = d_pix_d_cam @ -skew(rotated)
        J_pose[:, 3:] = d_pix_d_cam
        J_point = d_pix_d_cam @ rotation
        J_intrinsic = self._intrinsic_jacobian(intrinsic_params, point_cam)

        return residual, J_pose, J_intrinsic, J_point

    def _projection_jacobian(self, params: np.ndarray, point_cam: np.ndarray) -> np.ndarray:
        """d(pixel) / d(camera-frame point), shape (2, 3)"""
        z = point_cam[2]
        if abs(z) < 1e-12:
            z = 1e-12
        xy = point_cam[:2] / z
        d_xy_d_cam = np.array([
            [1.0 / z, 0.0, -xy[0] / z],
            [0.0, 1.0 / z, -xy[1] / z],
        ])

        # Distortion Jacobian by central differences on normalized coordinates
        d_dist = np.empty((2, 2))
        for i in range(2):
            h = NUMERIC_DIFF_STEP * max(abs(xy[i]), 1.0)
            step = np.zeros(2)
            step[i] = h
            plus = self.spec.distort_normalized(xy + step, params)
            minus = self.spec.distort_normalized(xy - step, params)
            d_dist[:, i] = (plus - minus) / (2.0 * h)

        return params[FOCAL_INDEX] * d_dist @ d_xy_d_cam

    def _intrinsic_jacobian(self, params: np.ndarray, point_cam: np.ndarray) -> np.ndarray:
        J = np.empty((2, params.size))
        for i in range(params.size):
            h = NUMERIC_DIFF_STEP * max(abs(params[i]), 1.0)
            plus = params.copy()
            minus = params.copy()
            plus[i] += h
            minus[i] -= h
            J[:, i] = (self.spec.project(plus, point_cam) - self.spec.project(minus, point_cam)) / (2.0 * h)
        return J

    def __repr__(self) -> str:
        return f"ReprojectionResidual(model={self.spec.model.value}, observation={self.observation.tolist()})"


class ResidualFactory:
    """Creates the reprojection residual matching an intrinsic's model"""

    def create(self, intrinsic: Intrinsic, observation: Observation) -> ReprojectionResidual:
        """
        Raises:
            UnsupportedCameraModelError: the intrinsic variant has no implementation
                or its parameter vector does not match the variant's layout
        """
        spec = intrinsic.spec
        try:
            spec.validate(intrinsic.params)
        except ValueError as e:
            raise UnsupportedCameraModelError(str(e)) from e
        return ReprojectionResidual(spec, observation.x)


__all__ = [
    "ReprojectionResidual",
    "ResidualFactory",
    "UnsupportedCameraModelError",
    "angle_axis_to_rotation",
    "rotation_to_angle_axis",
]
