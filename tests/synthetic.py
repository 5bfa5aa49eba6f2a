"""
Synthetic reconstructions shared by the test modules
"""

import numpy as np
from typing import List, Optional
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sfmba.core.sfm_data import Intrinsic, Landmark, Observation, Pose, SfMData, View
from sfmba.core.bundle_adjustment.camera_models import CameraModel, get_model_spec
from sfmba.core.bundle_adjustment.residuals import angle_axis_to_rotation

# Three cameras about 5 units in front of a unit cube, looking down +z
CAMERA_CENTERS = [
    np.array([-1.0, 0.0, -5.0]),
    np.array([0.0, 0.2, -5.0]),
    np.array([1.0, 0.0, -5.0]),
]
CAMERA_ANGLE_AXES = [
    np.array([0.0, 0.15, 0.0]),
    np.array([0.02, 0.0, 0.01]),
    np.array([0.0, -0.15, 0.02]),
]

PINHOLE_PARAMS = np.array([800.0, 320.0, 240.0])


def look_at_poses(num_views: int = 8, radius: float = 5.0,
                  max_yaw: float = np.radians(60.0), elevation: float = 0.25) -> List[Pose]:
    """Cameras on an arc around the origin, all looking at it, alternating above and below"""
    poses = []
    for i, yaw in enumerate(np.linspace(-max_yaw, max_yaw, num_views)):
        tilt = elevation if i % 2 == 0 else -elevation
        center = radius * np.array([
            np.cos(tilt) * np.sin(yaw),
            np.sin(tilt),
            -np.cos(tilt) * np.cos(yaw),
        ])
        z = -center / np.linalg.norm(center)
        x = np.cross([0.0, 1.0, 0.0], z)
        x /= np.linalg.norm(x)
        y = np.cross(z, x)
        poses.append(Pose(np.vstack([x, y, z]), center))
    return poses


def make_scene(
    num_landmarks: int = 20,
    seed: int = 0,
    model: CameraModel = CameraModel.PINHOLE,
    params: np.ndarray = None,
    poses: Optional[List[Pose]] = None,
) -> SfMData:
    """Exact observations: every landmark projects onto its observations"""
    rng = np.random.default_rng(seed)
    params = PINHOLE_PARAMS.copy() if params is None else np.asarray(params, dtype=np.float64)
    spec = get_model_spec(model)

    sfm_data = SfMData()
    sfm_data.intrinsics[0] = Intrinsic(model, params, width=640, height=480)

    if poses is None:
        poses = [
            Pose(angle_axis_to_rotation(angle_axis), center)
            for center, angle_axis in zip(CAMERA_CENTERS, CAMERA_ANGLE_AXES)
        ]
    for i, pose in enumerate(poses):
        sfm_data.poses[i] = pose.copy()
        sfm_data.views[i] = View(view_id=i, pose_id=i, intrinsic_id=0, image_path=f"img{i}.jpg")

    for landmark_id in range(num_landmarks):
        X = rng.uniform(-1.0, 1.0, size=3)
        landmark = Landmark(X)
        for view_id, view in sfm_data.views.items():
            pose = sfm_data.poses[view.pose_id]
            x = spec.project(params, pose.transform(X))
            landmark.observations[view_id] = Observation(x, feature_id=landmark_id)
        sfm_data.structure[landmark_id] = landmark

    return sfm_data


def perturb_poses(sfm_data: SfMData, rotation_noise: float = 0.01,
                  center_noise: float = 0.05, seed: int = 1, pose_ids=None) -> None:
    """Apply a small random rotation and center offset to the selected poses"""
    rng = np.random.default_rng(seed)
    pose_ids = list(sfm_data.poses) if pose_ids is None else pose_ids
    for pose_id in pose_ids:
        pose = sfm_data.poses[pose_id]
        delta = angle_axis_to_rotation(rng.normal(scale=rotation_noise, size=3))
        sfm_data.poses[pose_id] = Pose(
            delta @ pose.rotation,
            pose.center + rng.normal(scale=center_noise, size=3),
        )


def add_observation_noise(sfm_data: SfMData, sigma: float = 1.0, seed: int = 2) -> None:
    rng = np.random.default_rng(seed)
    for landmark in sfm_data.structure.values():
        for observation in landmark.observations.values():
            observation.x = observation.x + rng.normal(scale=sigma, size=2)


def snapshot(sfm_data: SfMData) -> dict:
    """Deep copy of every numeric array in the reconstruction"""
    return {
        "poses": {i: (p.rotation.copy(), p.center.copy()) for i, p in sfm_data.poses.items()},
        "intrinsics": {i: k.params.copy() for i, k in sfm_data.intrinsics.items()},
        "structure": {i: l.X.copy() for i, l in sfm_data.structure.items()},
    }


def assert_unchanged(sfm_data: SfMData, before: dict) -> None:
    """Bit-identical comparison against a snapshot"""
    for pose_id, (rotation, center) in before["poses"].items():
        assert np.array_equal(sfm_data.poses[pose_id].rotation, rotation)
        assert np.array_equal(sfm_data.poses[pose_id].center, center)
    for intrinsic_id, params in before["intrinsics"].items():
        assert np.array_equal(sfm_data.intrinsics[intrinsic_id].params, params)
    for landmark_id, X in before["structure"].items():
        assert np.array_equal(sfm_data.structure[landmark_id].X, X)
