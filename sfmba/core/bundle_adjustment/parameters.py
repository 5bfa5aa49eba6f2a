"""
Parameter blocks for bundle adjustment

Poses, intrinsics and landmarks are copied out of the reconstruction into flat
float64 vectors (one per id). The solver mutates these vectors in place; the
result integrator copies them back on success.

Layouts:
    pose       [angle_axis(3), t(3)]    with X_cam = R·X + t
    intrinsic  [focal, ppx, ppy, *distortion]
    landmark   [X, Y, Z]
"""

import numpy as np
import logging
from typing import Dict, Hashable, Iterable, Optional, Set, Tuple

from .camera_models import CameraModelSpec
from .config import BARefine
from .residuals import angle_axis_to_rotation, rotation_to_angle_axis, skew
from ..sfm_data import Intrinsic, Landmark, Pose

logger = logging.getLogger(__name__)

POSE_BLOCK_SIZE = 6
POINT_BLOCK_SIZE = 3

POSE = "pose"
INTRINSIC = "intrinsic"
LANDMARK = "landmark"


def pose_to_parameters(pose: Pose) -> np.ndarray:
    params = np.empty(POSE_BLOCK_SIZE, dtype=np.float64)
    params[:3] = rotation_to_angle_axis(pose.rotation)
    params[3:] = pose.translation
    return params


def parameters_to_pose(params: np.ndarray) -> Pose:
    rotation = angle_axis_to_rotation(params[:3])
    return Pose.from_rotation_translation(rotation, params[3:6])


def intrinsic_to_parameters(intrinsic: Intrinsic) -> np.ndarray:
    return np.array(intrinsic.params, dtype=np.float64, copy=True)


def parameters_to_intrinsic(params: np.ndarray, intrinsic: Intrinsic) -> Intrinsic:
    return Intrinsic(intrinsic.model, np.array(params, dtype=np.float64, copy=True),
                     intrinsic.width, intrinsic.height)


def extract_pose_parameters(poses: Dict[int, Pose]) -> Dict[int, np.ndarray]:
    """One parameter vector per pose id"""
    return {pose_id: pose_to_parameters(pose) for pose_id, pose in poses.items()}


def extract_intrinsic_parameters(intrinsics: Dict[int, Intrinsic]) -> Dict[int, np.ndarray]:
    """One parameter vector per intrinsic id, in the model's layout"""
    return {
        intrinsic_id: intrinsic_to_parameters(intrinsic)
        for intrinsic_id, intrinsic in intrinsics.items()
    }


def so3_left_jacobian(phi: np.ndarray) -> np.ndarray:
    """J_l(φ) with exp(φ + ε) ≈ exp(J_l(φ)·ε)·exp(φ)"""
    theta = float(np.linalg.norm(phi))
    K = skew(phi)
    if theta < 1e-8:
        return np.eye(3) + 0.5 * K
    theta2 = theta * theta
    return (
        np.eye(3)
        + (1.0 - np.cos(theta)) / theta2 * K
        + (theta - np.sin(theta)) / (theta2 * theta) * (K @ K)
    )


class EuclideanManifold:
    """x = x0 + δ"""

    def plus(self, reference: np.ndarray, delta: np.ndarray) -> np.ndarray:
        return reference + delta

    def plus_jacobian(self, delta: np.ndarray) -> np.ndarray:
        return np.eye(delta.size)


class PoseManifold:
    """R = exp(δ_r)·R0, t = t0 + δ_t; rotations never leave SO(3)"""

    def plus(self, reference: np.ndarray, delta: np.ndarray) -> np.ndarray:
        rotation = angle_axis_to_rotation(delta[:3]) @ angle_axis_to_rotation(reference[:3])
        out = np.empty(POSE_BLOCK_SIZE)
        out[:3] = rotation_to_angle_axis(rotation)
        out[3:] = reference[3:] + delta[3:]
        return out

    def plus_jacobian(self, delta: np.ndarray) -> np.ndarray:
        """d(tangent at current pose) / d(δ)"""
        J = np.eye(POSE_BLOCK_SIZE)
        J[:3, :3] = so3_left_jacobian(delta[:3])
        return J


class ParameterBlock:
    """
    One optimizable entity (pose, intrinsic or landmark)

    ``values`` is the storage handed out by the manager mappings; it is
    updated in place while the solver runs. ``free_mask`` selects the entries
    the solver may change, the remaining ones are held constant.
    """

    def __init__(
        self,
        kind: str,
        block_id: Hashable,
        values: np.ndarray,
        free_mask: Optional[np.ndarray] = None,
        manifold=None,
    ):
        self.kind = kind
        self.block_id = block_id
        self.values = values
        if free_mask is None:
            free_mask = np.ones(values.size, dtype=bool)
        self.free_mask = np.asarray(free_mask, dtype=bool).copy()
        if self.free_mask.size != values.size:
            raise ValueError(f"Free mask size {self.free_mask.size} != block size {values.size}")
        self.manifold = manifold or EuclideanManifold()

        self.rotation: Optional[np.ndarray] = None
        self._reference: Optional[np.ndarray] = None
        self._delta = np.zeros(values.size)
        self._refresh_rotation()

    @property
    def key(self) -> Tuple[str, Hashable]:
        return self.kind, self.block_id

    @property
    def size(self) -> int:
        return self.values.size

    @property
    def num_free(self) -> int:
        return int(self.free_mask.sum())

    @property
    def is_constant(self) -> bool:
        return self.num_free == 0

    def set_constant(self) -> None:
        self.free_mask[:] = False

    def begin(self) -> None:
        """Freeze the current values as the origin of the local chart"""
        self._reference = self.values.copy()
        self._delta = np.zeros(self.size)
        self._refresh_rotation()

    def apply_delta(self, free_delta: np.ndarray) -> None:
        if self._reference is None:
            self.begin()
        delta = np.zeros(self.size)
        delta[self.free_mask] = free_delta
        self._delta = delta
        self.values[:] = self.manifold.plus(self._reference, delta)
        self._refresh_rotation()

    def free_jacobian(self) -> np.ndarray:
        """d(local tangent) / d(free δ entries), shape (size, num_free)"""
        return self.manifold.plus_jacobian(self._delta)[:, self.free_mask]

    def _refresh_rotation(self) -> None:
        if isinstance(self.manifold, PoseManifold):
            self.rotation = angle_axis_to_rotation(self.values[:3])

    def __repr__(self) -> str:
        return f"ParameterBlock({self.kind}={self.block_id!r}, free={self.num_free}/{self.size})"


class FixityPolicy:
    """
    Decides which entries of each block are free

    Args:
        refine: parameter categories to optimize
        free_pose_ids: in partial mode, the only poses allowed to move
        free_intrinsic_ids: in partial mode, the only intrinsics allowed to move
        anchor_pose_id: pose held constant to remove the gauge freedom
    """

    def __init__(
        self,
        refine: BARefine,
        free_pose_ids: Optional[Iterable[int]] = None,
        free_intrinsic_ids: Optional[Iterable[int]] = None,
        anchor_pose_id: Optional[int] = None,
    ):
        self.refine = refine
        self.free_pose_ids: Optional[Set[int]] = None if free_pose_ids is None else set(free_pose_ids)
        self.free_intrinsic_ids: Optional[Set[int]] = (
            None if free_intrinsic_ids is None else set(free_intrinsic_ids)
        )
        self.anchor_pose_id = anchor_pose_id

    @property
    def is_partial(self) -> bool:
        return self.free_pose_ids is not None or self.free_intrinsic_ids is not None

    def is_pose_free(self, pose_id: int) -> bool:
        if pose_id == self.anchor_pose_id:
            return False
        return self.free_pose_ids is None or pose_id in self.free_pose_ids

    def pose_mask(self, pose_id: int) -> np.ndarray:
        mask = np.zeros(POSE_BLOCK_SIZE, dtype=bool)
        if not self.is_pose_free(pose_id):
            return mask
        mask[:3] = bool(self.refine & BARefine.POSE_ROTATION)
        mask[3:] = bool(self.refine & BARefine.POSE_TRANSLATION)
        return mask

    def intrinsic_mask(self, intrinsic_id: int, spec: CameraModelSpec) -> np.ndarray:
        mask = np.zeros(spec.num_params, dtype=bool)
        if self.free_intrinsic_ids is not None and intrinsic_id not in self.free_intrinsic_ids:
            return mask
        if self.refine & BARefine.INTRINSIC_FOCAL:
            mask[list(spec.focal_indices)] = True
        if self.refine & BARefine.INTRINSIC_PRINCIPAL_POINT:
            mask[list(spec.principal_point_indices)] = True
        if self.refine & BARefine.INTRINSIC_DISTORTION and spec.distortion_indices:
            mask[list(spec.distortion_indices)] = True
        return mask

    def landmark_mask(self, observing_pose_ids: Iterable[int]) -> np.ndarray:
        free = bool(self.refine & BARefine.STRUCTURE)
        if free and self.free_pose_ids is not None:
            free = any(pose_id in self.free_pose_ids for pose_id in observing_pose_ids)
        return np.full(POINT_BLOCK_SIZE, free, dtype=bool)


class ParameterBlockManager:
    """
    Owns the parameter vectors of one adjustment call

    ``pose_parameters``, ``intrinsic_parameters`` and ``landmark_parameters``
    map ids to vectors; blocks wrapping those vectors are created once per id.
    """

    def __init__(self, policy: FixityPolicy):
        self.policy = policy
        self.pose_parameters: Dict[int, np.ndarray] = {}
        self.intrinsic_parameters: Dict[int, np.ndarray] = {}
        self.landmark_parameters: Dict[int, np.ndarray] = {}
        self._blocks: Dict[Tuple[str, Hashable], ParameterBlock] = {}

    def extract(self, sfm_data) -> None:
        """Copy the current reconstruction values into fresh vectors"""
        self.pose_parameters = extract_pose_parameters(sfm_data.poses)
        self.intrinsic_parameters = extract_intrinsic_parameters(sfm_data.intrinsics)
        self.landmark_parameters = {}
        self._blocks = {}
        logger.debug(
            f"Extracted {len(self.pose_parameters)} pose and "
            f"{len(self.intrinsic_parameters)} intrinsic parameter vectors"
        )

    def pose_block(self, pose_id: int) -> ParameterBlock:
        key = (POSE, pose_id)
        block = self._blocks.get(key)
        if block is None:
            block = ParameterBlock(
                POSE, pose_id, self.pose_parameters[pose_id],
                free_mask=self.policy.pose_mask(pose_id),
                manifold=PoseManifold(),
            )
            self._blocks[key] = block
        return block

    def intrinsic_block(self, intrinsic_id: int, spec: CameraModelSpec) -> ParameterBlock:
        key = (INTRINSIC, intrinsic_id)
        block = self._blocks.get(key)
        if block is None:
            values = self.intrinsic_parameters[intrinsic_id]
            spec.validate(values)
            block = ParameterBlock(
                INTRINSIC, intrinsic_id, values,
                free_mask=self.policy.intrinsic_mask(intrinsic_id, spec),
            )
            self._blocks[key] = block
        return block

    def landmark_block(self, landmark_id: int, landmark: Landmark,
                       observing_pose_ids: Iterable[int]) -> ParameterBlock:
        key = (LANDMARK, landmark_id)
        block = self._blocks.get(key)
        if block is None:
            values = np.array(landmark.X, dtype=np.float64, copy=True)
            self.landmark_parameters[landmark_id] = values
            block = ParameterBlock(
                LANDMARK, landmark_id, values,
                free_mask=self.policy.landmark_mask(observing_pose_ids),
            )
            self._blocks[key] = block
        return block

    def blocks(self) -> Dict[Tuple[str, Hashable], ParameterBlock]:
        return dict(self._blocks)

    def variable_ids(self, kind: str) -> Set[Hashable]:
        """Ids of blocks of ``kind`` that have at least one free entry"""
        return {
            block.block_id for (block_kind, _), block in self._blocks.items()
            if block_kind == kind and not block.is_constant
        }
