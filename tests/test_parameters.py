"""
Unit tests for parameter blocks and fixity
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sfmba.core.sfm_data import Pose
from sfmba.core.bundle_adjustment.config import BARefine
from sfmba.core.bundle_adjustment.camera_models import CameraModel, get_model_spec
from sfmba.core.bundle_adjustment.parameters import (
    INTRINSIC,
    LANDMARK,
    POSE,
    FixityPolicy,
    ParameterBlock,
    ParameterBlockManager,
    PoseManifold,
    extract_intrinsic_parameters,
    extract_pose_parameters,
    parameters_to_pose,
    pose_to_parameters,
    so3_left_jacobian,
)
from sfmba.core.bundle_adjustment.residuals import angle_axis_to_rotation

from synthetic import make_scene


class TestConversions:
    """Test reconstruction <-> parameter vector conversions"""

    def test_pose_round_trip(self):
        pose = Pose(angle_axis_to_rotation(np.array([0.1, -0.2, 0.05])), np.array([1.0, 2.0, -3.0]))

        params = pose_to_parameters(pose)
        restored = parameters_to_pose(params)

        assert params.shape == (6,)
        assert np.allclose(params[3:], pose.translation)
        assert np.allclose(restored.rotation, pose.rotation)
        assert np.allclose(restored.center, pose.center)

    def test_extract_copies(self):
        sfm_data = make_scene(num_landmarks=3)

        poses = extract_pose_parameters(sfm_data.poses)
        intrinsics = extract_intrinsic_parameters(sfm_data.intrinsics)

        assert set(poses) == set(sfm_data.poses)
        assert set(intrinsics) == {0}

        intrinsics[0][0] = 1.0
        assert sfm_data.intrinsics[0].params[0] == 800.0


class TestPoseManifold:
    """Test manifold updates of pose blocks"""

    def test_plus_zero_is_identity(self):
        reference = np.array([0.1, 0.2, -0.3, 1.0, 2.0, 3.0])
        out = PoseManifold().plus(reference, np.zeros(6))
        assert np.allclose(out, reference)

    def test_rotation_stays_orthonormal(self):
        block = ParameterBlock(POSE, 0, np.array([0.1, 0.2, -0.3, 1.0, 2.0, 3.0]),
                               manifold=PoseManifold())
        block.begin()
        block.apply_delta(np.array([0.5, -0.4, 0.3, 0.1, 0.1, 0.1]))

        R = block.rotation
        assert np.allclose(R @ R.T, np.eye(3))
        assert np.isclose(np.linalg.det(R), 1.0)

    def test_left_jacobian_small_angle(self):
        assert np.allclose(so3_left_jacobian(np.zeros(3)), np.eye(3))

    def test_left_jacobian_first_order(self):
        phi = np.array([0.3, -0.2, 0.1])
        eps = np.array([1e-6, -2e-6, 0.5e-6])

        lhs = angle_axis_to_rotation(phi + eps)
        rhs = angle_axis_to_rotation(so3_left_jacobian(phi) @ eps) @ angle_axis_to_rotation(phi)

        assert np.allclose(lhs, rhs, atol=1e-10)


class TestParameterBlock:
    """Test ParameterBlock state handling"""

    def test_constant_block(self):
        block = ParameterBlock(LANDMARK, 3, np.zeros(3))
        assert block.num_free == 3

        block.set_constant()

        assert block.is_constant
        assert block.free_jacobian().shape == (3, 0)

    def test_partial_mask(self):
        values = np.array([800.0, 320.0, 240.0])
        block = ParameterBlock(INTRINSIC, 0, values, free_mask=[True, False, False])
        block.begin()
        block.apply_delta(np.array([5.0]))

        assert np.allclose(values, [805.0, 320.0, 240.0])
        assert block.free_jacobian().shape == (3, 1)

    def test_mask_size_mismatch(self):
        with pytest.raises(ValueError):
            ParameterBlock(LANDMARK, 0, np.zeros(3), free_mask=[True, True])


class TestFixityPolicy:
    """Test which entries are free for each refinement selection"""

    def test_pose_masks(self):
        spec = get_model_spec(CameraModel.PINHOLE)

        rotation_only = FixityPolicy(BARefine.POSE_ROTATION)
        assert rotation_only.pose_mask(0).tolist() == [True] * 3 + [False] * 3

        translation_only = FixityPolicy(BARefine.POSE_TRANSLATION)
        assert translation_only.pose_mask(0).tolist() == [False] * 3 + [True] * 3

        assert not FixityPolicy(BARefine.INTRINSICS).pose_mask(0).any()
        assert not FixityPolicy(BARefine.POSES).intrinsic_mask(0, spec).any()

    def test_intrinsic_masks(self):
        spec = get_model_spec(CameraModel.PINHOLE_RADIAL_K3)

        focal = FixityPolicy(BARefine.INTRINSIC_FOCAL).intrinsic_mask(0, spec)
        assert focal.tolist() == [True, False, False, False, False, False]

        pp = FixityPolicy(BARefine.INTRINSIC_PRINCIPAL_POINT).intrinsic_mask(0, spec)
        assert pp.tolist() == [False, True, True, False, False, False]

        distortion = FixityPolicy(BARefine.INTRINSIC_DISTORTION).intrinsic_mask(0, spec)
        assert distortion.tolist() == [False, False, False, True, True, True]

    def test_distortion_on_pinhole_is_noop(self):
        spec = get_model_spec(CameraModel.PINHOLE)
        assert not FixityPolicy(BARefine.INTRINSIC_DISTORTION).intrinsic_mask(0, spec).any()

    def test_anchor_pose(self):
        policy = FixityPolicy(BARefine.ALL, anchor_pose_id=0)
        assert not policy.pose_mask(0).any()
        assert policy.pose_mask(1).all()

    def test_partial_mode(self):
        spec = get_model_spec(CameraModel.PINHOLE)
        policy = FixityPolicy(BARefine.ALL, free_pose_ids={2}, free_intrinsic_ids=set())

        assert policy.is_partial
        assert not policy.pose_mask(0).any()
        assert policy.pose_mask(2).all()
        assert not policy.intrinsic_mask(0, spec).any()
        assert policy.landmark_mask([0, 2]).all()
        assert not policy.landmark_mask([0, 1]).any()

    def test_structure_flag(self):
        assert FixityPolicy(BARefine.STRUCTURE).landmark_mask([0]).all()
        assert not FixityPolicy(BARefine.POSES).landmark_mask([0]).any()


class TestParameterBlockManager:
    """Test parameter block ownership"""

    def test_blocks_created_once(self):
        sfm_data = make_scene(num_landmarks=2)
        manager = ParameterBlockManager(FixityPolicy(BARefine.ALL))
        manager.extract(sfm_data)

        assert manager.pose_block(0) is manager.pose_block(0)
        spec = get_model_spec(CameraModel.PINHOLE)
        assert manager.intrinsic_block(0, spec) is manager.intrinsic_block(0, spec)

    def test_block_shares_storage(self):
        sfm_data = make_scene(num_landmarks=2)
        manager = ParameterBlockManager(FixityPolicy(BARefine.ALL))
        manager.extract(sfm_data)

        block = manager.pose_block(1)
        assert block.values is manager.pose_parameters[1]

        landmark_block = manager.landmark_block(0, sfm_data.structure[0], [0, 1, 2])
        assert landmark_block.values is manager.landmark_parameters[0]
        assert landmark_block.values is not sfm_data.structure[0].X

    def test_variable_ids(self):
        sfm_data = make_scene(num_landmarks=2)
        manager = ParameterBlockManager(FixityPolicy(BARefine.POSES, anchor_pose_id=0))
        manager.extract(sfm_data)

        for pose_id in sfm_data.poses:
            manager.pose_block(pose_id)
        manager.intrinsic_block(0, get_model_spec(CameraModel.PINHOLE))

        assert manager.variable_ids(POSE) == {1, 2}
        assert manager.variable_ids(INTRINSIC) == set()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
