"""
Result integrator

The only place where the bundle adjustment core writes into a reconstruction.
On a successful outcome every variable pose, intrinsic and landmark block is
copied back; constant blocks are skipped so their values stay bit-identical.
On a failed outcome nothing is touched.
"""

import logging
from typing import Dict, Optional
from dataclasses import dataclass, field

import numpy as np

from .parameters import (
    INTRINSIC,
    LANDMARK,
    POSE,
    ParameterBlockManager,
    parameters_to_intrinsic,
    parameters_to_pose,
)
from .solver import SolverOutcome
from ..sfm_data import Intrinsic, Pose, SfMData

logger = logging.getLogger(__name__)


@dataclass
class IntegratedValues:
    """Values written back by one integration"""

    poses: Dict[int, Pose] = field(default_factory=dict)
    intrinsics: Dict[int, Intrinsic] = field(default_factory=dict)
    landmarks: Dict[int, np.ndarray] = field(default_factory=dict)


class ResultIntegrator:
    """Writes converged parameters back into the reconstruction"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.last_integrated: Optional[IntegratedValues] = None

    def apply(
        self,
        outcome: SolverOutcome,
        manager: ParameterBlockManager,
        sfm_data: SfMData,
    ) -> bool:
        """
        Args:
            outcome: solver outcome
            manager: parameter mappings used for the solve
            sfm_data: reconstruction to update in place

        Returns:
            True when the outcome was successful and values were written back
        """
        self.last_integrated = None
        if not outcome.success:
            self.logger.debug("Solver outcome unsuccessful, reconstruction left untouched")
            return False

        integrated = IntegratedValues()
        blocks = manager.blocks()

        for pose_id in manager.variable_ids(POSE):
            values = manager.pose_parameters[pose_id]
            if blocks[(POSE, pose_id)].free_mask[:3].any():
                pose = parameters_to_pose(values)
            else:
                # Translation-only refinement keeps the original rotation matrix
                pose = Pose.from_rotation_translation(sfm_data.poses[pose_id].rotation, values[3:])
            sfm_data.poses[pose_id] = pose
            integrated.poses[pose_id] = pose

        for intrinsic_id in manager.variable_ids(INTRINSIC):
            intrinsic = parameters_to_intrinsic(
                manager.intrinsic_parameters[intrinsic_id], sfm_data.intrinsics[intrinsic_id]
            )
            sfm_data.intrinsics[intrinsic_id] = intrinsic
            integrated.intrinsics[intrinsic_id] = intrinsic

        for landmark_id in manager.variable_ids(LANDMARK):
            X = manager.landmark_parameters[landmark_id].copy()
            sfm_data.structure[landmark_id].X = X
            integrated.landmarks[landmark_id] = X

        self.logger.debug(
            f"Integrated {len(integrated.poses)} poses, {len(integrated.intrinsics)} intrinsics, "
            f"{len(integrated.landmarks)} landmarks"
        )
        self.last_integrated = integrated
        return True
