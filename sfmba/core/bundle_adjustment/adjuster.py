"""
Bundle Adjustment orchestration

Both entry points run the same state machine:

    Extract   -> copy poses / intrinsics into parameter vectors
    Build     -> residual blocks, fixity, robust loss
    Solve     -> scipy least_squares
    Integrate -> write back on success, leave untouched on failure

Every failure mode (unresolvable references, unsupported models, degenerate
problems, solver failure) is recovered here and reported through an
AdjustmentResult; nothing is raised to the caller.
"""

import logging
import time
from enum import Enum
from typing import Dict, Optional
from dataclasses import dataclass, field

import numpy as np

from .config import BARefine, BundleAdjustmentConfig
from .integrator import ResultIntegrator
from .parameters import FixityPolicy, ParameterBlockManager
from .problem import DegenerateProblemError, ObservationStats, ProblemBuilder
from .reconstruction_graph import ReconstructionGraph
from .residuals import ResidualFactory
from .solver import SolverDriver, SolverSummary
from ..sfm_data import Intrinsic, Pose, SfMData

logger = logging.getLogger(__name__)


class FailureReason(Enum):
    """Why an adjustment left the reconstruction untouched"""
    DEGENERATE_PROBLEM = "degenerate_problem"
    SOLVER_FAILURE = "solver_failure"


@dataclass
class AdjustmentResult:
    """
    Outcome of one adjustment call

    On success ``poses``, ``intrinsics`` and ``landmarks`` hold the values that
    were written into the reconstruction (only entries that were free to
    move). On failure they are empty and the reconstruction is unchanged.
    """

    success: bool
    summary: SolverSummary
    stats: ObservationStats = field(default_factory=ObservationStats)
    failure: Optional[FailureReason] = None
    message: str = ""

    poses: Dict[int, Pose] = field(default_factory=dict)
    intrinsics: Dict[int, Intrinsic] = field(default_factory=dict)
    landmarks: Dict[int, np.ndarray] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.success


class BundleAdjuster:
    """
    Bundle adjustment of a sparse reconstruction

    Usage:
        adjuster = BundleAdjuster(BundleAdjustmentConfig())
        result = adjuster.adjust(sfm_data, BARefine.ALL)
        if not result:
            print(result.summary.full_report())
    """

    def __init__(
        self,
        config: Optional[BundleAdjustmentConfig] = None,
        residual_factory: Optional[ResidualFactory] = None,
    ):
        """
        Args:
            config: BundleAdjustmentConfig or None (uses defaults)
            residual_factory: custom residual factory (defaults to ResidualFactory)
        """
        self.config = config or BundleAdjustmentConfig()
        self.residual_factory = residual_factory or ResidualFactory()
        self.logger = logging.getLogger(__name__)

        # Configure logging
        logging.basicConfig(level=getattr(logging, self.config.log_level))

    def adjust(self, sfm_data: SfMData, refine: BARefine = BARefine.ALL) -> AdjustmentResult:
        """
        Refine the selected categories of the whole reconstruction

        Args:
            sfm_data: reconstruction, mutated in place on success
            refine: categories to optimize

        Returns:
            AdjustmentResult (truthy on success)
        """
        anchor = self._gauge_anchor(sfm_data, refine)
        policy = FixityPolicy(refine, anchor_pose_id=anchor)
        return self._run(sfm_data, refine, policy)

    def adjust_partial_reconstruction(
        self,
        sfm_data: SfMData,
        graph: Optional[ReconstructionGraph],
        refine: BARefine = BARefine.ALL,
    ) -> AdjustmentResult:
        """
        Refine only what the reconstruction graph marks as touched

        An empty (or missing) graph falls back to full refinement.
        """
        if graph is None or graph.is_empty():
            self.logger.info("Reconstruction graph is empty, refining everything")
            return self.adjust(sfm_data, refine)

        hops = self.config.graph.max_hop_distance
        free_poses = graph.refined_pose_ids(hops)
        free_intrinsics = graph.refined_intrinsic_ids(hops)
        self.logger.info(
            f"Partial refinement: {len(free_poses)}/{len(sfm_data.poses)} poses, "
            f"{len(free_intrinsics)}/{len(sfm_data.intrinsics)} intrinsics free"
        )
        policy = FixityPolicy(refine, free_pose_ids=free_poses, free_intrinsic_ids=free_intrinsics)
        return self._run(sfm_data, refine, policy)

    def _run(self, sfm_data: SfMData, refine: BARefine, policy: FixityPolicy) -> AdjustmentResult:
        if refine == BARefine.NONE:
            self.logger.info("Nothing to refine")
            return AdjustmentResult(
                success=True,
                summary=SolverSummary.empty("NO_OP", "no parameter category selected"),
                message="nothing to refine",
            )

        start_time = time.time()
        options = self.config.solver

        # Step 1: Extract
        manager = ParameterBlockManager(policy)
        manager.extract(sfm_data)

        # Step 2: Build
        builder = ProblemBuilder(
            self.residual_factory,
            loss=self.config.loss,
            show_progress=self.config.show_progress,
        )
        try:
            problem, stats = builder.build(sfm_data, manager)
        except DegenerateProblemError as e:
            self.logger.error(f"Bundle adjustment aborted: {e}")
            return AdjustmentResult(
                success=False,
                summary=SolverSummary.empty("DEGENERATE_PROBLEM", str(e)),
                stats=e.stats or ObservationStats(),
                failure=FailureReason.DEGENERATE_PROBLEM,
                message=str(e),
            )

        # Step 3: Solve
        driver = SolverDriver(options)
        outcome = driver.solve(problem, self.config.loss)

        # Step 4: Integrate
        integrator = ResultIntegrator()
        if not integrator.apply(outcome, manager, sfm_data):
            self.logger.warning(f"Bundle adjustment failed: {outcome.summary.brief_report()}")
            return AdjustmentResult(
                success=False,
                summary=outcome.summary,
                stats=stats,
                failure=FailureReason.SOLVER_FAILURE,
                message=outcome.summary.message,
            )

        if options.verbose:
            self._log_statistics(sfm_data, outcome.summary, stats, time.time() - start_time)

        integrated = integrator.last_integrated
        return AdjustmentResult(
            success=True,
            summary=outcome.summary,
            stats=stats,
            message=outcome.summary.message,
            poses=integrated.poses,
            intrinsics=integrated.intrinsics,
            landmarks=integrated.landmarks,
        )

    def _gauge_anchor(self, sfm_data: SfMData, refine: BARefine) -> Optional[int]:
        """Lowest referenced pose id when the gauge must be fixed, else None"""
        if not self.config.fix_gauge:
            return None
        if not (refine & BARefine.STRUCTURE and refine & BARefine.POSES):
            return None
        pose_ids = [
            view.pose_id for view in sfm_data.views.values()
            if sfm_data.is_pose_and_intrinsic_defined(view)
        ]
        return min(pose_ids) if pose_ids else None

    def _log_statistics(
        self,
        sfm_data: SfMData,
        summary: SolverSummary,
        stats: ObservationStats,
        elapsed: float,
    ) -> None:
        from ...utils.quality_metrics import ReprojectionStatistics

        final = ReprojectionStatistics.from_sfm_data(sfm_data)
        self.logger.info(
            "\nBundle Adjustment statistics (approximated RMSE):\n"
            f" #views: {len(sfm_data.views)}\n"
            f" #poses: {len(sfm_data.poses)}\n"
            f" #intrinsics: {len(sfm_data.intrinsics)}\n"
            f" #tracks: {stats.landmarks_used}\n"
            f" #residuals: {summary.num_residuals}\n"
            f" #dropped observations: {stats.dropped}\n"
            f" Initial RMSE: {summary.initial_rmse:.6f}\n"
            f" Final RMSE: {summary.final_rmse:.6f}\n"
            f" Final mean reprojection error (px): {final.mean:.6f}\n"
            f" Time (s): {elapsed:.3f}"
        )
