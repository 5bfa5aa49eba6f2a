"""
Unit tests for solver options and the solver driver
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sfmba.core.bundle_adjustment.config import (
    BARefine,
    BundleAdjustmentConfig,
    LinearSolverType,
    Preconditioner,
    ReconstructionGraphConfig,
    RobustLoss,
    RobustLossOptions,
    SolverOptions,
    SparseBackend,
)
from sfmba.core.bundle_adjustment.parameters import FixityPolicy, ParameterBlockManager
from sfmba.core.bundle_adjustment.problem import ProblemBuilder
from sfmba.core.bundle_adjustment.solver import SolverDriver, SolverSummary

from synthetic import make_scene, perturb_poses


class TestSolverOptions:
    """Test solver option presets and validation"""

    def test_dense_preset(self):
        options = SolverOptions.dense()

        assert options.linear_solver is LinearSolverType.DENSE
        assert options.preconditioner is Preconditioner.JACOBI
        assert not options.is_sparse
        assert 1 <= options.thread_count <= 8

    def test_sparse_preset(self):
        options = SolverOptions.sparse()

        assert options.linear_solver is LinearSolverType.SPARSE
        assert options.sparse_backend is SparseBackend.LSMR
        assert options.is_sparse

    def test_preset_overrides(self):
        options = SolverOptions.sparse(thread_count=2, verbose=True)

        assert options.thread_count == 2
        assert options.verbose
        assert options.is_sparse

    def test_with_overrides(self):
        options = SolverOptions.dense()
        updated = options.with_overrides(max_iterations=10)

        assert updated.max_iterations == 10
        assert options.max_iterations == 500

    def test_invalid_options(self):
        with pytest.raises(ValueError):
            SolverOptions(thread_count=0)
        with pytest.raises(ValueError):
            SolverOptions(max_iterations=0)
        with pytest.raises(ValueError):
            RobustLossOptions(threshold=0.0)
        with pytest.raises(ValueError):
            ReconstructionGraphConfig(min_covisibility=0)


class TestBundleAdjustmentConfig:
    """Test configuration (de)serialization"""

    def test_defaults(self):
        config = BundleAdjustmentConfig()

        assert config.loss.loss is RobustLoss.HUBER
        assert config.loss.threshold == 4.0
        assert config.loss.enabled
        assert not config.fix_gauge

    def test_round_trip(self):
        config = BundleAdjustmentConfig(
            solver=SolverOptions.sparse(thread_count=3),
            loss=RobustLossOptions(RobustLoss.CAUCHY, 2.0),
            graph=ReconstructionGraphConfig(max_hop_distance=1),
            fix_gauge=True,
        )

        restored = BundleAdjustmentConfig.from_dict(config.to_dict())

        assert restored == config

    def test_from_partial_dict(self):
        config = BundleAdjustmentConfig.from_dict({
            "solver": {"linear_solver": "sparse"},
            "loss": {"loss": "linear"},
        })

        assert config.solver.is_sparse
        assert not config.loss.enabled

    def test_invalid_log_level(self):
        with pytest.raises(ValueError):
            BundleAdjustmentConfig(log_level="VERBOSE")

    def test_refine_flags(self):
        assert BARefine.POSES == BARefine.POSE_ROTATION | BARefine.POSE_TRANSLATION
        assert BARefine.ALL & BARefine.STRUCTURE
        assert not (BARefine.NONE & BARefine.ALL)


class TestSolverDriver:
    """Test SolverDriver"""

    def build_problem(self, refine=BARefine.POSES, num_landmarks=20):
        sfm_data = make_scene(num_landmarks=num_landmarks)
        perturb_poses(sfm_data)
        manager = ParameterBlockManager(FixityPolicy(refine))
        manager.extract(sfm_data)
        problem, _ = ProblemBuilder().build(sfm_data, manager)
        return problem

    def test_kwargs_dense(self):
        driver = SolverDriver(SolverOptions.dense())
        kwargs = driver.least_squares_kwargs()

        assert kwargs["method"] == "trf"
        assert kwargs["tr_solver"] == "exact"
        assert kwargs["x_scale"] == "jac"
        # The problem applies the robust loss to whole 2D residuals itself
        assert kwargs["loss"] == "linear"
        assert "f_scale" not in kwargs

    def test_kwargs_sparse(self):
        options = SolverOptions.sparse(
            sparse_backend=SparseBackend.REGULARIZED_LSMR,
            preconditioner=Preconditioner.IDENTITY,
        )
        kwargs = SolverDriver(options).least_squares_kwargs()

        assert kwargs["tr_solver"] == "lsmr"
        assert kwargs["tr_options"] == {"regularize": True}
        assert kwargs["x_scale"] == 1.0

    @pytest.mark.parametrize("options", [SolverOptions.dense(), SolverOptions.sparse()])
    def test_solve_reduces_cost(self, options):
        problem = self.build_problem()
        driver = SolverDriver(options)

        outcome = driver.solve(problem, RobustLossOptions(RobustLoss.LINEAR))

        assert outcome.success
        assert bool(outcome)
        summary = outcome.summary
        assert summary.final_cost < summary.initial_cost
        assert summary.final_rmse < 0.1
        assert summary.num_residuals == 120
        assert summary.num_effective_parameters == 18
        assert summary.status > 0

    def test_iteration_limit_is_failure(self):
        problem = self.build_problem()
        driver = SolverDriver(SolverOptions.dense(max_iterations=1))

        outcome = driver.solve(problem)

        assert not outcome.success
        assert outcome.summary.termination == "MAX_ITERATIONS"

    def test_non_finite_input_is_failure(self):
        sfm_data = make_scene(num_landmarks=20)
        sfm_data.structure[0].observations[1].x = np.array([np.nan, 100.0])
        manager = ParameterBlockManager(FixityPolicy(BARefine.POSES))
        manager.extract(sfm_data)
        problem, _ = ProblemBuilder().build(sfm_data, manager)
        values_before = {i: v.copy() for i, v in manager.pose_parameters.items()}

        outcome = SolverDriver(SolverOptions.dense()).solve(problem)

        assert not outcome.success
        assert outcome.summary.termination == "FAILURE"
        assert outcome.summary.message
        assert outcome.summary.status is None
        # Blocks are reset to the starting point
        for pose_id, values in values_before.items():
            assert np.allclose(manager.pose_parameters[pose_id], values)

    def test_summary_reports(self):
        problem = self.build_problem()
        outcome = SolverDriver(SolverOptions.dense()).solve(problem)
        summary = outcome.summary

        report = summary.full_report()
        assert "Initial cost" in report
        assert "Termination" in report
        assert summary.to_dict()["num_residuals"] == 120

        brief = summary.brief_report()
        assert "Solver Summary" in brief
        assert f"evaluations={summary.num_function_evaluations}" in brief
        assert f"jacobian evaluations={summary.num_jacobian_evaluations}" in brief
        assert "iterations" not in brief

    def test_robust_cost_reported(self):
        problem = self.build_problem()
        outcome = SolverDriver(SolverOptions.dense()).solve(problem, RobustLossOptions(RobustLoss.HUBER, 1.0))

        assert outcome.success
        assert problem.loss.threshold == 1.0
        # Huber never exceeds the squared loss
        assert outcome.summary.final_robust_cost <= outcome.summary.final_cost + 1e-9

    def test_thread_pool_released_after_solve(self):
        problem = self.build_problem()

        outcome = SolverDriver(SolverOptions.dense(thread_count=4)).solve(problem)

        assert outcome.success
        assert problem.num_threads == 4
        assert problem._executor is None

    def test_empty_summary(self):
        summary = SolverSummary.empty("NO_OP")

        assert summary.termination == "NO_OP"
        assert np.isnan(summary.initial_rmse)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
