"""
Unit tests for the robust loss on 2D residual blocks
"""

import pytest
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sfmba.core.bundle_adjustment.config import RobustLoss, RobustLossOptions
from sfmba.core.bundle_adjustment.robust_loss import RobustLossFunction


def loss_function(loss=RobustLoss.HUBER, threshold=4.0):
    return RobustLossFunction(RobustLossOptions(loss, threshold))


class TestRobustLossFunction:
    """Test the per-block correction"""

    def test_huber_acts_on_norm(self):
        # Each axis is below the threshold, the image distance is not
        residuals = np.array([[3.0, 3.0]])

        corrected, _ = loss_function().correct(residuals)

        norm = np.sqrt(18.0)
        assert np.isclose(np.sum(corrected ** 2), 2.0 * 4.0 * norm - 16.0)
        assert np.sum(corrected ** 2) < 18.0
        # Direction is preserved
        assert np.allclose(corrected[0] / np.linalg.norm(corrected[0]), residuals[0] / norm)

    def test_huber_inlier_unchanged(self):
        residuals = np.array([[2.0, 2.0], [-1.0, 0.5]])

        corrected, M = loss_function().correct(residuals)

        assert np.allclose(corrected, residuals)
        assert np.allclose(M, np.eye(2))

    def test_linear_is_identity(self):
        residuals = np.array([[30.0, -40.0], [0.1, 0.2]])
        function = loss_function(RobustLoss.LINEAR)

        corrected, M = function.correct(residuals)

        assert not function.enabled
        assert np.array_equal(corrected, residuals)
        assert np.allclose(M, np.eye(2))

    def test_zero_residual(self):
        corrected, M = loss_function(RobustLoss.CAUCHY).correct(np.zeros((1, 2)))

        assert np.array_equal(corrected, np.zeros((1, 2)))
        assert np.allclose(M[0], np.eye(2))
        assert np.all(np.isfinite(M))

    @pytest.mark.parametrize("loss", [
        RobustLoss.HUBER, RobustLoss.SOFT_L1, RobustLoss.CAUCHY, RobustLoss.ARCTAN,
    ])
    def test_jacobian_matches_finite_differences(self, loss):
        function = loss_function(loss, threshold=2.0)
        residuals = np.array([[3.0, -1.0], [0.5, 0.7], [-6.0, 4.0]])

        _, M = function.correct(residuals)

        h = 1e-6
        for i in range(2):
            step = np.zeros(2)
            step[i] = h
            plus, _ = function.correct(residuals + step)
            minus, _ = function.correct(residuals - step)
            np.testing.assert_allclose(M[:, :, i], (plus - minus) / (2 * h), rtol=1e-5, atol=1e-7)

    @pytest.mark.parametrize("loss", list(RobustLoss))
    def test_cost_matches_corrected_residuals(self, loss):
        function = loss_function(loss, threshold=1.5)
        residuals = np.array([[3.0, -1.0], [0.5, 0.7], [-6.0, 4.0]])

        corrected, _ = function.correct(residuals)

        assert np.isclose(function.cost(residuals), 0.5 * np.sum(corrected ** 2))

    def test_cauchy_value(self):
        rho, drho = loss_function(RobustLoss.CAUCHY, threshold=2.0).evaluate(np.array([4.0]))

        assert np.isclose(rho[0], 4.0 * np.log(2.0))
        assert np.isclose(drho[0], 0.5)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
