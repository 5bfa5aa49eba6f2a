"""
Robust loss on 2D reprojection residuals

The loss acts on the squared norm s = ||r||² of each residual block, so a
4 pixel threshold means 4 pixels of Euclidean image distance rather than
4 pixels per axis. Loss shapes follow scipy.optimize.least_squares, scaled
by the threshold C:

    rho_C(s) = C² · rho(s / C²)

Residuals are rewritten as r' = sqrt(rho_C(s)) · r / ||r|| so that a plain
least-squares solver minimizes ½·Σ rho_C(||r||²). The Jacobian of that map
per block is

    M = a·I + (b - a)·u·uᵀ,   u = r / ||r||,  a = sqrt(rho_C / s),  b = rho_C' / a
"""

import numpy as np
from typing import Tuple

from .config import RobustLoss, RobustLossOptions

# Squared norms below this are treated as exact inliers
_TINY = 1e-24


def _linear(z: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    return z, np.ones_like(z)


def _huber(z: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    root = np.sqrt(np.maximum(z, 1.0))
    inlier = z <= 1.0
    return np.where(inlier, z, 2.0 * root - 1.0), np.where(inlier, 1.0, 1.0 / root)


def _soft_l1(z: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    root = np.sqrt(1.0 + z)
    return 2.0 * (root - 1.0), 1.0 / root


def _cauchy(z: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    return np.log1p(z), 1.0 / (1.0 + z)


def _arctan(z: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    return np.arctan(z), 1.0 / (1.0 + z * z)


_LOSS_FUNCTIONS = {
    RobustLoss.LINEAR: _linear,
    RobustLoss.HUBER: _huber,
    RobustLoss.SOFT_L1: _soft_l1,
    RobustLoss.CAUCHY: _cauchy,
    RobustLoss.ARCTAN: _arctan,
}


class RobustLossFunction:
    """Bounded-influence transform applied to every 2D residual block"""

    def __init__(self, options: RobustLossOptions):
        self.options = options
        self._rho = _LOSS_FUNCTIONS[options.loss]
        self._c2 = options.threshold ** 2

    @property
    def enabled(self) -> bool:
        return self.options.enabled

    def evaluate(self, squared_norms: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """rho_C(s) and its derivative rho_C'(s)"""
        rho, drho = self._rho(np.asarray(squared_norms, dtype=np.float64) / self._c2)
        return self._c2 * rho, drho

    def correct(self, residuals: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Args:
            residuals: raw residual blocks, shape (N, 2)

        Returns:
            (corrected residuals (N, 2), per-block Jacobians of the correction (N, 2, 2))
        """
        residuals = np.asarray(residuals, dtype=np.float64)
        s = np.sum(residuals * residuals, axis=1)
        tiny = s < _TINY
        safe_s = np.where(tiny, 1.0, s)

        rho, drho = self.evaluate(safe_s)
        a = np.where(tiny, 1.0, np.sqrt(rho / safe_s))
        b = np.where(tiny, 1.0, drho / a)

        u = residuals / np.sqrt(safe_s)[:, None]
        M = a[:, None, None] * np.eye(2) + (b - a)[:, None, None] * (u[:, :, None] * u[:, None, :])

        return residuals * a[:, None], M

    def cost(self, residuals: np.ndarray) -> float:
        """½·Σ rho_C(||r||²)"""
        s = np.sum(np.asarray(residuals, dtype=np.float64) ** 2, axis=1)
        rho, _ = self.evaluate(s)
        return 0.5 * float(np.sum(rho))
