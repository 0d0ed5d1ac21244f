"""Residual blocks for scan-to-scan registration.

A factor holds one residual block per correspondence and evaluates all of
them at once for a given pose parameter vector. Each point is moved by the
fraction s of the pose given by its time scale before measuring the
distance.
"""
import numpy as np

from .types import CorrespondenceSet
from .numba_kernels import (plane_residuals_jit, edge_residuals_jit,
                            plane_jacobians_jit, edge_jacobians_jit)


class LidarScanPlaneNormFactor:
    """Signed point-to-plane distance n . (R_s p + s t) + d."""

    num_residuals = 1

    def __init__(self, points: np.ndarray, coeffs: np.ndarray,
                 scales: np.ndarray):
        self.points = np.ascontiguousarray(points, dtype=np.float64)
        self.coeffs = np.ascontiguousarray(coeffs, dtype=np.float64)
        self.scales = np.ascontiguousarray(scales, dtype=np.float64)

    @classmethod
    def from_correspondences(cls, matches: CorrespondenceSet,
                             scales: np.ndarray):
        return cls(matches.points, matches.coeffs, scales)

    @property
    def num_blocks(self) -> int:
        return len(self.points)

    def evaluate(self, x: np.ndarray) -> np.ndarray:
        """Residuals at pose parameters x.

        Returns:
            (M, 1) residuals.
        """
        q = np.ascontiguousarray(x[3:7])
        t = np.ascontiguousarray(x[0:3])
        r = plane_residuals_jit(self.points, self.coeffs, self.scales, q, t)
        return r.reshape(-1, 1)

    def linearize(self, x: np.ndarray):
        """Residuals (M, 1) and Jacobians (M, 1, 6) at x."""
        q = np.ascontiguousarray(x[3:7])
        t = np.ascontiguousarray(x[0:3])
        r, J = plane_jacobians_jit(self.points, self.coeffs, self.scales, q, t)
        return r.reshape(-1, 1), J.reshape(-1, 1, 6)


class LidarScanEdgeFactor:
    """Offset of R_s p + s t from its line, orthogonal to the line.

    The squared norm of a block is the squared point-to-line distance.
    """

    num_residuals = 3

    def __init__(self, points: np.ndarray, coeffs: np.ndarray,
                 centers: np.ndarray, scales: np.ndarray):
        self.points = np.ascontiguousarray(points, dtype=np.float64)
        self.coeffs = np.ascontiguousarray(coeffs, dtype=np.float64)
        self.centers = np.ascontiguousarray(centers, dtype=np.float64)
        self.scales = np.ascontiguousarray(scales, dtype=np.float64)

    @classmethod
    def from_correspondences(cls, matches: CorrespondenceSet,
                             scales: np.ndarray):
        return cls(matches.points, matches.coeffs, matches.centers, scales)

    @property
    def num_blocks(self) -> int:
        return len(self.points)

    def evaluate(self, x: np.ndarray) -> np.ndarray:
        """Residuals at pose parameters x.

        Returns:
            (M, 3) residuals.
        """
        q = np.ascontiguousarray(x[3:7])
        t = np.ascontiguousarray(x[0:3])
        return edge_residuals_jit(self.points, self.coeffs, self.centers,
                                  self.scales, q, t)

    def linearize(self, x: np.ndarray):
        """Residuals (M, 3) and Jacobians (M, 3, 6) at x."""
        q = np.ascontiguousarray(x[3:7])
        t = np.ascontiguousarray(x[0:3])
        return edge_jacobians_jit(self.points, self.coeffs, self.centers,
                                  self.scales, q, t)
