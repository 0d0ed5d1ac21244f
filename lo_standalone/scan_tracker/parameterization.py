"""Pose local parameterization with a subspace selection mask.

The parameter block is [tx, ty, tz, qx, qy, qz, qw]; the tangent update is
delta = [dx, dy, dz, droll, dpitch, dyaw]. Translation is updated
additively, rotation by right-multiplying a small-angle quaternion, and the
quaternion is renormalized after every step. The diagonal v_update matrix
zeroes the update directions a refinement pass keeps fixed.
"""
import numpy as np

from .so3 import delta_q, quat_multiply, quat_normalize
from .types import SIZE_POSE

LOCAL_SIZE = 6

# Tangent index of each pose component
X, Y, Z, ROLL, PITCH, YAW = range(LOCAL_SIZE)


class PoseLocalParameterization:
    """Update rule for the pose parameter block."""

    def __init__(self):
        self.v_update = np.eye(LOCAL_SIZE)

    def set_parameter(self):
        """Reset the mask to the full 6-DoF update."""
        self.v_update = np.eye(LOCAL_SIZE)

    def fix(self, indices):
        """Hold the given tangent directions fixed."""
        for i in indices:
            self.v_update[i, i] = 0.0
        return self

    def free_indices(self) -> np.ndarray:
        return np.flatnonzero(np.diag(self.v_update) != 0.0)

    def global_size(self) -> int:
        return SIZE_POSE

    def local_size(self) -> int:
        return LOCAL_SIZE

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        """x [+] delta.

        Args:
            x: (7,) pose parameters.
            delta: (6,) tangent increment; masked directions are ignored.

        Returns:
            (7,) updated parameters with a unit quaternion.
        """
        d = self.v_update @ np.asarray(delta, dtype=np.float64)
        x_plus = np.empty(SIZE_POSE)
        x_plus[0:3] = x[0:3] + d[0:3]
        x_plus[3:7] = quat_normalize(quat_multiply(x[3:7], delta_q(d[3:6])))
        return x_plus
