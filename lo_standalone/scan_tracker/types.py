"""Data structures used throughout the tracker.

A frame's features arrive as a CloudFeature: a dict mapping feature labels
to FeatureCloud objects. Per-point intensity carries the within-scan time
(integer part = scan line, fractional part = time offset).
"""
import numpy as np
from dataclasses import dataclass, field

from .so3 import (quat_normalize, quat_multiply, quat_conjugate,
                  quat_to_rotation_matrix, rot_to_euler)


# Feature labels produced by the (external) feature extractor
CORNER_SHARP = 'corner_points_sharp'
CORNER_LESS_SHARP = 'corner_points_less_sharp'
SURF_FLAT = 'surf_points_flat'
SURF_LESS_FLAT = 'surf_points_less_flat'

FEATURE_LABELS = (CORNER_SHARP, CORNER_LESS_SHARP, SURF_FLAT, SURF_LESS_FLAT)

# Parameter block layout: [tx, ty, tz, qx, qy, qz, qw]
SIZE_POSE = 7


class Pose:
    """Rigid transform: p' = R(q) p + t.

    For a tracking result the transform maps points of the current frame
    into the previous frame.
    """

    __slots__ = ['q', 't']

    def __init__(self, q=None, t=None):
        self.q = quat_normalize(q) if q is not None else np.array([0.0, 0.0, 0.0, 1.0])
        self.t = (np.asarray(t, dtype=np.float64).reshape(3).copy()
                  if t is not None else np.zeros(3))

    @classmethod
    def identity(cls) -> 'Pose':
        return cls()

    @classmethod
    def from_param(cls, x: np.ndarray) -> 'Pose':
        """Build from a (7,) parameter vector [tx, ty, tz, qx, qy, qz, qw]."""
        x = np.asarray(x, dtype=np.float64)
        return cls(q=x[3:7], t=x[0:3])

    def to_param(self) -> np.ndarray:
        x = np.empty(SIZE_POSE)
        x[0:3] = self.t
        x[3:7] = self.q
        return x

    def rotation_matrix(self) -> np.ndarray:
        return quat_to_rotation_matrix(self.q)

    def euler(self) -> np.ndarray:
        """[roll, pitch, yaw] in radians."""
        return rot_to_euler(self.rotation_matrix())

    def transform(self, points: np.ndarray) -> np.ndarray:
        """Apply to (N, 3) points."""
        return points @ self.rotation_matrix().T + self.t

    def compose(self, other: 'Pose') -> 'Pose':
        """self * other (apply other first)."""
        q = quat_multiply(self.q, other.q)
        t = self.rotation_matrix() @ other.t + self.t
        return Pose(q=q, t=t)

    def inverse(self) -> 'Pose':
        q_inv = quat_conjugate(self.q)
        t_inv = -(quat_to_rotation_matrix(q_inv) @ self.t)
        return Pose(q=q_inv, t=t_inv)

    def copy(self) -> 'Pose':
        return Pose(q=self.q.copy(), t=self.t.copy())

    def __repr__(self):
        return (f"Pose(t=[{self.t[0]:.4f}, {self.t[1]:.4f}, {self.t[2]:.4f}], "
                f"q=[{self.q[0]:.4f}, {self.q[1]:.4f}, {self.q[2]:.4f}, {self.q[3]:.4f}])")


@dataclass
class FeatureCloud:
    """Labelled feature point set of one frame."""
    points: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))       # (N, 3)
    intensities: np.ndarray = field(default_factory=lambda: np.zeros(0))       # (N,)

    def __post_init__(self):
        self.points = np.ascontiguousarray(self.points, dtype=np.float64)
        if self.points.size == 0:
            self.points = self.points.reshape(0, 3)
        if self.points.ndim != 2 or self.points.shape[1] != 3:
            raise ValueError(f"points must have shape (N, 3), got {self.points.shape}")
        if self.intensities is None:
            self.intensities = np.zeros(len(self.points))
        self.intensities = np.ascontiguousarray(self.intensities, dtype=np.float64).reshape(-1)
        if len(self.intensities) != len(self.points):
            raise ValueError(f"{len(self.intensities)} intensities for "
                             f"{len(self.points)} points")

    def __len__(self):
        return len(self.points)


@dataclass
class Correspondence:
    """Match between one current point and a local plane or line.

    Planar: coeffs = [nx, ny, nz, d], n.p + d = 0 on the plane.
    Linear: coeffs = [ux, uy, uz, dist], unit direction and the point-to-line
    distance at match time; center is a point on the line.
    """
    idx: int = -1
    point: np.ndarray = field(default_factory=lambda: np.zeros(3))
    coeffs: np.ndarray = field(default_factory=lambda: np.zeros(4))
    center: np.ndarray = field(default_factory=lambda: np.zeros(3))
    valid: bool = False


@dataclass
class CorrespondenceSet:
    """Valid correspondences of one family, stored as arrays."""
    idx: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))  # (M,)
    points: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))          # (M, 3)
    coeffs: np.ndarray = field(default_factory=lambda: np.zeros((0, 4)))          # (M, 4)
    centers: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))         # (M, 3)

    def __len__(self):
        return len(self.idx)

    def __getitem__(self, i) -> Correspondence:
        return Correspondence(idx=int(self.idx[i]), point=self.points[i].copy(),
                              coeffs=self.coeffs[i].copy(),
                              center=self.centers[i].copy(), valid=True)

    def __iter__(self):
        for i in range(len(self)):
            yield self[i]
