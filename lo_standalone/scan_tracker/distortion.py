"""Motion distortion time scaling.

A spinning LiDAR captures the points of one scan over a full scan period,
so a point recorded early in the scan has only undergone part of the
inter-scan motion. Each point's intensity carries its time offset in the
fractional part; dividing by the scan period gives the fraction of the
pose to apply to that point.
"""
import numpy as np

from .types import Pose
from .numba_kernels import batch_interp_transform_jit


def time_scale(intensity: float, distortion_enabled: bool,
               scan_period: float) -> float:
    """Interpolation fraction in [0, 1] for one point.

    Returns exactly 1.0 when distortion compensation is disabled.
    """
    if not distortion_enabled:
        return 1.0
    s = (intensity - int(intensity)) / scan_period
    return float(min(max(s, 0.0), 1.0))


def time_scales(intensities: np.ndarray, distortion_enabled: bool,
                scan_period: float) -> np.ndarray:
    """Vectorized time_scale for (N,) intensities."""
    intensities = np.asarray(intensities, dtype=np.float64)
    if not distortion_enabled:
        return np.ones(len(intensities))
    frac = intensities - np.trunc(intensities)
    return np.clip(frac / scan_period, 0.0, 1.0)


def transform_to_start(points: np.ndarray, intensities: np.ndarray,
                       pose: Pose, distortion_enabled: bool,
                       scan_period: float) -> np.ndarray:
    """Move each point into the scan-start frame with its share of pose.

    Args:
        points: (N, 3) points in the current scan.
        intensities: (N,) per-point intensity (time encoded).
        pose: Inter-scan motion (previous <- current).

    Returns:
        (N, 3) points expressed in the previous (scan-start) frame.
    """
    if len(points) == 0:
        return np.zeros((0, 3))
    s = time_scales(intensities, distortion_enabled, scan_period)
    return batch_interp_transform_jit(
        np.ascontiguousarray(points, dtype=np.float64), s, pose.q, pose.t)


def transform_to_end(points: np.ndarray, intensities: np.ndarray,
                     pose: Pose, distortion_enabled: bool,
                     scan_period: float) -> np.ndarray:
    """Reproject a scan to its end time.

    Points are first undistorted to the scan start, then moved by the
    inverse of the full motion. With compensation disabled the points are
    returned unchanged.

    Returns:
        (N, 3) points in the scan-end frame.
    """
    if not distortion_enabled:
        return np.array(points, dtype=np.float64).reshape(-1, 3)
    un_point = transform_to_start(points, intensities, pose,
                                  distortion_enabled, scan_period)
    return pose.inverse().transform(un_point)
