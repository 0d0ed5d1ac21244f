import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from scan_tracker.so3 import euler_to_quat
from scan_tracker.types import (Pose, FeatureCloud, CORNER_SHARP, CORNER_LESS_SHARP,
                                SURF_FLAT, SURF_LESS_FLAT)


# =============================================================================
# Synthetic structured scene
# =============================================================================
# Surfaces are horizontal only (ground + raised platform), so the surface pass
# is blind to x, y and yaw. Corners are vertical poles plus one horizontal bar,
# all more than 1 m apart so every k-NN neighbourhood stays on one line.

POLES = [(3.0, 2.0), (-2.0, 4.0), (4.0, -3.0), (-3.0, -3.0), (0.5, -4.5)]


def _grid(xs, ys, z):
    gx, gy = np.meshgrid(xs, ys)
    return np.column_stack([gx.ravel(), gy.ravel(), np.full(gx.size, z)])


def world_surfaces() -> np.ndarray:
    ground = _grid(np.arange(-5.0, 5.0 + 1e-9, 0.25),
                   np.arange(-5.0, 5.0 + 1e-9, 0.25), -1.5)
    platform = _grid(np.arange(2.0, 4.0 + 1e-9, 0.25),
                     np.arange(-4.0, -2.0 + 1e-9, 0.25), 0.5)
    return np.vstack([ground, platform])


def world_corners() -> np.ndarray:
    zs = np.arange(-1.4, 2.0 + 1e-9, 0.1)
    poles = [np.column_stack([np.full(len(zs), x), np.full(len(zs), y), zs])
             for x, y in POLES]
    xs = np.arange(-4.0, 0.0 + 1e-9, 0.1)
    bar = np.column_stack([xs, np.full(len(xs), 5.5), np.full(len(xs), 1.0)])
    return np.vstack(poles + [bar])


def _intensities(n: int) -> np.ndarray:
    # scan line id in the integer part, zero time offset
    return (np.arange(n) % 16).astype(np.float64)


def feature_frame(pose_world: Pose) -> dict:
    """All four feature sets of a frame whose world pose is pose_world."""
    to_frame = pose_world.inverse()
    surf = to_frame.transform(world_surfaces())
    corner = to_frame.transform(world_corners())
    return {
        SURF_LESS_FLAT: FeatureCloud(surf, _intensities(len(surf))),
        SURF_FLAT: FeatureCloud(surf[::3], _intensities(len(surf))[::3]),
        CORNER_LESS_SHARP: FeatureCloud(corner, _intensities(len(corner))),
        CORNER_SHARP: FeatureCloud(corner[::2], _intensities(len(corner))[::2]),
    }


def _capture_during(world: np.ndarray, motion: Pose, scan_period: float,
                    n_slots: int = 10):
    """Points seen by a sensor moving from identity to motion over one scan.

    Point i is captured at fraction s_i of the scan, from the sensor pose
    T_s = (Exp(s_i phi), s_i t), and carries s_i * scan_period in the
    fractional part of its intensity.
    """
    rotvec = Rotation.from_quat(motion.q).as_rotvec()
    slot = np.arange(len(world)) % n_slots
    s = (slot + 0.5) / n_slots
    points = np.empty_like(world)
    for k in range(n_slots):
        sel = slot == k
        s_k = (k + 0.5) / n_slots
        pose_s = Pose(q=Rotation.from_rotvec(s_k * rotvec).as_quat(), t=s_k * motion.t)
        points[sel] = pose_s.inverse().transform(world[sel])
    intensities = (np.arange(len(world)) % 16).astype(np.float64) + s * scan_period
    return points, intensities


def distorted_frame(motion: Pose, scan_period: float = 0.1) -> dict:
    """Feature frame captured while moving by motion, previous frame at origin."""
    surf, surf_i = _capture_during(world_surfaces(), motion, scan_period)
    corner, corner_i = _capture_during(world_corners(), motion, scan_period)
    return {
        SURF_LESS_FLAT: FeatureCloud(surf, surf_i),
        SURF_FLAT: FeatureCloud(surf[::3], surf_i[::3]),
        CORNER_LESS_SHARP: FeatureCloud(corner, corner_i),
        CORNER_SHARP: FeatureCloud(corner[::2], corner_i[::2]),
    }


def make_pose(x=0.0, y=0.0, z=0.0, roll=0.0, pitch=0.0, yaw=0.0) -> Pose:
    return Pose(q=euler_to_quat(roll, pitch, yaw), t=[x, y, z])


def rotation_error(a: Pose, b: Pose) -> float:
    """Angle (rad) of a^-1 b."""
    d = a.inverse().compose(b)
    return 2.0 * np.arctan2(np.linalg.norm(d.q[0:3]), abs(d.q[3]))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def numpy_seed():
    """Set numpy random seed for reproducible tests."""
    np.random.seed(42)
    yield


@pytest.fixture
def prev_feature():
    """Reference frame at the world origin."""
    return feature_frame(Pose.identity())


@pytest.fixture
def frame_at():
    """Factory: feature frame for a given world pose."""
    return feature_frame


@pytest.fixture
def pose_from():
    """Factory: Pose from x, y, z, roll, pitch, yaw."""
    return make_pose


@pytest.fixture
def rot_err():
    return rotation_error


@pytest.fixture
def distorted_frame_for():
    """Factory: motion-distorted feature frame for a given inter-scan motion."""
    return distorted_frame
