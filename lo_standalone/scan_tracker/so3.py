"""Quaternion and rotation helpers.

Quaternions are stored as (4,) arrays in [qx, qy, qz, qw] order, the same
order scipy's Rotation and the TUM trajectory format use.
"""
import numpy as np
from scipy.spatial.transform import Rotation


def quat_normalize(q: np.ndarray) -> np.ndarray:
    """Unit quaternion with non-negative scalar part."""
    q = np.asarray(q, dtype=np.float64)
    n = np.linalg.norm(q)
    if n < 1e-12:
        raise ValueError("cannot normalize a zero quaternion")
    q = q / n
    if q[3] < 0.0:
        q = -q
    return q


def quat_multiply(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Hamilton product a * b.

    Args:
        a: (4,) quaternion [x, y, z, w]
        b: (4,) quaternion [x, y, z, w]

    Returns:
        (4,) quaternion [x, y, z, w]
    """
    ax, ay, az, aw = a
    bx, by, bz, bw = b
    return np.array([
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    ])


def quat_conjugate(q: np.ndarray) -> np.ndarray:
    return np.array([-q[0], -q[1], -q[2], q[3]])


def delta_q(theta: np.ndarray) -> np.ndarray:
    """Small-angle quaternion for a rotation tangent increment.

    dq = [theta / 2, 1], normalized.

    Args:
        theta: (3,) rotation increment (rad)

    Returns:
        (4,) unit quaternion [x, y, z, w]
    """
    half = 0.5 * np.asarray(theta, dtype=np.float64)
    dq = np.array([half[0], half[1], half[2], 1.0])
    return dq / np.linalg.norm(dq)


def quat_to_rotation_matrix(q: np.ndarray) -> np.ndarray:
    return Rotation.from_quat(q).as_matrix()


def euler_to_quat(roll: float, pitch: float, yaw: float) -> np.ndarray:
    """Quaternion from roll/pitch/yaw (R = Rz(yaw) Ry(pitch) Rx(roll))."""
    return quat_normalize(
        Rotation.from_euler('ZYX', [yaw, pitch, roll]).as_quat())


def rot_to_euler(R: np.ndarray) -> np.ndarray:
    """Rotation matrix to Euler angles, inverse of euler_to_quat.

    Args:
        R: (3, 3) rotation matrix

    Returns:
        (3,) Euler angles [roll, pitch, yaw] in radians
    """
    sy = np.sqrt(R[0, 0] ** 2 + R[1, 0] ** 2)
    singular = sy < 1e-6
    if not singular:
        x = np.arctan2(R[2, 1], R[2, 2])
        y = np.arctan2(-R[2, 0], sy)
        z = np.arctan2(R[1, 0], R[0, 0])
    else:
        x = np.arctan2(-R[1, 2], R[1, 1])
        y = np.arctan2(-R[2, 0], sy)
        z = 0.0
    return np.array([x, y, z])
