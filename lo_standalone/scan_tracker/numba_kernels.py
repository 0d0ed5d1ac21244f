"""Numba JIT-compiled kernels for the per-point inner loops.

Key targets:

1. quaternion primitives — rotation matrix, slerp from identity
2. batch point transforms — full pose and time-interpolated pose
3. local geometry fitting — plane / line PCA over k-NN neighbourhoods
4. residual evaluation — point-to-plane and point-to-line for a pose
5. analytic Jacobians — residuals + d(residual)/d(tangent update)

The batch kernels run with parallel=True; every output row depends only on
its own input row, so results are identical to a serial run.
"""
import math
import numpy as np
from numba import njit, prange


# ─────────────────────────────────────────────────────────────
#  Quaternion primitives ([x, y, z, w] order)
# ─────────────────────────────────────────────────────────────

@njit(cache=True)
def quat_to_rot_jit(q):
    """Rotation matrix from a (possibly unnormalized) quaternion."""
    n = math.sqrt(q[0] * q[0] + q[1] * q[1] + q[2] * q[2] + q[3] * q[3])
    x = q[0] / n
    y = q[1] / n
    z = q[2] / n
    w = q[3] / n
    R = np.empty((3, 3))
    R[0, 0] = 1.0 - 2.0 * (y * y + z * z)
    R[0, 1] = 2.0 * (x * y - z * w)
    R[0, 2] = 2.0 * (x * z + y * w)
    R[1, 0] = 2.0 * (x * y + z * w)
    R[1, 1] = 1.0 - 2.0 * (x * x + z * z)
    R[1, 2] = 2.0 * (y * z - x * w)
    R[2, 0] = 2.0 * (x * z - y * w)
    R[2, 1] = 2.0 * (y * z + x * w)
    R[2, 2] = 1.0 - 2.0 * (x * x + y * y)
    return R


@njit(cache=True)
def quat_slerp_identity_jit(q, s):
    """Slerp from identity to q at fraction s (shortest arc)."""
    n = math.sqrt(q[0] * q[0] + q[1] * q[1] + q[2] * q[2] + q[3] * q[3])
    sign = 1.0
    if q[3] < 0.0:
        sign = -1.0
    x = sign * q[0] / n
    y = sign * q[1] / n
    z = sign * q[2] / n
    w = sign * q[3] / n

    out = np.empty(4)
    if s == 1.0:
        out[0] = x
        out[1] = y
        out[2] = z
        out[3] = w
        return out
    v_norm = math.sqrt(x * x + y * y + z * z)
    if v_norm < 1e-12:
        out[0] = 0.0
        out[1] = 0.0
        out[2] = 0.0
        out[3] = 1.0
        return out
    h = s * math.atan2(v_norm, w)
    sh = math.sin(h) / v_norm
    out[0] = x * sh
    out[1] = y * sh
    out[2] = z * sh
    out[3] = math.cos(h)
    return out


@njit(cache=True)
def _transform_point(R, t, s, p, out):
    for i in range(3):
        out[i] = R[i, 0] * p[0] + R[i, 1] * p[1] + R[i, 2] * p[2] + s * t[i]


# ─────────────────────────────────────────────────────────────
#  Batch transforms
# ─────────────────────────────────────────────────────────────

@njit(parallel=True, cache=True)
def batch_transform_points_jit(points, q, t):
    """p' = R(q) p + t for (N, 3) points."""
    N = points.shape[0]
    R = quat_to_rot_jit(q)
    out = np.empty((N, 3))
    for i in prange(N):
        _transform_point(R, t, 1.0, points[i], out[i])
    return out


@njit(parallel=True, cache=True)
def batch_interp_transform_jit(points, scales, q, t):
    """p' = R(slerp(I, q, s_i)) p + s_i t with a per-point fraction s_i."""
    N = points.shape[0]
    out = np.empty((N, 3))
    for i in prange(N):
        R = quat_to_rot_jit(quat_slerp_identity_jit(q, scales[i]))
        _transform_point(R, t, scales[i], points[i], out[i])
    return out


# ─────────────────────────────────────────────────────────────
#  Local geometry fitting
# ─────────────────────────────────────────────────────────────

@njit(cache=True)
def _neighbour_moments(nbrs):
    """Centroid and covariance (divided by K) of a (K, 3) neighbourhood."""
    K = nbrs.shape[0]
    center = np.zeros(3)
    for j in range(K):
        for a in range(3):
            center[a] += nbrs[j, a]
    for a in range(3):
        center[a] /= K
    cov = np.zeros((3, 3))
    for j in range(K):
        for a in range(3):
            da = nbrs[j, a] - center[a]
            for b in range(3):
                cov[a, b] += da * (nbrs[j, b] - center[b])
    for a in range(3):
        for b in range(3):
            cov[a, b] /= K
    return center, cov


@njit(parallel=True, cache=True)
def fit_planes_jit(neighbors, far_sq_dist, max_sq_dist, plane_threshold,
                   min_eigen_spread):
    """Fit a plane to each k-NN neighbourhood.

    Args:
        neighbors: (N, K, 3) neighbour coordinates.
        far_sq_dist: (N,) squared distance to the farthest neighbour.
        max_sq_dist: neighbourhood gate.
        plane_threshold: max |n.p + d| over the neighbours.
        min_eigen_spread: middle eigenvalue floor (rejects collinear sets).

    Returns:
        coeffs (N, 4) = [n, d], centers (N, 3), valid (N,) bool.
    """
    N = neighbors.shape[0]
    K = neighbors.shape[1]
    coeffs = np.zeros((N, 4))
    centers = np.zeros((N, 3))
    valid = np.zeros(N, dtype=np.bool_)
    for i in prange(N):
        if not far_sq_dist[i] < max_sq_dist:
            continue
        center, cov = _neighbour_moments(neighbors[i])
        evals, evecs = np.linalg.eigh(cov)
        if evals[1] < min_eigen_spread:
            continue
        nx = evecs[0, 0]
        ny = evecs[1, 0]
        nz = evecs[2, 0]
        d = -(nx * center[0] + ny * center[1] + nz * center[2])
        ok = True
        for j in range(K):
            dist = (nx * neighbors[i, j, 0] + ny * neighbors[i, j, 1] +
                    nz * neighbors[i, j, 2] + d)
            if abs(dist) > plane_threshold:
                ok = False
                break
        if ok:
            coeffs[i, 0] = nx
            coeffs[i, 1] = ny
            coeffs[i, 2] = nz
            coeffs[i, 3] = d
            for a in range(3):
                centers[i, a] = center[a]
            valid[i] = True
    return coeffs, centers, valid


@njit(parallel=True, cache=True)
def fit_lines_jit(query, neighbors, far_sq_dist, max_sq_dist, eigen_ratio,
                  min_eigen_spread):
    """Fit a line to each k-NN neighbourhood.

    Args:
        query: (N, 3) query points (already in the reference frame).
        neighbors: (N, K, 3) neighbour coordinates.
        far_sq_dist: (N,) squared distance to the farthest neighbour.
        max_sq_dist: neighbourhood gate.
        eigen_ratio: required dominant / middle eigenvalue ratio.
        min_eigen_spread: dominant eigenvalue floor (rejects point blobs).

    Returns:
        coeffs (N, 4) = [u, dist], centers (N, 3), valid (N,) bool.
    """
    N = neighbors.shape[0]
    coeffs = np.zeros((N, 4))
    centers = np.zeros((N, 3))
    valid = np.zeros(N, dtype=np.bool_)
    for i in prange(N):
        if not far_sq_dist[i] < max_sq_dist:
            continue
        center, cov = _neighbour_moments(neighbors[i])
        evals, evecs = np.linalg.eigh(cov)
        if evals[2] < min_eigen_spread or not evals[2] > eigen_ratio * evals[1]:
            continue
        ux = evecs[0, 2]
        uy = evecs[1, 2]
        uz = evecs[2, 2]
        dx = query[i, 0] - center[0]
        dy = query[i, 1] - center[1]
        dz = query[i, 2] - center[2]
        along = dx * ux + dy * uy + dz * uz
        ox = dx - along * ux
        oy = dy - along * uy
        oz = dz - along * uz
        coeffs[i, 0] = ux
        coeffs[i, 1] = uy
        coeffs[i, 2] = uz
        coeffs[i, 3] = math.sqrt(ox * ox + oy * oy + oz * oz)
        for a in range(3):
            centers[i, a] = center[a]
        valid[i] = True
    return coeffs, centers, valid


# ─────────────────────────────────────────────────────────────
#  Residuals
# ─────────────────────────────────────────────────────────────

@njit(parallel=True, cache=True)
def plane_residuals_jit(points, coeffs, scales, q, t):
    """Signed point-to-plane distance after the time-scaled pose.

    Returns:
        (M,) residuals.
    """
    M = points.shape[0]
    res = np.empty(M)
    for i in prange(M):
        R = quat_to_rot_jit(quat_slerp_identity_jit(q, scales[i]))
        p = np.empty(3)
        _transform_point(R, t, scales[i], points[i], p)
        res[i] = (coeffs[i, 0] * p[0] + coeffs[i, 1] * p[1] +
                  coeffs[i, 2] * p[2] + coeffs[i, 3])
    return res


@njit(parallel=True, cache=True)
def edge_residuals_jit(points, coeffs, centers, scales, q, t):
    """Offset of the time-scaled transformed point orthogonal to its line.

    The norm of each row is the point-to-line distance.

    Returns:
        (M, 3) residuals.
    """
    M = points.shape[0]
    res = np.empty((M, 3))
    for i in prange(M):
        R = quat_to_rot_jit(quat_slerp_identity_jit(q, scales[i]))
        p = np.empty(3)
        _transform_point(R, t, scales[i], points[i], p)
        dx = p[0] - centers[i, 0]
        dy = p[1] - centers[i, 1]
        dz = p[2] - centers[i, 2]
        along = dx * coeffs[i, 0] + dy * coeffs[i, 1] + dz * coeffs[i, 2]
        res[i, 0] = dx - along * coeffs[i, 0]
        res[i, 1] = dy - along * coeffs[i, 1]
        res[i, 2] = dz - along * coeffs[i, 2]
    return res


# ─────────────────────────────────────────────────────────────
#  Jacobians w.r.t. the tangent update [dx, dy, dz, droll, dpitch, dyaw]
# ─────────────────────────────────────────────────────────────

@njit(cache=True)
def skew_jit(v):
    """Skew-symmetric matrix from 3-vector."""
    result = np.zeros((3, 3))
    result[0, 1] = -v[2]
    result[0, 2] = v[1]
    result[1, 0] = v[2]
    result[1, 2] = -v[0]
    result[2, 0] = -v[1]
    result[2, 1] = v[0]
    return result


@njit(cache=True)
def quat_to_rotvec_jit(q):
    """Rotation vector (axis * angle) of q, shortest arc."""
    n = math.sqrt(q[0] * q[0] + q[1] * q[1] + q[2] * q[2] + q[3] * q[3])
    sign = 1.0
    if q[3] < 0.0:
        sign = -1.0
    out = np.zeros(3)
    v_norm = math.sqrt(q[0] * q[0] + q[1] * q[1] + q[2] * q[2]) / n
    if v_norm < 1e-12:
        return out
    angle = 2.0 * math.atan2(v_norm, sign * q[3] / n)
    for a in range(3):
        out[a] = sign * q[a] / n / v_norm * angle
    return out


@njit(cache=True)
def right_jacobian_jit(phi):
    """Right Jacobian of SO(3) at rotation vector phi."""
    th = math.sqrt(phi[0] * phi[0] + phi[1] * phi[1] + phi[2] * phi[2])
    K = skew_jit(phi)
    if th < 1e-4:
        a = 0.5 - th * th / 24.0
        b = 1.0 / 6.0 - th * th / 120.0
    else:
        a = (1.0 - math.cos(th)) / (th * th)
        b = (th - math.sin(th)) / (th * th * th)
    return np.eye(3) - a * K + b * (K @ K)


@njit(cache=True)
def right_jacobian_inv_jit(phi):
    """Inverse right Jacobian of SO(3) at rotation vector phi."""
    th = math.sqrt(phi[0] * phi[0] + phi[1] * phi[1] + phi[2] * phi[2])
    K = skew_jit(phi)
    if th < 1e-4:
        c = 1.0 / 12.0 + th * th / 720.0
    else:
        c = 1.0 / (th * th) - (1.0 + math.cos(th)) / (2.0 * th * math.sin(th))
    return np.eye(3) + 0.5 * K + c * (K @ K)


@njit(cache=True)
def _rotation_jacobian(R, p, s, phi, Jr_inv):
    """d(R_s p) / d(dtheta) for R_s = Exp(s phi) and q <- q * Exp(dtheta).

    The body perturbation of q becomes s Jr(s phi) Jr^-1(phi) dtheta on R_s.
    """
    A = s * (right_jacobian_jit(s * phi) @ Jr_inv)
    return -((R @ skew_jit(p)) @ A)


@njit(parallel=True, cache=True)
def plane_jacobians_jit(points, coeffs, scales, q, t):
    """Point-to-plane residuals and their analytic Jacobians.

    Returns:
        res (M,), J (M, 6).
    """
    M = points.shape[0]
    phi = quat_to_rotvec_jit(q)
    Jr_inv = right_jacobian_inv_jit(phi)
    res = np.empty(M)
    J = np.empty((M, 6))
    for i in prange(M):
        s = scales[i]
        R = quat_to_rot_jit(quat_slerp_identity_jit(q, s))
        p = np.empty(3)
        _transform_point(R, t, s, points[i], p)
        res[i] = (coeffs[i, 0] * p[0] + coeffs[i, 1] * p[1] +
                  coeffs[i, 2] * p[2] + coeffs[i, 3])
        dR = _rotation_jacobian(R, points[i], s, phi, Jr_inv)
        for a in range(3):
            J[i, a] = s * coeffs[i, a]
            J[i, 3 + a] = (coeffs[i, 0] * dR[0, a] + coeffs[i, 1] * dR[1, a] +
                           coeffs[i, 2] * dR[2, a])
    return res, J


@njit(parallel=True, cache=True)
def edge_jacobians_jit(points, coeffs, centers, scales, q, t):
    """Point-to-line offsets and their analytic Jacobians.

    r = (I - u u^T)(R_s p + s t - c), so J = (I - u u^T) [s I | dR].

    Returns:
        res (M, 3), J (M, 3, 6).
    """
    M = points.shape[0]
    phi = quat_to_rotvec_jit(q)
    Jr_inv = right_jacobian_inv_jit(phi)
    res = np.empty((M, 3))
    J = np.empty((M, 3, 6))
    for i in prange(M):
        s = scales[i]
        R = quat_to_rot_jit(quat_slerp_identity_jit(q, s))
        p = np.empty(3)
        _transform_point(R, t, s, points[i], p)
        P = np.empty((3, 3))
        for a in range(3):
            for b in range(3):
                P[a, b] = -coeffs[i, a] * coeffs[i, b]
            P[a, a] += 1.0
        dR = _rotation_jacobian(R, points[i], s, phi, Jr_inv)
        for a in range(3):
            res[i, a] = (P[a, 0] * (p[0] - centers[i, 0]) +
                         P[a, 1] * (p[1] - centers[i, 1]) +
                         P[a, 2] * (p[2] - centers[i, 2]))
            for b in range(3):
                J[i, a, b] = s * P[a, b]
                J[i, a, 3 + b] = (P[a, 0] * dR[0, b] + P[a, 1] * dR[1, b] +
                                  P[a, 2] * dR[2, b])
    return res, J


# ─────────────────────────────────────────────────────────────
#  Warm-up function — call once at startup to pre-compile all JIT
# ─────────────────────────────────────────────────────────────

def warmup():
    """Pre-compile all JIT functions with dummy data."""
    q = np.array([0.0, 0.0, 0.0, 1.0])
    t = np.zeros(3)
    quat_to_rot_jit(q)
    quat_slerp_identity_jit(q, 0.5)

    pts = np.random.randn(4, 3)
    scales = np.ones(4)
    batch_transform_points_jit(pts, q, t)
    batch_interp_transform_jit(pts, scales, q, t)

    nbrs = np.random.randn(4, 5, 3)
    far = np.zeros(4)
    fit_planes_jit(nbrs, far, 1.0, 0.2, 1e-6)
    fit_lines_jit(pts, nbrs, far, 1.0, 3.0, 1e-6)

    coeffs = np.random.randn(4, 4)
    plane_residuals_jit(pts, coeffs, scales, q, t)
    edge_residuals_jit(pts, coeffs, pts, scales, q, t)
    plane_jacobians_jit(pts, coeffs, scales, q, t)
    edge_jacobians_jit(pts, coeffs, pts, scales, q, t)
