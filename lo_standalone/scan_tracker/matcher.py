"""Scan-to-scan correspondence search.

Every current feature point is moved into the previous frame with the
current pose estimate (its time-scaled share of it when per-point scales
are given), its k nearest reference points are fitted with a plane
(surface features) or a line (corner features), and the fit is kept only
if the neighbourhood clearly has that structure. Rejected points are
dropped silently; sparse geometry near scan borders is normal.
"""
import numpy as np

from .config import MatcherConfig
from .spatial_index import SpatialIndex
from .types import Pose, Correspondence, CorrespondenceSet
from .numba_kernels import (batch_transform_points_jit, batch_interp_transform_jit,
                            fit_planes_jit, fit_lines_jit)


def _empty_set() -> CorrespondenceSet:
    return CorrespondenceSet()


def _collect(valid, cur_points, coeffs, centers) -> CorrespondenceSet:
    idx = np.flatnonzero(valid)
    return CorrespondenceSet(
        idx=idx.astype(np.int64),
        points=cur_points[idx].copy(),
        coeffs=coeffs[idx],
        centers=centers[idx],
    )


def _prepare(index: SpatialIndex, cur_points: np.ndarray, pose: Pose, scales,
             config: MatcherConfig):
    """Transform current points and gather their neighbourhoods.

    Returns None when no correspondence can be formed at all.
    """
    k = config.num_neighbors
    if len(cur_points) == 0 or len(index) < k:
        return None
    cur_points = np.ascontiguousarray(cur_points, dtype=np.float64)
    if scales is None:
        sel = batch_transform_points_jit(cur_points, pose.q, pose.t)
    else:
        scales = np.ascontiguousarray(scales, dtype=np.float64)
        if len(scales) != len(cur_points):
            raise ValueError(f"{len(scales)} time scales for {len(cur_points)} points")
        sel = batch_interp_transform_jit(cur_points, scales, pose.q, pose.t)
    neighbors, far_sq_dist = index.neighbourhoods(sel, k)
    return cur_points, sel, neighbors, far_sq_dist


def match_surf_from_scan(index: SpatialIndex, ref_points: np.ndarray,
                         cur_points: np.ndarray, pose: Pose,
                         config: MatcherConfig = None,
                         scales: np.ndarray = None) -> CorrespondenceSet:
    """Point-to-plane correspondences for all current surface points.

    Args:
        index: k-NN index over ref_points.
        ref_points: (M, 3) previous-frame surface points.
        cur_points: (N, 3) current-frame surface points (untransformed).
        pose: Current estimate of the previous <- current transform.
        config: Matching thresholds.
        scales: Optional (N,) time scales; each point is then moved by its
            share of pose (scan-start matching) instead of the full pose.

    Returns:
        CorrespondenceSet with coeffs [nx, ny, nz, d].
    """
    config = config or MatcherConfig()
    if len(index) != len(ref_points):
        raise ValueError("index was not built on ref_points")
    prepared = _prepare(index, cur_points, pose, scales, config)
    if prepared is None:
        return _empty_set()
    cur_points, _, neighbors, far_sq_dist = prepared
    coeffs, centers, valid = fit_planes_jit(
        neighbors, far_sq_dist, config.max_sq_dist,
        config.plane_threshold, config.min_eigen_spread)
    return _collect(valid, cur_points, coeffs, centers)


def match_corner_from_scan(index: SpatialIndex, ref_points: np.ndarray,
                           cur_points: np.ndarray, pose: Pose,
                           config: MatcherConfig = None,
                           scales: np.ndarray = None) -> CorrespondenceSet:
    """Point-to-line correspondences for all current corner points.

    Returns:
        CorrespondenceSet with coeffs [ux, uy, uz, dist] and line centers.
    """
    config = config or MatcherConfig()
    if len(index) != len(ref_points):
        raise ValueError("index was not built on ref_points")
    prepared = _prepare(index, cur_points, pose, scales, config)
    if prepared is None:
        return _empty_set()
    cur_points, sel, neighbors, far_sq_dist = prepared
    coeffs, centers, valid = fit_lines_jit(
        sel, neighbors, far_sq_dist, config.max_sq_dist,
        config.line_eigen_ratio, config.min_eigen_spread)
    return _collect(valid, cur_points, coeffs, centers)


def _single(matches: CorrespondenceSet, point: np.ndarray) -> Correspondence:
    if len(matches) == 0:
        return Correspondence(idx=0, point=np.asarray(point, dtype=np.float64).copy(),
                              valid=False)
    return matches[0]


def match_surf_point(point: np.ndarray, index: SpatialIndex,
                     ref_points: np.ndarray, pose: Pose,
                     config: MatcherConfig = None) -> Correspondence:
    """Planar correspondence for one point; valid=False when rejected."""
    pts = np.asarray(point, dtype=np.float64).reshape(1, 3)
    return _single(match_surf_from_scan(index, ref_points, pts, pose, config), point)


def match_corner_point(point: np.ndarray, index: SpatialIndex,
                       ref_points: np.ndarray, pose: Pose,
                       config: MatcherConfig = None) -> Correspondence:
    """Linear correspondence for one point; valid=False when rejected."""
    pts = np.asarray(point, dtype=np.float64).reshape(1, 3)
    return _single(match_corner_from_scan(index, ref_points, pts, pose, config), point)
