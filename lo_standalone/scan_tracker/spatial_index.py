"""Static k-nearest-neighbour index over a reference point set.

Thin wrapper around scipy's cKDTree. The index keeps its own reference to
the point array it was built on so query indices always resolve against
that exact set.
"""
import numpy as np
from scipy.spatial import cKDTree


class SpatialIndex:
    """Read-only k-NN index, built once per reference subset per call."""

    def __init__(self, points: np.ndarray):
        self.points = np.ascontiguousarray(points, dtype=np.float64).reshape(-1, 3)
        self._tree = cKDTree(self.points) if len(self.points) > 0 else None

    def __len__(self):
        return len(self.points)

    def query(self, query_points: np.ndarray, k: int):
        """k nearest reference points for each query point.

        Args:
            query_points: (N, 3) query coordinates.
            k: Number of neighbours. Must not exceed len(self).

        Returns:
            Tuple (sq_dists (N, k), indices (N, k)), sorted by distance.
        """
        if k > len(self.points):
            raise ValueError(f"asked for {k} neighbours from {len(self.points)} points")
        query_points = np.asarray(query_points, dtype=np.float64).reshape(-1, 3)
        dists, idxs = self._tree.query(query_points, k=k)
        if k == 1:
            dists = dists[:, np.newaxis]
            idxs = idxs[:, np.newaxis]
        return dists * dists, idxs

    def neighbourhoods(self, query_points: np.ndarray, k: int):
        """Gather neighbour coordinates for each query point.

        Returns:
            Tuple (neighbors (N, k, 3), far_sq_dist (N,)) where far_sq_dist is
            the squared distance to the k-th neighbour.
        """
        sq_dists, idxs = self.query(query_points, k)
        neighbors = np.ascontiguousarray(self.points[idxs])
        far_sq_dist = np.ascontiguousarray(sq_dists[:, k - 1])
        return neighbors, far_sq_dist
