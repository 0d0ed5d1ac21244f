"""Scan-to-scan pose tracker.

Estimates the transform that maps the current frame's feature points into
the previous frame: surface features first refine (z, roll, pitch), then
corner features refine (x, y, yaw) starting from the surface result.
"""
import time
from dataclasses import dataclass
import numpy as np

from .config import TrackerConfig
from .refiner import SplitPoseRefiner, SURF, CORNER
from .spatial_index import SpatialIndex
from .types import (Pose, FeatureCloud, CORNER_SHARP, CORNER_LESS_SHARP,
                    SURF_FLAT, SURF_LESS_FLAT)


class MissingFeatureError(KeyError):
    """A required labelled feature set is absent from a frame."""


def _require(cloud_feature: dict, label: str, frame: str) -> FeatureCloud:
    if label not in cloud_feature:
        raise MissingFeatureError(f"{frame} frame has no '{label}' features")
    cloud = cloud_feature[label]
    if not isinstance(cloud, FeatureCloud):
        raise ValueError(f"{frame} '{label}' must be a FeatureCloud, "
                         f"got {type(cloud).__name__}")
    return cloud


@dataclass
class TrackResult:
    """Pose and diagnostics of one tracking call."""
    pose: Pose
    reports: tuple = ()        # (surface RefineReport, corner RefineReport)
    solve_time: float = 0.0    # seconds spent in both passes


class LidarTracker:
    """Owns the tracking configuration and the two refinement passes.

    track() keeps all per-call state local and can be shared between
    threads. track_cloud() also records the latest diagnostics in
    last_reports / last_solve_time, so use one tracker per thread with it.
    """

    def __init__(self, config: TrackerConfig = None):
        self.config = config or TrackerConfig()
        self.refiner = SplitPoseRefiner(self.config)
        self.last_reports = ()
        self.last_solve_time = 0.0

    def track(self, prev_cloud_feature: dict, cur_cloud_feature: dict,
              pose_ini: Pose) -> TrackResult:
        """Estimate the previous <- current transform.

        Args:
            prev_cloud_feature: Previous frame features; needs the
                'corner_points_less_sharp' and 'surf_points_less_flat' sets.
            cur_cloud_feature: Current frame features; needs the
                'corner_points_sharp' and 'surf_points_flat' sets.
            pose_ini: Initial guess (motion prior).

        Returns:
            TrackResult with a new Pose (unit quaternion) and both reports.

        Raises:
            MissingFeatureError: A required feature set is missing.
        """
        # step 1: prev feature and kdtree
        corner_points_last = _require(prev_cloud_feature, CORNER_LESS_SHARP, 'previous')
        surf_points_last = _require(prev_cloud_feature, SURF_LESS_FLAT, 'previous')
        kdtree_corner_last = SpatialIndex(corner_points_last.points)
        kdtree_surf_last = SpatialIndex(surf_points_last.points)

        # step 2: current feature
        corner_points_sharp = _require(cur_cloud_feature, CORNER_SHARP, 'current')
        surf_points_flat = _require(cur_cloud_feature, SURF_FLAT, 'current')

        # step 3: set initial pose
        para_pose = np.ascontiguousarray(pose_ini.to_param())

        t_solver = time.time()
        surf_report = self.refiner.refine(
            para_pose, SURF, kdtree_surf_last, surf_points_last, surf_points_flat)
        corner_report = self.refiner.refine(
            para_pose, CORNER, kdtree_corner_last, corner_points_last, corner_points_sharp)
        solve_time = time.time() - t_solver

        if self.config.print_timing:
            print(f"[Tracker] split solver: {solve_time * 1000.0:.3f} ms "
                  f"(surf {surf_report.correspondences}, "
                  f"corner {corner_report.correspondences})")
            for report in (surf_report, corner_report):
                for summary in report.summaries:
                    print(f"[Tracker]   {report.family}: {summary.brief_report()}")

        return TrackResult(pose=Pose.from_param(para_pose),
                           reports=(surf_report, corner_report),
                           solve_time=solve_time)

    def track_cloud(self, prev_cloud_feature: dict, cur_cloud_feature: dict,
                    pose_ini: Pose) -> Pose:
        """track() that returns only the pose and keeps the diagnostics."""
        result = self.track(prev_cloud_feature, cur_cloud_feature, pose_ini)
        self.last_reports = result.reports
        self.last_solve_time = result.solve_time
        return result.pose
