"""Frame-to-frame LiDAR odometry over a feature sequence.

Chains scan-to-scan tracking results into a world trajectory. The
previous relative motion seeds the next tracking call (constant velocity
prior). With motion distortion compensation enabled, each frame's
reference features are reprojected to scan end before the next frame is
matched against them.
"""
import time
from tqdm import tqdm

from .config import TrackerConfig
from .distortion import transform_to_end
from .frame_io import read_feature_frame
from .tracker import LidarTracker
from .types import (Pose, FeatureCloud, CORNER_LESS_SHARP, SURF_LESS_FLAT)


class ScanOdometry:
    """Offline scan-to-scan odometry.

    Feed frames in order with process(); the world pose of the first frame
    is the identity.
    """

    def __init__(self, config: TrackerConfig = None):
        self.config = config or TrackerConfig()
        self.tracker = LidarTracker(self.config)
        self.pose_world = Pose.identity()
        self.pose_last = Pose.identity()
        self.prev_feature = None
        self.trajectory = []  # (timestamp, pos(3,), quat(4,))

    def _reference_from(self, cloud_feature: dict, pose_prev_cur: Pose) -> dict:
        """Less-sharp / less-flat sets of this frame, at scan end."""
        reference = {}
        for label in (CORNER_LESS_SHARP, SURF_LESS_FLAT):
            if label not in cloud_feature:
                continue
            cloud = cloud_feature[label]
            points = transform_to_end(cloud.points, cloud.intensities, pose_prev_cur,
                                      self.config.distortion_enabled,
                                      self.config.scan_period)
            # Reprojected points sit at scan end: no residual time offset
            intensities = (cloud.intensities.astype(int).astype(float)
                           if self.config.distortion_enabled else cloud.intensities)
            reference[label] = FeatureCloud(points=points, intensities=intensities)
        return reference

    def process(self, cloud_feature: dict, timestamp: float) -> Pose:
        """Track one frame against the previous one.

        Returns:
            World pose of this frame.
        """
        if self.prev_feature is None:
            pose_prev_cur = Pose.identity()
        else:
            pose_prev_cur = self.tracker.track_cloud(
                self.prev_feature, cloud_feature, self.pose_last)
            self.pose_world = self.pose_world.compose(pose_prev_cur)
            self.pose_last = pose_prev_cur

        self.prev_feature = self._reference_from(cloud_feature, pose_prev_cur)
        self.trajectory.append((timestamp, self.pose_world.t.copy(),
                                self.pose_world.q.copy()))
        return self.pose_world.copy()

    def run(self, frames: list) -> list:
        """Process a whole sequence.

        Args:
            frames: List of (timestamp, frame_dir) or (timestamp, cloud_feature).

        Returns:
            The trajectory as (timestamp, pos(3,), quat(4,)) tuples.
        """
        t_start = time.time()
        pbar = tqdm(frames, total=len(frames), desc="Tracking frames",
                    unit="frame", dynamic_ncols=True)
        for count, (timestamp, frame) in enumerate(pbar, 1):
            cloud_feature = read_feature_frame(frame) if isinstance(frame, str) else frame
            self.process(cloud_feature, timestamp)
            aborted = [r.family for r in self.tracker.last_reports if r.aborted]
            if count > 1 and aborted:
                tqdm.write(f"[Odometry] frame {count - 1} ({timestamp:.3f}): "
                           f"{'/'.join(aborted)} pass aborted")
            elapsed = time.time() - t_start
            rate = count / elapsed if elapsed > 0 else 0
            pbar.set_postfix(rate=f"{rate:.1f} frames/s")
        pbar.close()

        elapsed = time.time() - t_start
        print(f"[Odometry] Done. {len(self.trajectory)} frames in {elapsed:.1f}s")
        return self.trajectory
