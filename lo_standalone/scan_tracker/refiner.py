"""Split pose refinement.

Surface correspondences constrain z, roll and pitch well but say little
about in-plane translation and yaw; corner correspondences are the other
way round. Each family therefore refines only its own half of the pose
while the complementary directions are held fixed in the parameterization.
"""
import numpy as np
from dataclasses import dataclass, field

from .config import TrackerConfig
from .distortion import time_scales
from .factors import LidarScanPlaneNormFactor, LidarScanEdgeFactor
from .matcher import match_surf_from_scan, match_corner_from_scan
from .parameterization import PoseLocalParameterization, X, Y, Z, ROLL, PITCH, YAW
from .solver import Problem, SolverOptions, HuberLoss, solve
from .spatial_index import SpatialIndex
from .types import Pose, FeatureCloud

SURF = 'surf'
CORNER = 'corner'

# Tangent directions each family leaves untouched
FIXED_DIRECTIONS = {
    SURF: (X, Y, YAW),
    CORNER: (Z, ROLL, PITCH),
}


@dataclass
class RefineReport:
    """What one family's refinement did."""
    family: str = SURF
    correspondences: list = field(default_factory=list)  # count per outer iteration
    summaries: list = field(default_factory=list)        # SolverSummary per solve
    aborted: bool = False

    @property
    def outer_iterations(self) -> int:
        return len(self.correspondences)


class SplitPoseRefiner:
    """Refine a shared pose parameter block with one feature family."""

    def __init__(self, config: TrackerConfig = None):
        self.config = config or TrackerConfig()

    def _make_factor(self, family, matches, scales):
        if family == SURF:
            return LidarScanPlaneNormFactor.from_correspondences(matches, scales[matches.idx])
        return LidarScanEdgeFactor.from_correspondences(matches, scales[matches.idx])

    def _match(self, family, index, ref_cloud, cur_cloud, pose_local, scales):
        if family == SURF:
            return match_surf_from_scan(index, ref_cloud.points, cur_cloud.points,
                                        pose_local, self.config.matcher, scales)
        return match_corner_from_scan(index, ref_cloud.points, cur_cloud.points,
                                      pose_local, self.config.matcher, scales)

    def refine(self, para_pose: np.ndarray, family: str, index: SpatialIndex,
               ref_cloud: FeatureCloud, cur_cloud: FeatureCloud) -> RefineReport:
        """Run the bounded refinement loop for one family.

        Args:
            para_pose: (7,) shared pose parameters, updated in place.
            family: SURF or CORNER.
            index: k-NN index over ref_cloud.points.
            ref_cloud: Previous-frame features of this family.
            cur_cloud: Current-frame features of this family.

        Returns:
            RefineReport for diagnostics.
        """
        if family not in FIXED_DIRECTIONS:
            raise ValueError(f"unknown feature family: {family}")
        cfg = self.config
        report = RefineReport(family=family)
        scales = time_scales(cur_cloud.intensities, cfg.distortion_enabled,
                             cfg.scan_period)

        for iter_cnt in range(cfg.max_outer_iterations):
            local_parameterization = PoseLocalParameterization()
            local_parameterization.set_parameter()
            local_parameterization.fix(FIXED_DIRECTIONS[family])

            problem = Problem()
            problem.add_parameter_block(para_pose, local_parameterization)

            pose_local = Pose.from_param(para_pose)
            matches = self._match(family, index, ref_cloud, cur_cloud, pose_local,
                                  scales)
            report.correspondences.append(len(matches))
            if len(matches) < cfg.min_correspondences:
                print(f"[Tracker] less correspondence! {family}: {len(matches)} "
                      f"< {cfg.min_correspondences} at iteration {iter_cnt}")
                report.aborted = True
                break

            loss_function = HuberLoss(cfg.loss_scale)
            factor = self._make_factor(family, matches, scales)
            problem.add_residual_block(factor, loss_function, para_pose)

            options = SolverOptions(max_num_iterations=cfg.max_solver_iterations,
                                    minimizer_progress_to_stdout=cfg.solver_progress)
            summary = solve(options, problem)
            report.summaries.append(summary)

        return report
