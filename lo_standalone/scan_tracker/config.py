"""Configuration loader for the scan-to-scan tracker.

Reads YAML config files with a `tracker:` section (split refinement and
motion distortion settings) and a `matcher:` section (correspondence
search settings). Missing keys keep their dataclass defaults.
"""
import yaml
from dataclasses import dataclass, field


@dataclass
class MatcherConfig:
    """Nearest-neighbour correspondence parameters."""
    num_neighbors: int = 5
    max_sq_dist: float = 1.0          # farthest neighbour gate (m^2)
    plane_threshold: float = 0.2      # max neighbour-to-plane distance (m)
    line_eigen_ratio: float = 3.0     # dominant / middle eigenvalue
    min_eigen_spread: float = 1e-6    # below this the neighbourhood is degenerate


@dataclass
class TrackerConfig:
    """Full tracker configuration."""
    # Motion distortion
    distortion_enabled: bool = False
    scan_period: float = 0.1

    # Split refinement budget
    min_correspondences: int = 10
    max_outer_iterations: int = 2
    max_solver_iterations: int = 6
    loss_scale: float = 0.1

    # Diagnostics
    print_timing: bool = False
    solver_progress: bool = False     # per-iteration solver lines

    matcher: MatcherConfig = field(default_factory=MatcherConfig)


def load_config(yaml_path: str) -> TrackerConfig:
    """Load configuration from a YAML file.

    Layout::

        tracker:
          distortion: false
          scan_period: 0.1
          min_correspondences: 10
          max_outer_iterations: 2
          max_solver_iterations: 6
          loss_scale: 0.1
          print_timing: false
          solver_progress: false
        matcher:
          num_neighbors: 5
          max_sq_dist: 1.0
          plane_threshold: 0.2
          line_eigen_ratio: 3.0
          min_eigen_spread: 1.0e-6
    """
    with open(yaml_path, 'r') as f:
        cfg = yaml.safe_load(f) or {}

    tc = TrackerConfig()

    trk = cfg.get('tracker', {}) or {}
    tc.distortion_enabled = bool(trk.get('distortion', tc.distortion_enabled))
    tc.scan_period = float(trk.get('scan_period', tc.scan_period))
    tc.min_correspondences = int(trk.get('min_correspondences', tc.min_correspondences))
    tc.max_outer_iterations = int(trk.get('max_outer_iterations', tc.max_outer_iterations))
    tc.max_solver_iterations = int(trk.get('max_solver_iterations', tc.max_solver_iterations))
    tc.loss_scale = float(trk.get('loss_scale', tc.loss_scale))
    tc.print_timing = bool(trk.get('print_timing', tc.print_timing))
    tc.solver_progress = bool(trk.get('solver_progress', tc.solver_progress))

    mat = cfg.get('matcher', {}) or {}
    mc = tc.matcher
    mc.num_neighbors = int(mat.get('num_neighbors', mc.num_neighbors))
    mc.max_sq_dist = float(mat.get('max_sq_dist', mc.max_sq_dist))
    mc.plane_threshold = float(mat.get('plane_threshold', mc.plane_threshold))
    mc.line_eigen_ratio = float(mat.get('line_eigen_ratio', mc.line_eigen_ratio))
    mc.min_eigen_spread = float(mat.get('min_eigen_spread', mc.min_eigen_spread))

    if tc.scan_period <= 0.0:
        raise ValueError(f"scan_period must be positive, got {tc.scan_period}")
    if mc.num_neighbors < 3:
        raise ValueError(f"num_neighbors must be at least 3, got {mc.num_neighbors}")

    return tc
