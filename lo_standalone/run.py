#!/usr/bin/env python3
"""Split scan-to-scan LiDAR odometry.

Feature frames in -> odometry trajectory out.

Usage:
    python run.py frames/
    python run.py frames/ --config custom.yaml
    python run.py frames/ --output results/odometry.txt
    python run.py --pair frames/frame_000010 frames/frame_000011

A sequence directory holds one sub-directory per frame, each with
<label>.csv files (x,y,z,intensity) for the feature labels
corner_points_sharp, corner_points_less_sharp, surf_points_flat and
surf_points_less_flat.

Outputs:
    odometry.csv  - 6-DOF trajectory (timestamp, tx,ty,tz, qx,qy,qz,qw);
                    TUM format when --output does not end in .csv
"""
import argparse
import os
import sys
import time

# Add this directory to path so scan_tracker package is importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from scan_tracker.config import load_config, TrackerConfig
from scan_tracker.frame_io import load_sequence, read_feature_frame
from scan_tracker.numba_kernels import warmup as numba_warmup
from scan_tracker.odometry import ScanOdometry
from scan_tracker.output import write_trajectory
from scan_tracker.tracker import LidarTracker, MissingFeatureError
from scan_tracker.types import Pose


def track_pair(config, prev_dir, cur_dir):
    """Track a single frame pair and print the relative pose."""
    tracker = LidarTracker(config)
    prev_feature = read_feature_frame(prev_dir)
    cur_feature = read_feature_frame(cur_dir)
    pose = tracker.track_cloud(prev_feature, cur_feature, Pose.identity())
    roll, pitch, yaw = pose.euler()
    print(f"[Pair] {os.path.basename(prev_dir)} <- {os.path.basename(cur_dir)}")
    print(f"[Pair] t   = [{pose.t[0]:.6f}, {pose.t[1]:.6f}, {pose.t[2]:.6f}]")
    print(f"[Pair] q   = [{pose.q[0]:.6f}, {pose.q[1]:.6f}, "
          f"{pose.q[2]:.6f}, {pose.q[3]:.6f}]")
    print(f"[Pair] rpy = [{roll:.6f}, {pitch:.6f}, {yaw:.6f}]")
    for report in tracker.last_reports:
        print(f"[Pair] {report.family}: correspondences {report.correspondences}"
              f"{' (aborted)' if report.aborted else ''}")
    return pose


def main():
    parser = argparse.ArgumentParser(
        description='Split scan-to-scan LiDAR odometry\n\n'
                    'Track a sequence of labelled feature frames and write\n'
                    'the odometry trajectory.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('frames', nargs='?', default=None,
                        help='Sequence directory with one sub-directory per frame')
    parser.add_argument('--config', default=None,
                        help='Path to YAML config file '
                             '(default: default.yaml in this folder)')
    parser.add_argument('--output', default=None,
                        help='Trajectory path (.csv for CSV, otherwise TUM; '
                             'default: <frames>/odometry.csv)')
    parser.add_argument('--pair', nargs=2, metavar=('PREV', 'CUR'), default=None,
                        help='Track a single pair of frame directories')
    parser.add_argument('--distortion', action='store_true',
                        help='Enable motion distortion compensation')

    args = parser.parse_args()

    if args.frames is None and args.pair is None:
        parser.error("give a sequence directory or --pair PREV CUR")

    # Config
    if args.config:
        config_path = os.path.abspath(args.config)
    else:
        config_path = os.path.join(
            os.path.dirname(os.path.abspath(__file__)), 'default.yaml')

    if os.path.isfile(config_path):
        config = load_config(config_path)
    elif args.config:
        print(f"Error: Config file not found: {config_path}")
        sys.exit(1)
    else:
        config = TrackerConfig()
    if args.distortion:
        config.distortion_enabled = True

    print("[Tracker] Compiling Numba JIT kernels...")
    numba_warmup()
    print("[Tracker] JIT compilation complete.")

    try:
        if args.pair:
            track_pair(config, *[os.path.abspath(p) for p in args.pair])
            return

        frames_dir = os.path.abspath(args.frames)
        if not os.path.isdir(frames_dir):
            print(f"Error: Sequence directory not found: {frames_dir}")
            sys.exit(1)
        output_path = (os.path.abspath(args.output) if args.output
                       else os.path.join(frames_dir, 'odometry.csv'))

        print("=" * 60)
        print("  Split Scan-to-Scan LiDAR Odometry")
        print("=" * 60)
        print(f"  Frames:     {frames_dir}")
        print(f"  Config:     {config_path}")
        print(f"  Distortion: {config.distortion_enabled}")
        print(f"  Output:     {output_path}")
        print("=" * 60)

        t0 = time.time()
        frames = load_sequence(frames_dir, config.scan_period)
        if len(frames) == 0:
            print(f"Error: No frame directories found in {frames_dir}/")
            sys.exit(1)

        odometry = ScanOdometry(config)
        trajectory = odometry.run(frames)
        write_trajectory(output_path, trajectory)
        print(f"[Odometry] Trajectory written to: {output_path}")
        print(f"  Total time: {time.time() - t0:.1f}s")
    except (MissingFeatureError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
