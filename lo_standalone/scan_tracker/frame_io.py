"""Labelled feature frames on disk.

A sequence directory holds one sub-directory per frame. Each frame
directory holds one CSV per feature label (``surf_points_flat.csv`` etc.)
with header ``x,y,z,intensity``. An optional ``timestamps.txt`` in the
sequence directory gives one timestamp per frame; otherwise frames are
spaced by the scan period.
"""
import os
import numpy as np

from .types import FeatureCloud, FEATURE_LABELS


def read_scan_csv(filepath: str) -> FeatureCloud:
    """Read one feature CSV (x,y,z[,intensity])."""
    data = np.genfromtxt(filepath, delimiter=',', skip_header=1)
    if data.size == 0:
        return FeatureCloud()
    data = np.atleast_2d(data)
    if data.shape[1] < 3:
        raise ValueError(f"{filepath}: expected at least 3 columns, got {data.shape[1]}")
    intensities = data[:, 3] if data.shape[1] > 3 else np.zeros(len(data))
    return FeatureCloud(points=data[:, 0:3], intensities=intensities)


def write_scan_csv(filepath: str, cloud: FeatureCloud):
    """Write one feature cloud as CSV.

    Columns: x,y,z,intensity
    """
    points = cloud.points
    intensities = cloud.intensities
    with open(filepath, 'w') as f:
        f.write("x,y,z,intensity\n")
        for i in range(len(points)):
            f.write(f"{points[i, 0]:.6f},{points[i, 1]:.6f},"
                    f"{points[i, 2]:.6f},{intensities[i]:.6f}\n")


def read_feature_frame(frame_dir: str, labels=FEATURE_LABELS) -> dict:
    """Read every available labelled feature set of one frame.

    Labels without a CSV file are left out of the result.
    """
    cloud_feature = {}
    for label in labels:
        path = os.path.join(frame_dir, f"{label}.csv")
        if os.path.isfile(path):
            cloud_feature[label] = read_scan_csv(path)
    return cloud_feature


def write_feature_frame(frame_dir: str, cloud_feature: dict):
    os.makedirs(frame_dir, exist_ok=True)
    for label, cloud in cloud_feature.items():
        write_scan_csv(os.path.join(frame_dir, f"{label}.csv"), cloud)


def list_frame_dirs(root: str) -> list:
    """Sorted frame sub-directories of a sequence directory."""
    frame_dirs = [os.path.join(root, d) for d in os.listdir(root)
                  if os.path.isdir(os.path.join(root, d))]
    frame_dirs.sort()
    return frame_dirs


def load_sequence(root: str, scan_period: float = 0.1) -> list:
    """List (timestamp, frame_dir) pairs of a sequence directory."""
    frame_dirs = list_frame_dirs(root)
    ts_path = os.path.join(root, 'timestamps.txt')
    if os.path.isfile(ts_path):
        timestamps = np.atleast_1d(np.loadtxt(ts_path, dtype=np.float64))
        if len(timestamps) != len(frame_dirs):
            raise ValueError(f"{ts_path}: {len(timestamps)} timestamps for "
                             f"{len(frame_dirs)} frames")
    else:
        timestamps = np.arange(len(frame_dirs)) * scan_period
    return [(float(ts), d) for ts, d in zip(timestamps, frame_dirs)]
