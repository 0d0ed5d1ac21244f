"""Trajectory output writers.

Supports TUM format and CSV format for odometry trajectories.
"""


def write_tum(filepath: str, trajectory: list):
    """Write trajectory in TUM format.

    Args:
        filepath: Output file path.
        trajectory: List of (timestamp, pos(3,), quat(4,)) tuples.
                   Quaternion in [qx, qy, qz, qw] order.
    """
    with open(filepath, 'w') as f:
        for ts, pos, q in trajectory:
            f.write(f"{ts:.6f} {pos[0]:.6f} {pos[1]:.6f} {pos[2]:.6f} "
                    f"{q[0]:.6f} {q[1]:.6f} {q[2]:.6f} {q[3]:.6f}\n")


def write_odometry_csv(filepath: str, trajectory: list):
    """Write trajectory as CSV with header.

    Columns: timestamp,tx,ty,tz,qx,qy,qz,qw

    Args:
        filepath: Output file path.
        trajectory: List of (timestamp, pos(3,), quat(4,)) tuples.
    """
    with open(filepath, 'w') as f:
        f.write("timestamp,tx,ty,tz,qx,qy,qz,qw\n")
        for ts, pos, q in trajectory:
            f.write(f"{ts:.6f},{pos[0]:.6f},{pos[1]:.6f},{pos[2]:.6f},"
                    f"{q[0]:.6f},{q[1]:.6f},{q[2]:.6f},{q[3]:.6f}\n")


def write_trajectory(filepath: str, trajectory: list):
    """CSV when the path ends in .csv, TUM otherwise."""
    if filepath.endswith('.csv'):
        write_odometry_csv(filepath, trajectory)
    else:
        write_tum(filepath, trajectory)
