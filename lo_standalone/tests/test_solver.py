"""
Local parameterization, Huber loss and the masked Levenberg-Marquardt solver.
"""

import numpy as np
import pytest

from scan_tracker.distortion import time_scales, transform_to_start
from scan_tracker.factors import LidarScanPlaneNormFactor, LidarScanEdgeFactor
from scan_tracker.parameterization import (PoseLocalParameterization, X, Y, Z,
                                           ROLL, PITCH, YAW)
from scan_tracker.so3 import euler_to_quat
from scan_tracker.solver import Problem, SolverOptions, HuberLoss, solve
from scan_tracker.types import Pose


def _plane_factor(truth: Pose):
    """Points on three orthogonal planes, expressed in the moving frame."""
    g = np.arange(-1.0, 1.0 + 1e-9, 0.5)
    a, b = np.meshgrid(g, g)
    a, b = a.ravel(), b.ravel()
    planes = [
        (np.column_stack([a, b, np.full(a.size, -1.0)]), [0.0, 0.0, 1.0, 1.0]),
        (np.column_stack([np.full(a.size, 2.0), a, b]), [1.0, 0.0, 0.0, -2.0]),
        (np.column_stack([a, np.full(a.size, 3.0), b]), [0.0, 1.0, 0.0, -3.0]),
    ]
    points = np.vstack([truth.inverse().transform(p) for p, _ in planes])
    coeffs = np.vstack([np.tile(c, (len(p), 1)) for p, c in planes])
    return LidarScanPlaneNormFactor(points, coeffs, np.ones(len(points)))


# =============================================================================
# Parameterization
# =============================================================================

def test_plus_keeps_unit_quaternion(numpy_seed):
    lp = PoseLocalParameterization()
    x = Pose.identity().to_param()
    for _ in range(50):
        x = lp.plus(x, np.random.randn(6) * 0.3)
        assert abs(np.linalg.norm(x[3:7]) - 1.0) < 1e-12


def test_plus_translation_is_additive():
    lp = PoseLocalParameterization()
    x = Pose(q=euler_to_quat(0.3, 0.0, 0.0), t=[1.0, 2.0, 3.0]).to_param()
    x_plus = lp.plus(x, np.array([0.1, -0.2, 0.3, 0.0, 0.0, 0.0]))
    np.testing.assert_allclose(x_plus[0:3], [1.1, 1.8, 3.3])
    np.testing.assert_allclose(x_plus[3:7], x[3:7])


def test_masked_directions_do_not_move():
    lp = PoseLocalParameterization().fix((X, Y, YAW))
    x = Pose(q=euler_to_quat(0.1, 0.2, 0.3), t=[1.0, 2.0, 3.0]).to_param()
    x_plus = lp.plus(x, np.array([0.5, 0.5, 0.0, 0.0, 0.0, 0.5]))
    np.testing.assert_array_equal(x_plus, x)


def test_fix_and_reset():
    lp = PoseLocalParameterization()
    assert list(lp.free_indices()) == [0, 1, 2, 3, 4, 5]
    lp.fix((Z, ROLL, PITCH))
    assert list(lp.free_indices()) == [X, Y, YAW]
    lp.set_parameter()
    assert list(lp.free_indices()) == [0, 1, 2, 3, 4, 5]
    assert lp.global_size() == 7
    assert lp.local_size() == 6


# =============================================================================
# Huber loss
# =============================================================================

def test_huber_inlier_and_outlier():
    loss = HuberLoss(0.1)
    rho, rho1 = loss.evaluate(np.array([0.0, 0.004, 0.04]))
    np.testing.assert_allclose(rho[:2], [0.0, 0.004])
    np.testing.assert_allclose(rho1[:2], [1.0, 1.0])
    r = np.sqrt(0.04)
    assert rho[2] == pytest.approx(2.0 * 0.1 * r - 0.01)
    assert rho1[2] == pytest.approx(0.1 / r)


# =============================================================================
# Solver
# =============================================================================

def test_solver_recovers_full_pose():
    truth = Pose(q=euler_to_quat(0.05, -0.03, 0.08), t=[0.2, -0.1, 0.05])
    para_pose = Pose.identity().to_param()
    problem = Problem()
    problem.add_parameter_block(para_pose, PoseLocalParameterization())
    problem.add_residual_block(_plane_factor(truth), None, para_pose)

    summary = solve(SolverOptions(max_num_iterations=30), problem)

    assert summary.final_cost < summary.initial_cost
    np.testing.assert_allclose(para_pose[0:3], truth.t, atol=1e-6)
    assert abs(abs(para_pose[3:7] @ truth.q) - 1.0) < 1e-9


def test_solver_respects_mask():
    truth = Pose(q=euler_to_quat(0.05, -0.03, 0.08), t=[0.2, -0.1, 0.05])
    start = Pose.identity().to_param()
    para_pose = start.copy()
    lp = PoseLocalParameterization().fix((X, Y, YAW))
    problem = Problem()
    problem.add_parameter_block(para_pose, lp)
    problem.add_residual_block(_plane_factor(truth), HuberLoss(0.1), para_pose)

    solve(SolverOptions(max_num_iterations=10), problem)

    assert para_pose[0] == start[0]
    assert para_pose[1] == start[1]
    assert para_pose[2] != start[2]
    assert abs(np.linalg.norm(para_pose[3:7]) - 1.0) < 1e-12


def test_solver_iteration_cap():
    truth = Pose(q=euler_to_quat(0.3, -0.2, 0.4), t=[1.0, -0.5, 0.3])
    para_pose = Pose.identity().to_param()
    problem = Problem()
    problem.add_parameter_block(para_pose, PoseLocalParameterization())
    problem.add_residual_block(_plane_factor(truth), HuberLoss(0.01), para_pose)

    summary = solve(SolverOptions(max_num_iterations=3), problem)

    assert summary.iterations <= 3
    assert summary.is_usable


def test_solver_without_residuals_keeps_parameters():
    para_pose = Pose(t=[1.0, 2.0, 3.0]).to_param()
    before = para_pose.copy()
    problem = Problem()
    problem.add_parameter_block(para_pose)
    summary = solve(SolverOptions(), problem)
    assert summary.termination == 'CONVERGENCE'
    assert summary.iterations == 0
    np.testing.assert_array_equal(para_pose, before)


def test_parameter_block_shape_is_checked():
    with pytest.raises(ValueError):
        Problem().add_parameter_block(np.zeros(6))


def test_edge_factor_residual_is_offset_from_line():
    points = np.array([[0.3, 0.0, 5.0], [0.0, -0.2, -1.0]])
    coeffs = np.array([[0.0, 0.0, 1.0, 0.3], [0.0, 0.0, 1.0, 0.2]])
    centers = np.zeros((2, 3))
    factor = LidarScanEdgeFactor(points, coeffs, centers, np.ones(2))
    r = factor.evaluate(Pose.identity().to_param())
    np.testing.assert_allclose(r, [[0.3, 0.0, 0.0], [0.0, -0.2, 0.0]], atol=1e-12)
    assert factor.num_blocks == 2


# =============================================================================
# Time-scaled residuals and analytic Jacobians
# =============================================================================

def _scaled_setup():
    np.random.seed(7)
    pose = Pose(q=euler_to_quat(0.1, -0.05, 0.3), t=[0.6, -0.2, 0.1])
    points = np.random.uniform(-5.0, 5.0, size=(20, 3))
    scales = np.linspace(0.0, 1.0, 20)
    intensities = 4.0 + scales * 0.1
    normals = np.random.randn(20, 3)
    normals /= np.linalg.norm(normals, axis=1, keepdims=True)
    plane_coeffs = np.column_stack([normals, np.random.randn(20)])
    line_coeffs = np.column_stack([normals, np.zeros(20)])
    centers = np.random.randn(20, 3)
    return pose, points, intensities, plane_coeffs, line_coeffs, centers


def test_time_scaled_residuals_match_scan_start_transform():
    pose, points, intensities, plane_coeffs, line_coeffs, centers = _scaled_setup()
    scales = time_scales(intensities, True, 0.1)
    assert 0.0 < scales[10] < 1.0
    moved = transform_to_start(points, intensities, pose, True, 0.1)

    plane = LidarScanPlaneNormFactor(points, plane_coeffs, scales)
    expected = np.sum(plane_coeffs[:, 0:3] * moved, axis=1) + plane_coeffs[:, 3]
    np.testing.assert_allclose(plane.evaluate(pose.to_param())[:, 0], expected,
                               atol=1e-12)

    edge = LidarScanEdgeFactor(points, line_coeffs, centers, scales)
    off = moved - centers
    u = line_coeffs[:, 0:3]
    expected = off - np.sum(off * u, axis=1, keepdims=True) * u
    np.testing.assert_allclose(edge.evaluate(pose.to_param()), expected, atol=1e-12)


def _numeric_jacobian(factor, x, step=1e-6):
    lp = PoseLocalParameterization()
    r = factor.evaluate(x)
    J = np.empty(r.shape + (6,))
    for k in range(6):
        delta = np.zeros(6)
        delta[k] = step
        J[:, :, k] = (factor.evaluate(lp.plus(x, delta)) -
                      factor.evaluate(lp.plus(x, -delta))) / (2.0 * step)
    return J


def test_analytic_jacobians_match_central_differences():
    pose, points, intensities, plane_coeffs, line_coeffs, centers = _scaled_setup()
    scales = time_scales(intensities, True, 0.1)
    x = pose.to_param()

    for factor in (LidarScanPlaneNormFactor(points, plane_coeffs, scales),
                   LidarScanEdgeFactor(points, line_coeffs, centers, scales)):
        r, J = factor.linearize(x)
        np.testing.assert_allclose(r, factor.evaluate(x), atol=1e-12)
        np.testing.assert_allclose(J, _numeric_jacobian(factor, x), atol=1e-6)


def test_analytic_jacobians_at_identity():
    _, points, _, plane_coeffs, line_coeffs, centers = _scaled_setup()
    x = Pose.identity().to_param()
    scales = np.full(len(points), 0.5)
    for factor in (LidarScanPlaneNormFactor(points, plane_coeffs, scales),
                   LidarScanEdgeFactor(points, line_coeffs, centers, scales)):
        _, J = factor.linearize(x)
        np.testing.assert_allclose(J, _numeric_jacobian(factor, x), atol=1e-6)
