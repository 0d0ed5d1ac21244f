"""Robust nonlinear least squares over a single pose parameter block.

Levenberg-Marquardt in the tangent space of a local parameterization:

    cost(x) = 1/2 * sum_i rho(|r_i(x)|^2)

Each iteration linearizes every residual block with its analytic Jacobian
(w.r.t. the parameterization's tangent update), reweights blocks with rho'
(iteratively reweighted least squares), and solves the damped normal
equations over the free tangent directions only. Directions held fixed by
the parameterization never move.

The iteration budget is a hard cap. Running out of iterations is not an
error: the best parameters found so far are kept.
"""
import numpy as np
from dataclasses import dataclass

from .parameterization import PoseLocalParameterization


class HuberLoss:
    """rho(s) = s for s <= a^2, 2 a sqrt(s) - a^2 otherwise."""

    def __init__(self, a: float):
        self.a = a
        self.b = a * a

    def evaluate(self, sq_norms: np.ndarray):
        """Loss value and first derivative for squared residual norms.

        Returns:
            Tuple (rho (M,), rho_prime (M,)).
        """
        sq_norms = np.asarray(sq_norms, dtype=np.float64)
        rho = sq_norms.copy()
        rho1 = np.ones_like(sq_norms)
        outlier = sq_norms > self.b
        if np.any(outlier):
            r = np.sqrt(sq_norms[outlier])
            rho[outlier] = 2.0 * self.a * r - self.b
            rho1[outlier] = self.a / r
        return rho, rho1


@dataclass
class SolverOptions:
    max_num_iterations: int = 50
    initial_trust_region_radius: float = 1e4
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8
    minimizer_progress_to_stdout: bool = False


@dataclass
class SolverSummary:
    initial_cost: float = 0.0
    final_cost: float = 0.0
    iterations: int = 0
    successful_steps: int = 0
    num_residual_blocks: int = 0
    termination: str = 'NO_CONVERGENCE'

    @property
    def is_usable(self) -> bool:
        return np.isfinite(self.final_cost)

    def brief_report(self) -> str:
        return (f"iterations: {self.iterations}, blocks: {self.num_residual_blocks}, "
                f"cost: {self.initial_cost:.6e} -> {self.final_cost:.6e}, "
                f"termination: {self.termination}")


class Problem:
    """One pose parameter block plus any number of residual factors."""

    def __init__(self):
        self.parameters = None
        self.local_parameterization = None
        self.residual_blocks = []  # list of (factor, loss_function)

    def add_parameter_block(self, values: np.ndarray,
                            local_parameterization: PoseLocalParameterization = None):
        """Register the parameter array; solve() writes the result into it."""
        if self.parameters is not None and values is not self.parameters:
            raise ValueError("Problem supports a single parameter block")
        local_parameterization = local_parameterization or PoseLocalParameterization()
        if values.shape != (local_parameterization.global_size(),):
            raise ValueError(f"parameter block of shape {values.shape}, expected "
                             f"({local_parameterization.global_size()},)")
        self.parameters = values
        self.local_parameterization = local_parameterization

    def add_residual_block(self, factor, loss_function=None, parameters=None):
        if parameters is not None and parameters is not self.parameters:
            self.add_parameter_block(parameters)
        if self.parameters is None:
            raise ValueError("add a parameter block before residual blocks")
        self.residual_blocks.append((factor, loss_function))

    def num_residual_blocks(self) -> int:
        return sum(f.num_blocks for f, _ in self.residual_blocks)

    def cost(self, x: np.ndarray) -> float:
        total = 0.0
        for factor, loss in self.residual_blocks:
            r = factor.evaluate(x)
            sq = np.sum(r * r, axis=1)
            if loss is not None:
                sq = loss.evaluate(sq)[0]
            total += 0.5 * float(np.sum(sq))
        return total

    def linearize(self, x: np.ndarray, free: np.ndarray):
        """Reweighted normal equations J^T W J, J^T W r over free directions."""
        n = len(free)
        H = np.zeros((n, n))
        g = np.zeros(n)
        for factor, loss in self.residual_blocks:
            r, J = factor.linearize(x)
            J = J[:, :, free]
            if loss is not None:
                w = loss.evaluate(np.sum(r * r, axis=1))[1]
            else:
                w = np.ones(len(r))
            H += np.einsum('mdi,m,mdj->ij', J, w, J)
            g += np.einsum('mdi,m,md->i', J, w, r)
        return H, g


def solve(options: SolverOptions, problem: Problem) -> SolverSummary:
    """Minimize the problem's robust cost, updating its parameters in place."""
    summary = SolverSummary(num_residual_blocks=problem.num_residual_blocks())
    if problem.parameters is None:
        raise ValueError("Problem has no parameter block")

    lp = problem.local_parameterization
    x = problem.parameters.astype(np.float64).copy()
    cost = problem.cost(x)
    summary.initial_cost = cost
    summary.final_cost = cost

    free = lp.free_indices()
    if summary.num_residual_blocks == 0 or len(free) == 0:
        summary.termination = 'CONVERGENCE'
        return summary

    mu = 1.0 / options.initial_trust_region_radius
    for iter_count in range(options.max_num_iterations):
        summary.iterations += 1
        H, g = problem.linearize(x, free)

        if np.max(np.abs(g)) <= options.gradient_tolerance:
            summary.termination = 'CONVERGENCE'
            break

        D = np.clip(np.diag(H), 1e-6, 1e32)
        try:
            step = np.linalg.solve(H + mu * np.diag(D), -g)
        except np.linalg.LinAlgError:
            mu *= 4.0
            continue

        delta = np.zeros(lp.local_size())
        delta[free] = step
        x_new = lp.plus(x, delta)
        new_cost = problem.cost(x_new)

        if options.minimizer_progress_to_stdout:
            print(f"[Solver] iter {iter_count:2d}  cost {cost:.6e}  "
                  f"new {new_cost:.6e}  |step| {np.linalg.norm(step):.3e}  mu {mu:.1e}")

        if np.isfinite(new_cost) and new_cost < cost:
            rel_decrease = (cost - new_cost) / max(cost, 1e-300)
            x = x_new
            cost = new_cost
            mu = max(mu / 3.0, 1e-16)
            summary.successful_steps += 1
            if (rel_decrease < options.function_tolerance or
                    np.linalg.norm(step) < options.parameter_tolerance *
                    (np.linalg.norm(x) + options.parameter_tolerance)):
                summary.termination = 'CONVERGENCE'
                break
        else:
            mu *= 4.0

    problem.parameters[:] = x
    summary.final_cost = cost
    return summary
