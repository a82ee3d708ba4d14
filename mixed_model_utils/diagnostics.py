"""
Convergence and singularity checks on a fitted deviance

Mirrors the checks lme4 runs after optimisation: the optimizer's own
status, the gradient scaled by the Hessian, and positive definiteness of
the Hessian. Parameters sitting on the boundary (zero variance) are left
out of the derivative checks.
"""

import logging
from typing import List

import numpy as np
from scipy import linalg
from statsmodels.tools.numdiff import approx_fprime, approx_hess

logger = logging.getLogger(__name__)


def boundary_mask(params: np.ndarray, diagonal_mask: np.ndarray, tol: float) -> np.ndarray:
    """Cholesky diagonals that are (numerically) zero"""
    return diagonal_mask & (np.abs(params) < tol)


def is_singular(theta: np.ndarray, theta_diagonal_mask: np.ndarray, tol: float = 1e-4) -> bool:
    """A fit is singular when any relative Cholesky diagonal is below tol"""
    return bool(np.any(boundary_mask(theta, theta_diagonal_mask, tol)))


def check_convergence(
    objective,
    params: np.ndarray,
    optimizer_result,
    method: str,
    grad_tol: float = 2e-3,
    boundary_tol: float = 1e-4,
) -> List[str]:
    """
    Convergence warnings for an optimum (empty list when clean)

    Args:
        objective: Deviance callable with a diagonal_mask() method
        params: Parameters at the optimum
        optimizer_result: scipy OptimizeResult
        method: Optimizer name, for the messages
        grad_tol: Tolerance on max |H^-1 g|
        boundary_tol: Diagonals below this are treated as on the boundary
    """
    messages = []

    if not optimizer_result.success:
        messages.append(f"{method} did not converge: {optimizer_result.message}")

    params = np.asarray(params, dtype=float)
    free = ~boundary_mask(params, objective.diagonal_mask(), boundary_tol)
    if not np.any(free):
        return messages

    def restricted(x_free):
        full = params.copy()
        full[free] = x_free
        return objective(full)

    x_free = params[free]
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        gradient = np.atleast_1d(approx_fprime(x_free, restricted, centered=True))
        hessian = np.atleast_2d(approx_hess(x_free, restricted))

    if not (np.all(np.isfinite(gradient)) and np.all(np.isfinite(hessian))):
        messages.append("non-finite derivatives at the optimum")
        return messages

    hessian = 0.5 * (hessian + hessian.T)
    try:
        chol = linalg.cholesky(hessian, lower=True)
    except linalg.LinAlgError:
        n_negative = int(np.sum(np.linalg.eigvalsh(hessian) < 0))
        messages.append(
            f"Hessian is not positive definite ({n_negative} negative eigenvalue(s))"
        )
        return messages

    scaled = linalg.solve_triangular(chol.T, gradient, lower=False)
    max_scaled = float(np.max(np.abs(scaled)))
    if max_scaled >= grad_tol and float(np.max(np.abs(gradient))) >= grad_tol:
        messages.append(
            f"failed to converge with max|grad| = {max_scaled:.4g} (tol = {grad_tol})"
        )

    return messages
