"""
scipy.optimize configuration for deviance minimisation
"""

import logging
from typing import Dict

import numpy as np
from scipy import optimize

logger = logging.getLogger(__name__)

# method -> (supports bounds, option names that take the evaluation cap)
OPTIMIZERS = {
    "L-BFGS-B": (True, ("maxfun", "maxiter")),
    "Nelder-Mead": (True, ("maxfev", "maxiter")),
    "Powell": (True, ("maxfev", "maxiter")),
    "COBYQA": (True, ("maxfev", "maxiter")),
    "TNC": (True, ("maxfun",)),
    "SLSQP": (True, ("maxiter",)),
    "trust-constr": (True, ("maxiter",)),
    "BFGS": (False, ("maxiter",)),
    "CG": (False, ("maxiter",)),
}

TOLERANCES = {
    "L-BFGS-B": {"ftol": 1e-10},
    "Nelder-Mead": {"xatol": 1e-6, "fatol": 1e-8},
    "Powell": {"xtol": 1e-6, "ftol": 1e-9},
}


def _check_method(method: str) -> None:
    if method not in OPTIMIZERS:
        raise ValueError(f"Unknown optimizer '{method}'. Choose from {sorted(OPTIMIZERS)}")


def optimizer_options(method: str, max_evals: int) -> Dict:
    """Options dict for scipy.optimize.minimize with an evaluation cap"""
    _check_method(method)
    _, cap_names = OPTIMIZERS[method]
    options = {name: int(max_evals) for name in cap_names}
    options.update(TOLERANCES.get(method, {}))
    return options


def minimize_deviance(objective, method: str, max_evals: int) -> optimize.OptimizeResult:
    """
    Minimise a deviance objective from its own starting values

    Bounds (non-negative Cholesky diagonals) are passed to methods that
    accept them. Unbounded methods search the same parametrisation; any
    lower-triangular T still gives a valid covariance T T'.
    """
    _check_method(method)
    supports_bounds, _ = OPTIMIZERS[method]

    x0 = objective.start()
    kwargs = {"method": method, "options": optimizer_options(method, max_evals)}
    if supports_bounds:
        kwargs["bounds"] = objective.bounds()

    logger.debug(f"Minimising {objective.n_params} parameters with {method}")
    result = optimize.minimize(objective, x0, **kwargs)

    if not np.all(np.isfinite(result.x)) or not np.isfinite(result.fun):
        result.success = False
        result.message = "optimizer ended at a non-finite point"
    return result
