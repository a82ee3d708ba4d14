"""
Objective functions minimised by the optimizer

- ProfiledDeviance: Gaussian identity-link models. Fixed effects and the
  residual variance are profiled out, so only theta is optimised
  (Bates, Maechler, Bolker & Walker, 2015, section 3).
- LaplaceDeviance: other families. Conditional modes come from penalised
  IRLS; theta, beta and (for gamma / inverse Gaussian) log-dispersion are
  optimised jointly.

Both return -2 log-likelihood (or the REML criterion) and np.inf for
parameter values where the model cannot be evaluated.
"""

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np
import statsmodels.api as sm
from scipy import linalg, sparse

from mixed_model_utils.design import ModelDesign
from mixed_model_utils.families import (
    FREE_DISPERSION,
    clip_mean,
    make_family,
    mean_is_valid,
)

logger = logging.getLogger(__name__)

LOG_2PI = np.log(2.0 * np.pi)


def _theta_bounds(design: ModelDesign) -> List[Tuple[Optional[float], Optional[float]]]:
    return [(0.0, None) if diag else (None, None) for diag in design.theta_diagonal_mask()]


class ProfiledDeviance:
    """Profiled (RE)ML deviance of a linear mixed model as a function of theta"""

    def __init__(self, design: ModelDesign, reml: bool = True):
        self.design = design
        self.reml = reml
        self.n_evals = 0
        self._XtX = design.X.T @ design.X
        self._Xty = design.X.T @ design.y

    @property
    def n_params(self) -> int:
        return self.design.n_theta

    def start(self) -> np.ndarray:
        return self.design.theta_start()

    def bounds(self):
        return _theta_bounds(self.design)

    def theta(self, params: np.ndarray) -> np.ndarray:
        return np.asarray(params, dtype=float)

    def diagonal_mask(self) -> np.ndarray:
        return self.design.theta_diagonal_mask()

    def _solve(self, theta: np.ndarray) -> Optional[Dict]:
        design = self.design
        n, p = design.n, design.p
        ZL = design.scaled_z(theta)
        A = (ZL.T @ ZL).toarray() + np.eye(ZL.shape[1])
        try:
            L = linalg.cholesky(A, lower=True)
        except linalg.LinAlgError:
            return None

        cu = linalg.solve_triangular(L, ZL.T @ design.y, lower=True)
        RZX = linalg.solve_triangular(L, np.asarray(ZL.T @ design.X), lower=True)
        schur = self._XtX - RZX.T @ RZX
        try:
            RX = linalg.cholesky(schur, lower=True)
        except linalg.LinAlgError:
            return None

        beta = linalg.cho_solve((RX, True), self._Xty - RZX.T @ cu)
        b = linalg.solve_triangular(L.T, cu - RZX @ beta, lower=False)
        linear = design.X @ beta + ZL @ b
        resid = design.y - linear
        pwrss = float(resid @ resid + b @ b)
        if not np.isfinite(pwrss) or pwrss <= 0:
            return None

        logdet_L = 2.0 * np.sum(np.log(np.diag(L)))
        if self.reml:
            dof = n - p
            logdet_RX = 2.0 * np.sum(np.log(np.diag(RX)))
            deviance = logdet_L + logdet_RX + dof * (1.0 + LOG_2PI + np.log(pwrss / dof))
            sigma2 = pwrss / dof
        else:
            deviance = logdet_L + n * (1.0 + LOG_2PI + np.log(pwrss / n))
            sigma2 = pwrss / n

        return {
            "deviance": float(deviance),
            "beta": beta,
            "b": b,
            "u": _lambda_times(design, theta, b),
            "sigma2": float(sigma2),
            "vcov": sigma2 * linalg.cho_solve((RX, True), np.eye(p)),
            "fitted": linear,
            "resid": resid,
            "dispersion": float(sigma2),
        }

    def __call__(self, params: np.ndarray) -> float:
        self.n_evals += 1
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            solved = self._solve(self.theta(params))
        if solved is None or not np.isfinite(solved["deviance"]):
            return np.inf
        return solved["deviance"]

    def solution(self, params: np.ndarray) -> Dict:
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            solved = self._solve(self.theta(params))
        if solved is None:
            raise linalg.LinAlgError("Penalised least squares system is singular")
        return solved


def _lambda_times(design: ModelDesign, theta: np.ndarray, b: np.ndarray) -> np.ndarray:
    """u = Lambda(theta) b"""
    u = np.empty_like(b)
    offset = 0
    for block, part in zip(design.blocks, design.split_theta(theta)):
        T = block.factor(part)
        size = block.n_levels * block.k
        spherical = b[offset : offset + size].reshape(block.n_levels, block.k)
        u[offset : offset + size] = (spherical @ T.T).ravel()
        offset += size
    return u


class LaplaceDeviance:
    """Laplace-approximated deviance of a generalized linear mixed model"""

    PIRLS_MAX_ITER = 50
    PIRLS_TOL = 1e-9
    MAX_HALVINGS = 20

    def __init__(self, design: ModelDesign, family_name: str, link_name: str):
        self.design = design
        self.family_name = family_name
        self.link_name = link_name
        self.family = make_family(family_name, link_name)
        self.free_dispersion = family_name in FREE_DISPERSION
        self.n_evals = 0
        self._b = np.zeros(design.q)
        self._glm = None

    @property
    def n_params(self) -> int:
        return self.design.n_theta + self.design.p + int(self.free_dispersion)

    def _glm_start(self):
        if self._glm is None:
            self._glm = sm.GLM(self.design.y, self.design.X, family=self.family).fit()
        return self._glm

    def start(self) -> np.ndarray:
        glm = self._glm_start()
        parts = [self.design.theta_start(), np.asarray(glm.params, dtype=float)]
        if self.free_dispersion:
            parts.append(np.array([np.log(max(float(glm.scale), 1e-8))]))
        return np.concatenate(parts)

    def bounds(self):
        extra = self.design.p + int(self.free_dispersion)
        return _theta_bounds(self.design) + [(None, None)] * extra

    def diagonal_mask(self) -> np.ndarray:
        extra = self.design.p + int(self.free_dispersion)
        return np.concatenate([self.design.theta_diagonal_mask(), np.zeros(extra, bool)])

    def unpack(self, params: np.ndarray) -> Tuple[np.ndarray, np.ndarray, float]:
        params = np.asarray(params, dtype=float)
        n_theta, p = self.design.n_theta, self.design.p
        theta = params[:n_theta]
        beta = params[n_theta : n_theta + p]
        dispersion = float(np.exp(params[n_theta + p])) if self.free_dispersion else 1.0
        return theta, beta, dispersion

    def theta(self, params: np.ndarray) -> np.ndarray:
        return self.unpack(params)[0]

    def _mean(self, eta: np.ndarray) -> np.ndarray:
        return clip_mean(self.family_name, self.family.link.inverse(eta))

    def _penalised_deviance(self, mu: np.ndarray, b: np.ndarray, dispersion: float) -> float:
        if not mean_is_valid(self.family_name, mu):
            return np.inf
        loglike = self.family.loglike_obs(self.design.y, mu, scale=dispersion)
        value = -2.0 * float(np.sum(loglike)) + float(b @ b)
        return value if np.isfinite(value) else np.inf

    def _weights(self, eta: np.ndarray, mu: np.ndarray, dispersion: float):
        dmu = self.family.link.inverse_deriv(eta)
        dmu = np.where(np.abs(dmu) < 1e-12, np.copysign(1e-12, dmu), dmu)
        weights = dmu**2 / (self.family.variance(mu) * dispersion)
        return dmu, weights

    def _pirls(self, ZL: sparse.csr_matrix, offset: np.ndarray, dispersion: float):
        """Conditional modes of the spherical random effects"""
        q = ZL.shape[1]
        identity = np.eye(q)
        y = self.design.y

        b = self._b.copy()
        eta = offset + ZL @ b
        mu = self._mean(eta)
        pdev = self._penalised_deviance(mu, b, dispersion)
        if not np.isfinite(pdev):
            b = np.zeros(q)
            eta = offset.copy()
            mu = self._mean(eta)
            pdev = self._penalised_deviance(mu, b, dispersion)
            if not np.isfinite(pdev):
                return None

        for _ in range(self.PIRLS_MAX_ITER):
            dmu, weights = self._weights(eta, mu, dispersion)
            working = ZL @ b + (y - mu) / dmu
            weighted = sparse.diags(weights) @ ZL
            A = (ZL.T @ weighted).toarray() + identity
            try:
                b_new = linalg.cho_solve(
                    (linalg.cholesky(A, lower=True), True), ZL.T @ (weights * working)
                )
            except linalg.LinAlgError:
                return None

            for _ in range(self.MAX_HALVINGS):
                eta_new = offset + ZL @ b_new
                mu_new = self._mean(eta_new)
                pdev_new = self._penalised_deviance(mu_new, b_new, dispersion)
                if pdev_new <= pdev:
                    break
                b_new = 0.5 * (b_new + b)
            else:
                break

            change = pdev - pdev_new
            b, eta, mu, pdev = b_new, eta_new, mu_new, pdev_new
            if change < self.PIRLS_TOL * (abs(pdev) + 0.1):
                break

        _, weights = self._weights(eta, mu, dispersion)
        A = (ZL.T @ (sparse.diags(weights) @ ZL)).toarray() + identity
        try:
            L = linalg.cholesky(A, lower=True)
        except linalg.LinAlgError:
            return None

        return {
            "b": b,
            "eta": eta,
            "mu": mu,
            "weights": weights,
            "L": L,
            "pdev": pdev,
            "deviance": pdev + 2.0 * float(np.sum(np.log(np.diag(L)))),
        }

    def __call__(self, params: np.ndarray) -> float:
        self.n_evals += 1
        theta, beta, dispersion = self.unpack(params)
        if not np.isfinite(dispersion) or dispersion <= 0:
            return np.inf
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            ZL = self.design.scaled_z(theta)
            state = self._pirls(ZL, self.design.X @ beta, dispersion)
        if state is None or not np.isfinite(state["deviance"]):
            return np.inf
        self._b = state["b"]
        return state["deviance"]

    def solution(self, params: np.ndarray) -> Dict:
        design = self.design
        theta, beta, dispersion = self.unpack(params)
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            ZL = design.scaled_z(theta)
            state = self._pirls(ZL, design.X @ beta, dispersion)
        if state is None:
            raise linalg.LinAlgError("Penalised IRLS failed at the optimum")

        # Fixed-effect covariance conditional on theta, from the joint
        # information matrix of (beta, b)
        weights = state["weights"]
        WX = design.X * weights[:, None]
        RZX = linalg.solve_triangular(state["L"], np.asarray(ZL.T @ WX), lower=True)
        schur = design.X.T @ WX - RZX.T @ RZX
        vcov = linalg.pinvh(schur)

        return {
            "deviance": state["deviance"],
            "beta": beta,
            "b": state["b"],
            "u": _lambda_times(design, theta, state["b"]),
            "dispersion": dispersion,
            "vcov": vcov,
            "fitted": state["mu"],
            "eta": state["eta"],
            "resid": design.y - state["mu"],
        }
