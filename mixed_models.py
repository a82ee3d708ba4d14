#!/usr/bin/env python3
"""
Linear and Generalized Linear Mixed-Effects Models
Immutable model specifications and a pure (data, spec) -> fit function
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from mixed_model_utils.design import INTERCEPT, ModelDesign, build_design, theta_layout
from mixed_model_utils.deviance import LaplaceDeviance, ProfiledDeviance
from mixed_model_utils.diagnostics import check_convergence, is_singular
from mixed_model_utils.families import (
    FREE_DISPERSION,
    check_outcome,
    default_link,
    distribution_variance,
    make_family,
)
from mixed_model_utils.optimizers import minimize_deviance
from mixed_model_utils.variance_components import (
    VarianceDecomposition,
    decompose_random_effects,
)
from utils.exceptions import DegenerateFitError

logger = logging.getLogger(__name__)

RANDOM_TERM = re.compile(r"\(([^()|]+?)(\|\|?)\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\)")


def _split_terms(text: str) -> List[str]:
    return [term.strip() for term in text.split("+") if term.strip()]


@dataclass(frozen=True)
class RandomEffects:
    """Random-effect terms for one grouping factor"""

    group: str
    terms: Tuple[str, ...] = (INTERCEPT,)
    correlated: bool = True

    def __post_init__(self):
        if not self.terms:
            raise ValueError(f"Grouping factor '{self.group}' needs at least one term")
        if len(set(self.terms)) != len(self.terms):
            raise ValueError(f"Duplicate random-effect terms for '{self.group}'")

    @property
    def has_intercept(self) -> bool:
        return INTERCEPT in self.terms

    @property
    def slopes(self) -> Tuple[str, ...]:
        return tuple(term for term in self.terms if term != INTERCEPT)

    def without(self, term: str) -> "RandomEffects":
        if term not in self.terms:
            raise ValueError(f"'{term}' is not a random effect of '{self.group}'")
        return replace(self, terms=tuple(t for t in self.terms if t != term))

    @property
    def formula(self) -> str:
        parts = (["1"] if self.has_intercept else ["0"]) + list(self.slopes)
        bar = "|" if self.correlated else "||"
        return f"({' + '.join(parts)} {bar} {self.group})"


@dataclass(frozen=True)
class ModelSpec:
    """
    Mixed-model specification

    Attributes:
        outcome: Response column
        fixed_effects: Fixed-effect terms (patsy syntax, numeric predictors)
        random_effects: One RandomEffects per grouping factor
        family: gaussian, binomial, poisson, gamma or inverse_gaussian
        link: Link name, the family's canonical link when None
        intercept: Whether the fixed part has an intercept
    """

    outcome: str
    fixed_effects: Tuple[str, ...]
    random_effects: Tuple[RandomEffects, ...]
    family: str = "gaussian"
    link: Optional[str] = None
    intercept: bool = True

    def __post_init__(self):
        groups = [re_terms.group for re_terms in self.random_effects]
        if not groups:
            raise ValueError("A mixed model needs at least one grouping factor")
        if len(set(groups)) != len(groups):
            raise ValueError(f"Grouping factors must be unique: {groups}")
        default_link(self.family)

    @property
    def link_name(self) -> str:
        return self.link or default_link(self.family)

    @property
    def is_linear(self) -> bool:
        return self.family == "gaussian" and self.link_name == "identity"

    @property
    def formula(self) -> str:
        fixed = (["1"] if self.intercept else ["0"]) + list(self.fixed_effects)
        random = [re_terms.formula for re_terms in self.random_effects]
        return f"{self.outcome} ~ {' + '.join(fixed + random)}"

    def random_terms(self) -> Dict[str, Tuple[str, ...]]:
        return {re_terms.group: re_terms.terms for re_terms in self.random_effects}

    @classmethod
    def from_formula(
        cls, formula: str, family: str = "gaussian", link: Optional[str] = None
    ) -> "ModelSpec":
        """
        Parse an lme4-style formula

        ``rt ~ c1 + c2 + (1 + c1 | subject) + (1 || item)``; ``||`` fits the
        terms without correlations, ``0`` drops an intercept.
        """
        if formula.count("~") != 1:
            raise ValueError(f"Formula needs exactly one '~': {formula}")
        outcome, rhs = (part.strip() for part in formula.split("~"))
        if not outcome:
            raise ValueError(f"Formula has no outcome: {formula}")

        random_effects = []
        for terms_text, bar, group in RANDOM_TERM.findall(rhs):
            terms = _split_terms(terms_text)
            intercept = "0" not in terms and "-1" not in terms
            slopes = [term for term in terms if term not in ("0", "1", "-1")]
            random_effects.append(
                RandomEffects(
                    group=group,
                    terms=tuple(([INTERCEPT] if intercept else []) + slopes),
                    correlated=(bar == "|"),
                )
            )
        fixed_text = RANDOM_TERM.sub("", rhs)
        if "|" in fixed_text:
            raise ValueError(f"Could not parse random effects in: {formula}")

        fixed_terms = _split_terms(fixed_text)
        intercept = "0" not in fixed_terms and "-1" not in fixed_terms
        fixed_effects = tuple(t for t in fixed_terms if t not in ("0", "1", "-1"))

        return cls(
            outcome=outcome,
            fixed_effects=fixed_effects,
            random_effects=tuple(random_effects),
            family=family,
            link=link,
            intercept=intercept,
        )

    @classmethod
    def maximal(
        cls,
        outcome: str,
        predictors: Sequence[str],
        groups: Sequence[str],
        correlated: bool = True,
        family: str = "gaussian",
        link: Optional[str] = None,
    ) -> "ModelSpec":
        """Intercept plus a slope for every predictor in every grouping factor"""
        terms = (INTERCEPT,) + tuple(predictors)
        return cls(
            outcome=outcome,
            fixed_effects=tuple(predictors),
            random_effects=tuple(
                RandomEffects(group=group, terms=terms, correlated=correlated)
                for group in groups
            ),
            family=family,
            link=link,
        )

    def drop_fixed(self, term: str) -> "ModelSpec":
        if term not in self.fixed_effects:
            raise ValueError(f"'{term}' is not a fixed effect of {self.formula}")
        return replace(self, fixed_effects=tuple(t for t in self.fixed_effects if t != term))

    def add_fixed(self, term: str) -> "ModelSpec":
        if term in self.fixed_effects:
            raise ValueError(f"'{term}' is already a fixed effect of {self.formula}")
        return replace(self, fixed_effects=self.fixed_effects + (term,))

    def drop_random(self, group: str, term: str) -> "ModelSpec":
        updated = tuple(
            re_terms.without(term) if re_terms.group == group else re_terms
            for re_terms in self.random_effects
        )
        if updated == self.random_effects:
            raise ValueError(f"No grouping factor '{group}' in {self.formula}")
        return replace(self, random_effects=updated)

    def with_correlations(self, correlated: bool) -> "ModelSpec":
        return replace(
            self,
            random_effects=tuple(
                replace(re_terms, correlated=correlated) for re_terms in self.random_effects
            ),
        )


@dataclass(frozen=True)
class FitSettings:
    """Optimizer configuration for one fit"""

    optimizer: str = "L-BFGS-B"
    max_evals: int = 20000
    reml: bool = True
    grad_tol: float = 2e-3
    singular_tol: float = 1e-4
    check_convergence: bool = True

    def using(self, optimizer: str, max_evals: Optional[int] = None) -> "FitSettings":
        return replace(
            self,
            optimizer=optimizer,
            max_evals=self.max_evals if max_evals is None else int(max_evals),
        )


@dataclass(frozen=True)
class FitResult:
    """Estimates and diagnostics of one fitted model"""

    spec: ModelSpec
    settings: FitSettings
    fixed_effects: pd.DataFrame
    vcov: pd.DataFrame
    loglik: float
    deviance: float
    aic: float
    bic: float
    n_obs: int
    n_params: int
    reml: bool
    dispersion: float
    random_covariance: Dict[str, pd.DataFrame]
    random_modes: Dict[str, pd.DataFrame]
    n_levels: Dict[str, int]
    theta: np.ndarray
    fitted: np.ndarray
    residuals: np.ndarray
    converged: bool
    singular: bool
    warnings: Tuple[str, ...]
    r2_marginal: float
    r2_conditional: float
    n_evals: int = 0
    params: np.ndarray = field(default_factory=lambda: np.empty(0))

    @property
    def optimizer(self) -> str:
        return self.settings.optimizer

    @property
    def coefficients(self) -> pd.Series:
        return self.fixed_effects["estimate"]

    @property
    def standard_errors(self) -> pd.Series:
        return self.fixed_effects["se"]

    def decompose(self) -> Dict[str, VarianceDecomposition]:
        return decompose_random_effects(self.random_covariance)

    def boundary_terms(self) -> List[Tuple[str, str]]:
        """
        (group, term) pairs whose relative Cholesky diagonal is below the
        singular tolerance

        With correlations, a zero diagonal marks the term that is a linear
        combination of the terms before it.
        """
        on_boundary = []
        start = 0
        for re_terms in self.spec.random_effects:
            rows, cols = theta_layout(len(re_terms.terms), re_terms.correlated)
            block = np.asarray(self.theta[start : start + len(rows)], dtype=float)
            start += len(rows)
            for value, row, col in zip(block, rows, cols):
                if row == col and abs(value) < self.settings.singular_tol:
                    on_boundary.append((re_terms.group, re_terms.terms[row]))
        return on_boundary

    def variance_components(self) -> pd.DataFrame:
        """Variance, SD and correlations per grouping factor and term"""
        rows = []
        for group, cov in self.random_covariance.items():
            sd = np.sqrt(np.clip(np.diag(cov.values), 0.0, None))
            for i, term in enumerate(cov.columns):
                row = {"group": group, "term": term, "variance": cov.values[i, i], "sd": sd[i]}
                for j in range(i):
                    denom = sd[i] * sd[j]
                    row[f"corr_{cov.columns[j]}"] = cov.values[i, j] / denom if denom > 0 else np.nan
                rows.append(row)
        if self.spec.family in FREE_DISPERSION:
            label = "Residual" if self.spec.family == "gaussian" else "Dispersion"
            rows.append(
                {
                    "group": label,
                    "term": "",
                    "variance": self.dispersion,
                    "sd": np.sqrt(self.dispersion),
                }
            )
        return pd.DataFrame(rows)

    def summary(self) -> str:
        criterion = "REML" if self.reml else "ML"
        lines = [
            f"{self.spec.formula}  [{self.spec.family}/{self.spec.link_name}, {criterion}, {self.optimizer}]",
            f"  n = {self.n_obs}, logLik = {self.loglik:.2f}, AIC = {self.aic:.2f}, BIC = {self.bic:.2f}",
        ]
        for term, row in self.fixed_effects.iterrows():
            lines.append(
                f"  {term:>20s}: b = {row['estimate']:.4f}, SE = {row['se']:.4f}, "
                f"z = {row['statistic']:.2f}, p = {row['p_value']:.4g}"
            )
        for message in self.warnings:
            lines.append(f"  warning: {message}")
        if self.singular:
            lines.append("  boundary (singular) fit")
        return "\n".join(lines)


def check_separation(design: ModelDesign) -> None:
    """
    Complete or quasi-complete separation in a binary outcome

    Raises DegenerateFitError when the outcome is constant, or when the fixed
    design consists of cells (as with contrast codes) and some cell has a
    constant outcome.
    """
    y = design.y
    if np.any((y < 0) | (y > 1)):
        raise ValueError("Binomial outcome must lie in [0, 1]")
    if np.all(y == y[0]):
        raise DegenerateFitError("Binary outcome is constant: complete separation")

    cells, inverse = np.unique(np.round(design.X, 10), axis=0, return_inverse=True)
    inverse = np.asarray(inverse).ravel()
    if len(cells) > design.n / 2:
        return
    for cell in range(len(cells)):
        values = y[inverse == cell]
        if len(values) and np.all(values == values[0]):
            raise DegenerateFitError(
                f"Quasi-complete separation: all {len(values)} outcomes equal "
                f"{values[0]:g} in design cell {cells[cell].tolist()}"
            )


def _variance_explained(design: ModelDesign, spec: ModelSpec, beta, covariances, dispersion):
    """Nakagawa & Schielzeth marginal / conditional R-squared"""
    fixed = design.X @ beta
    var_fixed = float(np.var(fixed, ddof=1)) if design.n > 1 else 0.0
    var_random = 0.0
    for block in design.blocks:
        cov = covariances[block.name].values
        R = block.model_matrix
        var_random += float(np.mean(np.sum((R @ cov) * R, axis=1)))

    family = make_family(spec.family, spec.link_name)
    mean_mu = float(family.link.inverse(np.array([np.mean(fixed)]))[0])
    var_resid = distribution_variance(spec.family, spec.link_name, dispersion, mean_mu)

    total = var_fixed + var_random + var_resid
    if not np.isfinite(total) or total <= 0:
        return np.nan, np.nan
    return var_fixed / total, (var_fixed + var_random) / total


def fit_model(
    data: pd.DataFrame, spec: ModelSpec, settings: Optional[FitSettings] = None
) -> FitResult:
    """
    Fit a mixed model by maximum likelihood (REML for linear models when
    settings.reml is set)

    The data are read, never modified.

    Raises:
        DegenerateFitError: Rank-deficient fixed design, separation, empty data
        ValueError: Unknown columns, family, link or optimizer, or an
            outcome outside the family's support
    """
    settings = settings or FitSettings()
    design = build_design(data, spec)
    check_outcome(spec.family, design.y)

    if spec.family == "binomial":
        check_separation(design)

    if spec.is_linear:
        objective = ProfiledDeviance(design, reml=settings.reml)
        reml = settings.reml
    else:
        objective = LaplaceDeviance(design, spec.family, spec.link_name)
        reml = False

    result = minimize_deviance(objective, settings.optimizer, settings.max_evals)
    params = np.asarray(result.x, dtype=float)
    solution = objective.solution(params)
    theta = objective.theta(params)

    messages = []
    if settings.check_convergence:
        messages = check_convergence(
            objective,
            params,
            result,
            settings.optimizer,
            grad_tol=settings.grad_tol,
            boundary_tol=settings.singular_tol,
        )
    elif not result.success:
        messages.append(f"{settings.optimizer} did not converge: {result.message}")

    # Fixed effects
    beta = np.asarray(solution["beta"], dtype=float)
    se = np.sqrt(np.clip(np.diag(solution["vcov"]), 0.0, None))
    with np.errstate(divide="ignore", invalid="ignore"):
        statistic = beta / se
    p_values = 2.0 * stats.norm.sf(np.abs(statistic))
    fixed_effects = pd.DataFrame(
        {"estimate": beta, "se": se, "statistic": statistic, "p_value": p_values},
        index=pd.Index(design.fixed_names, name="term"),
    )
    vcov = pd.DataFrame(solution["vcov"], index=design.fixed_names, columns=design.fixed_names)

    if spec.family == "binomial":
        max_abs = float(np.max(np.abs(beta[1:]))) if len(beta) > 1 else 0.0
        if max_abs > 15 or np.max(np.abs(design.y - solution["fitted"])) < 1e-6:
            raise DegenerateFitError(
                f"Estimates diverge (max |b| = {max_abs:.1f}): complete separation"
            )

    # Random effects
    dispersion = float(solution["dispersion"])
    scale = dispersion if spec.is_linear else 1.0
    covariances = {}
    for name, T in design.factors(theta).items():
        terms = list(next(b.terms for b in design.blocks if b.name == name))
        covariances[name] = pd.DataFrame(scale * (T @ T.T), index=terms, columns=terms)
    modes = design.split_modes(solution["u"])

    n_params = design.p + design.n_theta + int(spec.family in FREE_DISPERSION)
    deviance = float(solution["deviance"])
    loglik = -0.5 * deviance
    aic = deviance + 2.0 * n_params
    bic = deviance + np.log(design.n) * n_params

    r2_marginal, r2_conditional = _variance_explained(
        design, spec, beta, covariances, dispersion
    )

    singular = is_singular(theta, design.theta_diagonal_mask(), settings.singular_tol)

    fit = FitResult(
        spec=spec,
        settings=settings,
        fixed_effects=fixed_effects,
        vcov=vcov,
        loglik=loglik,
        deviance=deviance,
        aic=float(aic),
        bic=float(bic),
        n_obs=design.n,
        n_params=n_params,
        reml=reml,
        dispersion=dispersion,
        random_covariance=covariances,
        random_modes=modes,
        n_levels={block.name: block.n_levels for block in design.blocks},
        theta=theta,
        fitted=np.asarray(solution["fitted"]),
        residuals=np.asarray(solution["resid"]),
        converged=not messages,
        singular=singular,
        warnings=tuple(messages),
        r2_marginal=float(r2_marginal),
        r2_conditional=float(r2_conditional),
        n_evals=int(objective.n_evals),
        params=params,
    )

    logger.debug(fit.summary())
    return fit
