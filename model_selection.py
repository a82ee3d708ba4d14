#!/usr/bin/env python3
"""
Model Selection Workflow
Maximal model -> PCA reduction -> convergence -> cross-optimizer check ->
report, with likelihood-ratio tests on the fixed effects
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import stats

from mixed_model_utils.design import INTERCEPT
from mixed_model_utils.variance_components import (
    RemovalCandidate,
    VarianceDecomposition,
    find_negligible_term,
    log_decompositions,
)
from mixed_models import FitResult, FitSettings, ModelSpec, fit_model
from utils.exceptions import (
    ConvergenceFailure,
    DegenerateFitError,
    MixedModelError,
    OptimizerDisagreement,
)

logger = logging.getLogger(__name__)

DEFAULT_PANEL = ("L-BFGS-B", "Nelder-Mead", "Powell", "COBYQA")

FitFunction = Callable[[pd.DataFrame, ModelSpec, FitSettings], FitResult]


class WorkflowState(Enum):
    MAXIMAL = "maximal"
    PCA_REDUCED = "pca_reduced"
    CONVERGED = "converged"
    VERIFIED = "cross_optimizer_verified"
    REJECTED = "rejected"
    REPORTED = "reported"


@dataclass(frozen=True)
class ReductionStep:
    """One removal of a random-effect term"""

    group: str
    term: str
    proportion: float
    formula_before: str
    formula_after: str
    decompositions: Dict[str, VarianceDecomposition]
    reason: str = ""


def _boundary_candidate(fit: FitResult) -> Optional[RemovalCandidate]:
    """First slope whose Cholesky diagonal sits on the boundary"""
    for group, term in fit.boundary_terms():
        if term == INTERCEPT:
            continue
        cov = fit.random_covariance[group]
        total = float(np.trace(cov.values))
        share = float(cov.loc[term, term]) / total if total > 0 else 0.0
        return RemovalCandidate(group=group, term=term, proportion=share, component=-1)
    return None


def reduce_random_effects(
    data: pd.DataFrame,
    spec: ModelSpec,
    settings: FitSettings,
    threshold: float = 1e-4,
    fit_fn: FitFunction = fit_model,
    initial_fit: Optional[FitResult] = None,
) -> Tuple[FitResult, List[ReductionStep]]:
    """
    Drop random-effect terms that explain no variance, one at a time

    Each iteration decomposes the covariance of every grouping factor,
    removes the term loading most heavily on the smallest negligible
    component and refits. Shares are relative to each factor's own
    variance, so a factor that has collapsed as a whole is caught by its
    Cholesky diagonals instead: slopes on the boundary are removed too.
    Stops when neither finds a slope; a grouping factor never loses its
    intercept or its last term.

    Args:
        data: Trial data (not modified)
        spec: Starting specification, usually the maximal model
        settings: Settings for every refit
        threshold: Largest share of variance treated as negligible
        fit_fn: Fitting function (data, spec, settings) -> FitResult
        initial_fit: Fit of ``spec`` when already available

    Returns:
        Final fit and the list of removals
    """
    fit = initial_fit if initial_fit is not None else fit_fn(data, spec, settings)
    steps = []

    while True:
        decompositions = fit.decompose()
        log_decompositions(decompositions)
        candidate = find_negligible_term(decompositions, threshold)
        if candidate is not None:
            reason = f"smallest component explains {candidate.proportion:.2e} of variance"
        else:
            candidate = _boundary_candidate(fit)
            if candidate is None:
                break
            reason = "standard deviation on the boundary"

        reduced = fit.spec.drop_random(candidate.group, candidate.term)
        logger.info(f"Removing '{candidate.term}' from {candidate.group} ({reason})")
        steps.append(
            ReductionStep(
                group=candidate.group,
                term=candidate.term,
                proportion=candidate.proportion,
                formula_before=fit.spec.formula,
                formula_after=reduced.formula,
                decompositions=decompositions,
                reason=reason,
            )
        )
        fit = fit_fn(data, reduced, settings)

    if steps:
        logger.info(f"Reduced random effects: {fit.spec.formula}")
    return fit, steps


def ensure_convergence(
    data: pd.DataFrame,
    spec: ModelSpec,
    settings: FitSettings,
    retry_optimizers: Sequence[str] = ("COBYQA",),
    retry_max_evals: int = 200000,
    fit_fn: FitFunction = fit_model,
    fit: Optional[FitResult] = None,
) -> FitResult:
    """
    Return a converged fit, retrying with alternative optimizers

    Raises:
        ConvergenceFailure: Every optimizer left warnings. ``best_fit`` holds
            the attempt with the highest log-likelihood.
    """
    if fit is None:
        fit = fit_fn(data, spec, settings)
    if fit.converged:
        return fit

    attempts = [fit]
    for message in fit.warnings:
        logger.warning(f"  {fit.optimizer}: {message}")

    for optimizer in retry_optimizers:
        logger.info(f"Retrying with {optimizer} (max {retry_max_evals:,} evaluations)")
        retry = fit_fn(data, spec, settings.using(optimizer, retry_max_evals))
        attempts.append(retry)
        if retry.converged:
            logger.info(f"  {optimizer} converged (logLik = {retry.loglik:.3f})")
            return retry
        for message in retry.warnings:
            logger.warning(f"  {optimizer}: {message}")

    best = max(attempts, key=lambda attempt: attempt.loglik)
    raise ConvergenceFailure(
        f"No optimizer converged for {spec.formula} "
        f"(tried {', '.join(a.optimizer for a in attempts)})",
        best_fit=best,
        attempts=attempts,
    )


@dataclass(frozen=True)
class OptimizerRun:
    optimizer: str
    loglik: float
    converged: bool
    failed: bool
    estimates: Optional[pd.Series] = None
    standard_errors: Optional[pd.Series] = None
    n_evals: int = 0
    messages: Tuple[str, ...] = ()

    @property
    def usable(self) -> bool:
        return not self.failed and self.converged


@dataclass(frozen=True)
class VerificationResult:
    """Per-optimizer results and whether they agree"""

    runs: Tuple[OptimizerRun, ...]
    reference: str
    passed: bool
    messages: Tuple[str, ...] = ()

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for run in self.runs:
            row = {
                "optimizer": run.optimizer,
                "loglik": run.loglik,
                "converged": run.converged,
                "failed": run.failed,
                "n_evals": run.n_evals,
            }
            if run.estimates is not None:
                row.update(run.estimates.to_dict())
            rows.append(row)
        return pd.DataFrame(rows)


def _run_optimizer(
    data: pd.DataFrame, spec: ModelSpec, settings: FitSettings, fit_fn: FitFunction
) -> OptimizerRun:
    try:
        fit = fit_fn(data, spec, settings)
    except (MixedModelError, ValueError, ArithmeticError, np.linalg.LinAlgError) as e:
        logger.warning(f"  {settings.optimizer} failed: {e}")
        return OptimizerRun(
            optimizer=settings.optimizer,
            loglik=np.nan,
            converged=False,
            failed=True,
            messages=(str(e),),
        )
    return OptimizerRun(
        optimizer=settings.optimizer,
        loglik=fit.loglik,
        converged=fit.converged,
        failed=False,
        estimates=fit.coefficients,
        standard_errors=fit.standard_errors,
        n_evals=fit.n_evals,
        messages=fit.warnings,
    )


def compare_runs(
    runs: Sequence[OptimizerRun], reference: OptimizerRun, rtol: float = 1e-3
) -> List[str]:
    """Disagreements between usable runs and the reference run"""
    problems = []
    scale = max(abs(reference.loglik), 1.0)
    for run in runs:
        if not run.usable or run is reference:
            continue
        difference = abs(run.loglik - reference.loglik)
        if difference / scale >= rtol:
            problems.append(
                f"{run.optimizer} logLik {run.loglik:.4f} differs from "
                f"{reference.optimizer} {reference.loglik:.4f}"
            )
        for term, estimate in run.estimates.items():
            ref_estimate = reference.estimates[term]
            ref_se = reference.standard_errors[term]
            # More than one SE apart also covers a sign flip of a reliable estimate
            if abs(estimate - ref_estimate) > ref_se:
                problems.append(
                    f"{run.optimizer} {term} = {estimate:.4f} is more than one SE "
                    f"from {ref_estimate:.4f}"
                )
    return problems


def verify_across_optimizers(
    data: pd.DataFrame,
    spec: ModelSpec,
    settings: FitSettings,
    optimizers: Sequence[str] = DEFAULT_PANEL,
    rtol: float = 1e-3,
    n_jobs: int = 1,
    fit_fn: FitFunction = fit_model,
) -> VerificationResult:
    """
    Refit one specification with every optimizer in the panel

    Runs are independent and fitted concurrently. A run that raises is
    marked failed and left out of the comparison, as are runs that did
    not converge. The run with the highest log-likelihood is the reference.
    Disagreement emits an OptimizerDisagreement warning.
    """
    logger.info(f"Checking {spec.formula} with {len(optimizers)} optimizers")
    runs = Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(_run_optimizer)(data, spec, settings.using(optimizer), fit_fn)
        for optimizer in optimizers
    )

    for run in runs:
        status = "failed" if run.failed else ("ok" if run.converged else "not converged")
        logger.info(f"  {run.optimizer:>12s}: logLik = {run.loglik:.4f} ({status})")

    usable = [run for run in runs if run.usable]
    if not usable:
        message = "No optimizer in the panel converged"
        warnings.warn(message, OptimizerDisagreement)
        return VerificationResult(
            runs=tuple(runs), reference="", passed=False, messages=(message,)
        )

    reference = max(usable, key=lambda run: run.loglik)
    problems = compare_runs(usable, reference, rtol)
    if len(usable) < 2:
        logger.warning(f"Only {reference.optimizer} converged; nothing to compare")

    if problems:
        for problem in problems:
            logger.warning(f"  {problem}")
        warnings.warn(
            f"Optimizers disagree for {spec.formula}: {'; '.join(problems)}",
            OptimizerDisagreement,
        )

    return VerificationResult(
        runs=tuple(runs),
        reference=reference.optimizer,
        passed=not problems,
        messages=tuple(problems),
    )


@dataclass(frozen=True)
class LikelihoodRatioTest:
    term: str
    statistic: float
    df: int
    p_value: float
    loglik_full: float
    loglik_reduced: float
    aic_full: float
    aic_reduced: float

    def retained(self, alpha: float = 0.05) -> bool:
        return self.p_value < alpha


def _ml(settings: FitSettings) -> FitSettings:
    return replace(settings, reml=False)


def likelihood_ratio_test(
    data: pd.DataFrame,
    reduced: ModelSpec,
    full: ModelSpec,
    settings: FitSettings,
    fit_fn: FitFunction = fit_model,
    full_fit: Optional[FitResult] = None,
    term: str = "",
) -> LikelihoodRatioTest:
    """
    Likelihood-ratio test of two nested models, both fitted by ML

    Raises:
        DegenerateFitError: The larger model has no extra parameters, or its
            fixed-effects design is rank deficient
    """
    ml_settings = _ml(settings)
    if full_fit is None or full_fit.reml:
        full_fit = fit_fn(data, full, ml_settings)
    reduced_fit = fit_fn(data, reduced, ml_settings)

    df = full_fit.n_params - reduced_fit.n_params
    if df <= 0:
        raise DegenerateFitError(
            f"Models are not nested with extra parameters (df = {df}): "
            f"{reduced.formula} vs {full.formula}"
        )
    statistic = max(2.0 * (full_fit.loglik - reduced_fit.loglik), 0.0)
    p_value = float(stats.chi2.sf(statistic, df))

    return LikelihoodRatioTest(
        term=term,
        statistic=statistic,
        df=int(df),
        p_value=p_value,
        loglik_full=full_fit.loglik,
        loglik_reduced=reduced_fit.loglik,
        aic_full=full_fit.aic,
        aic_reduced=reduced_fit.aic,
    )


def test_fixed_effects(
    data: pd.DataFrame,
    spec: ModelSpec,
    settings: FitSettings,
    terms: Optional[Sequence[str]] = None,
    alpha: float = 0.05,
    n_jobs: int = 1,
    fit_fn: FitFunction = fit_model,
) -> pd.DataFrame:
    """
    Drop-one likelihood-ratio tests for fixed-effect terms

    Returns:
        One row per term with chi2, df, p and whether it is retained
        (p < alpha) or rejected
    """
    terms = list(terms) if terms is not None else list(spec.fixed_effects)
    full_fit = fit_fn(data, spec, _ml(settings))

    tests = Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(likelihood_ratio_test)(
            data, spec.drop_fixed(term), spec, settings, fit_fn, full_fit, term
        )
        for term in terms
    )

    rows = []
    for test in tests:
        outcome = "retained" if test.retained(alpha) else "rejected"
        logger.info(
            f"  {test.term}: chi2({test.df}) = {test.statistic:.3f}, "
            f"p = {test.p_value:.4g} -> {outcome}"
        )
        rows.append(
            {
                "term": test.term,
                "chi2": test.statistic,
                "df": test.df,
                "p_value": test.p_value,
                "loglik_full": test.loglik_full,
                "loglik_reduced": test.loglik_reduced,
                "retained": test.retained(alpha),
            }
        )
    return pd.DataFrame(rows, columns=[
        "term", "chi2", "df", "p_value", "loglik_full", "loglik_reduced", "retained"
    ])


# Not a test case when imported into a test module
test_fixed_effects.__test__ = False


@dataclass
class ModelReport:
    """Everything reported for one outcome"""

    name: str
    fit: FitResult
    states: List[WorkflowState]
    reductions: List[ReductionStep] = field(default_factory=list)
    verification: Optional[VerificationResult] = None
    term_tests: Optional[pd.DataFrame] = None
    warnings: List[str] = field(default_factory=list)
    provisional: bool = False

    @property
    def state(self) -> WorkflowState:
        return self.states[-1]

    @property
    def spec(self) -> ModelSpec:
        return self.fit.spec

    @property
    def fixed_effects(self) -> pd.DataFrame:
        return self.fit.fixed_effects

    @property
    def verified(self) -> bool:
        return WorkflowState.VERIFIED in self.states

    @property
    def rejected_terms(self) -> List[str]:
        if self.term_tests is None or self.term_tests.empty:
            return []
        return self.term_tests.loc[~self.term_tests["retained"], "term"].tolist()

    def fit_indices(self) -> Dict[str, float]:
        return {
            "aic": self.fit.aic,
            "bic": self.fit.bic,
            "loglik": self.fit.loglik,
            "deviance": self.fit.deviance,
            "r2_marginal": self.fit.r2_marginal,
            "r2_conditional": self.fit.r2_conditional,
            "n_obs": self.fit.n_obs,
            "n_params": self.fit.n_params,
        }

    def random_structure(self) -> Dict[str, List[str]]:
        return {group: list(terms) for group, terms in self.spec.random_terms().items()}


class ModelSelectionWorkflow:
    """
    Runs one specification through the selection states

    Every stage produces a new fit from the read-only data; the state list
    on the report records which stages were reached.
    """

    def __init__(
        self,
        settings: Optional[FitSettings] = None,
        pca_threshold: float = 1e-4,
        retry_optimizers: Sequence[str] = ("COBYQA",),
        retry_max_evals: int = 200000,
        optimizer_panel: Sequence[str] = DEFAULT_PANEL,
        loglik_rtol: float = 1e-3,
        alpha: float = 0.05,
        n_jobs: int = 1,
        test_terms: bool = True,
        fit_fn: FitFunction = fit_model,
    ):
        self.settings = settings or FitSettings()
        self.pca_threshold = pca_threshold
        self.retry_optimizers = tuple(retry_optimizers)
        self.retry_max_evals = retry_max_evals
        self.optimizer_panel = tuple(optimizer_panel)
        self.loglik_rtol = loglik_rtol
        self.alpha = alpha
        self.n_jobs = n_jobs
        self.test_terms = test_terms
        self.fit_fn = fit_fn

    @classmethod
    def from_config(cls, config_module, **overrides) -> "ModelSelectionWorkflow":
        settings = FitSettings(
            optimizer=config_module.get("DEFAULT_OPTIMIZER", "L-BFGS-B"),
            max_evals=config_module.get("MAX_EVALS", 20000),
            reml=config_module.get("REML", True),
            grad_tol=config_module.get("GRAD_TOL", 2e-3),
            singular_tol=config_module.get("SINGULAR_TOL", 1e-4),
        )
        kwargs = dict(
            settings=settings,
            pca_threshold=config_module.get("PCA_THRESHOLD", 1e-4),
            retry_optimizers=config_module.get("RETRY_OPTIMIZERS", ["COBYQA"]),
            retry_max_evals=config_module.get("RETRY_MAX_EVALS", 200000),
            optimizer_panel=config_module.get("OPTIMIZER_PANEL", DEFAULT_PANEL),
            loglik_rtol=config_module.get("LOGLIK_RTOL", 1e-3),
            alpha=config_module.get("ALPHA", 0.05),
            n_jobs=config_module.get("N_JOBS", 1),
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def run(self, data: pd.DataFrame, spec: ModelSpec, name: str = "model") -> ModelReport:
        logger.info("=" * 60)
        logger.info(f"MODEL SELECTION: {name}")
        logger.info("=" * 60)
        logger.info(f"Maximal model: {spec.formula}")

        report_warnings = []
        provisional = False
        states = [WorkflowState.MAXIMAL]
        fit = self.fit_fn(data, spec, self.settings)
        logger.info(f"  logLik = {fit.loglik:.3f}, converged = {fit.converged}")

        # PCA reduction
        fit, reductions = reduce_random_effects(
            data, spec, self.settings, self.pca_threshold, self.fit_fn, initial_fit=fit
        )
        if reductions:
            states.append(WorkflowState.PCA_REDUCED)

        # Convergence
        try:
            fit = ensure_convergence(
                data,
                fit.spec,
                self.settings,
                self.retry_optimizers,
                self.retry_max_evals,
                self.fit_fn,
                fit=fit,
            )
            states.append(WorkflowState.CONVERGED)
        except ConvergenceFailure as e:
            logger.warning(f"{e}; continuing with the best fit as provisional")
            fit = e.best_fit
            provisional = True
            report_warnings.append(str(e))
            report_warnings.extend(fit.warnings)

        if fit.singular:
            at_floor = ", ".join(f"{term} | {group}" for group, term in fit.boundary_terms())
            message = (
                f"Fit of {fit.spec.formula} is singular at the random-intercept "
                f"floor ({at_floor})"
            )
            logger.error(message)
            raise DegenerateFitError(message)

        # Cross-optimizer verification
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", OptimizerDisagreement)
            verification = verify_across_optimizers(
                data,
                fit.spec,
                fit.settings,
                self.optimizer_panel,
                self.loglik_rtol,
                self.n_jobs,
                self.fit_fn,
            )
        for warning in caught:
            report_warnings.append(str(warning.message))
            warnings.warn(warning.message)
        if verification.passed:
            states.append(WorkflowState.VERIFIED)
        else:
            logger.warning("Result is optimizer-sensitive; see the optimizer table")

        # Nested comparisons
        term_tests = None
        if self.test_terms and fit.spec.fixed_effects:
            logger.info("Likelihood-ratio tests (ML):")
            term_tests = test_fixed_effects(
                data,
                fit.spec,
                fit.settings,
                alpha=self.alpha,
                n_jobs=self.n_jobs,
                fit_fn=self.fit_fn,
            )
            rejected = term_tests.loc[~term_tests["retained"], "term"].tolist()
            if rejected:
                # the reported estimates stay those of the fit that includes them
                states.append(WorkflowState.REJECTED)
                report_warnings.append(
                    f"Rejected by likelihood-ratio test (p >= {self.alpha}): "
                    f"{', '.join(rejected)}; the reported fit still contains them"
                )
                logger.info(f"Rejected fixed effects: {', '.join(rejected)}")

        states.append(WorkflowState.REPORTED)
        report = ModelReport(
            name=name,
            fit=fit,
            states=states,
            reductions=reductions,
            verification=verification,
            term_tests=term_tests,
            warnings=report_warnings,
            provisional=provisional,
        )
        logger.info(fit.summary())
        logger.info(f"Final state: {' -> '.join(state.value for state in states)}")
        return report
