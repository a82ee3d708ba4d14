from dataclasses import replace
from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from contrast_coding import ContrastSpec, sliding_difference_contrasts
from mixed_model_utils.variance_components import find_negligible_term
from mixed_models import FitSettings, ModelSpec, fit_model
from model_selection import (
    ModelSelectionWorkflow,
    WorkflowState,
    ensure_convergence,
    likelihood_ratio_test,
    reduce_random_effects,
    test_fixed_effects as drop_one_tests,
    verify_across_optimizers,
)
from preprocessing_utils.simulation import simulate_trials
from utils.exceptions import ConvergenceFailure, DegenerateFitError, OptimizerDisagreement

CROSSED = ModelSpec.from_formula("y ~ c1 + (1 | subject) + (1 | item)")


def _fake_fit(optimizer, loglik, converged=True, estimate=0.3, se=0.05):
    return SimpleNamespace(
        optimizer=optimizer,
        loglik=loglik,
        converged=converged,
        warnings=() if converged else ("failed to converge",),
        coefficients=pd.Series({"Intercept": 6.5, "c1": estimate}),
        standard_errors=pd.Series({"Intercept": 0.1, "c1": se}),
        n_evals=10,
    )


# PCA reduction


def test_reduction_removes_slope_on_smallest_component(crossed_data):
    spec = ModelSpec.from_formula("y ~ c1 + (1 | subject) + (1 + c1 || item)")
    calls = []

    def fit_fn(data, spec, settings):
        calls.append(spec.formula)
        return fit_model(data, spec, settings)

    # With two components the smaller one never explains more than half
    fit, steps = reduce_random_effects(crossed_data, spec, FitSettings(), threshold=0.5, fit_fn=fit_fn)
    assert [(s.group, s.term) for s in steps] == [("item", "c1")]
    assert fit.spec.random_terms()["item"] == ("Intercept",)
    assert len(calls) == 2


def test_reduction_is_idempotent(coded_trials):
    spec = ModelSpec.maximal("log_rt", ["B_vs_A", "C_vs_B"], ["subject", "item"], correlated=False)
    settings = FitSettings()
    fit, _ = reduce_random_effects(coded_trials, spec, settings, threshold=1e-4)

    assert find_negligible_term(fit.decompose(), 1e-4) is None
    again, steps = reduce_random_effects(
        coded_trials, fit.spec, settings, threshold=1e-4, initial_fit=fit
    )
    assert steps == []
    assert again is fit


def test_reduction_stops_at_intercept_floor(crossed_data):
    spec = ModelSpec.from_formula("y ~ c1 + (1 + c1 || subject)")
    fit, steps = reduce_random_effects(crossed_data, spec, FitSettings(), threshold=1.0)
    assert fit.spec.random_terms()["subject"] == ("Intercept",)
    assert len(steps) == 1


def test_reduction_removes_slope_of_a_collapsed_factor(crossed_data):
    spec = ModelSpec.from_formula("y ~ c1 + (1 + c1 || subject)")

    def fit_fn(data, spec, settings):
        fit = fit_model(data, spec, settings)
        if "c1" not in spec.random_terms()["subject"]:
            return fit
        # whole factor near zero: shares look fine, both diagonals are on the boundary
        covariance = pd.DataFrame(
            np.diag([2.5e-9, 9e-10]), index=["Intercept", "c1"], columns=["Intercept", "c1"]
        )
        return replace(
            fit,
            theta=np.array([5e-5, 3e-5]),
            random_covariance={"subject": covariance},
            singular=True,
        )

    assert find_negligible_term(fit_fn(crossed_data, spec, FitSettings()).decompose(), 1e-4) is None
    fit, steps = reduce_random_effects(crossed_data, spec, FitSettings(), threshold=1e-4, fit_fn=fit_fn)
    assert [(s.group, s.term) for s in steps] == [("subject", "c1")]
    assert steps[0].reason == "standard deviation on the boundary"
    assert fit.spec.random_terms()["subject"] == ("Intercept",)


# Convergence


def test_converged_fit_is_returned_unchanged():
    fit = _fake_fit("L-BFGS-B", -100.0)
    assert ensure_convergence(None, CROSSED, FitSettings(), fit=fit) is fit


def test_retry_with_alternative_optimizer():
    def fit_fn(data, spec, settings):
        assert settings.optimizer == "COBYQA"
        assert settings.max_evals == 200000
        return _fake_fit("COBYQA", -99.0)

    first = _fake_fit("L-BFGS-B", -100.0, converged=False)
    fit = ensure_convergence(None, CROSSED, FitSettings(), fit_fn=fit_fn, fit=first)
    assert fit.optimizer == "COBYQA"


def test_convergence_failure_carries_best_fit():
    def fit_fn(data, spec, settings):
        return _fake_fit(settings.optimizer, -95.0, converged=False)

    first = _fake_fit("L-BFGS-B", -100.0, converged=False)
    with pytest.raises(ConvergenceFailure) as info:
        ensure_convergence(
            None, CROSSED, FitSettings(), ["COBYQA", "Powell"], fit_fn=fit_fn, fit=first
        )
    assert info.value.best_fit.loglik == -95.0
    assert len(info.value.attempts) == 3


# Cross-optimizer verification


def test_two_optimizers_agree_on_seeded_data(crossed_data):
    first = fit_model(crossed_data, CROSSED, FitSettings(optimizer="L-BFGS-B"))
    second = fit_model(crossed_data, CROSSED, FitSettings(optimizer="Nelder-Mead"))
    assert first.converged and second.converged
    assert abs(first.loglik - second.loglik) / abs(first.loglik) < 1e-3


def test_panel_verification_passes(crossed_data):
    result = verify_across_optimizers(
        crossed_data, CROSSED, FitSettings(), ["L-BFGS-B", "Powell"], n_jobs=2
    )
    assert result.passed
    assert len(result.to_frame()) == 2


def test_disagreement_emits_warning():
    logliks = {"L-BFGS-B": -100.0, "Powell": -150.0}

    def fit_fn(data, spec, settings):
        return _fake_fit(settings.optimizer, logliks[settings.optimizer])

    with pytest.warns(OptimizerDisagreement):
        result = verify_across_optimizers(
            None, CROSSED, FitSettings(), ["L-BFGS-B", "Powell"], fit_fn=fit_fn
        )
    assert not result.passed
    assert result.reference == "L-BFGS-B"


def test_estimate_outside_reference_se_is_a_disagreement():
    estimates = {"L-BFGS-B": 0.3, "Powell": -0.02}

    def fit_fn(data, spec, settings):
        return _fake_fit(settings.optimizer, -100.0, estimate=estimates[settings.optimizer], se=0.1)

    with pytest.warns(OptimizerDisagreement):
        result = verify_across_optimizers(None, CROSSED, FitSettings(), ["L-BFGS-B", "Powell"], fit_fn=fit_fn)
    assert not result.passed


def test_failed_run_is_excluded():
    def fit_fn(data, spec, settings):
        if settings.optimizer == "Powell":
            raise DegenerateFitError("boom")
        return _fake_fit(settings.optimizer, -100.0)

    result = verify_across_optimizers(
        None, CROSSED, FitSettings(), ["L-BFGS-B", "Nelder-Mead", "Powell"], fit_fn=fit_fn
    )
    assert result.passed
    failed = {run.optimizer: run.failed for run in result.runs}
    assert failed == {"L-BFGS-B": False, "Nelder-Mead": False, "Powell": True}


# Nested comparisons


def test_collinear_term_raises_degenerate_fit(crossed_data):
    data = crossed_data.assign(c1_scaled=2.0 * crossed_data["c1"])
    with pytest.raises(DegenerateFitError):
        likelihood_ratio_test(data, CROSSED, CROSSED.add_fixed("c1_scaled"), FitSettings())


def test_identical_models_have_no_degrees_of_freedom(crossed_data):
    with pytest.raises(DegenerateFitError, match="df = 0"):
        likelihood_ratio_test(crossed_data, CROSSED, CROSSED, FitSettings())


def test_likelihood_ratio_test_uses_ml(crossed_data):
    reduced = CROSSED.drop_fixed("c1")
    test = likelihood_ratio_test(crossed_data, reduced, CROSSED, FitSettings(reml=True), term="c1")
    full_ml = fit_model(crossed_data, CROSSED, FitSettings(reml=False))
    assert test.df == 1
    assert test.loglik_full == pytest.approx(full_ml.loglik)
    assert test.statistic == pytest.approx(2 * (test.loglik_full - test.loglik_reduced))
    assert test.retained(0.05)


def test_drop_one_tests_mark_null_terms(crossed_data, rng):
    data = crossed_data.assign(null=rng.normal(size=len(crossed_data)))
    spec = CROSSED.add_fixed("null")
    table = drop_one_tests(data, spec, FitSettings(), alpha=0.05, n_jobs=2)
    assert list(table["term"]) == ["c1", "null"]
    assert bool(table.set_index("term").loc["c1", "retained"])
    assert (table["df"] == 1).all()


# Workflow


def test_workflow_reaches_reported_state(coded_trials):
    spec = ModelSpec.maximal("log_rt", ["B_vs_A", "C_vs_B"], ["subject", "item"], correlated=False)
    workflow = ModelSelectionWorkflow(optimizer_panel=["L-BFGS-B", "Powell"], n_jobs=1)
    report = workflow.run(coded_trials, spec, name="RT")

    assert report.states[0] == WorkflowState.MAXIMAL
    assert report.state == WorkflowState.REPORTED
    assert set(report.random_structure()) == {"subject", "item"}
    assert "Intercept" in report.random_structure()["subject"]
    assert list(report.fixed_effects.index) == ["Intercept", "B_vs_A", "C_vs_B"]
    assert set(report.term_tests["term"]) == {"B_vs_A", "C_vs_B"}
    assert set(report.fit_indices()) >= {"aic", "bic", "loglik", "r2_marginal", "r2_conditional"}


def test_workflow_flags_provisional_fit(crossed_data):
    def fit_fn(data, spec, settings):
        return replace(fit_model(data, spec, settings), converged=False, warnings=("forced",))

    workflow = ModelSelectionWorkflow(
        optimizer_panel=["L-BFGS-B"], test_terms=False, fit_fn=fit_fn
    )
    with pytest.warns(OptimizerDisagreement):
        report = workflow.run(crossed_data, CROSSED, name="forced")
    assert report.provisional
    assert WorkflowState.CONVERGED not in report.states
    assert any("No optimizer converged" in w for w in report.warnings)


def test_workflow_rejects_singular_intercept_only_fit(crossed_data):
    def fit_fn(data, spec, settings):
        fit = fit_model(data, spec, settings)
        return replace(fit, theta=np.zeros_like(fit.theta), singular=True)

    workflow = ModelSelectionWorkflow(optimizer_panel=["L-BFGS-B"], test_terms=False, fit_fn=fit_fn)
    with pytest.raises(DegenerateFitError, match="random-intercept floor") as info:
        workflow.run(crossed_data, CROSSED, name="collapsed")
    assert "Intercept | subject" in str(info.value)
    assert "Intercept | item" in str(info.value)


def test_workflow_records_rejected_terms(crossed_data, monkeypatch):
    def reject_everything(data, spec, settings, **kwargs):
        kwargs["alpha"] = 0.0
        return drop_one_tests(data, spec, settings, **kwargs)

    monkeypatch.setattr("model_selection.test_fixed_effects", reject_everything)
    workflow = ModelSelectionWorkflow(optimizer_panel=["L-BFGS-B"])
    report = workflow.run(crossed_data, CROSSED, name="RT")

    assert WorkflowState.REJECTED in report.states
    assert report.state == WorkflowState.REPORTED
    assert report.rejected_terms == ["c1"]
    assert "c1" in report.fixed_effects.index
    assert any("still contains them" in w for w in report.warnings)


def test_binomial_workflow_keeps_random_intercepts():
    trials = simulate_trials(
        n_subjects=30,
        n_items=24,
        subject_accuracy_sd=1.0,
        item_accuracy_sd=1.0,
        base_accuracy_logit=1.0,
        seed=11,
    )
    contrasts = ContrastSpec.from_mapping(
        "condition", sliding_difference_contrasts(["A", "B", "C"]), levels=["A", "B", "C"]
    )
    coded, _, _ = contrasts.apply(trials)
    spec = ModelSpec.maximal(
        "correct", ["B_vs_A", "C_vs_B"], ["subject", "item"], correlated=False, family="binomial"
    )
    workflow = ModelSelectionWorkflow(optimizer_panel=["L-BFGS-B"], test_terms=False)
    report = workflow.run(coded, spec, name="Accuracy")

    assert report.state == WorkflowState.REPORTED
    assert not report.fit.singular
    assert report.spec.family == "binomial"
    structure = report.random_structure()
    assert "Intercept" in structure["subject"]
    assert "Intercept" in structure["item"]
    assert list(report.fixed_effects.index) == ["Intercept", "B_vs_A", "C_vs_B"]
