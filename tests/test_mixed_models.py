from dataclasses import replace

import numpy as np
import pandas as pd
import pytest
import statsmodels.formula.api as smf

from mixed_models import FitSettings, ModelSpec, RandomEffects, fit_model
from utils.exceptions import DegenerateFitError


# Model specifications


def test_formula_parsing():
    spec = ModelSpec.from_formula("rt ~ c1 + c2 + (1 + c1 | subject) + (1 || item)")
    assert spec.outcome == "rt"
    assert spec.fixed_effects == ("c1", "c2")
    assert spec.intercept
    subject, item = spec.random_effects
    assert subject == RandomEffects("subject", ("Intercept", "c1"), correlated=True)
    assert item == RandomEffects("item", ("Intercept",), correlated=False)


def test_formula_round_trip():
    spec = ModelSpec.from_formula("y ~ x + (1 + x || subject) + (0 + x | item)", family="gamma", link="log")
    assert ModelSpec.from_formula(spec.formula, family="gamma", link="log") == spec
    assert spec.random_effects[1].terms == ("x",)


def test_formula_without_intercept():
    spec = ModelSpec.from_formula("y ~ 0 + x + (1 | g)")
    assert not spec.intercept
    assert spec.fixed_effects == ("x",)


def test_formula_needs_random_effects():
    with pytest.raises(ValueError):
        ModelSpec.from_formula("y ~ x")


def test_unknown_family_rejected():
    with pytest.raises(ValueError, match="Unknown family"):
        ModelSpec.from_formula("y ~ x + (1 | g)", family="tweedie")


def test_specs_are_immutable_values():
    spec = ModelSpec.maximal("rt", ["c1", "c2"], ["subject", "item"], correlated=False)
    reduced = spec.drop_random("item", "c2")
    assert spec.random_terms()["item"] == ("Intercept", "c1", "c2")
    assert reduced.random_terms()["item"] == ("Intercept", "c1")
    assert spec.drop_fixed("c1").fixed_effects == ("c2",)
    with pytest.raises(ValueError):
        spec.drop_fixed("c3")
    with pytest.raises(ValueError):
        spec.drop_random("sentence", "c1")


# Linear mixed models


def test_random_intercept_model_matches_statsmodels(intercept_data):
    spec = ModelSpec.from_formula("y ~ x + (1 | subject)")
    fit = fit_model(intercept_data, spec, FitSettings(reml=True))
    reference = smf.mixedlm("y ~ x", intercept_data, groups=intercept_data["subject"]).fit(reml=True)

    assert fit.converged
    np.testing.assert_allclose(fit.coefficients.values, reference.fe_params.values, rtol=1e-3)
    np.testing.assert_allclose(fit.standard_errors.values, reference.bse_fe.values, rtol=0.05)
    assert fit.dispersion == pytest.approx(reference.scale, rel=1e-2)
    assert fit.random_covariance["subject"].iloc[0, 0] == pytest.approx(
        float(reference.cov_re.iloc[0, 0]), rel=5e-2
    )


def test_ml_log_likelihood_matches_statsmodels(intercept_data):
    spec = ModelSpec.from_formula("y ~ x + (1 | subject)")
    fit = fit_model(intercept_data, spec, FitSettings(reml=False))
    reference = smf.mixedlm("y ~ x", intercept_data, groups=intercept_data["subject"]).fit(reml=False)
    assert fit.loglik == pytest.approx(reference.llf, abs=1e-2)
    assert not fit.reml


def test_crossed_random_effects_recover_effect(crossed_data):
    spec = ModelSpec.from_formula("y ~ c1 + (1 | subject) + (1 | item)")
    fit = fit_model(crossed_data, spec)

    assert fit.converged
    assert not fit.singular
    assert fit.coefficients["c1"] == pytest.approx(0.3, abs=0.1)
    assert set(fit.random_covariance) == {"subject", "item"}
    assert fit.random_modes["subject"].shape == (15, 1)
    assert fit.n_params == 2 + 2 + 1
    assert fit.aic == pytest.approx(-2 * fit.loglik + 2 * fit.n_params)
    assert 0.0 <= fit.r2_marginal <= fit.r2_conditional <= 1.0


def test_fit_does_not_modify_data(crossed_data):
    before = crossed_data.copy()
    fit_model(crossed_data, ModelSpec.from_formula("y ~ c1 + (1 | subject)"))
    pd.testing.assert_frame_equal(crossed_data, before)


def test_variance_components_table(crossed_data):
    fit = fit_model(crossed_data, ModelSpec.from_formula("y ~ c1 + (1 | subject) + (1 | item)"))
    table = fit.variance_components()
    assert list(table["group"]) == ["subject", "item", "Residual"]
    assert np.allclose(table["sd"] ** 2, table["variance"])


@pytest.fixture
def slope_data(rng):
    """30 subjects x 24 trials, intercept sd 1, slope sd 0.8, correlation 0.5"""
    n_subjects, n_trials = 30, 24
    subject = np.repeat(np.arange(n_subjects), n_trials)
    x = np.tile([-0.5, 0.5], n_subjects * n_trials // 2)
    cov = np.array([[1.0, 0.4], [0.4, 0.64]])
    effects = rng.multivariate_normal([0.0, 0.0], cov, n_subjects)
    y = 5.0 + 0.5 * x + effects[subject, 0] + effects[subject, 1] * x + rng.normal(0.0, 0.3, len(x))
    return pd.DataFrame({"subject": [f"s{s:02d}" for s in subject], "x": x, "y": y})


def test_correlated_random_slope_model(slope_data):
    spec = ModelSpec.from_formula("y ~ x + (1 + x | subject)")
    fit = fit_model(slope_data, spec, FitSettings(reml=False))

    assert len(fit.theta) == 3
    assert not fit.singular
    assert fit.n_params == 2 + 3 + 1
    cov = fit.random_covariance["subject"]
    assert list(cov.columns) == ["Intercept", "x"]
    assert cov.loc["Intercept", "x"] == pytest.approx(cov.loc["x", "Intercept"])
    assert cov.loc["x", "x"] == pytest.approx(0.64, rel=0.6)

    table = fit.variance_components().set_index("term")
    assert -1.0 <= table.loc["x", "corr_Intercept"] <= 1.0

    reference = smf.mixedlm(
        "y ~ x", slope_data, groups=slope_data["subject"], re_formula="~x"
    ).fit(reml=False)
    assert fit.loglik >= reference.llf - 0.1
    assert fit.coefficients["x"] == pytest.approx(reference.fe_params["x"], abs=0.02)


def test_boundary_terms_follow_the_cholesky_layout(slope_data):
    fit = fit_model(slope_data, ModelSpec.from_formula("y ~ x + (1 + x | subject)"))
    # theta is (T00, T10, T11): a zero T11 makes x a multiple of the intercept
    collapsed = replace(fit, theta=np.array([1.0, 0.3, 0.0]))
    assert collapsed.boundary_terms() == [("subject", "x")]
    assert fit.boundary_terms() == []

    uncorrelated = fit_model(slope_data, ModelSpec.from_formula("y ~ x + (1 + x || subject)"))
    assert replace(uncorrelated, theta=np.array([0.0, 0.5])).boundary_terms() == [
        ("subject", "Intercept")
    ]


# Degenerate fits


def test_rank_deficient_design_raises(crossed_data):
    data = crossed_data.assign(c1_copy=crossed_data["c1"] * 3)
    with pytest.raises(DegenerateFitError, match="rank deficient"):
        fit_model(data, ModelSpec.from_formula("y ~ c1 + c1_copy + (1 | subject)"))


def test_single_level_grouping_factor_raises(crossed_data):
    data = crossed_data.assign(site="only")
    with pytest.raises(DegenerateFitError):
        fit_model(data, ModelSpec.from_formula("y ~ c1 + (1 | site)"))


def test_missing_column_raises(crossed_data):
    with pytest.raises(ValueError):
        fit_model(crossed_data, ModelSpec.from_formula("y ~ c9 + (1 | subject)"))


def test_binomial_separation_raises(crossed_data):
    data = crossed_data.assign(correct=(crossed_data["c1"] > 0).astype(float))
    with pytest.raises(DegenerateFitError, match="separation"):
        fit_model(data, ModelSpec.from_formula("correct ~ c1 + (1 | subject)", family="binomial"))


# Generalized linear mixed models


def test_logistic_mixed_model(rng):
    n_subjects, n_trials = 30, 60
    subject = np.repeat(np.arange(n_subjects), n_trials)
    c1 = np.tile([-0.5, 0.5], n_subjects * n_trials // 2)
    eta = 1.0 + 0.8 * c1 + rng.normal(0.0, 0.7, n_subjects)[subject]
    data = pd.DataFrame(
        {
            "subject": subject.astype(str),
            "c1": c1,
            "correct": rng.random(len(eta)) < 1.0 / (1.0 + np.exp(-eta)),
        }
    )
    fit = fit_model(data, ModelSpec.from_formula("correct ~ c1 + (1 | subject)", family="binomial"))

    assert fit.spec.link_name == "logit"
    assert fit.coefficients["Intercept"] == pytest.approx(1.0, abs=0.35)
    assert fit.coefficients["c1"] == pytest.approx(0.8, abs=0.35)
    assert fit.dispersion == 1.0
    assert fit.n_params == 2 + 1
    assert 0.0 <= fit.r2_marginal <= fit.r2_conditional <= 1.0
    assert np.all((fit.fitted > 0) & (fit.fitted < 1))


def test_gamma_log_link_model(rng):
    n_subjects, n_trials = 20, 50
    subject = np.repeat(np.arange(n_subjects), n_trials)
    x = np.tile([-0.5, 0.5], n_subjects * n_trials // 2)
    mu = np.exp(6.5 + 0.1 * x + rng.normal(0.0, 0.1, n_subjects)[subject])
    shape = 10.0
    data = pd.DataFrame(
        {"subject": subject.astype(str), "x": x, "rt": rng.gamma(shape, mu / shape)}
    )
    fit = fit_model(data, ModelSpec.from_formula("rt ~ x + (1 | subject)", family="gamma", link="log"))

    assert fit.coefficients["x"] == pytest.approx(0.1, abs=0.06)
    assert fit.coefficients["Intercept"] == pytest.approx(6.5, abs=0.1)
    assert fit.dispersion == pytest.approx(1.0 / shape, rel=0.3)
    assert fit.n_params == 2 + 1 + 1


def test_gamma_rejects_non_positive_outcome(rng):
    data = pd.DataFrame(
        {"subject": ["a", "b"] * 20, "x": rng.normal(size=40), "rt": rng.uniform(500, 900, 40)}
    )
    data["rt_reciprocal"] = -1000.0 / data["rt"]
    spec = ModelSpec.from_formula("rt_reciprocal ~ x + (1 | subject)", family="gamma", link="log")
    with pytest.raises(ValueError, match="strictly positive"):
        fit_model(data, spec)


def test_invalid_link_for_family(rng):
    data = pd.DataFrame({"g": ["a", "b"] * 10, "y": rng.random(20) > 0.5, "x": rng.normal(size=20)})
    with pytest.raises(ValueError):
        fit_model(data, ModelSpec.from_formula("y ~ x + (1 | g)", family="poisson", link="logit"))
