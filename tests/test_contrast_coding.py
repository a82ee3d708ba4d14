import numpy as np
import pandas as pd
import pytest

from contrast_coding import (
    INTERCEPT,
    ContrastSpec,
    attach_contrast_codes,
    build_hypothesis_matrix,
    check_coding,
    contrast_columns,
    describe_hypotheses,
    factor_levels,
    invert_hypothesis_matrix,
    sliding_difference_contrasts,
    sum_contrasts,
    treatment_contrasts,
)
from utils.exceptions import NonInvertibleMatrixError, SingularHypothesisError


def _fit_linear(data, outcome, columns):
    X = np.column_stack([np.ones(len(data))] + [data[c].values for c in columns])
    coef, *_ = np.linalg.lstsq(X, data[outcome].values, rcond=None)
    return coef


def test_factor_levels_alphabetical_by_default():
    assert factor_levels(["b", "a", "c", "a"]) == ["a", "b", "c"]


def test_factor_levels_explicit_order():
    assert factor_levels(["b", "a"], order=["b", "a"]) == ["b", "a"]
    with pytest.raises(ValueError):
        factor_levels(["a", "b", "c"], order=["a", "b"])


def test_hypothesis_matrix_rows_and_columns():
    H = build_hypothesis_matrix(["A", "B", "C"], {"c1": {"B": 1, "C": -1}, "c2": {"A": 1, "C": -1}})
    assert list(H.index) == [INTERCEPT, "c1", "c2"]
    assert list(H.columns) == ["A", "B", "C"]
    assert np.allclose(H.loc[INTERCEPT], 1 / 3)
    assert np.allclose(H.drop(index=INTERCEPT).sum(axis=1), 0.0)


@pytest.mark.parametrize(
    "levels, contrasts",
    [
        (["A", "B"], {"d": {"A": -0.5, "B": 0.5}}),
        (["A", "B", "C"], sliding_difference_contrasts(["A", "B", "C"])),
        (["A", "B", "C", "D"], treatment_contrasts(["A", "B", "C", "D"])),
        (["A", "B", "C", "D"], sum_contrasts(["A", "B", "C", "D"])),
    ],
)
def test_coding_inverts_hypothesis(levels, contrasts):
    H = build_hypothesis_matrix(levels, contrasts)
    C = invert_hypothesis_matrix(H)
    assert check_coding(H, C) < 1e-9
    assert np.allclose(H.values @ C.values, np.eye(len(levels)), atol=1e-9)


def test_two_level_coding_recovers_grand_mean_and_half_difference():
    H = build_hypothesis_matrix(["A", "B"], {"B_minus_A": {"A": -0.5, "B": 0.5}})
    C = invert_hypothesis_matrix(H)
    assert C.loc["A", "B_minus_A"] == pytest.approx(-1.0)
    assert C.loc["B", "B_minus_A"] == pytest.approx(1.0)

    data = pd.DataFrame({"level": ["A", "A", "B", "B"], "y": [98.0, 102.0, 118.0, 122.0]})
    coded = attach_contrast_codes(data, "level", C)
    intercept, slope = _fit_linear(coded, "y", ["B_minus_A"])
    assert intercept == pytest.approx(110.0)
    assert slope == pytest.approx(10.0)


def test_three_level_contrasts_recover_mean_differences():
    contrasts = {"c1": {"B": 1, "C": -1}, "c2": {"A": 1, "C": -1}}
    H = build_hypothesis_matrix(["A", "B", "C"], contrasts)
    C = invert_hypothesis_matrix(H)

    codes = contrast_columns(C).values
    assert np.linalg.matrix_rank(codes) == 2

    data = pd.DataFrame({"level": ["A", "B", "C"] * 4, "y": [800.0, 850.0, 820.0] * 4})
    coded = attach_contrast_codes(data, "level", C)
    intercept, c1, c2 = _fit_linear(coded, "y", ["c1", "c2"])
    assert intercept == pytest.approx((800 + 850 + 820) / 3, abs=1e-6)
    assert c1 == pytest.approx(850 - 820, abs=1e-6)
    assert c2 == pytest.approx(800 - 820, abs=1e-6)


def test_sliding_differences_estimate_successive_differences():
    spec = ContrastSpec.from_mapping(
        "level", sliding_difference_contrasts(["A", "B", "C"]), levels=["A", "B", "C"]
    )
    data = pd.DataFrame({"level": ["C", "B", "A"] * 3, "y": [820.0, 850.0, 800.0] * 3})
    coded, _, _ = spec.apply(data)
    _, b_vs_a, c_vs_b = _fit_linear(coded, "y", spec.names)
    assert b_vs_a == pytest.approx(50.0, abs=1e-6)
    assert c_vs_b == pytest.approx(-30.0, abs=1e-6)


def test_wrong_number_of_contrasts():
    with pytest.raises(ValueError, match="needs 2 contrasts"):
        build_hypothesis_matrix(["A", "B", "C"], {"c1": {"A": 1, "B": -1}})


def test_weights_must_sum_to_zero():
    with pytest.raises(ValueError, match="sum to"):
        build_hypothesis_matrix(["A", "B"], {"c1": {"A": 1, "B": 0.5}})


def test_unknown_level_in_contrast():
    with pytest.raises(ValueError, match="unknown levels"):
        build_hypothesis_matrix(["A", "B"], {"c1": {"A": 1, "Z": -1}})


def test_dependent_contrasts_are_singular():
    contrasts = {"c1": {"A": 1, "B": -1}, "c2": {"A": 2, "B": -2}}
    with pytest.raises(SingularHypothesisError):
        build_hypothesis_matrix(["A", "B", "C"], contrasts)


def test_singular_square_matrix_cannot_be_inverted():
    H = pd.DataFrame([[0.5, 0.5], [1.0, 1.0]], index=[INTERCEPT, "c1"], columns=["A", "B"])
    with pytest.raises(NonInvertibleMatrixError):
        invert_hypothesis_matrix(H)


def test_non_square_system_uses_generalized_inverse():
    H = pd.DataFrame(
        [[1 / 3, 1 / 3, 1 / 3], [-1.0, 1.0, 0.0]],
        index=[INTERCEPT, "B_vs_A"],
        columns=["A", "B", "C"],
    )
    C = invert_hypothesis_matrix(H)
    assert C.shape == (3, 2)
    assert np.allclose(H.values @ C.values, np.eye(2), atol=1e-9)


def test_attach_codes_is_pure_and_rejects_unknown_levels():
    C = invert_hypothesis_matrix(build_hypothesis_matrix(["A", "B"], {"d": {"A": -1, "B": 1}}))
    data = pd.DataFrame({"level": ["A", "B"]})
    coded = attach_contrast_codes(data, "level", C)
    assert "d" in coded.columns
    assert "d" not in data.columns

    with pytest.raises(ValueError, match="have no code"):
        attach_contrast_codes(pd.DataFrame({"level": ["A", "Q"]}), "level", C)


def test_describe_hypotheses():
    H = build_hypothesis_matrix(["A", "B", "C"], {"c1": {"B": 1, "C": -1}, "c2": {"A": 1, "C": -1}})
    text = describe_hypotheses(H)
    assert text["c1"] == "B - C = 0"
    assert text["c2"] == "A - C = 0"


def test_describe_hypotheses_keeps_level_names_with_leading_signs():
    H = build_hypothesis_matrix(["+ctrl", "b"], {"c1": {"+ctrl": 1, "b": -1}})
    assert describe_hypotheses(H)["c1"] == "+ctrl - b = 0"


def test_contrast_spec_is_hashable_and_builds_from_data():
    spec = ContrastSpec.from_mapping("condition", treatment_contrasts(["x", "y"]))
    assert hash(spec) == hash(ContrastSpec.from_mapping("condition", treatment_contrasts(["x", "y"])))
    H, C = spec.build(pd.DataFrame({"condition": ["y", "x", "y"]}))
    assert list(H.columns) == ["x", "y"]
    assert spec.names == ["y_vs_x"]
