#!/usr/bin/env python3
"""
contrast_coding.py
------------------
Hypothesis-matrix based contrast coding for categorical factors:
- Each hypothesis is a set of weights over the factor levels
  (the intercept row averages all level means, contrast rows sum to zero)
- The coding matrix is the inverse of the hypothesis matrix, so a linear
  model on the coding columns estimates exactly the requested contrasts
- Codes are attached to trials as one numeric column per contrast
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from utils.exceptions import NonInvertibleMatrixError, SingularHypothesisError

logger = logging.getLogger(__name__)

INTERCEPT = "Intercept"
WEIGHT_TOLERANCE = 1e-9

ContrastWeights = Mapping[str, float]
ContrastList = Union[Mapping[str, ContrastWeights], Sequence[Tuple[str, ContrastWeights]]]


def factor_levels(values: Iterable, order: Optional[Sequence[str]] = None) -> List[str]:
    """
    Ordered levels of a categorical variable

    Alphabetical by default. An explicit order must name every observed level
    exactly once.
    """
    observed = sorted({str(v) for v in values if not pd.isna(v)})
    if order is None:
        return observed

    order = [str(level) for level in order]
    if len(set(order)) != len(order):
        raise ValueError(f"Duplicate levels in order: {order}")
    missing = [level for level in observed if level not in order]
    if missing:
        raise ValueError(f"Levels {missing} are observed but not in the given order")
    return order


def _as_contrast_items(contrasts: ContrastList) -> List[Tuple[str, ContrastWeights]]:
    if isinstance(contrasts, Mapping):
        return [(str(name), weights) for name, weights in contrasts.items()]
    return [(str(name), weights) for name, weights in contrasts]


def build_hypothesis_matrix(levels: Sequence[str], contrasts: ContrastList) -> pd.DataFrame:
    """
    Assemble the (k x k) hypothesis matrix for a factor

    Args:
        levels: Ordered factor levels (k >= 2)
        contrasts: k-1 named contrasts, each a mapping level -> weight.
            Levels that are not mentioned get weight 0.

    Returns:
        DataFrame with rows ["Intercept", contrast names...] and one column
        per level

    Raises:
        ValueError: Malformed contrast specification
        SingularHypothesisError: The contrasts are not linearly independent
    """
    levels = [str(level) for level in levels]
    k = len(levels)
    if k < 2:
        raise ValueError(f"A factor needs at least two levels, got {levels}")
    if len(set(levels)) != k:
        raise ValueError(f"Duplicate levels: {levels}")

    items = _as_contrast_items(contrasts)
    if len(items) != k - 1:
        raise ValueError(
            f"A factor with {k} levels needs {k - 1} contrasts, got {len(items)}"
        )

    names = [name for name, _ in items]
    if INTERCEPT in names or len(set(names)) != len(names):
        raise ValueError(f"Contrast names must be unique and not '{INTERCEPT}': {names}")

    rows = [np.full(k, 1.0 / k)]
    for name, weights in items:
        weights = {str(level): w for level, w in weights.items()}
        unknown = [level for level in weights if level not in levels]
        if unknown:
            raise ValueError(f"Contrast '{name}' refers to unknown levels {unknown}")
        row = np.array([float(weights.get(level, 0.0)) for level in levels])
        if abs(row.sum()) > WEIGHT_TOLERANCE:
            raise ValueError(
                f"Weights of contrast '{name}' sum to {row.sum():.6g}, not zero"
            )
        if not np.any(row):
            raise ValueError(f"Contrast '{name}' has only zero weights")
        rows.append(row)

    hypothesis = pd.DataFrame(rows, index=[INTERCEPT] + names, columns=levels)

    rank = np.linalg.matrix_rank(hypothesis.values)
    if rank < k:
        raise SingularHypothesisError(
            f"Hypothesis matrix has rank {rank} < {k}: the contrasts "
            f"{names} are not mutually independent"
        )

    return hypothesis


def invert_hypothesis_matrix(hypothesis: pd.DataFrame) -> pd.DataFrame:
    """
    Invert a hypothesis matrix into a coding matrix

    Square matrices use the ordinary inverse, non-square systems the
    Moore-Penrose generalized inverse.

    Returns:
        DataFrame with one row per level and one column per hypothesis
    """
    values = hypothesis.values.astype(float)
    n_rows, n_cols = values.shape

    if n_rows == n_cols:
        try:
            inverse = np.linalg.inv(values)
        except np.linalg.LinAlgError as e:
            raise NonInvertibleMatrixError(f"Hypothesis matrix is singular: {e}") from e
        if not np.all(np.isfinite(inverse)) or np.linalg.cond(values) > 1e12:
            raise NonInvertibleMatrixError("Hypothesis matrix is numerically singular")
    else:
        if np.linalg.matrix_rank(values) < min(n_rows, n_cols):
            raise NonInvertibleMatrixError(
                f"Hypothesis matrix ({n_rows}x{n_cols}) is not of full rank"
            )
        inverse = np.linalg.pinv(values)

    return pd.DataFrame(inverse, index=hypothesis.columns, columns=hypothesis.index)


def contrast_columns(coding: pd.DataFrame) -> pd.DataFrame:
    """Coding matrix without the intercept column"""
    return coding.drop(columns=[INTERCEPT], errors="ignore")


def check_coding(hypothesis: pd.DataFrame, coding: pd.DataFrame) -> float:
    """Largest absolute deviation of H.C from the identity"""
    product = hypothesis.values @ coding.values
    return float(np.max(np.abs(product - np.eye(product.shape[0]))))


def attach_contrast_codes(
    data: pd.DataFrame, column: str, coding: pd.DataFrame, prefix: str = ""
) -> pd.DataFrame:
    """
    Append one numeric column per contrast to a copy of the data

    The value of each new column is the coding-matrix entry for the
    observation's level.
    """
    if column not in data.columns:
        raise ValueError(f"Column '{column}' not found in data")

    codes = contrast_columns(coding)
    labels = data[column].astype(str)
    unknown = sorted(set(labels) - set(codes.index))
    if unknown:
        raise ValueError(f"Levels {unknown} of '{column}' have no code")

    coded = data.copy()
    for name in codes.columns:
        coded[f"{prefix}{name}"] = labels.map(codes[name]).astype(float).values
    return coded


def describe_hypotheses(hypothesis: pd.DataFrame) -> Dict[str, str]:
    """Readable null hypotheses, e.g. {'c1': 'B - C = 0'}"""
    descriptions = {}
    for name, row in hypothesis.iterrows():
        terms = []
        for level, weight in row.items():
            if abs(weight) < WEIGHT_TOLERANCE:
                continue
            sign = "-" if weight < 0 else "+"
            magnitude = abs(weight)
            coefficient = "" if np.isclose(magnitude, 1.0) else f"{magnitude:.4g}*"
            terms.append(f"{sign} {coefficient}{level}")
        text = " ".join(terms)
        if text.startswith("+ "):
            text = text[2:]
        if text.startswith("- "):
            text = "-" + text[2:]
        descriptions[name] = f"{text} = 0"
    return descriptions


def sliding_difference_contrasts(levels: Sequence[str]) -> Dict[str, Dict[str, float]]:
    """Successive differences: level[i+1] - level[i]"""
    levels = [str(level) for level in levels]
    return {
        f"{levels[i + 1]}_vs_{levels[i]}": {levels[i + 1]: 1.0, levels[i]: -1.0}
        for i in range(len(levels) - 1)
    }


def treatment_contrasts(
    levels: Sequence[str], reference: Optional[str] = None
) -> Dict[str, Dict[str, float]]:
    """Each level against a reference level (the first by default)"""
    levels = [str(level) for level in levels]
    reference = levels[0] if reference is None else str(reference)
    if reference not in levels:
        raise ValueError(f"Reference '{reference}' not in {levels}")
    return {
        f"{level}_vs_{reference}": {level: 1.0, reference: -1.0}
        for level in levels
        if level != reference
    }


def sum_contrasts(
    levels: Sequence[str], omitted: Optional[str] = None
) -> Dict[str, Dict[str, float]]:
    """
    Each level against the grand mean

    The omitted level (the last by default) has no contrast of its own.
    """
    levels = [str(level) for level in levels]
    omitted = levels[-1] if omitted is None else str(omitted)
    if omitted not in levels:
        raise ValueError(f"Omitted level '{omitted}' not in {levels}")
    k = len(levels)
    contrasts = {}
    for level in levels:
        if level == omitted:
            continue
        contrasts[f"{level}_vs_mean"] = {
            other: (1.0 - 1.0 / k if other == level else -1.0 / k) for other in levels
        }
    return contrasts


@dataclass(frozen=True)
class ContrastSpec:
    """
    Contrast specification for one factor

    Attributes:
        column: Data column holding the factor
        contrasts: Named contrasts, each a mapping level -> weight
        levels: Explicit level order, alphabetical when None
    """

    column: str
    contrasts: Tuple[Tuple[str, Tuple[Tuple[str, float], ...]], ...]
    levels: Optional[Tuple[str, ...]] = None
    prefix: str = field(default="")

    @classmethod
    def from_mapping(
        cls,
        column: str,
        contrasts: ContrastList,
        levels: Optional[Sequence[str]] = None,
        prefix: str = "",
    ) -> "ContrastSpec":
        frozen = tuple(
            (name, tuple((str(level), float(w)) for level, w in weights.items()))
            for name, weights in _as_contrast_items(contrasts)
        )
        return cls(
            column=column,
            contrasts=frozen,
            levels=None if levels is None else tuple(str(level) for level in levels),
            prefix=prefix,
        )

    @property
    def names(self) -> List[str]:
        return [f"{self.prefix}{name}" for name, _ in self.contrasts]

    def weights(self) -> List[Tuple[str, Dict[str, float]]]:
        return [(name, dict(weights)) for name, weights in self.contrasts]

    def build(self, data: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """Hypothesis and coding matrices for the factor as observed in data"""
        levels = factor_levels(data[self.column], self.levels)
        hypothesis = build_hypothesis_matrix(levels, self.weights())
        coding = invert_hypothesis_matrix(hypothesis)

        deviation = check_coding(hypothesis, coding)
        logger.info(f"Contrast coding for '{self.column}' (levels: {levels})")
        for name, text in describe_hypotheses(hypothesis).items():
            logger.info(f"  {name}: H0: {text}")
        logger.info(f"  max |H.C - I| = {deviation:.2e}")

        return hypothesis, coding

    def apply(self, data: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
        """Coded copy of data plus the hypothesis and coding matrices"""
        hypothesis, coding = self.build(data)
        coded = attach_contrast_codes(data, self.column, coding, prefix=self.prefix)
        return coded, hypothesis, coding
