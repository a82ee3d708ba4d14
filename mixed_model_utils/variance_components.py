"""
Principal-component decomposition of random-effects covariance matrices

Used to decide which random-effect terms the data support: a component
that explains a negligible share of a grouping factor's variance marks the
term loading most heavily on it for removal.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

INTERCEPT = "Intercept"


@dataclass(frozen=True)
class VarianceDecomposition:
    """
    Eigen-decomposition of one grouping factor's covariance

    Attributes:
        group: Grouping factor name
        terms: Random-effect terms (covariance row/column order)
        eigenvalues: Variances of the components, decreasing
        proportions: Share of total variance per component
        loadings: (k x k) eigenvectors, one column per component
    """

    group: str
    terms: Tuple[str, ...]
    eigenvalues: np.ndarray
    proportions: np.ndarray
    loadings: np.ndarray

    @property
    def cumulative(self) -> np.ndarray:
        return np.cumsum(self.proportions)

    @property
    def smallest(self) -> float:
        return float(self.proportions[-1])

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "group": self.group,
                "component": [f"PC{i + 1}" for i in range(len(self.eigenvalues))],
                "variance": self.eigenvalues,
                "proportion": self.proportions,
                "cumulative": self.cumulative,
            }
        )


def decompose_covariance(group: str, terms, covariance: np.ndarray) -> VarianceDecomposition:
    """PCA of a random-effects covariance matrix, components ordered by variance"""
    covariance = np.atleast_2d(np.asarray(covariance, dtype=float))
    covariance = 0.5 * (covariance + covariance.T)
    eigenvalues, vectors = np.linalg.eigh(covariance)
    eigenvalues = np.clip(eigenvalues, 0.0, None)

    order = np.argsort(eigenvalues)[::-1]
    eigenvalues = eigenvalues[order]
    vectors = vectors[:, order]

    total = eigenvalues.sum()
    if total > 0:
        proportions = eigenvalues / total
    else:
        proportions = np.zeros_like(eigenvalues)

    return VarianceDecomposition(
        group=group,
        terms=tuple(terms),
        eigenvalues=eigenvalues,
        proportions=proportions,
        loadings=vectors,
    )


def decompose_random_effects(
    covariances: Dict[str, pd.DataFrame],
) -> Dict[str, VarianceDecomposition]:
    """Decomposition for every grouping factor of a fit"""
    return {
        group: decompose_covariance(group, list(cov.columns), cov.values)
        for group, cov in covariances.items()
    }


@dataclass(frozen=True)
class RemovalCandidate:
    group: str
    term: str
    proportion: float
    component: int


def _term_for_component(decomposition: VarianceDecomposition, component: int) -> Optional[str]:
    """
    Term with the largest loading on a component, or None when that term is
    the intercept (the intercept is the floor and is never removed)
    """
    loadings = np.abs(decomposition.loadings[:, component])
    best = int(np.argmax(loadings))
    if decomposition.terms[best] == INTERCEPT:
        return None
    return decomposition.terms[best]


def find_negligible_term(
    decompositions: Dict[str, VarianceDecomposition], threshold: float
) -> Optional[RemovalCandidate]:
    """
    The random-effect term to drop next, or None

    Looks at the smallest component of every grouping factor and picks the
    one with the lowest share of variance at or below the threshold. A
    factor whose only term is its intercept is never reduced further.
    """
    candidates = []
    for group, decomposition in decompositions.items():
        if len(decomposition.terms) <= 1:
            continue
        last = len(decomposition.proportions) - 1
        share = float(decomposition.proportions[last])
        if share > threshold:
            continue
        term = _term_for_component(decomposition, last)
        if term is None:
            continue
        candidates.append(
            RemovalCandidate(group=group, term=term, proportion=share, component=last)
        )

    if not candidates:
        return None
    return min(candidates, key=lambda c: c.proportion)


def log_decompositions(decompositions: Dict[str, VarianceDecomposition]) -> None:
    for group, decomposition in decompositions.items():
        shares = ", ".join(f"{p:.4f}" for p in decomposition.proportions)
        logger.info(f"  {group} ({', '.join(decomposition.terms)}): [{shares}]")
