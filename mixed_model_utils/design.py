"""
Design matrices for crossed random-effects models

Random effects follow the lme4 parametrisation: u = Lambda(theta) b with
b ~ N(0, I). For each grouping factor, Lambda is block diagonal with one
lower-triangular (k x k) factor T per level, and theta holds the free
entries of T (all of the lower triangle when correlations are estimated,
the diagonal only otherwise).
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd
import patsy
from scipy import sparse

from utils.exceptions import DegenerateFitError

logger = logging.getLogger(__name__)

INTERCEPT = "Intercept"
IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def theta_layout(k: int, correlated: bool) -> Tuple[np.ndarray, np.ndarray]:
    """Row/column positions in a (k x k) factor T held by theta, in theta order"""
    if correlated and k > 1:
        return np.tril_indices(k)
    diag = np.arange(k)
    return diag, diag


@dataclass
class GroupBlock:
    """Random-effects design for one grouping factor"""

    name: str
    terms: Tuple[str, ...]
    correlated: bool
    levels: pd.Index
    codes: np.ndarray  # level index per observation
    model_matrix: np.ndarray  # (n, k) term values per observation

    @property
    def k(self) -> int:
        return len(self.terms)

    @property
    def n_levels(self) -> int:
        return len(self.levels)

    @property
    def n_theta(self) -> int:
        return self.k * (self.k + 1) // 2 if self.correlated else self.k

    def theta_positions(self) -> Tuple[np.ndarray, np.ndarray]:
        """Row/column positions in T filled by this block's theta"""
        return theta_layout(self.k, self.correlated)

    def diagonal_mask(self) -> np.ndarray:
        rows, cols = self.theta_positions()
        return rows == cols

    def factor(self, theta: np.ndarray) -> np.ndarray:
        """Lower-triangular relative covariance factor T"""
        T = np.zeros((self.k, self.k))
        rows, cols = self.theta_positions()
        T[rows, cols] = theta
        return T


@dataclass
class ModelDesign:
    """Numeric arrays for one (data, spec) pair. Built fresh for every fit."""

    y: np.ndarray
    X: np.ndarray
    fixed_names: List[str]
    blocks: List[GroupBlock]
    n_dropped: int = 0

    @property
    def n(self) -> int:
        return self.X.shape[0]

    @property
    def p(self) -> int:
        return self.X.shape[1]

    @property
    def q(self) -> int:
        return sum(block.n_levels * block.k for block in self.blocks)

    @property
    def n_theta(self) -> int:
        return sum(block.n_theta for block in self.blocks)

    def split_theta(self, theta: np.ndarray) -> List[np.ndarray]:
        parts = []
        start = 0
        for block in self.blocks:
            parts.append(np.asarray(theta[start : start + block.n_theta], dtype=float))
            start += block.n_theta
        return parts

    def theta_start(self) -> np.ndarray:
        return np.concatenate(
            [block.diagonal_mask().astype(float) for block in self.blocks]
        )

    def theta_diagonal_mask(self) -> np.ndarray:
        return np.concatenate([block.diagonal_mask() for block in self.blocks])

    def factors(self, theta: np.ndarray) -> Dict[str, np.ndarray]:
        return {
            block.name: block.factor(part)
            for block, part in zip(self.blocks, self.split_theta(theta))
        }

    def scaled_z(self, theta: np.ndarray) -> sparse.csr_matrix:
        """Z Lambda(theta) as a sparse (n x q) matrix"""
        n = self.n
        row_idx = []
        col_idx = []
        values = []
        offset = 0
        for block, part in zip(self.blocks, self.split_theta(theta)):
            T = block.factor(part)
            scaled = block.model_matrix @ T  # (n, k)
            rows = np.arange(n)
            for j in range(block.k):
                row_idx.append(rows)
                col_idx.append(offset + block.codes * block.k + j)
                values.append(scaled[:, j])
            offset += block.n_levels * block.k
        return sparse.csr_matrix(
            (np.concatenate(values), (np.concatenate(row_idx), np.concatenate(col_idx))),
            shape=(n, offset),
        )

    def split_modes(self, u: np.ndarray) -> Dict[str, pd.DataFrame]:
        """Per-factor conditional modes, one row per level"""
        modes = {}
        offset = 0
        for block in self.blocks:
            size = block.n_levels * block.k
            values = u[offset : offset + size].reshape(block.n_levels, block.k)
            modes[block.name] = pd.DataFrame(
                values, index=block.levels, columns=list(block.terms)
            )
            offset += size
        return modes


def _term_formula(terms, intercept: bool) -> str:
    slopes = [term for term in terms if term != INTERCEPT]
    parts = ["1" if intercept else "0"] + slopes
    return " + ".join(parts)


def _dmatrix(formula: str, data: pd.DataFrame) -> pd.DataFrame:
    try:
        return patsy.dmatrix(formula, data, return_type="dataframe", NA_action="raise")
    except patsy.PatsyError as e:
        raise ValueError(f"Cannot build model matrix for '{formula}': {e}") from e


def build_fixed_matrix(data: pd.DataFrame, fixed_effects, intercept: bool = True):
    """Fixed-effects model matrix via patsy"""
    matrix = _dmatrix(_term_formula(fixed_effects, intercept), data)
    return matrix.values.astype(float), list(matrix.columns)


def build_random_matrix(data: pd.DataFrame, terms) -> np.ndarray:
    """(n, k) term values for one grouping factor, ordered as the terms"""
    intercept = INTERCEPT in terms
    matrix = _dmatrix(_term_formula(terms, intercept), data)
    missing = [term for term in terms if term not in matrix.columns]
    if missing or matrix.shape[1] != len(terms):
        raise ValueError(
            f"Random-effect terms {list(terms)} must be numeric columns "
            f"(got design columns {list(matrix.columns)})"
        )
    return matrix[list(terms)].values.astype(float)


def required_columns(spec, available) -> List[str]:
    """Data columns a model specification touches"""
    tokens = set()
    for term in list(spec.fixed_effects) + [
        slope for re_terms in spec.random_effects for slope in re_terms.slopes
    ]:
        tokens.update(IDENTIFIER.findall(term))
    columns = {token for token in tokens if token in available}
    columns.add(spec.outcome)
    columns.update(re_terms.group for re_terms in spec.random_effects)
    return sorted(columns)


def build_design(data: pd.DataFrame, spec) -> ModelDesign:
    """
    Numeric design for a model specification

    Rows with missing values in any used column are dropped.

    Raises:
        ValueError: Unknown columns or non-numeric random-effect terms
        DegenerateFitError: Empty data, a grouping factor with fewer than two
            levels, or a rank-deficient fixed-effects design
    """
    columns = required_columns(spec, set(data.columns))
    missing = [col for col in columns if col not in data.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    model_data = data[columns].dropna()
    n_dropped = len(data) - len(model_data)
    if len(model_data) == 0:
        raise DegenerateFitError(f"No complete observations for {spec.formula}")

    y = model_data[spec.outcome].astype(float).values
    X, fixed_names = build_fixed_matrix(model_data, spec.fixed_effects, spec.intercept)

    if X.shape[1] == 0:
        raise DegenerateFitError("Model has no fixed effects")
    rank = np.linalg.matrix_rank(X)
    if rank < X.shape[1]:
        raise DegenerateFitError(
            f"Fixed-effects design is rank deficient (rank {rank} < {X.shape[1]} "
            f"columns {fixed_names}): a term is a linear combination of others"
        )

    blocks = []
    for re_terms in spec.random_effects:
        codes, levels = pd.factorize(model_data[re_terms.group].astype(str), sort=True)
        if len(levels) < 2:
            raise DegenerateFitError(
                f"Grouping factor '{re_terms.group}' has {len(levels)} level(s)"
            )
        blocks.append(
            GroupBlock(
                name=re_terms.group,
                terms=tuple(re_terms.terms),
                correlated=re_terms.correlated and len(re_terms.terms) > 1,
                levels=pd.Index(levels),
                codes=np.asarray(codes),
                model_matrix=build_random_matrix(model_data, re_terms.terms),
            )
        )

    if n_dropped:
        logger.info(f"Dropped {n_dropped:,} rows with missing values")

    return ModelDesign(
        y=y, X=X, fixed_names=fixed_names, blocks=blocks, n_dropped=n_dropped
    )
