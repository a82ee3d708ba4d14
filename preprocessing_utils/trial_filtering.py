"""
Trial selection, response-time trimming and outcome transforms
"""

import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats

logger = logging.getLogger(__name__)

TRANSFORMS = ("identity", "log", "reciprocal")

# Box-Cox lambda of each transform
TRANSFORM_LAMBDAS = {"reciprocal": -1.0, "log": 0.0, "identity": 1.0}


def _log_retention(label: str, before: int, after: int) -> None:
    share = after / before * 100 if before else 0.0
    logger.info(f"{label}: kept {after:,} of {before:,} trials ({share:.1f}%)")


def select_correct_trials(data: pd.DataFrame) -> pd.DataFrame:
    """Trials answered correctly (new frame)"""
    result = data[data["correct"].astype(bool)].copy()
    _log_retention("Correct trials", len(data), len(result))
    return result


def trim_response_times(
    data: pd.DataFrame,
    lower: float = 200.0,
    upper: float = 3000.0,
    column: str = "rt",
) -> pd.DataFrame:
    """
    Keep trials with lower <= rt <= upper

    Raises:
        ValueError: If lower >= upper
    """
    if lower >= upper:
        raise ValueError(f"Lower RT bound ({lower}) must be below upper bound ({upper})")

    rt = data[column]
    result = data[(rt >= lower) & (rt <= upper)].copy()
    _log_retention(f"RT trimming [{lower:g}, {upper:g}] ms", len(data), len(result))
    return result


def transform_values(values, transform: str) -> np.ndarray:
    values = np.asarray(values, dtype=float)
    if transform == "identity":
        return values.copy()
    if transform not in TRANSFORMS:
        raise ValueError(f"Unknown transform '{transform}'. Choose from {TRANSFORMS}")
    if np.any(values[~np.isnan(values)] <= 0):
        raise ValueError(f"The {transform} transform needs strictly positive values")
    if transform == "log":
        return np.log(values)
    # Negative so that larger values still mean slower responses
    return -1000.0 / values


def apply_outcome_transform(
    data: pd.DataFrame,
    transform: str = "log",
    column: str = "rt",
    target: Optional[str] = None,
) -> Tuple[pd.DataFrame, str]:
    """
    Add a transformed copy of the response-time column

    Returns:
        (new frame, name of the transformed column)
    """
    target = target or (column if transform == "identity" else f"{column}_{transform}")
    result = data.copy()
    result[target] = transform_values(result[column], transform)
    logger.info(f"Outcome transform: {transform} ({column} -> {target})")
    return result, target


def suggest_transform(values) -> Tuple[str, float]:
    """
    Transform closest to the Box-Cox maximum-likelihood lambda

    Returns:
        (transform name, estimated lambda)
    """
    values = np.asarray(values, dtype=float)
    values = values[np.isfinite(values)]
    if len(values) < 3 or np.any(values <= 0):
        raise ValueError("Box-Cox needs at least three strictly positive values")

    lam = float(stats.boxcox_normmax(values, method="mle"))
    best = min(TRANSFORM_LAMBDAS, key=lambda name: abs(TRANSFORM_LAMBDAS[name] - lam))
    logger.info(f"Box-Cox lambda = {lam:.3f}; closest transform: {best}")
    return best, lam
