"""
Simulated picture-naming data with a crossed subject x item design
"""

import logging
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.special import expit

logger = logging.getLogger(__name__)


def simulate_trials(
    n_subjects: int = 30,
    n_items: int = 24,
    conditions: Sequence[str] = ("A", "B", "C"),
    base_rt: float = 750.0,
    rt_effects: Optional[Dict[str, float]] = None,
    accuracy_effects: Optional[Dict[str, float]] = None,
    base_accuracy_logit: float = 1.5,
    subject_sd: float = 0.15,
    subject_slope_sd: float = 0.05,
    item_sd: float = 0.10,
    residual_sd: float = 0.25,
    subject_accuracy_sd: float = 0.8,
    item_accuracy_sd: float = 0.8,
    seed: int = 42,
) -> pd.DataFrame:
    """
    Generate one trial per subject and item

    Items rotate through the conditions across subjects (Latin square), so
    every subject sees every condition and every item appears in every
    condition. Response times are log-normal, accuracy is logistic.

    Args:
        rt_effects: Condition -> shift in log RT (missing conditions 0)
        accuracy_effects: Condition -> shift in log-odds correct

    Returns:
        DataFrame with subject, item, condition, correct, rt
    """
    rng = np.random.default_rng(seed)
    conditions = list(conditions)
    k = len(conditions)
    if k < 2:
        raise ValueError("Need at least two conditions")
    rt_effects = rt_effects or dict(zip(conditions, np.linspace(0.0, 0.1, k)))
    accuracy_effects = accuracy_effects or dict(zip(conditions, np.linspace(0.0, -0.5, k)))

    subject_intercepts = rng.normal(0.0, subject_sd, n_subjects)
    subject_slopes = rng.normal(0.0, subject_slope_sd, (n_subjects, k))
    item_intercepts = rng.normal(0.0, item_sd, n_items)
    subject_accuracy = rng.normal(0.0, subject_accuracy_sd, n_subjects)
    item_accuracy = rng.normal(0.0, item_accuracy_sd, n_items)

    subject_idx, item_idx = np.meshgrid(np.arange(n_subjects), np.arange(n_items), indexing="ij")
    subject_idx = subject_idx.ravel()
    item_idx = item_idx.ravel()
    condition_idx = (subject_idx + item_idx) % k
    condition = np.array(conditions)[condition_idx]

    log_rt = (
        np.log(base_rt)
        + np.array([rt_effects.get(c, 0.0) for c in condition])
        + subject_intercepts[subject_idx]
        + subject_slopes[subject_idx, condition_idx]
        + item_intercepts[item_idx]
        + rng.normal(0.0, residual_sd, len(subject_idx))
    )
    logit = (
        base_accuracy_logit
        + np.array([accuracy_effects.get(c, 0.0) for c in condition])
        + subject_accuracy[subject_idx]
        + item_accuracy[item_idx]
    )

    data = pd.DataFrame(
        {
            "subject": [f"S{i + 1:02d}" for i in subject_idx],
            "item": [f"I{i + 1:02d}" for i in item_idx],
            "condition": condition,
            "correct": rng.random(len(subject_idx)) < expit(logit),
            "rt": np.round(np.exp(log_rt), 1),
        }
    )
    logger.info(
        f"Simulated {len(data):,} trials ({n_subjects} subjects x {n_items} items, "
        f"{k} conditions, seed {seed})"
    )
    return data
