"""
Shared fixtures: seeded datasets for contrast coding and model fitting
"""

import numpy as np
import pandas as pd
import pytest

from contrast_coding import ContrastSpec, sliding_difference_contrasts
from preprocessing_utils.simulation import simulate_trials


@pytest.fixture
def rng():
    return np.random.default_rng(20240517)


@pytest.fixture
def simulated_trials():
    return simulate_trials(n_subjects=16, n_items=12, seed=7)


@pytest.fixture
def coded_trials(simulated_trials):
    spec = ContrastSpec.from_mapping(
        "condition", sliding_difference_contrasts(["A", "B", "C"]), levels=["A", "B", "C"]
    )
    coded, _, _ = spec.apply(simulated_trials)
    coded["log_rt"] = np.log(coded["rt"])
    return coded


@pytest.fixture
def intercept_data(rng):
    """y = 5 + 2x + subject intercept (sd 1) + noise (sd 0.5), 20 subjects x 15 trials"""
    n_subjects, n_trials = 20, 15
    subject = np.repeat(np.arange(n_subjects), n_trials)
    x = rng.normal(0.0, 1.0, n_subjects * n_trials)
    intercepts = rng.normal(0.0, 1.0, n_subjects)
    y = 5.0 + 2.0 * x + intercepts[subject] + rng.normal(0.0, 0.5, len(x))
    return pd.DataFrame({"subject": [f"s{s:02d}" for s in subject], "x": x, "y": y})


@pytest.fixture
def crossed_data(rng):
    """Crossed subjects x items with intercepts for both and a +/-0.5 coded effect"""
    n_subjects, n_items = 15, 10
    subject, item = np.meshgrid(np.arange(n_subjects), np.arange(n_items), indexing="ij")
    subject, item = subject.ravel(), item.ravel()
    c1 = np.where((subject + item) % 2 == 0, -0.5, 0.5)
    y = (
        6.5
        + 0.3 * c1
        + rng.normal(0.0, 0.2, n_subjects)[subject]
        + rng.normal(0.0, 0.15, n_items)[item]
        + rng.normal(0.0, 0.25, len(subject))
    )
    return pd.DataFrame(
        {
            "subject": [f"s{s}" for s in subject],
            "item": [f"i{i}" for i in item],
            "c1": c1,
            "y": y,
        }
    )
