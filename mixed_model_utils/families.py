"""
Response distributions and link functions for mixed models
Thin layer over statsmodels.genmod.families
"""

import logging
from typing import Optional

import numpy as np
import statsmodels.api as sm
from scipy import special

logger = logging.getLogger(__name__)

LINKS = {
    "identity": sm.families.links.Identity,
    "log": sm.families.links.Log,
    "logit": sm.families.links.Logit,
    "probit": sm.families.links.Probit,
    "cloglog": sm.families.links.CLogLog,
    "inverse": sm.families.links.InversePower,
}

FAMILIES = {
    "gaussian": (sm.families.Gaussian, "identity"),
    "binomial": (sm.families.Binomial, "logit"),
    "poisson": (sm.families.Poisson, "log"),
    "gamma": (sm.families.Gamma, "inverse"),
    "inverse_gaussian": (sm.families.InverseGaussian, "inverse"),
}

# Families whose dispersion is estimated rather than fixed at 1
FREE_DISPERSION = {"gaussian", "gamma", "inverse_gaussian"}

# Families whose mean must stay strictly positive
POSITIVE_MEAN = {"poisson", "gamma", "inverse_gaussian"}

MU_EPSILON = 1e-10


def default_link(family_name: str) -> str:
    if family_name not in FAMILIES:
        raise ValueError(
            f"Unknown family '{family_name}'. Choose from {sorted(FAMILIES)}"
        )
    return FAMILIES[family_name][1]


def make_family(family_name: str, link_name: Optional[str] = None):
    """
    statsmodels family instance for a family/link pair

    Raises:
        ValueError: Unknown family or link, or a link the family does not support
    """
    family_cls, canonical = FAMILIES.get(family_name, (None, None))
    if family_cls is None:
        raise ValueError(
            f"Unknown family '{family_name}'. Choose from {sorted(FAMILIES)}"
        )
    link_name = link_name or canonical
    if link_name not in LINKS:
        raise ValueError(f"Unknown link '{link_name}'. Choose from {sorted(LINKS)}")

    link = LINKS[link_name]()
    allowed = getattr(family_cls, "links", None)
    if allowed and not any(isinstance(link, cls) for cls in allowed):
        raise ValueError(f"Link '{link_name}' is not available for {family_name}")

    return family_cls(link=link)


def check_outcome(family_name: str, y: np.ndarray) -> None:
    """
    Raises ValueError when the outcome lies outside the family's support
    (negative counts, non-positive values for gamma / inverse Gaussian)
    """
    if not np.all(np.isfinite(y)):
        raise ValueError("Outcome contains non-finite values")
    if family_name == "poisson" and np.any(y < 0):
        raise ValueError("Poisson outcome must be non-negative")
    if family_name in ("gamma", "inverse_gaussian") and np.any(y <= 0):
        raise ValueError(
            f"{family_name} outcome must be strictly positive "
            f"(min = {float(np.min(y)):.4g}); fit untransformed response times"
        )


def clip_mean(family_name: str, mu: np.ndarray) -> np.ndarray:
    """Keep fitted means inside the support of the distribution"""
    if family_name == "binomial":
        return np.clip(mu, MU_EPSILON, 1.0 - MU_EPSILON)
    return mu


def mean_is_valid(family_name: str, mu: np.ndarray) -> bool:
    if not np.all(np.isfinite(mu)):
        return False
    if family_name in POSITIVE_MEAN:
        return bool(np.all(mu > 0))
    return True


def distribution_variance(
    family_name: str, link_name: str, dispersion: float, mean_mu: float
) -> float:
    """
    Observation-level variance on the latent scale for R-squared

    Follows Nakagawa, Johnson & Schielzeth (2017): fixed values for binomial
    links, trigamma for log-link gamma, lognormal approximation for
    log-link Poisson, delta method otherwise.
    """
    if family_name == "gaussian" and link_name == "identity":
        return float(dispersion)

    if family_name == "binomial":
        fixed = {"logit": np.pi**2 / 3.0, "probit": 1.0, "cloglog": np.pi**2 / 6.0}
        if link_name in fixed:
            return float(fixed[link_name])

    if family_name == "gamma" and link_name == "log":
        return float(special.polygamma(1, 1.0 / dispersion))

    if family_name == "poisson" and link_name == "log":
        return float(np.log1p(1.0 / max(mean_mu, MU_EPSILON)))

    family = make_family(family_name, link_name)
    mu = np.atleast_1d(float(mean_mu))
    mu = clip_mean(family_name, mu)
    deta_dmu = family.link.deriv(mu)
    return float(dispersion * family.variance(mu)[0] * deta_dmu[0] ** 2)
