"""
Exception and warning types for contrast construction and model fitting
"""


class MixedModelError(Exception):
    """Base class for analysis errors"""


class SingularHypothesisError(MixedModelError):
    """The requested contrasts are not linearly independent"""


class NonInvertibleMatrixError(MixedModelError):
    """A hypothesis matrix could not be inverted"""


class DegenerateFitError(MixedModelError):
    """
    Rank-deficient design, complete separation or an unresolvable singular
    covariance. No estimates are returned.
    """


class ConvergenceFailure(MixedModelError):
    """
    No configured optimizer produced a clean fit

    The best available fit (highest log-likelihood) is kept on ``best_fit``
    so the caller can carry on with a provisional result.
    """

    def __init__(self, message: str, best_fit=None, attempts=None):
        super().__init__(message)
        self.best_fit = best_fit
        self.attempts = attempts or []


class OptimizerDisagreement(UserWarning):
    """Optimizers in the verification panel disagree beyond tolerance"""
