# Data paths
DATA_PATH = "data/picture_naming.csv"
RESULTS_DIR = "results"
CACHE_DIR = "cache"

# Canonical column -> column name in the data file
COLUMN_MAP = {
    "subject": "subject",
    "item": "item",
    "condition": "condition",
    "correct": "correct",
    "rt": "rt",
}


# Contrasts: factor column, level order and named weights over the levels.
# Sliding differences: each level against the previous one.
CONTRASTS = {
    "column": "condition",
    "levels": ["A", "B", "C"],
    "contrasts": {
        "B_vs_A": {"A": -1, "B": 1},
        "C_vs_B": {"B": -1, "C": 1},
    },
}


# Response-time preprocessing
RT_LOWER = 200  # ms, anticipations
RT_UPPER = 3000  # ms, time-outs
RT_TRANSFORM = "log"  # identity, log or reciprocal
RT_FAMILY = "gaussian"  # gaussian, gamma or inverse_gaussian
RT_LINK = "identity"  # identity, log or inverse

ACCURACY_FAMILY = "binomial"
ACCURACY_LINK = "logit"


# Model parameters
RANDOM_GROUPS = ["subject", "item"]
RANDOM_CORRELATIONS = False  # estimate correlations in the maximal model
REML = True

DEFAULT_OPTIMIZER = "L-BFGS-B"
MAX_EVALS = 20000
RETRY_OPTIMIZERS = ["COBYQA"]  # bounded quadratic-approximation search
RETRY_MAX_EVALS = 200000
OPTIMIZER_PANEL = ["L-BFGS-B", "Nelder-Mead", "Powell", "COBYQA"]

GRAD_TOL = 2e-3  # scaled gradient at the optimum
SINGULAR_TOL = 1e-4  # relative Cholesky diagonal
PCA_THRESHOLD = 1e-4  # share of variance treated as zero
LOGLIK_RTOL = 1e-3  # optimizer agreement
ALPHA = 0.05  # nested comparisons

N_JOBS = 2


# Helper function for accessing config values
def get(key, default=None):
    """Get configuration value with default fallback"""
    return globals().get(key, default)
