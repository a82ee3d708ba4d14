"""
General utilities for mixed-model analysis
"""

import json
import logging
from dataclasses import asdict, is_dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

OPTIMIZER_SETTINGS = ["DEFAULT_OPTIMIZER", "RETRY_OPTIMIZERS", "OPTIMIZER_PANEL"]
POSITIVE_SETTINGS = ["MAX_EVALS", "RETRY_MAX_EVALS", "N_JOBS", "LOGLIK_RTOL"]


def make_serializable(obj: Any) -> Any:
    """
    Convert non-serializable objects to serializable format for JSON output

    Args:
        obj: Object to make serializable

    Returns:
        Serializable version of the object
    """
    if isinstance(obj, dict):
        return {str(k): make_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [make_serializable(v) for v in obj]
    elif isinstance(obj, pd.DataFrame):
        return make_serializable(obj.reset_index().to_dict("records"))
    elif isinstance(obj, pd.Series):
        return make_serializable(obj.to_dict())
    elif isinstance(obj, np.ndarray):
        return make_serializable(obj.tolist())
    elif isinstance(obj, (np.bool_, bool)):
        return bool(obj)
    elif isinstance(obj, (np.integer, np.floating)):
        return make_serializable(obj.item())
    elif isinstance(obj, float):
        return obj if np.isfinite(obj) else None
    elif isinstance(obj, Enum):
        return obj.value
    elif is_dataclass(obj) and not isinstance(obj, type):
        return make_serializable(asdict(obj))
    elif hasattr(obj, "__dict__"):
        return str(obj)
    else:
        return obj


def save_json_results(results: dict, filepath: Path) -> None:
    """Write contrasts, model reports or other nested results as indented JSON"""
    serializable_results = make_serializable(results)
    with open(filepath, "w", encoding="utf-8") as f:
        json.dump(serializable_results, f, indent=2)
    logger.info(f"Results saved to {filepath}")


def create_output_directories(base_dir: Path) -> dict:
    """
    Create the results directory with its tables/ and figures/ subdirectories

    Returns:
        Mapping "results" / "tables" / "figures" -> Path
    """
    directories = {
        "results": base_dir,
        "tables": base_dir / "tables",
        "figures": base_dir / "figures",
    }

    for name, dir_path in directories.items():
        dir_path.mkdir(exist_ok=True, parents=True)
        logger.debug(f"Created directory: {dir_path}")

    return directories


def setup_logging(log_file: str = "mixed_model_analysis.log", level: int = logging.INFO) -> None:
    """
    Setup logging configuration with UTF-8 encoding
    """
    import sys

    # Create file handler with UTF-8 encoding
    file_handler = logging.FileHandler(log_file, encoding="utf-8")

    # Create console handler
    console_handler = logging.StreamHandler(sys.stdout)

    # Set formatter
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    # Configure root logger
    logging.basicConfig(level=level, handlers=[file_handler, console_handler], force=True)


def validate_outcome_settings(transform: str, family: str) -> None:
    """
    A response-time transform and a non-normal family are alternatives:
    gamma and inverse Gaussian models take the raw (positive) times

    Raises:
        ValueError: Unknown transform, or a transform combined with a
            non-gaussian family
    """
    if transform not in ("identity", "log", "reciprocal"):
        raise ValueError(f"Unknown RT_TRANSFORM '{transform}'")
    if family != "gaussian" and transform != "identity":
        raise ValueError(
            f"RT_FAMILY '{family}' needs RT_TRANSFORM 'identity' (got '{transform}'): "
            f"transform the outcome or change its distribution, not both"
        )


def validate_config(config) -> None:
    """
    Validate configuration object has required attributes

    Args:
        config: Configuration object to validate

    Raises:
        AttributeError: If required configuration is missing
        ValueError: If a setting is out of range
    """
    from mixed_model_utils.optimizers import OPTIMIZERS

    required_attrs = ["CONTRASTS", "RT_LOWER", "RT_UPPER", "RT_TRANSFORM"] + OPTIMIZER_SETTINGS

    for attr in required_attrs:
        if not hasattr(config, attr):
            raise AttributeError(f"Configuration missing required attribute: {attr}")

    if config.RT_LOWER >= config.RT_UPPER:
        raise ValueError(
            f"RT_LOWER ({config.RT_LOWER}) must be below RT_UPPER ({config.RT_UPPER})"
        )

    optimizers = [config.DEFAULT_OPTIMIZER] + list(config.RETRY_OPTIMIZERS) + list(
        config.OPTIMIZER_PANEL
    )
    unknown = sorted(set(opt for opt in optimizers if opt not in OPTIMIZERS))
    if unknown:
        raise ValueError(f"Unknown optimizer(s) in configuration: {unknown}")

    for attr in POSITIVE_SETTINGS:
        value = getattr(config, attr, 1)
        if value <= 0:
            raise ValueError(f"{attr} must be positive (got {value})")

    alpha = getattr(config, "ALPHA", 0.05)
    if not 0 < alpha < 1:
        raise ValueError(f"ALPHA must lie in (0, 1) (got {alpha})")

    validate_outcome_settings(config.RT_TRANSFORM, getattr(config, "RT_FAMILY", "gaussian"))

    threshold = getattr(config, "PCA_THRESHOLD", 1e-4)
    if not 0 <= threshold < 1:
        raise ValueError(f"PCA_THRESHOLD must lie in [0, 1) (got {threshold})")

    # Check if data path exists
    data_path = getattr(config, "DATA_PATH", None)
    if data_path and not Path(data_path).exists():
        logger.warning(f"Data path does not exist: {data_path}")
