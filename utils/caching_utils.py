"""
Caching utilities for fitted model reports
"""

import hashlib
import logging
from pathlib import Path
from typing import Any, Callable

import joblib
import pandas as pd

logger = logging.getLogger(__name__)


def compute_data_hash(data: pd.DataFrame) -> str:
    """Hash of a dataset's full contents for cache invalidation"""
    row_hashes = pd.util.hash_pandas_object(data, index=False).values
    digest = hashlib.md5(row_hashes.tobytes())
    digest.update(",".join(map(str, data.columns)).encode())
    return digest.hexdigest()[:16]


def cache_key(data: pd.DataFrame, *parts: Any) -> str:
    """Key from a data hash and any settings that change the result"""
    description = "|".join(repr(part) for part in parts)
    settings_hash = hashlib.md5(description.encode()).hexdigest()[:8]
    return f"{compute_data_hash(data)}_{settings_hash}"


def atomic_joblib_dump(obj: Any, path: Path, compress: int = 3) -> None:
    """
    Dump to a sibling .tmp file, then move it over the target

    A reader never sees a half-written report.
    """
    partial = path.with_suffix(path.suffix + ".tmp")
    try:
        joblib.dump(obj, partial, compress=compress)
        partial.replace(path)
    except (OSError, TypeError, AttributeError):
        partial.unlink(missing_ok=True)
        raise


def load_or_recompute(
    cache_path: Path, compute_fn: Callable, reuse: bool = True, *args, **kwargs
) -> Any:
    """
    Return the cached result at cache_path, or compute and store it

    Args:
        cache_path: joblib file for this result
        compute_fn: Called with *args and **kwargs on a miss
        reuse: False forces recomputation (the file is overwritten)

    Returns:
        The cached or freshly computed result
    """
    if reuse and cache_path.exists():
        try:
            cached = joblib.load(cache_path)
        except (OSError, EOFError, ValueError, KeyError, AttributeError) as e:
            logger.warning(f"Unreadable cache file {cache_path.name} ({e}); refitting")
            cache_path.unlink(missing_ok=True)
        else:
            logger.info(f"Reusing cached result: {cache_path.name}")
            return cached

    logger.info(f"No cached result, computing: {cache_path.name}")
    result = compute_fn(*args, **kwargs)

    cache_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        atomic_joblib_dump(result, cache_path)
    except (OSError, TypeError, AttributeError) as e:
        # the result itself is still returned
        logger.warning(f"Could not write cache file {cache_path.name}: {e}")
    else:
        logger.info(f"Cached: {cache_path.name}")

    return result


def clear_cache_directory(cache_dir: Path, pattern: str = "*.joblib") -> int:
    """Delete cached results; returns the number of files removed"""
    cache_dir = Path(cache_dir)
    if not cache_dir.is_dir():
        return 0

    removed = 0
    for cached_file in sorted(cache_dir.glob(pattern)):
        try:
            cached_file.unlink()
        except OSError as e:
            logger.warning(f"Could not delete {cached_file.name}: {e}")
        else:
            removed += 1

    logger.info(f"Removed {removed} cached result(s) from {cache_dir}")
    return removed
