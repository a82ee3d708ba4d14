"""
Trial data loading for mixed-model analysis
"""

import logging
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["subject", "item", "condition", "correct", "rt"]

TRUE_VALUES = {"true", "1", "1.0", "yes", "y", "correct", "c"}
FALSE_VALUES = {"false", "0", "0.0", "no", "n", "incorrect", "error", "e"}


def _to_bool(series: pd.Series) -> pd.Series:
    """Coerce various True/False encodings to boolean."""
    if series.dtype == bool:
        return series.copy()
    s = series.astype(str).str.strip().str.lower()
    unknown = ~s.isin(TRUE_VALUES | FALSE_VALUES) & series.notna()
    if unknown.any():
        examples = sorted(s[unknown].unique())[:5]
        raise ValueError(f"Cannot read correctness values {examples} as True/False")
    return s.isin(TRUE_VALUES)


def load_trials(path: Path, column_map: Optional[Dict[str, str]] = None) -> pd.DataFrame:
    """
    Load trial-level data and map columns onto the canonical names

    Args:
        path: CSV or TSV file (tab separator inferred from .tsv/.txt)
        column_map: Canonical name -> column name in the file

    Returns:
        DataFrame with subject, item, condition (strings), correct (bool)
        and rt (float) plus any other columns in the file

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If required columns are missing
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    sep = "\t" if path.suffix.lower() in (".tsv", ".txt") else ","
    df = pd.read_csv(path, sep=sep)
    logger.info(f"Loaded {len(df):,} trials from {path.name}")

    if column_map:
        renames = {source: canonical for canonical, source in column_map.items() if source != canonical}
        df = df.rename(columns=renames)

    missing = [col for col in REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    return coerce_trials(df)


def coerce_trials(df: pd.DataFrame) -> pd.DataFrame:
    """Canonical dtypes for the required columns (returns a copy)"""
    df = df.copy()
    for col in ("subject", "item", "condition"):
        df[col] = df[col].astype(str)
    df["correct"] = _to_bool(df["correct"])
    df["rt"] = pd.to_numeric(df["rt"], errors="coerce").astype(float)

    n_missing_rt = int(df["rt"].isna().sum())
    if n_missing_rt:
        logger.warning(f"{n_missing_rt:,} trials have no usable response time")
    return df


def summarize_trials(data: pd.DataFrame, condition: str = "condition") -> pd.DataFrame:
    """
    Per-condition descriptives

    Returns:
        One row per condition: trials, subjects, items, accuracy and mean /
        median / SD of the response times of correct trials
    """
    correct_rt = data["rt"].where(data["correct"].astype(bool))
    summary = (
        data.assign(rt_correct=correct_rt)
        .groupby(condition, observed=True)
        .agg(
            n_trials=("rt", "size"),
            n_subjects=("subject", "nunique"),
            n_items=("item", "nunique"),
            accuracy=("correct", "mean"),
            mean_rt=("rt_correct", "mean"),
            median_rt=("rt_correct", "median"),
            sd_rt=("rt_correct", "std"),
        )
        .reset_index()
    )
    summary["accuracy"] = summary["accuracy"].astype(float)

    logger.info(f"Trials: {len(data):,}, subjects: {data['subject'].nunique()}, items: {data['item'].nunique()}")
    for _, row in summary.iterrows():
        logger.info(
            f"  {row[condition]}: n = {row['n_trials']:,}, accuracy = {row['accuracy']:.3f}, "
            f"mean RT = {row['mean_rt']:.1f} ms"
        )
    return summary
