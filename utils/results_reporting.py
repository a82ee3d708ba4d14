# utils/results_reporting.py
"""
Results reporting utilities for mixed-model selection
Generates tables, CSV exports and JSON/text reports
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from contrast_coding import describe_hypotheses
from utils.misc_utils import save_json_results

logger = logging.getLogger(__name__)


def format_p_value(p: float) -> str:
    """APA-style p-value (no leading zero, < .001 floor)"""
    if p is None or not np.isfinite(p):
        return "p = NA"
    if p < 0.001:
        return "p < .001"
    return f"p = {p:.3f}".replace("0.", ".", 1)


def format_term(term: str, row: pd.Series, statistic: str = "z") -> str:
    """e.g. 'B_vs_A: b = 0.08, SE = 0.02, z = 3.95, p < .001'"""
    return (
        f"{term}: b = {row['estimate']:.3f}, SE = {row['se']:.3f}, "
        f"{statistic} = {row['statistic']:.2f}, {format_p_value(row['p_value'])}"
    )


def fixed_effects_table(report) -> pd.DataFrame:
    """Fixed-effect estimates with LRT outcomes where available"""
    table = report.fixed_effects.reset_index()
    table.insert(0, "model", report.name)
    if report.term_tests is not None and not report.term_tests.empty:
        tests = report.term_tests[["term", "chi2", "df", "p_value", "retained"]].rename(
            columns={"p_value": "lrt_p_value"}
        )
        table = table.merge(tests, on="term", how="left")
    return table


def variance_components_table(report) -> pd.DataFrame:
    table = report.fit.variance_components()
    table.insert(0, "model", report.name)
    return table


def optimizer_table(report) -> pd.DataFrame:
    if report.verification is None:
        return pd.DataFrame()
    table = report.verification.to_frame()
    table.insert(0, "model", report.name)
    table["reference"] = table["optimizer"] == report.verification.reference
    return table


def reduction_table(report) -> pd.DataFrame:
    """One row per removed random-effect term"""
    rows = [
        {
            "model": report.name,
            "step": i + 1,
            "group": step.group,
            "removed_term": step.term,
            "smallest_proportion": step.proportion,
            "reason": step.reason,
            "formula_after": step.formula_after,
        }
        for i, step in enumerate(report.reductions)
    ]
    return pd.DataFrame(
        rows,
        columns=[
            "model", "step", "group", "removed_term", "smallest_proportion", "reason", "formula_after"
        ],
    )


def pca_table(report) -> pd.DataFrame:
    """Variance decomposition of the final model's random effects"""
    frames = [decomposition.to_frame() for decomposition in report.fit.decompose().values()]
    if not frames:
        return pd.DataFrame()
    table = pd.concat(frames, ignore_index=True)
    table.insert(0, "model", report.name)
    return table


def summarize_report(report) -> Dict:
    """Dictionary view of one ModelReport for JSON output"""
    fit = report.fit
    summary = {
        "model": report.name,
        "formula": fit.spec.formula,
        "family": fit.spec.family,
        "link": fit.spec.link_name,
        "estimation": "REML" if fit.reml else "ML",
        "optimizer": fit.optimizer,
        "states": [state.value for state in report.states],
        "provisional": report.provisional,
        "verified": report.verified,
        "singular": fit.singular,
        "converged": fit.converged,
        "fit_indices": report.fit_indices(),
        "fixed_effects": fit.fixed_effects.reset_index().to_dict("records"),
        "apa": [format_term(term, row) for term, row in fit.fixed_effects.iterrows()],
        "random_structure": report.random_structure(),
        "variance_components": fit.variance_components().to_dict("records"),
        "reductions": reduction_table(report).to_dict("records"),
        "warnings": list(report.warnings),
        "rejected_terms": report.rejected_terms,
    }
    if report.verification is not None:
        summary["optimizer_check"] = {
            "passed": report.verification.passed,
            "reference": report.verification.reference,
            "messages": list(report.verification.messages),
            "runs": report.verification.to_frame().to_dict("records"),
        }
    if report.term_tests is not None:
        summary["term_tests"] = report.term_tests.to_dict("records")
    return summary


def contrast_summary(hypothesis: pd.DataFrame, coding: pd.DataFrame) -> Dict:
    return {
        "hypotheses": describe_hypotheses(hypothesis),
        "hypothesis_matrix": hypothesis.round(6).to_dict("index"),
        "coding_matrix": coding.round(6).to_dict("index"),
    }


def export_report_tables(reports: List, tables_dir: Path) -> Dict[str, Path]:
    """
    Write every report table as CSV

    Returns:
        Table name -> written path
    """
    tables_dir.mkdir(parents=True, exist_ok=True)
    builders = {
        "fixed_effects": fixed_effects_table,
        "variance_components": variance_components_table,
        "optimizer_check": optimizer_table,
        "random_effect_reduction": reduction_table,
        "variance_decomposition": pca_table,
    }

    written = {}
    for name, builder in builders.items():
        frames = [builder(report) for report in reports]
        frames = [frame for frame in frames if not frame.empty]
        if not frames:
            continue
        path = tables_dir / f"{name}.csv"
        pd.concat(frames, ignore_index=True).to_csv(path, index=False)
        written[name] = path
        logger.info(f"Saved {name} table to {path}")
    return written


def generate_text_report(reports: List, contrasts: Optional[Dict] = None) -> str:
    """Plain-text summary of all reported models"""
    lines = ["=" * 60, "MIXED-MODEL ANALYSIS REPORT", "=" * 60]
    lines.append(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M')}")

    if contrasts:
        lines.append("\nContrasts:")
        for name, text in contrasts["hypotheses"].items():
            lines.append(f"  {name}: H0: {text}")

    for report in reports:
        indices = report.fit_indices()
        lines.append(f"\n{report.name}")
        lines.append("-" * len(report.name))
        lines.append(f"  {report.spec.formula}")
        lines.append(
            f"  AIC = {indices['aic']:.1f}, BIC = {indices['bic']:.1f}, "
            f"logLik = {indices['loglik']:.1f}, "
            f"R2m = {indices['r2_marginal']:.3f}, R2c = {indices['r2_conditional']:.3f}"
        )
        for term, row in report.fixed_effects.iterrows():
            lines.append(f"  {format_term(term, row)}")
        if report.reductions:
            removed = ", ".join(f"{s.term} | {s.group}" for s in report.reductions)
            lines.append(f"  Removed random effects: {removed}")
        if report.rejected_terms:
            lines.append(f"  Rejected by LRT: {', '.join(report.rejected_terms)}")
        status = "provisional" if report.provisional else "final"
        check = "verified" if report.verified else "optimizer-sensitive"
        lines.append(f"  Status: {status}, {check}")
        for warning in report.warnings:
            lines.append(f"  WARNING: {warning}")

    return "\n".join(lines)


def save_reports(
    reports: List, output_dir: Path, contrasts: Optional[Dict] = None
) -> Dict[str, Path]:
    """Tables, JSON and text report for a set of ModelReports"""
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = export_report_tables(reports, output_dir / "tables")

    results = {
        "metadata": {
            "analysis_date": datetime.now().isoformat(),
            "analysis_type": "Mixed-effects model selection",
        },
        "contrasts": contrasts or {},
        "models": [summarize_report(report) for report in reports],
    }
    json_path = output_dir / "model_reports.json"
    save_json_results(results, json_path)
    paths["json"] = json_path

    text_path = output_dir / "model_reports.txt"
    text_path.write_text(generate_text_report(reports, contrasts), encoding="utf-8")
    logger.info(f"Text report saved to {text_path}")
    paths["text"] = text_path
    return paths
