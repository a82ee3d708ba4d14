"""
Visualization utilities for mixed-model analysis
Residual diagnostics, variance-decomposition scree plots and condition means
"""

import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy import stats

logger = logging.getLogger(__name__)


def plot_residual_diagnostics(fit, output_path: Path) -> None:
    """
    Q-Q plot, residuals vs fitted and residual histogram for one fit

    Args:
        fit: FitResult
        output_path: Path to save the plot
    """
    residuals = np.asarray(fit.residuals, dtype=float)
    fitted = np.asarray(fit.fitted, dtype=float)

    fig, axes = plt.subplots(1, 3, figsize=(15, 4.5))
    fig.suptitle(f"Residual diagnostics: {fit.spec.formula}", fontsize=11)

    stats.probplot(residuals, dist="norm", plot=axes[0])
    axes[0].set_title("Normal Q-Q")

    axes[1].scatter(fitted, residuals, s=6, alpha=0.4)
    axes[1].axhline(0, color="black", linewidth=0.8, linestyle="--")
    axes[1].set_xlabel("Fitted")
    axes[1].set_ylabel("Residual")
    axes[1].set_title("Residuals vs fitted")

    sns.histplot(residuals, bins=40, kde=True, ax=axes[2])
    axes[2].set_xlabel("Residual")
    axes[2].set_title("Residual distribution")

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Residual diagnostics saved to {output_path}")


def plot_variance_decomposition(report, output_path: Path) -> None:
    """Scree plot of each grouping factor's random-effects components"""
    decompositions = report.fit.decompose()
    fig, axes = plt.subplots(
        1, len(decompositions), figsize=(5 * len(decompositions), 4), squeeze=False
    )

    for ax, (group, decomposition) in zip(axes[0], decompositions.items()):
        components = np.arange(1, len(decomposition.proportions) + 1)
        ax.bar(components, decomposition.proportions, alpha=0.7, label="Proportion")
        ax.plot(components, decomposition.cumulative, marker="o", color="black", label="Cumulative")
        ax.set_xticks(components)
        ax.set_xlabel("Component")
        ax.set_ylabel("Share of variance")
        ax.set_ylim(0, 1.05)
        ax.set_title(f"{group} ({', '.join(decomposition.terms)})")
        ax.legend(loc="center right")

    fig.suptitle(f"Random-effects PCA: {report.name}")
    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Variance decomposition plot saved to {output_path}")


def plot_condition_means(data: pd.DataFrame, outcome: str, output_path: Path, condition: str = "condition") -> None:
    """By-subject condition means with 95% intervals"""
    subject_means = data.groupby([condition, "subject"], observed=True)[outcome].mean().reset_index()

    sns.set_palette("Set2")
    fig, ax = plt.subplots(figsize=(6, 4.5))
    sns.pointplot(data=subject_means, x=condition, y=outcome, errorbar=("ci", 95), ax=ax)
    sns.stripplot(data=subject_means, x=condition, y=outcome, alpha=0.3, size=3, ax=ax)
    ax.set_title(f"{outcome} by {condition}")

    plt.tight_layout()
    plt.savefig(output_path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    logger.info(f"Condition means plot saved to {output_path}")


def create_report_figures(reports, data_by_model: dict, figures_dir: Path) -> None:
    """
    All figures for a set of reports

    Plotting problems are logged and do not stop the analysis.
    """
    figures_dir.mkdir(parents=True, exist_ok=True)
    for report in reports:
        slug = report.name.lower().replace(" ", "_")
        try:
            plot_residual_diagnostics(report.fit, figures_dir / f"{slug}_residuals.png")
            plot_variance_decomposition(report, figures_dir / f"{slug}_variance_pca.png")
            data = data_by_model.get(report.name)
            if data is not None:
                plot_condition_means(
                    data, report.spec.outcome, figures_dir / f"{slug}_condition_means.png"
                )
        except (ValueError, TypeError, RuntimeError) as e:
            logger.warning(f"Could not create figures for {report.name}: {e}")
