#!/usr/bin/env python3
"""
Main Analysis Orchestrator for Mixed-Effects Analysis of Trial Data
Contrast coding -> RT model selection -> accuracy model selection -> report
"""

import argparse
import io
import logging
import sys
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

if sys.platform == "win32":
    sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8")
    sys.stderr = io.TextIOWrapper(sys.stderr.buffer, encoding="utf-8")

# Import configuration
import config
from contrast_coding import ContrastSpec
from mixed_models import ModelSpec
from model_selection import ModelReport, ModelSelectionWorkflow

# Import utilities
from preprocessing_utils.data_loading import load_trials, summarize_trials
from preprocessing_utils.simulation import simulate_trials
from preprocessing_utils.trial_filtering import (
    apply_outcome_transform,
    select_correct_trials,
    suggest_transform,
    trim_response_times,
)
from utils.caching_utils import cache_key, clear_cache_directory, load_or_recompute
from utils.exceptions import DegenerateFitError
from utils.misc_utils import (
    create_output_directories,
    save_json_results,
    setup_logging,
    validate_config,
    validate_outcome_settings,
)
from utils.results_reporting import contrast_summary, save_reports
from utils.visualization_utils import create_report_figures

logger = logging.getLogger(__name__)


class MixedModelAnalysisPipeline:
    """
    Runs the response-time and accuracy models for one dataset
    """

    def __init__(
        self,
        config_obj=None,
        results_dir: Optional[str] = None,
        cache_dir: Optional[str] = None,
        use_cache: bool = True,
        **overrides,
    ):
        self.config = config_obj or config

        # Validate configuration
        validate_config(self.config)

        self.settings = {
            key: self.config.get(key) for key in ("RT_TRANSFORM", "RT_FAMILY", "RT_LINK", "N_JOBS")
        }
        self.settings.update({k: v for k, v in overrides.items() if v is not None})
        validate_outcome_settings(self.settings["RT_TRANSFORM"], self.settings["RT_FAMILY"])

        # Create output directories
        self.results_dir = Path(results_dir or self.config.get("RESULTS_DIR", "results"))
        self.directories = create_output_directories(self.results_dir)
        self.cache_dir = Path(cache_dir or self.config.get("CACHE_DIR", "cache"))
        self.use_cache = use_cache

        self.workflow = ModelSelectionWorkflow.from_config(
            self.config, n_jobs=self.settings["N_JOBS"]
        )
        self.contrast_spec = ContrastSpec.from_mapping(
            column=self.config.CONTRASTS["column"],
            contrasts=self.config.CONTRASTS["contrasts"],
            levels=self.config.CONTRASTS.get("levels"),
        )

        logger.info("Mixed-model analysis pipeline initialized")

    def load_data(self, data_path: Optional[str] = None, simulate: bool = False) -> pd.DataFrame:
        """Load trials from disk or simulate a dataset"""
        logger.info("=" * 60)
        logger.info("LOADING DATA")
        logger.info("=" * 60)

        if simulate:
            levels = self.contrast_spec.levels or ("A", "B", "C")
            return simulate_trials(conditions=levels)

        path = Path(data_path or self.config.DATA_PATH)
        return load_trials(path, self.config.get("COLUMN_MAP"))

    def code_contrasts(self, data: pd.DataFrame):
        """Attach contrast columns; returns (coded data, contrast summary)"""
        coded, hypothesis, coding = self.contrast_spec.apply(data)
        return coded, contrast_summary(hypothesis, coding)

    def prepare_rt_data(self, data: pd.DataFrame):
        """Correct, trimmed and transformed response times"""
        logger.info("=" * 60)
        logger.info("PREPARING RESPONSE TIMES")
        logger.info("=" * 60)

        rt_data = select_correct_trials(data)
        rt_data = trim_response_times(rt_data, self.config.RT_LOWER, self.config.RT_UPPER)
        suggest_transform(rt_data["rt"])

        return apply_outcome_transform(rt_data, self.settings["RT_TRANSFORM"])

    def model_spec(self, outcome: str, family: str, link: Optional[str]) -> ModelSpec:
        return ModelSpec.maximal(
            outcome=outcome,
            predictors=self.contrast_spec.names,
            groups=self.config.get("RANDOM_GROUPS", ["subject", "item"]),
            correlated=self.config.get("RANDOM_CORRELATIONS", False),
            family=family,
            link=link,
        )

    def run_model(self, name: str, data: pd.DataFrame, spec: ModelSpec) -> ModelReport:
        """Model selection for one outcome, cached on data and settings"""
        workflow = self.workflow
        key = cache_key(
            data,
            spec,
            workflow.settings,
            workflow.pca_threshold,
            workflow.retry_optimizers,
            workflow.retry_max_evals,
            workflow.optimizer_panel,
            workflow.loglik_rtol,
            workflow.alpha,
            workflow.test_terms,
        )
        slug = name.lower().replace(" ", "_")
        cache_path = self.cache_dir / f"{slug}_{key}.joblib"
        return load_or_recompute(cache_path, workflow.run, self.use_cache, data, spec, name)

    def run(
        self,
        data_path: Optional[str] = None,
        simulate: bool = False,
        skip_accuracy: bool = False,
    ) -> Dict[str, ModelReport]:
        """
        Full analysis

        Returns:
            Model name -> ModelReport
        """
        trials = self.load_data(data_path, simulate)
        summary = summarize_trials(trials)
        summary.to_csv(self.directories["tables"] / "condition_summary.csv", index=False)

        coded, contrasts = self.code_contrasts(trials)
        save_json_results(contrasts, self.results_dir / "contrasts.json")

        reports = {}
        model_data = {}

        rt_data, rt_outcome = self.prepare_rt_data(coded)
        rt_spec = self.model_spec(rt_outcome, self.settings["RT_FAMILY"], self.settings["RT_LINK"])
        jobs = [("Response time", rt_data, rt_spec)]

        if not skip_accuracy:
            accuracy_spec = self.model_spec(
                "correct",
                self.config.get("ACCURACY_FAMILY", "binomial"),
                self.config.get("ACCURACY_LINK", "logit"),
            )
            jobs.append(("Accuracy", coded, accuracy_spec))

        for name, data, spec in jobs:
            try:
                reports[name] = self.run_model(name, data, spec)
                model_data[name] = data
            except DegenerateFitError as e:
                logger.error(f"{name} model is degenerate: {e}")

        if not reports:
            raise DegenerateFitError("No model could be reported")

        report_list = list(reports.values())
        save_reports(report_list, self.results_dir, contrasts)
        create_report_figures(report_list, model_data, self.directories["figures"])

        logger.info("=" * 60)
        logger.info("ANALYSIS COMPLETE")
        logger.info("=" * 60)
        logger.info(f"Results saved to {self.results_dir}")
        return reports


def main():
    parser = argparse.ArgumentParser(
        description="Mixed-effects analysis of trial-level response times and accuracy"
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--data", type=str, default=None, help="Trial data CSV/TSV (default: config.DATA_PATH)")
    source.add_argument("--simulate", action="store_true", help="Analyse a simulated dataset")
    parser.add_argument("--results-dir", type=str, default=None, help="Directory for all output")
    parser.add_argument(
        "--transform",
        choices=["identity", "log", "reciprocal"],
        default=None,
        help="Response-time transform (default: config.RT_TRANSFORM)",
    )
    parser.add_argument(
        "--family",
        choices=["gaussian", "gamma", "inverse_gaussian"],
        default=None,
        help="Response-time distribution (default: config.RT_FAMILY)",
    )
    parser.add_argument(
        "--link",
        choices=["identity", "log", "inverse"],
        default=None,
        help="Response-time link function (default: config.RT_LINK)",
    )
    parser.add_argument("--n-jobs", type=int, default=None, help="Parallel fits (default: config.N_JOBS)")
    parser.add_argument("--skip-accuracy", action="store_true", help="Only fit the response-time model")
    parser.add_argument("--no-cache", action="store_true", help="Force refitting of all models")
    parser.add_argument("--clear-cache", action="store_true", help="Delete cached model reports first")

    args = parser.parse_args()

    setup_logging()

    try:
        pipeline = MixedModelAnalysisPipeline(
            results_dir=args.results_dir,
            use_cache=not args.no_cache,
            RT_TRANSFORM=args.transform,
            RT_FAMILY=args.family,
            RT_LINK=args.link,
            N_JOBS=args.n_jobs,
        )
        if args.clear_cache:
            clear_cache_directory(pipeline.cache_dir)
        pipeline.run(args.data, simulate=args.simulate, skip_accuracy=args.skip_accuracy)
        sys.exit(0)

    except Exception as e:
        logger.error(f"Pipeline failed: {e}", exc_info=True)
        sys.exit(2)


if __name__ == "__main__":
    main()
