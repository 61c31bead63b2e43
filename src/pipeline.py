"""
Batch Effect Exploration Pipeline
=================================

Main pipeline script that orchestrates:
1. Dataset loading (by name) and optional sample subsetting
2. PCA of the raw expression data
3. ComBat batch correction with several parameter variants
4. PCA of every corrected matrix
5. HTML report with static and interactive plots

Usage:
    python pipeline.py --config configs/config.yaml
    python pipeline.py --dataset simulated --output-dir results/simulated
"""

import argparse
import copy
import logging
import sys
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import yaml

from preprocessing.data_loader import (
    ExpressionDataLoader,
    ExpressionDataset,
    subset_samples,
    summarize_design
)
from batch_correction.combat import BatchEffectAnalyzer, ComBatParameters, run_variants
from reporting.report_generator import BatchCorrectionReportGenerator
from visualization.plots import (
    pca_scatter_interactive,
    pca_scatter_static,
    sample_boxplot_static,
    variance_explained_static
)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    'project': {
        'name': 'Bladder cancer batch effect exploration'
    },
    'data': {
        'dataset': 'simulated',
        'data_dir': 'data',
        'datasets': {},
        'simulated': {},
        'subset': {
            'batches': None,
            'cancer': None
        }
    },
    'analysis': {
        'batch_col': 'batch',
        'condition_col': 'cancer',
        'alpha': 0.05
    },
    'pca': {
        'n_components': 10,
        'scale': True,
        'top_genes': None
    },
    'combat': {
        'variants': [
            {'name': 'no_covariates', 'label': 'ComBat without covariates'},
            {'name': 'cancer_covariate', 'label': 'ComBat preserving cancer status',
             'covariates': ['cancer']},
            {'name': 'reference_batch', 'label': 'ComBat with reference batch 1',
             'covariates': ['cancer'], 'ref_batch': 1}
        ]
    },
    'report': {
        'output_dir': 'results/report',
        'filename': 'batch_correction_report.html',
        'title': 'Batch Effect Correction with ComBat',
        'plotly_js': 'cdn',
        'dpi': 110,
        'save_corrected': True
    },
    'logging': {
        'level': 'INFO'
    }
}


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: Optional[str] = None, overrides: Optional[dict] = None) -> dict:
    """
    Load YAML configuration merged over the defaults.

    Parameters
    ----------
    config_path : str, optional
        Path to YAML configuration file; defaults only when omitted
    overrides : dict, optional
        Values applied last (e.g., from the command line)

    Returns
    -------
    dict
        Complete configuration
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path is not None:
        with open(config_path, 'r') as f:
            user_config = yaml.safe_load(f) or {}

        if not isinstance(user_config, dict):
            raise ValueError(f"Configuration must be a mapping: {config_path}")

        unknown = set(user_config) - set(DEFAULT_CONFIG)
        if unknown:
            raise ValueError(f"Unknown configuration sections: {sorted(unknown)}")

        config = _deep_merge(config, user_config)

    if overrides:
        config = _deep_merge(config, overrides)

    if not config['combat']['variants']:
        raise ValueError("At least one ComBat variant must be configured")

    return config


class BatchCorrectionPipeline:
    """Batch effect exploration: load, PCA, ComBat variants, PCA, report."""

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[dict] = None):
        """
        Initialize pipeline with configuration.

        Parameters
        ----------
        config_path : str, optional
            Path to YAML configuration file
        overrides : dict, optional
            Configuration values that take precedence over the file
        """
        self.config = load_config(config_path, overrides)

        if config_path is not None:
            self.project_root = Path(config_path).resolve().parent.parent
        else:
            self.project_root = Path.cwd()

        self.results_dir = self._resolve(self.config['report']['output_dir'])

        self.batch_col = self.config['analysis']['batch_col']
        self.condition_col = self.config['analysis']['condition_col']
        self.variants = [ComBatParameters.from_dict(v) for v in self.config['combat']['variants']]

        # Initialize containers
        self.dataset: Optional[ExpressionDataset] = None
        self.raw_pca: Optional[Tuple[pd.DataFrame, np.ndarray]] = None
        self.raw_metrics: Optional[Dict[str, float]] = None
        self.corrected: Optional["OrderedDict[str, pd.DataFrame]"] = None
        self.corrected_pca: "OrderedDict[str, Tuple[pd.DataFrame, np.ndarray]]" = OrderedDict()
        self.corrected_metrics: "OrderedDict[str, Dict[str, float]]" = OrderedDict()

        logger.info(f"Initialized pipeline for: {self.config['project']['name']}")

    def _resolve(self, path: str) -> Path:
        path = Path(path)
        return path if path.is_absolute() else self.project_root / path

    def _analyze(self, data: pd.DataFrame) -> Tuple[Tuple[pd.DataFrame, np.ndarray], Dict[str, float]]:
        pca_cfg = self.config['pca']
        analyzer = BatchEffectAnalyzer(data, self.dataset.pheno)

        pca = analyzer.pca_analysis(
            n_components=pca_cfg['n_components'],
            scale=pca_cfg['scale'],
            top_genes=pca_cfg['top_genes']
        )
        metrics = analyzer.summary_metrics(
            batch_col=self.batch_col,
            condition_col=self.condition_col,
            n_components=pca_cfg['n_components'],
            alpha=self.config['analysis']['alpha'],
            scale=pca_cfg['scale'],
            top_genes=pca_cfg['top_genes']
        )
        return pca, metrics

    def step1_load_data(self) -> ExpressionDataset:
        """Load the configured dataset."""
        logger.info("=== Step 1: Loading Data ===")

        data_cfg = self.config['data']
        loader = ExpressionDataLoader(
            str(self._resolve(data_cfg['data_dir'])),
            registry=data_cfg['datasets'],
            simulated_params=data_cfg['simulated']
        )
        dataset = loader.load(data_cfg['dataset'])

        subset = data_cfg.get('subset') or {}
        if subset.get('batches') is not None or subset.get('cancer') is not None:
            dataset = subset_samples(dataset, batches=subset.get('batches'), cancer=subset.get('cancer'))

        self.dataset = dataset

        logger.info(f"Study design:\n{summarize_design(dataset)}")
        return self.dataset

    def step2_raw_pca(self):
        """PCA and batch-effect metrics on the uncorrected data."""
        logger.info("=== Step 2: PCA of Raw Data ===")

        if self.dataset is None:
            self.step1_load_data()

        self.raw_pca, self.raw_metrics = self._analyze(self.dataset.expression)

        logger.info(f"PCA variance explained (PC1-3): {self.raw_pca[1][:3]}")
        logger.info(f"Raw metrics: {self.raw_metrics}")
        return self.raw_pca

    def step3_batch_correction(self):
        """Apply every configured ComBat variant."""
        logger.info("=== Step 3: Batch Correction ===")

        if self.dataset is None:
            self.step1_load_data()

        self.corrected = run_variants(
            self.dataset.expression,
            self.dataset.pheno,
            self.variants,
            batch_col=self.batch_col
        )

        if self.config['report']['save_corrected']:
            corrected_dir = self.results_dir / "corrected"
            corrected_dir.mkdir(parents=True, exist_ok=True)
            for name, df in self.corrected.items():
                df.to_csv(corrected_dir / f"{name}.csv")
            logger.info(f"Saved {len(self.corrected)} corrected matrices to {corrected_dir}")

        return self.corrected

    def step4_corrected_pca(self):
        """PCA and metrics for every corrected matrix."""
        logger.info("=== Step 4: PCA of Corrected Data ===")

        if self.corrected is None:
            self.step3_batch_correction()

        for name, data in self.corrected.items():
            pca, metrics = self._analyze(data)
            self.corrected_pca[name] = pca
            self.corrected_metrics[name] = metrics

            logger.info(f"[{name}] PCA variance explained (PC1-3): {pca[1][:3]}")
            logger.info(f"[{name}] metrics: {metrics}")

        return self.corrected_pca

    def metrics_table(self) -> pd.DataFrame:
        """Metrics for raw data and each variant, one row each."""
        rows = OrderedDict()
        rows['raw'] = self.raw_metrics
        rows.update(self.corrected_metrics)

        table = pd.DataFrame.from_dict(rows, orient='index')
        table.index.name = 'data'
        return table

    def _pca_figures(
        self,
        report: BatchCorrectionReportGenerator,
        pca: Tuple[pd.DataFrame, np.ndarray],
        title: str
    ) -> Tuple[List[str], List[str]]:
        scores, ratio = pca
        pheno = self.dataset.pheno

        static = [
            report.static_figure(
                pca_scatter_static(scores, ratio, pheno, self.batch_col, self.condition_col,
                                   title=f"{title}: colored by {self.batch_col}"),
                caption=f"PC1 vs PC2, color = {self.batch_col}, marker = {self.condition_col}"
            ),
            report.static_figure(
                pca_scatter_static(scores, ratio, pheno, self.condition_col, None,
                                   title=f"{title}: colored by {self.condition_col}"),
                caption=f"PC1 vs PC2, color = {self.condition_col}"
            )
        ]
        interactive = [
            report.interactive_figure(
                pca_scatter_interactive(scores, ratio, pheno, self.batch_col, self.condition_col,
                                        title=f"{title} (interactive)")
            )
        ]
        return static, interactive

    def step5_render_report(self) -> Path:
        """Assemble and write the HTML report."""
        logger.info("=== Step 5: Rendering Report ===")

        if self.raw_pca is None:
            self.step2_raw_pca()
        if not self.corrected_pca:
            self.step4_corrected_pca()

        report_cfg = self.config['report']
        report = BatchCorrectionReportGenerator(
            output_dir=str(self.results_dir),
            title=report_cfg['title'],
            plotly_js=report_cfg['plotly_js'],
            dpi=report_cfg['dpi']
        )

        report.dataset_section(self.dataset)

        # Raw data
        static, interactive = self._pca_figures(report, self.raw_pca, "Raw data")
        static.append(report.static_figure(
            sample_boxplot_static(self.dataset.expression, self.dataset.pheno, self.batch_col,
                                  title="Raw sample distributions"),
            caption="Per-sample expression, ordered and colored by batch"
        ))
        static.append(report.static_figure(
            variance_explained_static(self.raw_pca[1], title="Raw data: explained variance")
        ))
        report.pca_section(
            "Raw data",
            "Principal components of the uncorrected expression matrix. Samples that "
            "cluster by batch rather than by cancer status indicate a batch effect.",
            static,
            interactive,
            metrics=self.raw_metrics
        )

        # Corrected data
        for variant in self.variants:
            static, interactive = self._pca_figures(report, self.corrected_pca[variant.name], variant.label)
            report.pca_section(
                variant.label,
                f"PCA after ComBat variant `{variant.name}`.",
                static,
                interactive,
                parameters=variant.describe(),
                metrics=self.corrected_metrics[variant.name]
            )

        report.metrics_section(self.metrics_table())

        report_path = report.write(report_cfg['filename'])
        report.save_json_summary(self._summary())

        return report_path

    def _summary(self) -> dict:
        return {
            'project': self.config['project']['name'],
            'date': datetime.now().isoformat(),
            'dataset': {
                'name': self.dataset.name,
                'genes': self.dataset.n_genes,
                'samples': self.dataset.n_samples,
                'batches': self.dataset.batches
            },
            'variants': [
                {'name': v.name, 'label': v.label, **v.describe()} for v in self.variants
            ],
            'metrics': self.metrics_table().to_dict(orient='index')
        }

    def run_full_pipeline(self) -> Path:
        """Run the complete analysis pipeline."""
        logger.info("=" * 60)
        logger.info("Starting Batch Effect Exploration Pipeline")
        logger.info("=" * 60)

        start_time = datetime.now()

        self.step1_load_data()
        self.step2_raw_pca()
        self.step3_batch_correction()
        self.step4_corrected_pca()
        report_path = self.step5_render_report()

        duration = datetime.now() - start_time

        logger.info("=" * 60)
        logger.info(f"Pipeline completed in {duration}")
        logger.info(f"Report: {report_path}")
        logger.info("=" * 60)

        return report_path


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Batch effect exploration report')
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to configuration file (defaults built in when omitted)'
    )
    parser.add_argument(
        '--step',
        type=str,
        choices=['all', 'load', 'pca', 'batch', 'corrected-pca', 'report'],
        default='all',
        help='Pipeline step to run'
    )
    parser.add_argument('--dataset', type=str, default=None, help='Dataset name to load')
    parser.add_argument('--output-dir', type=str, default=None, help='Report output directory')
    parser.add_argument('--log-level', type=str, default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])

    args = parser.parse_args(argv)

    overrides = {}
    if args.dataset:
        overrides['data'] = {'dataset': args.dataset}
    if args.output_dir:
        overrides['report'] = {'output_dir': str(Path(args.output_dir).resolve())}

    try:
        config_level = load_config(args.config)['logging']['level']
    except (OSError, ValueError, yaml.YAMLError) as e:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logger.error(f"Could not read configuration: {e}")
        return 1

    logging.basicConfig(
        level=getattr(logging, (args.log_level or config_level).upper()),
        format=LOG_FORMAT
    )

    try:
        pipeline = BatchCorrectionPipeline(args.config, overrides)

        if args.step == 'all':
            pipeline.run_full_pipeline()
        elif args.step == 'load':
            pipeline.step1_load_data()
        elif args.step == 'pca':
            pipeline.step2_raw_pca()
        elif args.step == 'batch':
            pipeline.step3_batch_correction()
        elif args.step == 'corrected-pca':
            pipeline.step4_corrected_pca()
        elif args.step == 'report':
            pipeline.step5_render_report()
    except (KeyError, ValueError, OSError, np.linalg.LinAlgError) as e:
        logger.error(f"Pipeline failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
