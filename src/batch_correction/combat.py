"""
Batch Correction for Expression Data
====================================

This module wraps ComBat batch correction and measures batch effects:
1. ComBat (parametric / non-parametric priors, mean-only, reference batch)
2. Covariate preservation through a model matrix
3. PCA, silhouette scores and variance partition before/after correction
4. Limma-style removeBatchEffect baseline

Note: the empirical Bayes adjustment itself comes from inmoose's
pycombat_norm, a port of sva::ComBat.
"""

import pandas as pd
import numpy as np
from collections import OrderedDict
from dataclasses import dataclass, field
from scipy import stats
from sklearn.preprocessing import StandardScaler
from sklearn.decomposition import PCA
from inmoose.pycombat import pycombat_norm
import logging
import warnings
from typing import Any, Dict, List, Optional, Tuple

from preprocessing.data_loader import build_model_matrix, top_variable_genes

logger = logging.getLogger(__name__)


@dataclass
class ComBatParameters:
    """One ComBat configuration to run and report on."""
    name: str
    label: str = ""
    covariates: List[str] = field(default_factory=list)
    ref_batch: Optional[Any] = None
    parametric: bool = True
    mean_only: bool = False

    def __post_init__(self):
        if not self.label:
            self.label = self.name

    @classmethod
    def from_dict(cls, params: dict) -> "ComBatParameters":
        unknown = set(params) - {'name', 'label', 'covariates', 'ref_batch', 'parametric', 'mean_only'}
        if unknown:
            raise ValueError(f"Unknown ComBat parameters: {sorted(unknown)}")
        if 'name' not in params:
            raise ValueError("ComBat variant needs a 'name'")
        return cls(
            name=params['name'],
            label=params.get('label', ''),
            covariates=list(params.get('covariates') or []),
            ref_batch=params.get('ref_batch'),
            parametric=bool(params.get('parametric', True)),
            mean_only=bool(params.get('mean_only', False))
        )

    def describe(self) -> Dict[str, str]:
        return {
            'Covariates': ', '.join(self.covariates) if self.covariates else 'none',
            'Reference batch': 'none' if self.ref_batch is None else str(self.ref_batch),
            'Priors': 'parametric' if self.parametric else 'non-parametric',
            'Adjustment': 'mean only' if self.mean_only else 'mean and variance'
        }


class ComBat:
    """
    ComBat batch correction for normalized expression data.

    Based on Johnson et al. (2007) - Adjusting batch effects in microarray
    expression data using empirical Bayes methods.
    """

    def __init__(
        self,
        data: pd.DataFrame,
        batch: pd.Series,
        covariates: Optional[pd.DataFrame] = None,
        parametric: bool = True,
        mean_only: bool = False,
        ref_batch: Optional[Any] = None
    ):
        """
        Initialize ComBat.

        Parameters
        ----------
        data : pd.DataFrame
            Normalized expression matrix (genes x samples)
        batch : pd.Series
            Batch labels for each sample
        covariates : pd.DataFrame, optional
            Model matrix of covariates to preserve (e.g., cancer status), no intercept
        parametric : bool
            Use parametric (True) or non-parametric (False) priors
        mean_only : bool
            Only adjust batch means, not variances
        ref_batch : optional
            Batch whose values are left unchanged; other batches are moved onto it
        """
        self.data = data
        self.parametric = parametric
        self.mean_only = mean_only
        self.ref_batch = ref_batch

        # Ensure sample order matches
        self.samples = data.columns.tolist()
        missing = [s for s in self.samples if s not in batch.index]
        if missing:
            raise ValueError(f"No batch label for samples: {missing[:5]}")
        self.batch = batch.loc[self.samples]

        self.covariates = None
        if covariates is not None:
            self.covariates = covariates.loc[self.samples]

        self.batches = self.batch.unique()
        self.n_batches = len(self.batches)

        self._validate()

    def _validate(self):
        if self.n_batches < 2:
            raise ValueError(f"ComBat needs at least two batches, got {self.n_batches}")

        if self.ref_batch is not None and self.ref_batch not in set(self.batches):
            raise ValueError(
                f"Reference batch {self.ref_batch!r} not among batches {sorted(self.batches.tolist())}"
            )

        sizes = self.batch.value_counts()
        if (sizes < 2).any():
            singles = sizes[sizes < 2].index.tolist()
            raise ValueError(
                f"Batches {singles} have a single sample; ComBat needs at least two per batch"
            )

    def _constant_genes(self) -> pd.Index:
        """Genes with zero variance inside at least one batch."""
        constant = pd.Series(False, index=self.data.index)
        for batch_id in self.batches:
            batch_mask = (self.batch == batch_id).values
            batch_var = self.data.loc[:, batch_mask].var(axis=1)
            constant |= batch_var == 0
        return self.data.index[constant.values]

    def fit_transform(self) -> pd.DataFrame:
        """
        Apply ComBat batch correction.

        Returns
        -------
        pd.DataFrame
            Batch-corrected expression matrix with the input index and columns
        """
        logger.info(f"Running ComBat on {self.n_batches} batches "
                    f"(parametric={self.parametric}, mean_only={self.mean_only}, "
                    f"ref_batch={self.ref_batch})")

        constant = self._constant_genes()
        if len(constant) > 0:
            logger.warning(f"{len(constant)} genes have zero variance within a batch "
                           f"and are left unadjusted")

        adjustable = self.data.loc[~self.data.index.isin(constant)]
        covar_mod = None if self.covariates is None else self.covariates.values.astype(float)

        corrected = pycombat_norm(
            adjustable,
            self.batch.tolist(),
            covar_mod=covar_mod,
            par_prior=self.parametric,
            mean_only=self.mean_only,
            ref_batch=self.ref_batch
        )

        corrected_df = pd.DataFrame(
            np.asarray(corrected, dtype=float),
            index=adjustable.index,
            columns=adjustable.columns
        )

        if len(constant) > 0:
            corrected_df = pd.concat([corrected_df, self.data.loc[constant]]).loc[self.data.index]

        logger.info("ComBat correction complete")
        return corrected_df


def run_variants(
    data: pd.DataFrame,
    pheno: pd.DataFrame,
    variants: List[ComBatParameters],
    batch_col: str = 'batch'
) -> "OrderedDict[str, pd.DataFrame]":
    """
    Run each ComBat configuration on the same data.

    Returns
    -------
    OrderedDict[str, pd.DataFrame]
        Variant name -> corrected matrix, in configuration order
    """
    names = [v.name for v in variants]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate ComBat variant names: {names}")

    batch = pheno.loc[data.columns, batch_col]
    results = OrderedDict()

    for variant in variants:
        logger.info(f"ComBat variant '{variant.name}': {variant.describe()}")
        combat = ComBat(
            data=data,
            batch=batch,
            covariates=build_model_matrix(pheno.loc[data.columns], variant.covariates),
            parametric=variant.parametric,
            mean_only=variant.mean_only,
            ref_batch=variant.ref_batch
        )
        results[variant.name] = combat.fit_transform()

    return results


class BatchEffectAnalyzer:
    """Analyze and visualize batch effects in data."""

    def __init__(self, data: pd.DataFrame, metadata: pd.DataFrame):
        """
        Initialize analyzer.

        Parameters
        ----------
        data : pd.DataFrame
            Expression matrix (genes x samples)
        metadata : pd.DataFrame
            Sample metadata with batch and condition columns
        """
        self.data = data
        self.metadata = metadata.loc[data.columns]

    def pca_analysis(
        self,
        n_components: int = 10,
        scale: bool = True,
        top_genes: Optional[int] = None
    ) -> Tuple[pd.DataFrame, np.ndarray]:
        """
        Perform PCA on the data.

        Parameters
        ----------
        n_components : int
            Requested components; clamped to min(n_samples, n_genes)
        scale : bool
            Standardize genes to unit variance before PCA
        top_genes : int, optional
            Restrict to the most variable genes

        Returns
        -------
        Tuple[pd.DataFrame, np.ndarray]
            PCA scores and explained variance ratios
        """
        data = top_variable_genes(self.data, top_genes)

        # Transpose: samples as rows, genes as columns
        X = data.T.values

        if scale:
            X = StandardScaler().fit_transform(X)
        else:
            X = X - X.mean(axis=0)

        n_components = min(n_components, X.shape[0], X.shape[1])

        pca = PCA(n_components=n_components)
        scores = pca.fit_transform(X)

        scores_df = pd.DataFrame(
            scores,
            index=data.columns,
            columns=[f'PC{i+1}' for i in range(n_components)]
        )

        return scores_df, pca.explained_variance_ratio_

    @staticmethod
    def _between_group_fraction(values: np.ndarray, labels: pd.Series) -> np.ndarray:
        """Per-gene share of total sum of squares explained by group means."""
        centred = values - values.mean(axis=1, keepdims=True)
        total_ss = (centred ** 2).sum(axis=1)

        between_ss = np.zeros(values.shape[0])
        for group in labels.unique():
            mask = (labels == group).values
            group_mean = centred[:, mask].mean(axis=1)
            between_ss += mask.sum() * group_mean ** 2

        with np.errstate(divide='ignore', invalid='ignore'):
            return np.where(total_ss > 0, between_ss / total_ss, np.nan)

    def variance_partition(
        self,
        batch_col: str = 'batch',
        condition_col: str = 'cancer',
        max_genes: Optional[int] = 1000
    ) -> pd.DataFrame:
        """
        Estimate variance attributable to batch vs biological condition.

        Returns
        -------
        pd.DataFrame
            Variance partition results for each gene
        """
        data = top_variable_genes(self.data, max_genes)
        values = data.values

        total_var = values.var(axis=1, ddof=1)
        keep = total_var > 0
        data, values, total_var = data.loc[keep], values[keep], total_var[keep]

        batch_pct = self._between_group_fraction(values, self.metadata[batch_col]) * 100
        cond_pct = self._between_group_fraction(values, self.metadata[condition_col]) * 100

        return pd.DataFrame({
            'gene': data.index,
            'total_variance': total_var,
            'batch_variance_pct': batch_pct,
            'condition_variance_pct': cond_pct,
            'residual_pct': 100 - batch_pct - cond_pct
        })

    def silhouette_score(
        self,
        group_col: str,
        n_components: int = 10,
        scale: bool = True,
        top_genes: Optional[int] = None
    ) -> float:
        """
        Calculate silhouette score for grouping in PCA space.

        Higher score = better separation by the grouping variable.
        """
        from sklearn.metrics import silhouette_score as sk_silhouette

        scores_df, _ = self.pca_analysis(n_components, scale=scale, top_genes=top_genes)

        labels = self.metadata.loc[scores_df.index, group_col]
        n_labels = labels.nunique()
        if n_labels < 2 or n_labels >= len(labels):
            return float('nan')

        return float(sk_silhouette(scores_df.values, labels))

    def batch_association(self, batch_col: str = 'batch', alpha: float = 0.05) -> pd.DataFrame:
        """
        One-way ANOVA of every gene against batch.

        Returns
        -------
        pd.DataFrame
            F statistic, p-value and significance flag per gene
        """
        labels = self.metadata[batch_col]
        groups = [self.data.loc[:, (labels == b).values].values for b in labels.unique()]

        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            f_stat, pvalues = stats.f_oneway(*groups, axis=1)

        return pd.DataFrame({
            'f_statistic': f_stat,
            'pvalue': pvalues,
            'significant': pvalues < alpha
        }, index=self.data.index)

    def summary_metrics(
        self,
        batch_col: str = 'batch',
        condition_col: str = 'cancer',
        n_components: int = 10,
        alpha: float = 0.05,
        scale: bool = True,
        top_genes: Optional[int] = None
    ) -> Dict[str, float]:
        """Headline batch-effect metrics for one expression matrix."""
        partition = self.variance_partition(batch_col, condition_col)
        association = self.batch_association(batch_col, alpha)

        return {
            'silhouette_batch': self.silhouette_score(batch_col, n_components, scale, top_genes),
            'silhouette_condition': self.silhouette_score(condition_col, n_components, scale, top_genes),
            'batch_associated_genes_pct': float(association['significant'].mean() * 100),
            'median_batch_variance_pct': float(partition['batch_variance_pct'].median()),
            'median_condition_variance_pct': float(partition['condition_variance_pct'].median())
        }


def remove_batch_effect_limma_style(
    data: pd.DataFrame,
    batch: pd.Series,
    covariates: Optional[pd.DataFrame] = None
) -> pd.DataFrame:
    """
    Remove batch effects similar to limma's removeBatchEffect.

    This fits a linear model with batch (and covariates) and removes
    only the batch coefficients.

    Parameters
    ----------
    data : pd.DataFrame
        Normalized expression matrix (genes x samples)
    batch : pd.Series
        Batch labels
    covariates : pd.DataFrame, optional
        Covariate model matrix to preserve

    Returns
    -------
    pd.DataFrame
        Batch-corrected expression
    """
    batch = batch.loc[data.columns]

    # Sum-to-zero batch coding, as in limma
    levels = sorted(batch.unique())
    batch_design = np.zeros((len(batch), len(levels) - 1))
    for j, level in enumerate(levels[:-1]):
        batch_design[:, j] = (batch == level).astype(float)
    batch_design[(batch == levels[-1]).values, :] = -1

    design = [np.ones((len(batch), 1)), batch_design]
    if covariates is not None:
        design.append(covariates.loc[data.columns].values.astype(float))
    design = np.hstack(design)

    Y = data.values.T
    coef, *_ = np.linalg.lstsq(design, Y, rcond=None)

    batch_coef = coef[1:1 + batch_design.shape[1]]
    batch_effect = batch_design @ batch_coef

    return pd.DataFrame(
        (Y - batch_effect).T,
        index=data.index,
        columns=data.columns
    )
