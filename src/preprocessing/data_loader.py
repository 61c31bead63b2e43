"""
Expression Dataset Loader
=========================
bladderbatch: bladder cancer microarray samples processed in five batches

This module handles:
1. Loading a named expression dataset (bundled files or simulated)
2. Aligning the phenotype table to the expression matrix
3. Design summaries and sample/gene subsetting
4. Covariate model matrices for batch correction
"""

import pandas as pd
import numpy as np
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence
import logging

logger = logging.getLogger(__name__)

REQUIRED_PHENO_COLUMNS = ['batch', 'cancer']

CANCER_OUTCOMES = ['mTCC', 'sTCC-CIS', 'sTCC+CIS']


@dataclass
class ExpressionDataset:
    """Expression matrix (genes x samples) with its phenotype table."""
    name: str
    expression: pd.DataFrame
    pheno: pd.DataFrame
    description: str = ""

    @property
    def n_genes(self) -> int:
        return self.expression.shape[0]

    @property
    def n_samples(self) -> int:
        return self.expression.shape[1]

    @property
    def batches(self) -> List:
        return sorted(self.pheno['batch'].unique().tolist())


def _read_table(path: Path, index_col: int = 0) -> pd.DataFrame:
    """Read a TSV or CSV table, choosing the separator from the suffix."""
    if not path.exists():
        raise FileNotFoundError(f"Dataset file not found: {path}")

    suffixes = [s.lower() for s in path.suffixes]
    sep = ',' if '.csv' in suffixes else '\t'

    return pd.read_csv(path, sep=sep, index_col=index_col)


def simulate_expression(
    n_genes: int = 2000,
    batch_sizes: Sequence[int] = (11, 18, 4, 5, 19),
    seed: int = 42,
    batch_shift: float = 1.0,
    batch_scale: float = 0.5,
    cancer_effect: float = 2.0,
    cancer_gene_fraction: float = 0.1
) -> ExpressionDataset:
    """
    Generate a log-intensity dataset with known batch and cancer structure.

    Each gene gets a baseline level, an additive shift and a multiplicative
    scale per batch, and a subset of genes is shifted in cancer samples.
    Every batch holds more than one cancer status so that a cancer covariate
    is never confounded with batch.

    Parameters
    ----------
    n_genes : int
        Number of genes (rows)
    batch_sizes : Sequence[int]
        Number of samples in each batch; batches are labelled 1..n
    seed : int
        Random seed
    batch_shift : float
        Standard deviation of the per-gene additive batch effect
    batch_scale : float
        Spread of the per-gene multiplicative batch effect (log-normal sigma)
    cancer_effect : float
        Mean shift of cancer-associated genes in cancer samples
    cancer_gene_fraction : float
        Fraction of genes carrying the cancer signal

    Returns
    -------
    ExpressionDataset
        Simulated dataset named ``simulated``
    """
    if len(batch_sizes) < 2:
        raise ValueError("At least two batches are required")
    if min(batch_sizes) < 2:
        raise ValueError("Every batch needs at least two samples")

    rng = np.random.default_rng(seed)
    statuses = ['Cancer', 'Normal', 'Biopsy']

    pheno_rows = []
    for batch_idx, size in enumerate(batch_sizes, start=1):
        # Cancer dominates, as in the bladder study; rotate so small batches stay mixed
        pattern = [statuses[(batch_idx + i) % 3] if i % 2 else 'Cancer' for i in range(size)]
        for status in pattern:
            if status == 'Cancer':
                outcome = CANCER_OUTCOMES[rng.integers(len(CANCER_OUTCOMES))]
            else:
                outcome = status
            pheno_rows.append({'batch': batch_idx, 'cancer': status, 'outcome': outcome})

    pheno = pd.DataFrame(pheno_rows)
    pheno.index = [f"sample_{i + 1:02d}" for i in range(len(pheno))]
    pheno.index.name = 'sample_id'
    pheno.insert(0, 'sample', np.arange(1, len(pheno) + 1))

    n_samples = len(pheno)
    genes = [f"gene_{i + 1:05d}" for i in range(n_genes)]

    baseline = rng.normal(7.0, 1.5, size=(n_genes, 1))
    noise = rng.normal(0.0, 0.5, size=(n_genes, n_samples))
    data = baseline + noise

    cancer_mask = (pheno['cancer'] == 'Cancer').values
    n_cancer_genes = max(1, int(n_genes * cancer_gene_fraction))
    data[:n_cancer_genes, cancer_mask] += rng.normal(
        cancer_effect, 0.25, size=(n_cancer_genes, 1)
    )

    batch_values = pheno['batch'].values
    for batch_id in np.unique(batch_values):
        mask = batch_values == batch_id
        shift = rng.normal(0.0, batch_shift, size=(n_genes, 1))
        scale = rng.lognormal(0.0, batch_scale, size=(n_genes, 1))
        centre = data[:, mask].mean(axis=1, keepdims=True)
        data[:, mask] = centre + (data[:, mask] - centre) * scale + shift

    expression = pd.DataFrame(data, index=genes, columns=pheno.index)
    expression.index.name = 'gene'

    return ExpressionDataset(
        name='simulated',
        expression=expression,
        pheno=pheno,
        description=(
            f"Simulated log-intensities: {n_genes} genes, {n_samples} samples, "
            f"{len(batch_sizes)} batches"
        )
    )


def align_pheno(expression: pd.DataFrame, pheno: pd.DataFrame) -> pd.DataFrame:
    """
    Validate the phenotype table and reorder it to the expression columns.

    Raises
    ------
    ValueError
        If required columns are missing or expression samples lack phenotype rows
    """
    missing_cols = [c for c in REQUIRED_PHENO_COLUMNS if c not in pheno.columns]
    if missing_cols:
        raise ValueError(f"Phenotype table is missing columns: {missing_cols}")

    pheno_ids = pheno.index.astype(str)
    pheno = pheno.copy()
    pheno.index = pheno_ids

    samples = expression.columns.astype(str)
    missing_samples = [s for s in samples if s not in pheno.index]
    if missing_samples:
        raise ValueError(
            f"{len(missing_samples)} expression samples have no phenotype row "
            f"(e.g. {missing_samples[:3]})"
        )

    return pheno.loc[samples]


def _as_numeric_matrix(expression: pd.DataFrame) -> pd.DataFrame:
    non_numeric = [c for c in expression.columns if not pd.api.types.is_numeric_dtype(expression[c])]
    if non_numeric:
        raise ValueError(f"Expression matrix has non-numeric columns: {non_numeric[:5]}")
    return expression.astype(float)


class ExpressionDataLoader:
    """Load expression datasets by name."""

    BLADDERBATCH_FILES = {
        'expression': ['bladderbatch_expression.tsv.gz', 'bladderbatch_expression.tsv'],
        'pheno': ['bladderbatch_pheno.tsv']
    }

    def __init__(
        self,
        data_dir: str,
        registry: Optional[Dict[str, dict]] = None,
        simulated_params: Optional[dict] = None
    ):
        """
        Initialize loader.

        Parameters
        ----------
        data_dir : str
            Directory holding bundled dataset files
        registry : dict, optional
            Extra datasets: name -> {'expression': path, 'pheno': path, 'description': str}
        simulated_params : dict, optional
            Default keyword arguments for the ``simulated`` dataset
        """
        self.data_dir = Path(data_dir)
        self.registry = dict(registry or {})
        self.simulated_params = dict(simulated_params or {})

        self._builtin: Dict[str, Callable[..., ExpressionDataset]] = {
            'bladderbatch': self._load_bladderbatch,
            'simulated': self._load_simulated,
        }

    def available_datasets(self) -> List[str]:
        """Names that can be passed to :meth:`load`."""
        return sorted(set(self._builtin) | set(self.registry))

    def load(self, name: str, **overrides) -> ExpressionDataset:
        """Load a dataset by name and validate it."""
        logger.info(f"Loading dataset '{name}'")

        if name in self.registry:
            dataset = self._load_from_files(name, self.registry[name])
        elif name in self._builtin:
            dataset = self._builtin[name](**overrides)
        else:
            raise KeyError(
                f"Unknown dataset '{name}'. Available: {', '.join(self.available_datasets())}"
            )

        expression = _as_numeric_matrix(dataset.expression)
        expression.columns = expression.columns.astype(str)
        pheno = align_pheno(expression, dataset.pheno)

        dataset = ExpressionDataset(
            name=dataset.name,
            expression=expression,
            pheno=pheno,
            description=dataset.description
        )

        logger.info(f"Loaded {dataset.n_genes} genes x {dataset.n_samples} samples "
                    f"in {len(dataset.batches)} batches")
        return dataset

    def _find_file(self, candidates: List[str]) -> Path:
        for filename in candidates:
            path = self.data_dir / filename
            if path.exists():
                return path
        raise FileNotFoundError(
            f"None of {candidates} found in {self.data_dir}"
        )

    def _load_bladderbatch(self) -> ExpressionDataset:
        expression_path = self._find_file(self.BLADDERBATCH_FILES['expression'])
        pheno_path = self._find_file(self.BLADDERBATCH_FILES['pheno'])

        expression = _read_table(expression_path)
        pheno = _read_table(pheno_path)

        return ExpressionDataset(
            name='bladderbatch',
            expression=expression,
            pheno=pheno,
            description="Bladder cancer microarray (bladderbatch), RMA log2 intensities"
        )

    def _load_simulated(self, **overrides) -> ExpressionDataset:
        params = {**self.simulated_params, **overrides}
        if 'batch_sizes' in params:
            params['batch_sizes'] = tuple(params['batch_sizes'])
        return simulate_expression(**params)

    def _load_from_files(self, name: str, entry: dict) -> ExpressionDataset:
        for key in ('expression', 'pheno'):
            if key not in entry:
                raise ValueError(f"Dataset '{name}' registry entry needs '{key}'")

        expression_path = Path(entry['expression'])
        pheno_path = Path(entry['pheno'])
        if not expression_path.is_absolute():
            expression_path = self.data_dir / expression_path
        if not pheno_path.is_absolute():
            pheno_path = self.data_dir / pheno_path

        return ExpressionDataset(
            name=name,
            expression=_read_table(expression_path),
            pheno=_read_table(pheno_path),
            description=entry.get('description', '')
        )


def summarize_design(dataset: ExpressionDataset) -> pd.DataFrame:
    """Batch x cancer status sample counts, with totals."""
    table = pd.crosstab(
        dataset.pheno['batch'],
        dataset.pheno['cancer'],
        margins=True,
        margins_name='Total'
    )
    return table


def subset_samples(
    dataset: ExpressionDataset,
    batches: Optional[Sequence] = None,
    cancer: Optional[Sequence[str]] = None
) -> ExpressionDataset:
    """
    Keep only samples from the given batches and/or cancer statuses.

    Raises
    ------
    ValueError
        If no samples remain
    """
    keep = pd.Series(True, index=dataset.pheno.index)
    if batches is not None:
        keep &= dataset.pheno['batch'].isin(list(batches))
    if cancer is not None:
        keep &= dataset.pheno['cancer'].isin(list(cancer))

    samples = keep[keep].index
    if len(samples) == 0:
        raise ValueError(f"No samples left after subsetting (batches={batches}, cancer={cancer})")

    logger.info(f"Subset samples: {dataset.n_samples} -> {len(samples)}")

    return ExpressionDataset(
        name=dataset.name,
        expression=dataset.expression.loc[:, samples],
        pheno=dataset.pheno.loc[samples],
        description=dataset.description
    )


def top_variable_genes(expression: pd.DataFrame, n: Optional[int]) -> pd.DataFrame:
    """Rows with the highest variance across samples, in original order."""
    if n is None or n >= expression.shape[0]:
        return expression

    variances = expression.var(axis=1)
    top = variances.nlargest(n).index
    return expression.loc[expression.index.isin(top)]


def build_model_matrix(pheno: pd.DataFrame, covariates: Optional[List[str]]) -> Optional[pd.DataFrame]:
    """
    Treatment-coded covariate matrix without intercept.

    Categorical columns become dummies with the first level dropped;
    numeric columns are kept as-is.
    """
    if not covariates:
        return None

    missing = [c for c in covariates if c not in pheno.columns]
    if missing:
        raise ValueError(f"Covariates not in phenotype table: {missing}")

    frame = pheno[covariates].copy()
    categorical = [c for c in covariates if not pd.api.types.is_numeric_dtype(frame[c])]
    for col in categorical:
        frame[col] = pd.Categorical(frame[col], categories=sorted(frame[col].unique()))

    design = pd.get_dummies(frame, columns=categorical, drop_first=True)
    return design.astype(float)
