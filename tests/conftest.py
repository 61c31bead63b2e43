import matplotlib
matplotlib.use('Agg')

import pytest

from preprocessing.data_loader import simulate_expression


@pytest.fixture
def dataset():
    """Small simulated dataset: 200 genes, three batches, 24 samples."""
    return simulate_expression(n_genes=200, batch_sizes=(8, 10, 6), seed=0)


@pytest.fixture
def expression(dataset):
    return dataset.expression


@pytest.fixture
def pheno(dataset):
    return dataset.pheno
