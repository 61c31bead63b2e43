import matplotlib.pyplot as plt
import plotly.graph_objects as go
import pytest

from batch_correction.combat import BatchEffectAnalyzer
from visualization.plots import (
    figure_to_base64,
    pca_scatter_interactive,
    pca_scatter_static,
    plotly_to_html,
    sample_boxplot_static,
    variance_explained_static,
)


@pytest.fixture
def pca(expression, pheno):
    return BatchEffectAnalyzer(expression, pheno).pca_analysis(n_components=5)


def test_pca_scatter_static(pca, pheno):
    scores, ratio = pca
    fig = pca_scatter_static(scores, ratio, pheno, 'batch', 'cancer', title='Raw')

    ax = fig.axes[0]
    assert ax.get_title() == 'Raw'
    assert ax.get_xlabel().startswith('PC1 (')
    plt.close(fig)


def test_pca_scatter_static_unknown_column(pca, pheno):
    scores, ratio = pca
    with pytest.raises(ValueError, match='not found'):
        pca_scatter_static(scores, ratio, pheno, 'smoking')


def test_pca_scatter_interactive(pca, pheno):
    scores, ratio = pca
    fig = pca_scatter_interactive(scores, ratio, pheno, 'batch', 'cancer', title='Raw')

    assert isinstance(fig, go.Figure)
    assert fig.layout.title.text == 'Raw'
    n_points = sum(len(trace.x) for trace in fig.data)
    assert n_points == len(scores)


def test_sample_boxplot_static(expression, pheno):
    fig = sample_boxplot_static(expression, pheno, 'batch')
    assert fig.axes[0].get_xlabel() == 'Samples (ordered by batch)'
    plt.close(fig)


def test_variance_explained_static(pca):
    fig = variance_explained_static(pca[1], title='Variance')
    assert fig.axes[0].get_title() == 'Variance'
    plt.close(fig)


def test_figure_to_base64_closes_figure(pca, pheno):
    scores, ratio = pca
    fig = pca_scatter_static(scores, ratio, pheno)

    uri = figure_to_base64(fig, dpi=40)

    assert uri.startswith('data:image/png;base64,')
    assert not plt.fignum_exists(fig.number)


def test_plotly_to_html_fragment(pca, pheno):
    scores, ratio = pca
    fragment = plotly_to_html(pca_scatter_interactive(scores, ratio, pheno))

    assert fragment.startswith('<div')
    assert '<html' not in fragment
