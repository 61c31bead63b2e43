"""
Visualization module for batch-effect plots.
"""

from .plots import (
    pca_scatter_static,
    pca_scatter_interactive,
    sample_boxplot_static,
    variance_explained_static,
    figure_to_base64,
    plotly_to_html
)

__all__ = [
    'pca_scatter_static',
    'pca_scatter_interactive',
    'sample_boxplot_static',
    'variance_explained_static',
    'figure_to_base64',
    'plotly_to_html'
]
