"""
Batch Effect Visualizations
===========================

Static (matplotlib/seaborn) and interactive (plotly) figures for the report:
1. PCA scatter colored by batch, styled by cancer status
2. Per-sample intensity boxplots colored by batch
3. Explained variance per principal component

Static figures are embedded as base64 PNG; interactive ones as plotly divs.
"""

import base64
import io
import logging
from typing import List, Optional

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import seaborn as sns
import plotly.express as px
import plotly.graph_objects as go

logger = logging.getLogger(__name__)

HOVER_COLUMNS = ['batch', 'cancer', 'outcome']


def _axis_label(pc: str, variance_ratio: np.ndarray) -> str:
    idx = int(pc.replace('PC', '')) - 1
    if idx < len(variance_ratio):
        return f"{pc} ({variance_ratio[idx] * 100:.1f}%)"
    return pc


def _plot_frame(scores: pd.DataFrame, pheno: pd.DataFrame, columns: List[str]) -> pd.DataFrame:
    """PCA scores joined with phenotype columns; labels as strings for discrete colors."""
    missing = [c for c in columns if c not in pheno.columns]
    if missing:
        raise ValueError(f"Phenotype columns not found: {missing}")

    frame = scores.join(pheno.loc[scores.index, columns])
    for col in columns:
        frame[col] = frame[col].astype(str)
    frame['sample'] = scores.index.astype(str)
    return frame


def pca_scatter_static(
    scores: pd.DataFrame,
    variance_ratio: np.ndarray,
    pheno: pd.DataFrame,
    color_by: str = 'batch',
    style_by: Optional[str] = 'cancer',
    title: str = 'PCA',
    pcs: tuple = ('PC1', 'PC2')
) -> plt.Figure:
    """
    Scatter of two principal components.

    Parameters
    ----------
    scores : pd.DataFrame
        PCA scores indexed by sample
    variance_ratio : np.ndarray
        Explained variance ratio per component
    pheno : pd.DataFrame
        Sample phenotype table
    color_by : str
        Phenotype column used for hue
    style_by : str, optional
        Phenotype column used for marker style
    title : str
        Plot title
    pcs : tuple
        Components on the x and y axes

    Returns
    -------
    plt.Figure
    """
    columns = [color_by] + ([style_by] if style_by and style_by != color_by else [])
    frame = _plot_frame(scores, pheno, columns)

    fig, ax = plt.subplots(figsize=(7, 5.5))
    sns.scatterplot(
        data=frame,
        x=pcs[0],
        y=pcs[1],
        hue=color_by,
        hue_order=sorted(frame[color_by].unique()),
        style=style_by if style_by else None,
        palette='Set1',
        s=70,
        edgecolor='black',
        linewidth=0.4,
        ax=ax
    )
    ax.set_xlabel(_axis_label(pcs[0], variance_ratio))
    ax.set_ylabel(_axis_label(pcs[1], variance_ratio))
    ax.set_title(title)
    ax.legend(bbox_to_anchor=(1.02, 1), loc='upper left', fontsize=8, frameon=False)
    fig.tight_layout()

    return fig


def pca_scatter_interactive(
    scores: pd.DataFrame,
    variance_ratio: np.ndarray,
    pheno: pd.DataFrame,
    color_by: str = 'batch',
    style_by: Optional[str] = 'cancer',
    title: str = 'PCA',
    pcs: tuple = ('PC1', 'PC2')
) -> go.Figure:
    """Plotly version of :func:`pca_scatter_static` with per-sample hover."""
    hover = [c for c in HOVER_COLUMNS if c in pheno.columns]
    columns = list(dict.fromkeys([color_by] + ([style_by] if style_by else []) + hover))
    frame = _plot_frame(scores, pheno, columns)

    fig = px.scatter(
        frame,
        x=pcs[0],
        y=pcs[1],
        color=color_by,
        symbol=style_by,
        hover_name='sample',
        hover_data=hover,
        category_orders={color_by: sorted(frame[color_by].unique())},
        color_discrete_sequence=px.colors.qualitative.Set1,
        title=title
    )
    fig.update_traces(marker=dict(size=10, line=dict(width=0.5, color='black')))
    fig.update_layout(
        xaxis_title=_axis_label(pcs[0], variance_ratio),
        yaxis_title=_axis_label(pcs[1], variance_ratio),
        template='plotly_white',
        legend_title_text=color_by if not style_by else f"{color_by}, {style_by}",
        height=500,
        margin=dict(t=60, b=50, l=50, r=30)
    )
    return fig


def sample_boxplot_static(
    expression: pd.DataFrame,
    pheno: pd.DataFrame,
    color_by: str = 'batch',
    title: str = 'Sample intensity distributions'
) -> plt.Figure:
    """Per-sample boxplots ordered by batch, boxes filled by batch color."""
    order = pheno.loc[expression.columns].sort_values(color_by).index
    labels = pheno.loc[order, color_by].astype(str)
    levels = sorted(labels.unique())
    palette = dict(zip(levels, sns.color_palette('Set1', len(levels))))

    fig, ax = plt.subplots(figsize=(max(8, len(order) * 0.18), 4))
    bp = ax.boxplot(
        [expression[s].values for s in order],
        patch_artist=True,
        showfliers=False,
        widths=0.7
    )
    for box, label in zip(bp['boxes'], labels):
        box.set_facecolor(palette[label])
        box.set_linewidth(0.5)

    ax.set_xticks([])
    ax.set_xlabel('Samples (ordered by batch)')
    ax.set_ylabel('Expression')
    ax.set_title(title)

    handles = [plt.Rectangle((0, 0), 1, 1, color=palette[lv]) for lv in levels]
    ax.legend(handles, levels, title=color_by, bbox_to_anchor=(1.01, 1),
              loc='upper left', fontsize=8, frameon=False)
    fig.tight_layout()

    return fig


def variance_explained_static(
    variance_ratio: np.ndarray,
    title: str = 'Explained variance'
) -> plt.Figure:
    fig, ax = plt.subplots(figsize=(6, 3.5))
    components = np.arange(1, len(variance_ratio) + 1)

    ax.bar(components, variance_ratio * 100, color='steelblue')
    ax.plot(components, np.cumsum(variance_ratio) * 100, color='coral', marker='o', label='Cumulative')
    ax.set_xticks(components)
    ax.set_xlabel('Principal component')
    ax.set_ylabel('Variance explained (%)')
    ax.set_title(title)
    ax.legend(frameon=False)
    fig.tight_layout()

    return fig


def figure_to_base64(fig: plt.Figure, dpi: int = 110) -> str:
    """Render a matplotlib figure to a PNG data URI and close it."""
    buffer = io.BytesIO()
    try:
        fig.savefig(buffer, format='png', dpi=dpi, bbox_inches='tight')
    finally:
        plt.close(fig)

    encoded = base64.b64encode(buffer.getvalue()).decode('ascii')
    return f"data:image/png;base64,{encoded}"


def plotly_to_html(fig: go.Figure, include_plotlyjs=False) -> str:
    """Plotly figure as an embeddable <div> fragment."""
    return fig.to_html(full_html=False, include_plotlyjs=include_plotlyjs)
