"""
Preprocessing module for expression datasets.
"""

from .data_loader import (
    ExpressionDataset,
    ExpressionDataLoader,
    simulate_expression,
    summarize_design,
    subset_samples,
    top_variable_genes,
    build_model_matrix
)

__all__ = [
    'ExpressionDataset',
    'ExpressionDataLoader',
    'simulate_expression',
    'summarize_design',
    'subset_samples',
    'top_variable_genes',
    'build_model_matrix'
]
