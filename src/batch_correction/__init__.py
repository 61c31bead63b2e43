"""
Batch correction module for expression analysis.
"""

from .combat import (
    ComBat,
    ComBatParameters,
    BatchEffectAnalyzer,
    run_variants,
    remove_batch_effect_limma_style
)

__all__ = [
    'ComBat',
    'ComBatParameters',
    'BatchEffectAnalyzer',
    'run_variants',
    'remove_batch_effect_limma_style'
]
