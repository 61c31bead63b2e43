import numpy as np
import pandas as pd
import pytest

from batch_correction.combat import (
    BatchEffectAnalyzer,
    ComBat,
    ComBatParameters,
    remove_batch_effect_limma_style,
    run_variants,
)
from preprocessing.data_loader import build_model_matrix


def _significant_pct(data, pheno):
    return BatchEffectAnalyzer(data, pheno).batch_association('batch')['significant'].mean()


def test_combat_preserves_layout(expression, pheno):
    corrected = ComBat(expression, pheno['batch']).fit_transform()

    assert corrected.shape == expression.shape
    assert list(corrected.index) == list(expression.index)
    assert list(corrected.columns) == list(expression.columns)
    assert np.isfinite(corrected.values).all()


def test_combat_reduces_batch_association(expression, pheno):
    corrected = ComBat(expression, pheno['batch']).fit_transform()
    assert _significant_pct(corrected, pheno) < _significant_pct(expression, pheno)


def test_combat_aligns_batch_to_columns(expression, pheno):
    shuffled_batch = pheno['batch'].sample(frac=1.0, random_state=1)
    a = ComBat(expression, pheno['batch']).fit_transform()
    b = ComBat(expression, shuffled_batch).fit_transform()
    pd.testing.assert_frame_equal(a, b)


def test_combat_with_covariates(expression, pheno):
    design = build_model_matrix(pheno, ['cancer'])
    corrected = ComBat(expression, pheno['batch'], covariates=design).fit_transform()
    assert corrected.shape == expression.shape


def test_combat_reference_batch_unchanged(expression, pheno):
    corrected = ComBat(expression, pheno['batch'], ref_batch=1).fit_transform()

    ref_samples = pheno.index[pheno['batch'] == 1]
    np.testing.assert_allclose(
        corrected[ref_samples].values, expression[ref_samples].values, atol=1e-8
    )


def test_combat_reference_batch_unchanged_with_covariates(expression, pheno):
    design = build_model_matrix(pheno, ['cancer'])
    corrected = ComBat(expression, pheno['batch'], covariates=design, ref_batch=1).fit_transform()

    ref_samples = pheno.index[pheno['batch'] == 1]
    other_samples = pheno.index[pheno['batch'] != 1]
    np.testing.assert_allclose(
        corrected[ref_samples].values, expression[ref_samples].values, atol=1e-8
    )
    assert not np.allclose(corrected[other_samples].values, expression[other_samples].values)


def test_combat_unknown_reference_batch(expression, pheno):
    with pytest.raises(ValueError, match='Reference batch'):
        ComBat(expression, pheno['batch'], ref_batch=42)


def test_combat_needs_two_batches(expression, pheno):
    single = pd.Series(1, index=pheno.index)
    with pytest.raises(ValueError, match='two batches'):
        ComBat(expression, single)


def test_combat_single_sample_batch(expression, pheno):
    batch = pheno['batch'].copy()
    batch.iloc[0] = 9
    with pytest.raises(ValueError, match='single sample'):
        ComBat(expression, batch)


def test_combat_single_sample_batch_rejected_with_mean_only(expression, pheno):
    batch = pheno['batch'].copy()
    batch.iloc[0] = 9
    with pytest.raises(ValueError, match='single sample'):
        ComBat(expression, batch, mean_only=True)


def test_combat_missing_batch_label(expression, pheno):
    with pytest.raises(ValueError, match='No batch label'):
        ComBat(expression, pheno['batch'].iloc[1:])


def test_combat_constant_gene_passes_through(expression, pheno):
    data = expression.copy()
    data.loc['gene_00010'] = 5.0

    corrected = ComBat(data, pheno['batch']).fit_transform()

    assert list(corrected.index) == list(data.index)
    assert (corrected.loc['gene_00010'] == 5.0).all()


def test_run_variants(expression, pheno):
    variants = [
        ComBatParameters(name='plain'),
        ComBatParameters(name='covariate', covariates=['cancer']),
        ComBatParameters(name='mean_only', covariates=['cancer'], mean_only=True),
    ]

    results = run_variants(expression, pheno, variants)

    assert list(results) == ['plain', 'covariate', 'mean_only']
    for corrected in results.values():
        assert corrected.shape == expression.shape
    assert not np.allclose(results['plain'].values, results['mean_only'].values)


def test_run_variants_duplicate_names(expression, pheno):
    with pytest.raises(ValueError, match='Duplicate'):
        run_variants(expression, pheno, [ComBatParameters(name='a'), ComBatParameters(name='a')])


def test_parameters_from_dict():
    params = ComBatParameters.from_dict({'name': 'ref', 'covariates': ['cancer'], 'ref_batch': 1})
    assert params.label == 'ref'
    assert params.describe() == {
        'Covariates': 'cancer',
        'Reference batch': '1',
        'Priors': 'parametric',
        'Adjustment': 'mean and variance',
    }


def test_parameters_from_dict_rejects_unknown_keys():
    with pytest.raises(ValueError, match='Unknown'):
        ComBatParameters.from_dict({'name': 'x', 'shrink': True})
    with pytest.raises(ValueError, match='name'):
        ComBatParameters.from_dict({'covariates': ['cancer']})


def test_pca_analysis_clamps_components(expression, pheno):
    scores, ratio = BatchEffectAnalyzer(expression, pheno).pca_analysis(n_components=50)

    assert scores.shape == (24, 24)
    assert list(scores.index) == list(expression.columns)
    assert len(ratio) == 24
    assert ratio[0] >= ratio[1]


def test_pca_analysis_top_genes_unscaled(expression, pheno):
    scores, ratio = BatchEffectAnalyzer(expression, pheno).pca_analysis(
        n_components=3, scale=False, top_genes=20
    )
    assert list(scores.columns) == ['PC1', 'PC2', 'PC3']
    assert ratio.sum() <= 1.0 + 1e-9


def test_silhouette_single_group_is_nan(expression, pheno):
    metadata = pheno.assign(group='all')
    score = BatchEffectAnalyzer(expression, metadata).silhouette_score('group')
    assert np.isnan(score)


def test_silhouette_batch_drops_after_combat(expression, pheno):
    before = BatchEffectAnalyzer(expression, pheno).silhouette_score('batch')
    corrected = ComBat(expression, pheno['batch']).fit_transform()
    after = BatchEffectAnalyzer(corrected, pheno).silhouette_score('batch')
    assert after < before


def test_silhouette_follows_pca_settings(expression, pheno):
    from sklearn.metrics import silhouette_score as sk_silhouette

    analyzer = BatchEffectAnalyzer(expression, pheno)
    scores, _ = analyzer.pca_analysis(5, scale=False, top_genes=20)
    expected = sk_silhouette(scores.values, pheno.loc[scores.index, 'batch'])

    score = analyzer.silhouette_score('batch', 5, scale=False, top_genes=20)

    assert score == pytest.approx(expected)
    assert score != pytest.approx(analyzer.silhouette_score('batch', 5))


def test_summary_metrics_use_pca_settings(expression, pheno):
    analyzer = BatchEffectAnalyzer(expression, pheno)
    metrics = analyzer.summary_metrics(n_components=5, scale=False, top_genes=20)
    assert metrics['silhouette_batch'] == pytest.approx(
        analyzer.silhouette_score('batch', 5, scale=False, top_genes=20)
    )


def test_variance_partition(expression, pheno):
    partition = BatchEffectAnalyzer(expression, pheno).variance_partition(max_genes=50)

    assert len(partition) == 50
    assert partition['batch_variance_pct'].between(0, 100).all()
    assert partition['condition_variance_pct'].between(0, 100).all()


def test_batch_association(expression, pheno):
    association = BatchEffectAnalyzer(expression, pheno).batch_association('batch', alpha=0.01)

    assert list(association.columns) == ['f_statistic', 'pvalue', 'significant']
    assert list(association.index) == list(expression.index)
    assert association['pvalue'].between(0, 1).all()


def test_summary_metrics_keys(expression, pheno):
    metrics = BatchEffectAnalyzer(expression, pheno).summary_metrics()
    assert set(metrics) == {
        'silhouette_batch',
        'silhouette_condition',
        'batch_associated_genes_pct',
        'median_batch_variance_pct',
        'median_condition_variance_pct',
    }


def test_limma_style_equalizes_batch_means(expression, pheno):
    corrected = remove_batch_effect_limma_style(expression, pheno['batch'])

    batch_means = corrected.T.groupby(pheno['batch'].values).mean()
    np.testing.assert_allclose(batch_means.std(axis=0).values, 0, atol=1e-8)


def test_limma_style_with_covariates(expression, pheno):
    design = build_model_matrix(pheno, ['cancer'])
    corrected = remove_batch_effect_limma_style(expression, pheno['batch'], covariates=design)
    assert corrected.shape == expression.shape
    assert _significant_pct(corrected, pheno) < _significant_pct(expression, pheno)
