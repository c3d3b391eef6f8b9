"""高变基因选择单元测试"""

import pytest
import numpy as np
import pandas as pd

from sc_workflow.feature_selection import (
    fit_trend_var,
    model_gene_var,
    get_top_hvgs,
    select_features,
)
from sc_workflow.preprocessing import log_norm_counts, library_size_factors
from tests.fixtures import marker_genes, create_counts_adata


class TestFitTrendVar:
    """fit_trend_var 测试"""

    def test_follows_parametric_curve(self):
        means = np.linspace(0.2, 5, 200)
        variances = 2 * means / (means + 1)
        trend = fit_trend_var(means, variances)

        np.testing.assert_allclose(trend(means), variances, rtol=0.05)

    def test_linear_below_range(self):
        means = np.linspace(0.5, 5, 100)
        trend = fit_trend_var(means, means / (means + 1))
        low = trend(np.array([0.0, 0.1, 0.25]))

        assert low[0] == 0
        assert low[2] == pytest.approx(2.5 * low[1])

    def test_non_negative(self):
        rng = np.random.default_rng(0)
        means = rng.uniform(0.1, 5, 100)
        trend = fit_trend_var(means, rng.uniform(0.01, 1, 100))
        assert np.all(trend(np.linspace(0, 10, 50)) >= 0)

    def test_too_few_genes(self):
        with pytest.raises(ValueError):
            fit_trend_var(np.array([0.5, 1.0]), np.array([0.1, 0.2]))


class TestModelGeneVar:
    """model_gene_var 测试"""

    def test_decomposition(self, lognorm_adata):
        stats = model_gene_var(lognorm_adata)

        assert list(stats.columns) == ['mean', 'total', 'tech', 'bio', 'p_value', 'FDR']
        assert list(stats.index) == list(lognorm_adata.var_names)
        np.testing.assert_allclose(stats['bio'], stats['total'] - stats['tech'])
        assert (stats['tech'] >= 0).all()

    def test_markers_have_high_bio(self):
        adata = create_counts_adata(n_genes=600)
        log_norm_counts(adata, library_size_factors(adata.layers['counts']))
        stats = model_gene_var(adata)
        markers = [g for genes in marker_genes().values() for g in genes]
        top = stats.sort_values('bio', ascending=False).index[:len(markers)]

        assert len(set(top) & set(markers)) >= 0.7 * len(markers)
        assert stats.loc[markers, 'FDR'].median() < 0.05

    def test_block(self, lognorm_adata):
        stats = model_gene_var(lognorm_adata, block='SampleName')
        assert stats['p_value'].between(0, 1).all()

    def test_block_missing_column(self, lognorm_adata):
        with pytest.raises(ValueError):
            model_gene_var(lognorm_adata, block='nope')

    def test_poisson(self, lognorm_adata):
        stats = model_gene_var(lognorm_adata, poisson=True)
        assert (stats['tech'] >= 0).all()
        assert stats['tech'].notna().all()

    def test_poisson_requires_counts(self, lognorm_adata):
        del lognorm_adata.layers['counts']
        with pytest.raises(ValueError):
            model_gene_var(lognorm_adata, poisson=True)


class TestGetTopHvgs:
    """get_top_hvgs 测试"""

    @pytest.fixture
    def stats(self):
        return pd.DataFrame({
            'bio': [0.5, -0.1, 2.0, 1.0, 0.0],
            'FDR': [0.01, 0.5, 0.2, 0.001, 0.9]
        }, index=list("abcde"))

    def test_positive_bio_sorted(self, stats):
        assert get_top_hvgs(stats) == ["c", "d", "a"]

    def test_n(self, stats):
        assert get_top_hvgs(stats, n=2) == ["c", "d"]

    def test_prop(self, stats):
        assert get_top_hvgs(stats, prop=0.2) == ["c"]

    def test_fdr_threshold(self, stats):
        assert get_top_hvgs(stats, fdr_threshold=0.05) == ["d", "a"]

    def test_no_threshold(self, stats):
        assert len(get_top_hvgs(stats, var_threshold=None)) == 5

    def test_invalid_n(self, stats):
        with pytest.raises(ValueError):
            get_top_hvgs(stats, n=0)

    def test_missing_field(self, stats):
        with pytest.raises(ValueError):
            get_top_hvgs(stats, var_field="total")


class TestSelectFeatures:
    """select_features 测试"""

    def test_modelgenevar(self, lognorm_adata):
        genes = select_features(lognorm_adata, n_top=20)

        assert len(genes) == 20
        assert lognorm_adata.var['highly_variable'].sum() == 20
        for col in ('hvg_mean', 'hvg_total', 'hvg_tech', 'hvg_bio', 'hvg_FDR'):
            assert col in lognorm_adata.var.columns

    def test_with_batch(self, lognorm_adata):
        genes = select_features(lognorm_adata, n_top=30, batch_key='SampleName')
        assert set(genes) <= set(lognorm_adata.var_names)

    def test_unknown_method(self, lognorm_adata):
        with pytest.raises(ValueError):
            select_features(lognorm_adata, method="magic")
