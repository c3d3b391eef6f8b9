"""质控模块单元测试"""

import pytest
import numpy as np
import pandas as pd

from sc_workflow.preprocessing import (
    add_qc_metrics,
    is_outlier,
    compute_qc_metrics_chunked,
    quality_control,
)


class TestIsOutlier:
    """is_outlier 测试"""

    def test_detects_both_sides(self):
        values = np.r_[np.random.default_rng(0).normal(100, 5, size=200), 10, 500]
        outliers = is_outlier(values, nmads=3)

        assert outliers.iloc[-1]
        assert outliers.iloc[-2]
        assert outliers.iloc[:-2].mean() < 0.05

    def test_lower_only(self):
        values = np.r_[np.random.default_rng(0).normal(100, 5, size=200), 10, 500]
        outliers = is_outlier(values, nmads=3, type="lower")

        assert outliers.iloc[-2]
        assert not outliers.iloc[-1]
        lower, upper = outliers.attrs['thresholds']['all']
        assert upper == np.inf
        assert lower < 100

    def test_log_scale_thresholds(self):
        values = np.exp(np.random.default_rng(1).normal(8, 0.2, size=300))
        outliers = is_outlier(values, nmads=3, type="lower", log=True)
        lower, _ = outliers.attrs['thresholds']['all']

        # 阈值以原始尺度返回
        assert 0 < lower < np.median(values)
        assert outliers.sum() == (values < lower).sum()

    def test_batch_thresholds(self):
        rng = np.random.default_rng(2)
        values = np.r_[rng.normal(100, 5, size=100), rng.normal(1000, 50, size=100)]
        batch = np.repeat(["a", "b"], 100)
        outliers = is_outlier(values, nmads=3, batch=batch)

        thresholds = outliers.attrs['thresholds']
        assert set(thresholds) == {"a", "b"}
        assert thresholds["a"][1] < thresholds["b"][0]
        assert outliers.mean() < 0.05

    def test_min_diff_widens_bounds(self):
        values = np.r_[np.full(50, 10.0), 11.0]
        assert is_outlier(values).iloc[-1]
        assert not is_outlier(values, min_diff=2).iloc[-1]

    def test_preserves_index(self):
        values = pd.Series([1.0, 2.0, 3.0], index=["x", "y", "z"])
        assert list(is_outlier(values).index) == ["x", "y", "z"]

    def test_invalid_type(self):
        with pytest.raises(ValueError):
            is_outlier([1.0, 2.0], type="middle")


class TestQcMetrics:
    """add_qc_metrics 与 compute_qc_metrics_chunked 测试"""

    def test_mito_percentage(self, counts_adata):
        add_qc_metrics(counts_adata)
        X = counts_adata.X.toarray()
        expected = X[:, :5].sum(axis=1) / X.sum(axis=1) * 100

        assert counts_adata.var['mt'].sum() == 5
        np.testing.assert_allclose(counts_adata.obs['pct_counts_mt'].values, expected, rtol=1e-5)

    def test_extra_qc_vars(self, counts_adata):
        add_qc_metrics(counts_adata, extra_qc_vars={'gene1x': 'Gene1'})
        assert 'pct_counts_gene1x' in counts_adata.obs.columns

    def test_chunked_matches_full(self, counts_adata):
        add_qc_metrics(counts_adata)
        chunked = compute_qc_metrics_chunked(counts_adata.X, counts_adata.var['mt'].values,
                                             chunk_size=37)

        np.testing.assert_allclose(chunked['total_counts'].values,
                                   counts_adata.obs['total_counts'].values, rtol=1e-5)
        np.testing.assert_array_equal(chunked['n_genes_by_counts'].values,
                                      counts_adata.obs['n_genes_by_counts'].values)
        np.testing.assert_allclose(chunked['pct_counts_mt'].values,
                                   counts_adata.obs['pct_counts_mt'].values, rtol=1e-4)

    def test_chunked_dense_input(self):
        X = np.array([[1.0, 0.0, 3.0], [0.0, 0.0, 0.0]])
        metrics = compute_qc_metrics_chunked(X, [True, False, False], chunk_size=1)

        assert metrics['total_counts'].tolist() == [4.0, 0.0]
        assert metrics['n_genes_by_counts'].tolist() == [2, 0]
        assert metrics['pct_counts_mt'].tolist() == [25.0, 0.0]


class TestQualityControl:
    """quality_control 测试"""

    def test_fixed_thresholds(self, counts_adata):
        filtered, stats = quality_control(
            counts_adata, min_genes=10, max_genes=100000, max_pct_mito=100,
            doublet_method="none", normalize=False
        )

        assert filtered.n_obs == counts_adata.n_obs
        assert list(stats['SampleName']) == ["B1", "B2"]
        assert stats['cells_after_qc'].sum() == filtered.n_obs
        assert 'counts' in filtered.layers
        assert filtered.raw is not None

    def test_min_genes_filters(self, counts_adata):
        add_qc_metrics(counts_adata)
        cutoff = int(counts_adata.obs['n_genes_by_counts'].median())
        filtered, stats = quality_control(
            counts_adata, min_genes=cutoff, max_genes=100000, max_pct_mito=100,
            doublet_method="none", normalize=False
        )

        assert (filtered.obs['n_genes_by_counts'] >= cutoff).all()
        assert stats['n_low_genes'].sum() == counts_adata.n_obs - filtered.n_obs

    def test_adaptive(self, counts_adata):
        filtered = quality_control(counts_adata, adaptive=True, nmads=3,
                                   doublet_method="none", return_stats=False,
                                   normalize=False)

        assert 'low_lib_size' in counts_adata.obs.columns
        assert filtered.n_obs > 0.8 * counts_adata.n_obs

    def test_normalize_log_transforms(self, counts_adata):
        filtered, _ = quality_control(counts_adata, min_genes=10, max_genes=100000,
                                      max_pct_mito=100, doublet_method="none")
        assert filtered.X.max() < 20
        assert filtered.layers['counts'].max() > 20

    def test_missing_batch_key_added(self, counts_adata):
        del counts_adata.obs['SampleName']
        _, stats = quality_control(counts_adata, min_genes=10, max_genes=100000,
                                   max_pct_mito=100, doublet_method="none", normalize=False)
        assert list(stats['SampleName']) == ['sample']

    def test_unknown_doublet_method(self, counts_adata):
        with pytest.raises(ValueError):
            quality_control(counts_adata, doublet_method="magic")
