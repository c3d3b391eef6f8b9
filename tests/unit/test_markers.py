"""marker 基因检测单元测试"""

import pytest
import numpy as np
import pandas as pd

from sc_workflow.markers import (
    pairwise_tests,
    combine_markers,
    find_markers,
    rank_markers,
    score_markers,
)
from tests.fixtures import marker_genes


@pytest.fixture
def toy_pairwise():
    """两个基因、分组 a 对 b / c 的比较结果"""
    genes = ["g1", "g2"]
    return {
        ("a", "b"): pd.DataFrame({'p.value': [0.01, 0.5], 'logFC': [1.0, 2.0]}, index=genes),
        ("a", "c"): pd.DataFrame({'p.value': [0.04, 0.2], 'logFC': [3.0, 4.0]}, index=genes),
    }


class TestPairwiseTests:
    """pairwise_tests 测试"""

    @pytest.mark.parametrize("test,effect,cutoff", [
        ("t", "logFC", 1e-3), ("wilcox", "AUC", 1e-3), ("binom", "logFC", 0.05)
    ])
    def test_planted_markers(self, lognorm_adata, test, effect, cutoff):
        X = lognorm_adata.layers['logcounts']
        labels = lognorm_adata.obs['true_cluster'].values
        result = pairwise_tests(X, labels, lognorm_adata.var_names, test=test, direction="up")

        assert len(result) == 6
        table = result[("1", "2")]
        assert list(table.columns) == ['p.value', effect]
        markers = marker_genes()["1"]
        assert table.loc[markers, 'p.value'].median() < cutoff
        assert table['p.value'].between(0, 1).all()

    def test_direction_down(self, lognorm_adata):
        X = lognorm_adata.layers['logcounts']
        labels = lognorm_adata.obs['true_cluster'].values
        result = pairwise_tests(X, labels, lognorm_adata.var_names, direction="down")

        markers = marker_genes()["1"]
        # 分组 1 的 marker 在 2 vs 1 中下调
        assert result[("2", "1")].loc[markers, 'p.value'].median() < 1e-3
        assert result[("1", "2")].loc[markers, 'p.value'].min() > 0.5

    def test_lfc_threshold_weakens(self, lognorm_adata):
        X = lognorm_adata.layers['logcounts']
        labels = lognorm_adata.obs['true_cluster'].values
        plain = pairwise_tests(X, labels, lognorm_adata.var_names, direction="up")
        treat = pairwise_tests(X, labels, lognorm_adata.var_names, direction="up", lfc=1)

        markers = marker_genes()["1"]
        assert (treat[("1", "2")].loc[markers, 'p.value'].values
                >= plain[("1", "2")].loc[markers, 'p.value'].values - 1e-12).all()

    @pytest.mark.parametrize("test", ["t", "wilcox", "binom"])
    def test_gene_chunks_match(self, lognorm_adata, test):
        X = lognorm_adata.layers['logcounts']
        labels = lognorm_adata.obs['true_cluster'].values
        genes = lognorm_adata.var_names
        whole = pairwise_tests(X, labels, genes, test=test, chunk_size=len(genes))
        chunked = pairwise_tests(X, labels, genes, test=test, chunk_size=7)

        assert whole.keys() == chunked.keys()
        for key in whole:
            pd.testing.assert_frame_equal(chunked[key], whole[key])

    def test_invalid_arguments(self, lognorm_adata):
        X = lognorm_adata.layers['logcounts']
        labels = lognorm_adata.obs['true_cluster'].values
        genes = lognorm_adata.var_names
        with pytest.raises(ValueError):
            pairwise_tests(X, labels, genes, test="magic")
        with pytest.raises(ValueError):
            pairwise_tests(X, labels, genes, direction="sideways")
        with pytest.raises(ValueError):
            pairwise_tests(X, labels, genes, lfc=-1)
        with pytest.raises(ValueError):
            pairwise_tests(X, np.repeat("1", len(labels)), genes)
        with pytest.raises(ValueError):
            pairwise_tests(X, labels, genes, chunk_size=0)


class TestCombineMarkers:
    """combine_markers 测试"""

    def test_any(self, toy_pairwise):
        table = combine_markers(toy_pairwise, pval_type="any")["a"]

        assert list(table.columns) == ['Top', 'p.value', 'FDR', 'summary.logFC', 'logFC.b', 'logFC.c']
        np.testing.assert_allclose(table.loc[["g1", "g2"], 'p.value'], [0.02, 0.4])
        np.testing.assert_allclose(table.loc[["g1", "g2"], 'FDR'], [0.04, 0.4])
        assert table.loc["g1", 'Top'] == 1
        assert table.loc["g2", 'Top'] == 2
        # 汇总效应取 p 值最小的比较
        assert table.loc["g1", 'summary.logFC'] == 1.0
        assert table.loc["g2", 'summary.logFC'] == 4.0
        assert list(table.index) == ["g1", "g2"]

    def test_all(self, toy_pairwise):
        table = combine_markers(toy_pairwise, pval_type="all")["a"]

        assert 'Top' not in table.columns
        np.testing.assert_allclose(table.loc[["g1", "g2"], 'p.value'], [0.04, 0.5])

    def test_some(self, toy_pairwise):
        half = combine_markers(toy_pairwise, pval_type="some")["a"]
        full = combine_markers(toy_pairwise, pval_type="some:1")["a"]

        np.testing.assert_allclose(half.loc[["g1", "g2"], 'p.value'], [0.02, 0.4])
        np.testing.assert_allclose(full.loc[["g1", "g2"], 'p.value'], [0.04, 0.5])

    def test_invalid_type(self, toy_pairwise):
        with pytest.raises(ValueError):
            combine_markers(toy_pairwise, pval_type="most")
        with pytest.raises(ValueError):
            combine_markers(toy_pairwise, pval_type="some:1.5")


class TestFindMarkers:
    """find_markers 测试"""

    def test_top_markers(self, lognorm_adata):
        markers = find_markers(lognorm_adata, 'true_cluster')

        assert sorted(markers) == ["1", "2", "3"]
        for group, genes in marker_genes().items():
            top = markers[group].index[:15]
            assert len(set(top) & set(genes)) >= 12

    def test_block(self, lognorm_adata):
        markers = find_markers(lognorm_adata, 'true_cluster', block='SampleName', pval_type="all")

        genes = marker_genes()["2"]
        assert markers["2"].loc[genes, 'FDR'].median() < 0.01
        assert markers["2"]['p.value'].between(0, 1).all()

    def test_wilcox(self, lognorm_adata):
        markers = find_markers(lognorm_adata, 'true_cluster', test="wilcox")
        genes = marker_genes()["3"]
        assert (markers["3"].loc[genes, 'summary.AUC'] > 0.8).mean() > 0.8

    def test_missing_columns(self, lognorm_adata):
        with pytest.raises(ValueError):
            find_markers(lognorm_adata, 'nope')
        with pytest.raises(ValueError):
            find_markers(lognorm_adata, 'true_cluster', block='nope')

    def test_block_without_comparisons(self, lognorm_adata):
        # 每个批次只含一个分组
        lognorm_adata.obs['only'] = lognorm_adata.obs['true_cluster'].astype(str)
        with pytest.raises(ValueError):
            find_markers(lognorm_adata, 'true_cluster', block='only')

    def test_rank_markers(self, lognorm_adata):
        df = rank_markers(lognorm_adata, 'true_cluster', n_genes=10)

        assert {'group', 'names', 'scores'} <= set(df.columns)
        assert len(df) == 30


class TestScoreMarkers:
    """score_markers 测试"""

    def test_columns_and_order(self, lognorm_adata):
        scores = score_markers(lognorm_adata, 'true_cluster')

        assert sorted(scores) == ["1", "2", "3"]
        table = scores["1"]
        for col in ('self.average', 'other.average', 'self.detected', 'other.detected'):
            assert col in table.columns
        for effect in ('cohen', 'AUC', 'logFC.detected'):
            for stat in ('mean', 'min', 'median', 'max', 'rank'):
                assert f'{stat}.{effect}' in table.columns
        assert table['mean.AUC'].is_monotonic_decreasing

    def test_markers_score_high(self, lognorm_adata):
        scores = score_markers(lognorm_adata, 'true_cluster')
        genes = marker_genes()["2"]
        table = scores["2"]

        assert len(set(table.index[:15]) & set(genes)) >= 12
        assert (table.loc[genes, 'min.cohen'] > 0).all()
        assert (table['min.AUC'] <= table['max.AUC']).all()

    def test_single_group(self, lognorm_adata):
        lognorm_adata.obs['one'] = "x"
        with pytest.raises(ValueError):
            score_markers(lognorm_adata, 'one')
