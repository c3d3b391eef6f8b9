"""细胞类型注释单元测试"""

import pytest
import numpy as np
import pandas as pd

from sc_workflow.annotation import (
    aucell_scores,
    assign_by_markers,
    reference_annotation,
    score_cell_cycle,
    label_cluster_table,
)


class TestAucell:
    """aucell_scores 测试"""

    def test_range_and_shape(self, lognorm_adata, gene_sets):
        scores = aucell_scores(lognorm_adata, gene_sets)

        assert scores.shape == (lognorm_adata.n_obs, 3)
        assert list(scores.columns) == ["1", "2", "3"]
        assert ((scores.values >= 0) & (scores.values <= 1)).all()

    def test_own_set_scores_highest(self, lognorm_adata, gene_sets):
        scores = aucell_scores(lognorm_adata, gene_sets, max_rank=20, chunk_size=70)
        best = scores.idxmax(axis=1).values
        truth = lognorm_adata.obs['true_cluster'].astype(str).values

        assert (best == truth).mean() > 0.9

    def test_full_set_on_top(self, lognorm_adata):
        # 表达最高的 max_rank 个基因恰好构成基因集时得分为 1
        X = lognorm_adata.layers['logcounts'][0].toarray().ravel()
        top = lognorm_adata.var_names[np.argsort(-X, kind='stable')[:5]]
        scores = aucell_scores(lognorm_adata[:1], {"top": list(top)}, layer='logcounts', max_rank=5)
        assert scores.iloc[0, 0] == pytest.approx(1.0)

    def test_missing_genes_ignored(self, lognorm_adata, gene_sets):
        with_missing = {"1": gene_sets["1"] + ["NotAGene"], "2": gene_sets["2"]}
        plain = aucell_scores(lognorm_adata, {"1": gene_sets["1"], "2": gene_sets["2"]})
        pd.testing.assert_frame_equal(aucell_scores(lognorm_adata, with_missing), plain)

    def test_errors(self, lognorm_adata):
        with pytest.raises(ValueError):
            aucell_scores(lognorm_adata, {})
        with pytest.raises(ValueError):
            aucell_scores(lognorm_adata, {"none": ["NotAGene"]})


class TestAssignByMarkers:
    """assign_by_markers 测试"""

    def test_accuracy(self, lognorm_adata, gene_sets):
        result = assign_by_markers(lognorm_adata, gene_sets, max_rank=20)
        truth = lognorm_adata.obs['true_cluster'].astype(str).values
        labels = result['labels'].values
        assigned = labels != "unassigned"

        assert 'delta.next' in result.columns
        assert assigned.mean() > 0.7
        assert (labels[assigned] == truth[assigned]).mean() > 0.9
        assert isinstance(lognorm_adata.obs['marker_label'].dtype, pd.CategoricalDtype)

    def test_min_score(self, lognorm_adata, gene_sets):
        result = assign_by_markers(lognorm_adata, gene_sets, min_score=1.01, key_added="strict")
        assert (result['labels'] == "unassigned").all()
        assert (lognorm_adata.obs['strict'] == "unassigned").all()

    def test_min_delta(self, lognorm_adata, gene_sets):
        result = assign_by_markers(lognorm_adata, gene_sets, min_score=0, min_delta=0.2)
        low = result['delta.next'] < 0.2
        assert (result.loc[low, 'labels'] == "unassigned").all()


class TestReferenceAnnotation:
    """reference_annotation 测试"""

    @pytest.mark.parametrize("fine_tune", [True, False])
    def test_matches_truth(self, lognorm_adata, reference_adata, fine_tune):
        result = reference_annotation(lognorm_adata, reference_adata, 'cell_type',
                                      de_n=10, fine_tune=fine_tune, chunk_size=100)
        expected = "Type" + lognorm_adata.obs['true_cluster'].astype(str).values

        assert list(result.columns) == ['scores.Type1', 'scores.Type2', 'scores.Type3',
                                        'labels', 'delta.next', 'pruned.labels']
        assert (result['labels'].values == expected).mean() > 0.9
        assert (result['delta.next'] >= 0).all()

    def test_pruned_subset(self, lognorm_adata, reference_adata):
        result = reference_annotation(lognorm_adata, reference_adata, 'cell_type', de_n=10)
        kept = result['pruned.labels'].notna()
        assert (result.loc[kept, 'pruned.labels'] == result.loc[kept, 'labels']).all()

    def test_errors(self, lognorm_adata, reference_adata):
        with pytest.raises(ValueError):
            reference_annotation(lognorm_adata, reference_adata, 'nope')

        single = reference_adata.copy()
        single.obs['cell_type'] = "Type1"
        with pytest.raises(ValueError):
            reference_annotation(lognorm_adata, single, 'cell_type')

        disjoint = reference_adata.copy()
        disjoint.var_names = [f"Other{i}" for i in range(disjoint.n_vars)]
        with pytest.raises(ValueError):
            reference_annotation(lognorm_adata, disjoint, 'cell_type')


class TestCellType:
    """细胞周期与列联表测试"""

    def test_score_cell_cycle(self, lognorm_adata, gene_sets):
        score_cell_cycle(lognorm_adata, s_genes=gene_sets["1"][:5] + ["NotAGene"],
                         g2m_genes=gene_sets["2"][:5])

        for col in ('S_score', 'G2M_score', 'phase'):
            assert col in lognorm_adata.obs.columns
        assert set(lognorm_adata.obs['phase']) <= {'G1', 'S', 'G2M'}

    def test_score_cell_cycle_missing_genes(self, lognorm_adata, gene_sets):
        with pytest.raises(ValueError):
            score_cell_cycle(lognorm_adata, s_genes=["NotAGene"], g2m_genes=gene_sets["2"])

    def test_label_cluster_table(self):
        table = label_cluster_table(["T", "T", "B"], [1, 2, 2])

        assert table.index.name == 'label'
        assert table.columns.name == 'cluster'
        assert table.loc["T", "1"] == 1
        assert table.loc["B", "2"] == 1
        assert table.values.sum() == 3

    def test_label_cluster_table_length(self):
        with pytest.raises(ValueError):
            label_cluster_table(["T"], [1, 2])
