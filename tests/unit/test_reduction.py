"""降维模块单元测试"""

import pytest
import numpy as np

from sc_workflow.reduction import run_pca, find_elbow_point, denoise_pca, run_tsne, run_umap


class TestRunPca:
    """run_pca 测试"""

    def test_outputs(self, lognorm_adata):
        run_pca(lognorm_adata, n_comps=10)

        assert lognorm_adata.obsm['X_pca'].shape == (lognorm_adata.n_obs, 10)
        assert lognorm_adata.varm['PCs'].shape == (lognorm_adata.n_vars, 10)
        pca = lognorm_adata.uns['pca']
        assert len(pca['variance']) == 10
        assert pca['total_variance'] >= np.sum(pca['variance'])

    def test_uses_highly_variable(self, lognorm_adata):
        lognorm_adata.var['highly_variable'] = False
        lognorm_adata.var.iloc[:30, lognorm_adata.var.columns.get_loc('highly_variable')] = True
        run_pca(lognorm_adata, n_comps=5)

        assert len(lognorm_adata.uns['pca']['genes']) == 30
        # 非 PCA 基因的载荷为 0
        assert np.all(lognorm_adata.varm['PCs'][30:] == 0)

    def test_explicit_genes(self, lognorm_adata):
        genes = list(lognorm_adata.var_names[:20]) + ["NotAGene"]
        run_pca(lognorm_adata, n_comps=5, genes=genes)
        assert len(lognorm_adata.uns['pca']['genes']) == 20

    def test_truncates_n_comps(self, lognorm_adata):
        run_pca(lognorm_adata, n_comps=50, genes=list(lognorm_adata.var_names[:10]))
        assert lognorm_adata.obsm['X_pca'].shape[1] == 9

    def test_too_few_genes(self, lognorm_adata):
        with pytest.raises(ValueError):
            run_pca(lognorm_adata, genes=["Gene0"])

    def test_separates_clusters(self, pca_adata):
        pc = pca_adata.obsm['X_pca']
        clusters = pca_adata.obs['true_cluster'].astype(str).values
        centroids = np.vstack([pc[clusters == c, :2].mean(axis=0) for c in "123"])
        within = np.mean([pc[clusters == c, :2].std(axis=0).mean() for c in "123"])
        gaps = [np.linalg.norm(centroids[i] - centroids[j]) for i in range(3) for j in range(i + 1, 3)]
        assert min(gaps) > 2 * within


class TestChooseComponents:
    """find_elbow_point 与 denoise_pca 测试"""

    def test_elbow(self):
        variance = np.r_[[10.0, 6.0, 3.0], np.full(17, 0.5)]
        assert find_elbow_point(variance) == 4

    def test_elbow_short(self):
        assert find_elbow_point([3.0, 1.0]) == 2

    def test_denoise_rank(self, pca_adata):
        total = pca_adata.uns['pca']['total_variance']
        variance = np.asarray(pca_adata.uns['pca']['variance'])
        # 技术方差恰好等于前 3 个主成分之外的方差
        tech = total - variance[:3].sum() + 1e-9
        rank = denoise_pca(pca_adata, tech, min_rank=1, max_rank=10)

        assert rank == 3
        assert pca_adata.obsm['X_pca'].shape[1] == 3
        assert pca_adata.uns['pca']['denoised_rank'] == 3

    def test_denoise_bounds(self, pca_adata):
        rank = denoise_pca(pca_adata, tech_var_total=1e9, min_rank=4, max_rank=10)
        assert rank == 4

        rank = denoise_pca(pca_adata, tech_var_total=0.0, min_rank=1, max_rank=2)
        assert rank == 2

    def test_denoise_requires_pca(self, lognorm_adata):
        with pytest.raises(ValueError):
            denoise_pca(lognorm_adata, 1.0)


def test_run_umap(pca_adata):
    run_umap(pca_adata, n_neighbors=10)
    assert pca_adata.obsm['X_umap'].shape == (pca_adata.n_obs, 2)
    assert 'umap_neighbors' in pca_adata.uns


def test_run_tsne(pca_adata):
    small = pca_adata[:40].copy()
    # 细胞数少时 perplexity 自动下调
    run_tsne(small, perplexity=30)
    assert small.obsm['X_tsne'].shape == (40, 2)
