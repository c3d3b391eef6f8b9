"""
降维模块

提供 PCA、主成分数量选择以及 t-SNE / UMAP 可视化功能
"""

import logging
import numpy as np
import scanpy as sc
from typing import Optional, Sequence

from ..utils.matrix import col_mean_var

logger = logging.getLogger(__name__)


def run_pca(
    adata: sc.AnnData,
    n_comps: int = 50,
    genes: Optional[Sequence[str]] = None,
    svd_solver: str = "arpack",
    random_state: int = 0
) -> sc.AnnData:
    """
    在指定基因（默认为高变基因）上计算 PCA

    参数：
    ----------
    adata : sc.AnnData
        .X 为 log 表达量的 AnnData 对象
    n_comps : int
        主成分数量（超过 min(n_cells, n_genes)-1 时自动截断）
    genes : sequence of str, optional
        用于 PCA 的基因；None 时使用 var['highly_variable']，若不存在则使用全部基因
    svd_solver : str
        "arpack"、"randomized"（大规模数据）等

    返回：
    ----------
    adata : sc.AnnData
        obsm['X_pca']、uns['pca']（variance、variance_ratio、total_variance、genes）
    """
    if genes is None:
        if 'highly_variable' in adata.var.columns:
            genes = list(adata.var_names[adata.var['highly_variable']])
        else:
            genes = list(adata.var_names)
    genes = [g for g in genes if g in adata.var_names]
    if len(genes) < 2:
        raise ValueError("用于 PCA 的基因少于 2 个")

    sub = adata[:, genes].copy()
    # 基因已筛选，避免 scanpy 再按 highly_variable 掩码取子集
    if 'highly_variable' in sub.var.columns:
        del sub.var['highly_variable']
    max_comps = min(sub.shape) - 1
    if n_comps > max_comps:
        logger.warning("n_comps=%d 超过上限，截断为 %d", n_comps, max_comps)
        n_comps = max_comps

    sc.tl.pca(sub, n_comps=n_comps, svd_solver=svd_solver, random_state=random_state)

    _, gene_var = col_mean_var(sub.X)
    adata.obsm['X_pca'] = sub.obsm['X_pca']
    adata.uns['pca'] = {
        'variance': sub.uns['pca']['variance'],
        'variance_ratio': sub.uns['pca']['variance_ratio'],
        'total_variance': float(gene_var.sum()),
        'genes': np.array(genes, dtype=object),
        'params': {'n_comps': n_comps, 'svd_solver': svd_solver}
    }
    loadings = np.zeros((adata.n_vars, n_comps))
    loadings[adata.var_names.get_indexer(genes)] = sub.varm['PCs']
    adata.varm['PCs'] = loadings

    print(f"   完成PCA降维 (n_comps={n_comps}, 基因数={len(genes)})")
    return adata


def find_elbow_point(variance_explained: Sequence[float]) -> int:
    """
    肘部法选择主成分数量

    返回距离首尾两点连线最远的点（以主成分个数计，从 1 开始）
    """
    y = np.asarray(variance_explained, dtype=float)
    if len(y) < 3:
        return len(y)
    x = np.arange(1, len(y) + 1, dtype=float)
    start = np.array([x[0], y[0]])
    direction = np.array([x[-1] - x[0], y[-1] - y[0]])
    direction /= np.linalg.norm(direction)
    offsets = np.column_stack([x, y]) - start
    distances = np.abs(offsets[:, 0] * direction[1] - offsets[:, 1] * direction[0])
    return int(np.argmax(distances) + 1)


def denoise_pca(
    adata: sc.AnnData,
    tech_var_total: float,
    min_rank: int = 5,
    max_rank: int = 50
) -> int:
    """
    根据技术噪声总量选择主成分数量

    保留最少的主成分，使被丢弃的方差不超过技术方差总和。
    obsm['X_pca'] 会被截断为保留的主成分。

    参数：
    ----------
    tech_var_total : float
        参与 PCA 的基因的技术方差之和（model_gene_var 的 tech 列求和）

    返回：
    ----------
    rank : int
        保留的主成分数量
    """
    if 'pca' not in adata.uns or 'X_pca' not in adata.obsm:
        raise ValueError("请先运行 run_pca")

    variance = np.asarray(adata.uns['pca']['variance'])
    total = adata.uns['pca']['total_variance']
    discarded = total - np.cumsum(variance)
    hits = np.flatnonzero(discarded <= tech_var_total)
    rank = int(hits[0] + 1) if len(hits) else len(variance)
    rank = int(np.clip(rank, min_rank, min(max_rank, len(variance))))

    adata.obsm['X_pca'] = adata.obsm['X_pca'][:, :rank]
    adata.uns['pca']['denoised_rank'] = rank
    print(f"   denoisePCA 保留 {rank} 个主成分")
    return rank


def run_tsne(
    adata: sc.AnnData,
    use_rep: str = "X_pca",
    n_pcs: Optional[int] = None,
    perplexity: float = 30,
    random_state: int = 0
) -> sc.AnnData:
    """t-SNE 可视化，结果写入 obsm['X_tsne']"""
    perplexity = min(perplexity, max((adata.n_obs - 1) / 3, 1))
    sc.tl.tsne(adata, n_pcs=n_pcs, use_rep=use_rep, perplexity=perplexity,
               random_state=random_state)
    return adata


def run_umap(
    adata: sc.AnnData,
    use_rep: str = "X_pca",
    n_neighbors: int = 15,
    min_dist: float = 0.5,
    random_state: int = 0
) -> sc.AnnData:
    """UMAP 可视化，结果写入 obsm['X_umap']"""
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, use_rep=use_rep,
                    key_added='umap_neighbors', random_state=random_state)
    sc.tl.umap(adata, min_dist=min_dist, neighbors_key='umap_neighbors',
               random_state=random_state)
    return adata
