"""模拟单细胞数据

生成带有已知聚类、marker 基因、批次和 size factor 的负二项 counts，
以及包含空液滴的未过滤条码矩阵，供各模块测试使用。
"""

import os
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd
import scipy.io
import scipy.sparse as sp


def marker_genes(n_clusters: int = 3, n_mito: int = 5, n_markers: int = 15) -> Dict[str, List[str]]:
    """每个真实聚类上调的基因名，与 create_counts_adata 的命名一致"""
    return {
        str(c + 1): [f"Gene{c * n_markers + j}" for j in range(n_markers)]
        for c in range(n_clusters)
    }


def create_counts_adata(
    n_cells: int = 300,
    n_genes: int = 200,
    n_clusters: int = 3,
    n_batches: int = 2,
    n_mito: int = 5,
    n_markers: int = 15,
    marker_fold: float = 8.0,
    batch_shift: float = 0.0,
    dispersion: float = 5.0,
    seed: int = 0,
    profile_seed: int = 0
) -> "AnnData":
    """
    生成模拟的原始 counts

    参数：
    ----------
    n_cells, n_genes : int
        细胞数与基因数（前 n_mito 个基因以 MT- 开头）
    n_clusters : int
        真实聚类数，细胞按 i % n_clusters 分配
    n_batches : int
        批次数，细胞按 i % n_batches 分配，与聚类完全交叉
    n_markers : int
        每个聚类上调的基因数
    marker_fold : float
        marker 基因的上调倍数
    batch_shift : float
        批次效应强度（每个基因的 log 尺度倍数的标准差）
    dispersion : float
        负二项分布的 size 参数
    profile_seed : int
        基因基础表达谱的随机种子，相同时不同 seed 的数据来自同一"组织"

    返回：
    ----------
    adata : AnnData
        X 与 layers['counts'] 为 csr 格式 counts；obs 包含 SampleName、true_cluster、true_sf
    """
    import anndata as ad

    rng = np.random.default_rng(seed)
    gene_names = [f"MT-{i + 1}" for i in range(n_mito)] + \
                 [f"Gene{i}" for i in range(n_genes - n_mito)]

    base = np.random.default_rng(profile_seed).gamma(2.0, 0.5, size=n_genes) + 0.1
    means = np.tile(base, (n_clusters, 1))
    for c in range(n_clusters):
        marker_idx = n_mito + c * n_markers + np.arange(n_markers)
        means[c, marker_idx] *= marker_fold

    batch_effect = np.ones((n_batches, n_genes))
    if batch_shift > 0:
        batch_effect[1:] = np.exp(rng.normal(0, batch_shift, size=(n_batches - 1, n_genes)))

    clusters = np.arange(n_cells) % n_clusters
    batches = np.arange(n_cells) % n_batches
    size_factors = np.exp(rng.normal(0, 0.3, size=n_cells))

    mu = means[clusters] * batch_effect[batches] * size_factors[:, None]
    counts = rng.negative_binomial(dispersion, dispersion / (dispersion + mu))
    empty = counts.sum(axis=1) == 0
    counts[empty, -1] = 1

    X = sp.csr_matrix(counts.astype(np.float32))
    obs = pd.DataFrame({
        'SampleName': pd.Categorical([f"B{b + 1}" for b in batches]),
        'true_cluster': pd.Categorical([str(c + 1) for c in clusters]),
        'true_sf': size_factors / size_factors.mean(),
    }, index=[f"Cell{i}" for i in range(n_cells)])
    var = pd.DataFrame(index=gene_names)

    adata = ad.AnnData(X=X, obs=obs, var=var)
    adata.layers['counts'] = X.copy()
    return adata


def create_droplet_counts(
    n_cells: int = 50,
    n_ambient_like: int = 40,
    n_empty: int = 1500,
    n_genes: int = 100,
    seed: int = 0
) -> Tuple[sp.csr_matrix, np.ndarray]:
    """
    生成未过滤的条码矩阵

    - cell: 总 counts 800–1500，表达谱与环境 RNA 不同
    - ambient_like: 总 counts 150–250，直接从环境 RNA 谱抽样
    - empty: 总 counts 5–80 的空液滴

    返回：
    ----------
    counts : sp.csr_matrix
        条码×基因 counts
    kinds : np.ndarray[str]
        每个条码的真实类型
    """
    rng = np.random.default_rng(seed)
    ambient = rng.dirichlet(np.ones(n_genes))
    cell_profile = rng.dirichlet(np.full(n_genes, 0.5))

    rows, kinds = [], []
    for total in rng.integers(800, 1500, size=n_cells):
        rows.append(rng.multinomial(total, cell_profile))
        kinds.append('cell')
    for total in rng.integers(150, 250, size=n_ambient_like):
        rows.append(rng.multinomial(total, ambient))
        kinds.append('ambient_like')
    for total in rng.integers(5, 80, size=n_empty):
        rows.append(rng.multinomial(total, ambient))
        kinds.append('empty')

    return sp.csr_matrix(np.vstack(rows).astype(np.float64)), np.asarray(kinds)


def create_reference(n_per_label: int = 30, seed: int = 1) -> "AnnData":
    """
    与 create_counts_adata 同样基因、同样聚类结构的参考数据集（log 表达量）

    obs['cell_type'] 为 "Type1"、"Type2"、...，与真实聚类 "1"、"2"、... 对应
    """
    from sc_workflow.preprocessing import log_norm_counts, library_size_factors

    reference = create_counts_adata(n_cells=3 * n_per_label, n_batches=1, seed=seed)
    log_norm_counts(reference, library_size_factors(reference.layers['counts']))
    reference.obs['cell_type'] = ("Type" + reference.obs['true_cluster'].astype(str)).values
    return reference


def write_10x_dir(adata, data_dir: str, compressed: bool = False) -> str:
    """
    把 counts 写成 10X 目录格式（matrix.mtx、barcodes.tsv、features.tsv）

    compressed=True 时 barcodes / features 写为 .tsv.gz
    """
    os.makedirs(data_dir, exist_ok=True)
    suffix = ".tsv.gz" if compressed else ".tsv"

    scipy.io.mmwrite(os.path.join(data_dir, "matrix.mtx"), sp.csr_matrix(adata.X).T.tocoo())
    pd.DataFrame({0: [name.split("_")[-1] for name in adata.obs_names]}).to_csv(
        os.path.join(data_dir, f"barcodes{suffix}"), sep='\t', header=False, index=False
    )
    pd.DataFrame({
        0: [f"ENSG{i:05d}" for i in range(adata.n_vars)],
        1: list(adata.var_names),
        2: "Gene Expression"
    }).to_csv(os.path.join(data_dir, f"features{suffix}"), sep='\t', header=False, index=False)
    return data_dir
