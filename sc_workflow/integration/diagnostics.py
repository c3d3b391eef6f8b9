"""
批次校正效果评估
"""

import numpy as np
import pandas as pd
import scanpy as sc
from scipy.stats import entropy

from ..clustering.graph import find_knn


def batch_cluster_table(adata: sc.AnnData, cluster_key: str, batch_key: str) -> pd.DataFrame:
    """聚类 × 批次 的细胞数列联表"""
    for key in (cluster_key, batch_key):
        if key not in adata.obs.columns:
            raise ValueError(f"obs 中不存在列 '{key}'")
    return pd.crosstab(adata.obs[cluster_key], adata.obs[batch_key])


def batch_mixing_entropy(
    adata: sc.AnnData,
    batch_key: str,
    use_rep: str = "X_pca",
    k: int = 30
) -> pd.Series:
    """
    每个细胞的 k 个近邻中批次标签的熵（以 2 为底）

    完全混合时接近 log2(批次数)，批次完全分离时为 0
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"obsm 中不存在 '{use_rep}'")
    batches = adata.obs[batch_key].astype(str).values
    levels = np.unique(batches)
    k = min(k, adata.n_obs - 1)

    idx, _ = find_knn(adata.obsm[use_rep], k)
    codes = np.searchsorted(levels, batches)[idx]
    counts = np.stack([(codes == j).sum(axis=1) for j in range(len(levels))], axis=1)

    return pd.Series(entropy(counts, base=2, axis=1), index=adata.obs_names, name='batch_entropy')


def lost_variance(original, corrected, batches) -> pd.Series:
    """
    每个批次在校正后损失的批次内方差比例

    (校正前总方差 - 校正后总方差) / 校正前总方差，下限为 0
    """
    original = np.asarray(original, dtype=float)
    corrected = np.asarray(corrected, dtype=float)
    batches = np.asarray(batches).astype(str)
    if original.shape != corrected.shape:
        raise ValueError("校正前后矩阵形状不一致")

    result = {}
    for b in pd.unique(batches):
        mask = batches == b
        before = original[mask].var(axis=0).sum()
        after = corrected[mask].var(axis=0).sum()
        result[b] = max(0.0, (before - after) / before) if before > 0 else 0.0
    return pd.Series(result, name='lost_variance')
