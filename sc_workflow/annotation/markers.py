"""
基于 marker 基因集的注释

AUCell：在每个细胞表达量排名前 max_rank 的基因中计算基因集的
恢复曲线下面积，再按得分最高的基因集分配标签
"""

import numpy as np
import pandas as pd
import scanpy as sc
from scipy.stats import rankdata
from tqdm import tqdm
from typing import Dict, List, Optional

from ..utils.matrix import get_matrix, to_dense, mad_outlier_bounds


def aucell_scores(
    adata: sc.AnnData,
    gene_sets: Dict[str, List[str]],
    layer: Optional[str] = None,
    max_rank: Optional[int] = None,
    chunk_size: int = 1000
) -> pd.DataFrame:
    """
    计算每个细胞中每个基因集的 AUCell 得分

    参数：
    ----------
    adata : sc.AnnData
        输入数据
    gene_sets : dict
        {名称: 基因列表}，不存在的基因会被忽略
    layer : str, optional
        使用的表达层
    max_rank : int, optional
        只考虑排名前 max_rank 的基因，默认基因数的 5%

    返回：
    ----------
    scores : pd.DataFrame
        细胞×基因集，取值 [0, 1]
    """
    if not gene_sets:
        raise ValueError("gene_sets 不能为空")

    gene_pos = {g: i for i, g in enumerate(adata.var_names)}
    set_idx = {}
    for name, genes in gene_sets.items():
        idx = sorted({gene_pos[g] for g in genes if g in gene_pos})
        if not idx:
            raise ValueError(f"基因集 '{name}' 中没有任何基因存在于数据中")
        set_idx[name] = np.asarray(idx)

    if max_rank is None:
        max_rank = max(1, int(np.ceil(adata.n_vars * 0.05)))
    max_rank = min(max_rank, adata.n_vars)

    X = get_matrix(adata, layer)
    scores = np.zeros((adata.n_obs, len(set_idx)))

    for start in tqdm(range(0, adata.n_obs, chunk_size), desc="AUCell"):
        end = min(start + chunk_size, adata.n_obs)
        block = to_dense(X[start:end]).astype(float)
        # 1 为表达最高的基因，同值按基因顺序
        ranks = rankdata(-block, axis=1, method='ordinal')

        for j, idx in enumerate(set_idx.values()):
            r = ranks[:, idx]
            auc = np.where(r <= max_rank, max_rank - r + 1, 0).sum(axis=1)
            n_max = min(len(idx), max_rank)
            best = np.sum(max_rank - np.arange(1, n_max + 1) + 1)
            scores[start:end, j] = auc / best

    return pd.DataFrame(scores, index=adata.obs_names, columns=list(set_idx.keys()))


def assign_by_markers(
    adata: sc.AnnData,
    gene_sets: Dict[str, List[str]],
    min_score: Optional[float] = None,
    min_delta: float = 0.0,
    key_added: str = "marker_label",
    layer: Optional[str] = None,
    max_rank: Optional[int] = None,
    nmads: float = 3
) -> pd.DataFrame:
    """
    按 AUCell 得分最高的基因集为细胞分配标签

    最高得分低于 min_score 或与次高得分之差低于 min_delta 的细胞标记为 "unassigned"。
    min_score 为 None 时，对每个基因集，在分配到该集的细胞中将得分偏低
    nmads 个 MAD 以上的细胞视为未分配。

    返回：
    ----------
    result : pd.DataFrame
        各基因集得分以及 labels、delta.next
    """
    scores = aucell_scores(adata, gene_sets, layer=layer, max_rank=max_rank)
    values = scores.values
    names = np.asarray(scores.columns, dtype=object)

    order = np.argsort(-values, axis=1, kind='stable')
    best = values[np.arange(len(values)), order[:, 0]]
    if values.shape[1] > 1:
        second = values[np.arange(len(values)), order[:, 1]]
    else:
        second = np.zeros(len(values))
    delta = best - second

    labels = names[order[:, 0]].copy()
    unassigned = (best <= 0) | (delta < min_delta)

    if min_score is not None:
        unassigned |= best < min_score
    else:
        for j, name in enumerate(names):
            mask = order[:, 0] == j
            if mask.sum() < 3:
                continue
            lower, _ = mad_outlier_bounds(best[mask], nmads=nmads)
            unassigned |= mask & (best < lower)

    labels[unassigned] = "unassigned"

    result = scores.copy()
    result['labels'] = labels
    result['delta.next'] = delta

    adata.obs[key_added] = pd.Categorical(labels)
    counts = pd.Series(labels).value_counts()
    print(f"   标签分布: {dict(counts)}")

    return result
