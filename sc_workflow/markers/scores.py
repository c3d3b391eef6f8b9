"""
marker 效应量汇总

对每个聚类与其他聚类的两两比较计算 Cohen's d、AUC 和检出率 logFC，
并汇总为 mean / min / median / max
"""

import itertools
import numpy as np
import pandas as pd
import scanpy as sc
from scipy.stats import rankdata
from typing import Dict, Optional

from ..utils.matrix import get_matrix, to_dense

EFFECTS = ('cohen', 'AUC', 'logFC.detected')


def _pairwise_effects(x1, x2, threshold):
    n1, n2 = len(x1), len(x2)
    m1, m2 = x1.mean(axis=0), x2.mean(axis=0)
    sd = np.sqrt((x1.var(axis=0, ddof=1) + x2.var(axis=0, ddof=1)) / 2)
    with np.errstate(divide='ignore', invalid='ignore'):
        cohen = np.where(sd > 0, (m1 - m2) / sd, 0.0)

    ranks = rankdata(np.vstack([x1, x2]), axis=0)
    u1 = ranks[:n1].sum(axis=0) - n1 * (n1 + 1) / 2
    auc = u1 / (n1 * n2)

    e1 = (x1 > threshold).sum(axis=0)
    e2 = (x2 > threshold).sum(axis=0)
    detected = np.log2((e1 + 1) / (n1 + 1)) - np.log2((e2 + 1) / (n2 + 1))
    return {'cohen': cohen, 'AUC': auc, 'logFC.detected': detected}


def score_markers(
    adata: sc.AnnData,
    groupby: str,
    layer: Optional[str] = "logcounts",
    threshold: float = 0
) -> Dict[str, pd.DataFrame]:
    """
    计算每个聚类的 marker 效应量汇总

    返回：
    ----------
    scores : dict
        {cluster: DataFrame}，包含 self.average、other.average、self.detected、other.detected
        以及每种效应量的 mean.* / min.* / median.* / max.* / rank.*，按 mean.AUC 降序
    """
    if groupby not in adata.obs.columns:
        raise ValueError(f"obs 中不存在列 '{groupby}'")
    if layer is not None and layer not in adata.layers:
        layer = None

    X = to_dense(get_matrix(adata, layer)).astype(float)
    labels = adata.obs[groupby].astype(str).values
    levels = sorted(pd.unique(labels), key=lambda x: (len(x), x))
    if len(levels) < 2:
        raise ValueError("至少需要 2 个分组")

    subsets = {level: X[labels == level] for level in levels}
    averages = {level: sub.mean(axis=0) for level, sub in subsets.items()}
    detected = {level: (sub > threshold).mean(axis=0) for level, sub in subsets.items()}

    effects = {}
    for g1, g2 in itertools.permutations(levels, 2):
        effects[(g1, g2)] = _pairwise_effects(subsets[g1], subsets[g2], threshold)

    scores = {}
    for group in levels:
        others = [o for o in levels if o != group]
        table = pd.DataFrame(index=adata.var_names)
        table['self.average'] = averages[group]
        table['other.average'] = np.mean([averages[o] for o in others], axis=0)
        table['self.detected'] = detected[group]
        table['other.detected'] = np.mean([detected[o] for o in others], axis=0)

        for name in EFFECTS:
            values = np.column_stack([effects[(group, o)][name] for o in others])
            table[f'mean.{name}'] = values.mean(axis=1)
            table[f'min.{name}'] = values.min(axis=1)
            table[f'median.{name}'] = np.median(values, axis=1)
            table[f'max.{name}'] = values.max(axis=1)
            # 每个比较中按效应量降序排名，取最小值
            per_comparison = np.column_stack([rankdata(-values[:, j], method='min')
                                              for j in range(values.shape[1])])
            table[f'rank.{name}'] = per_comparison.min(axis=1).astype(int)

        scores[group] = table.sort_values('mean.AUC', ascending=False, kind='stable')

    return scores
