"""
基于参考数据集的细胞类型注释

将每个细胞与参考数据集中各标签的样本做 Spearman 相关，
并在得分接近的标签之间用它们的 marker 基因迭代精调
"""

import itertools
import logging
import numpy as np
import pandas as pd
import scanpy as sc
from scipy.stats import rankdata
from tqdm import tqdm
from typing import Dict, List, Optional, Tuple

from ..utils.matrix import get_matrix, to_dense, mad_outlier_bounds

logger = logging.getLogger(__name__)


def _standardized_ranks(M: np.ndarray) -> np.ndarray:
    """按行转为秩并标准化，使两行点积 / 列数 等于 Spearman 相关"""
    ranks = rankdata(M, axis=1)
    ranks -= ranks.mean(axis=1, keepdims=True)
    norm = np.sqrt((ranks ** 2).mean(axis=1, keepdims=True))
    norm[norm == 0] = 1
    return ranks / norm


def _reference_markers(medians: pd.DataFrame, de_n: int) -> Dict[Tuple[str, str], List[str]]:
    """每对标签 (a, b) 中 a 高于 b 的前 de_n 个基因"""
    markers = {}
    for a, b in itertools.permutations(medians.columns, 2):
        diff = (medians[a] - medians[b]).sort_values(ascending=False, kind='stable')
        markers[(a, b)] = list(diff[diff > 0].index[:de_n])
    return markers


def _label_scores(cells: np.ndarray, ref: np.ndarray, ref_labels: np.ndarray,
                  labels: List[str], quantile: float) -> np.ndarray:
    """每个细胞对每个标签的得分：与该标签参考样本相关系数的分位数"""
    corr = _standardized_ranks(cells) @ _standardized_ranks(ref).T / cells.shape[1]
    scores = np.zeros((cells.shape[0], len(labels)))
    for j, label in enumerate(labels):
        scores[:, j] = np.quantile(corr[:, ref_labels == label], quantile, axis=1)
    return scores


def reference_annotation(
    adata: sc.AnnData,
    reference: sc.AnnData,
    label_key: str,
    layer: Optional[str] = "logcounts",
    ref_layer: Optional[str] = None,
    de_n: Optional[int] = None,
    quantile: float = 0.8,
    fine_tune: bool = True,
    tune_thresh: float = 0.05,
    prune: bool = True,
    chunk_size: int = 1000
) -> pd.DataFrame:
    """
    基于参考数据集的注释

    参数：
    ----------
    adata : sc.AnnData
        待注释数据（log 表达量）
    reference : sc.AnnData
        参考数据集（样本×基因，log 表达量），obs[label_key] 为标签
    label_key : str
        参考数据集中的标签列
    de_n : int, optional
        每对标签选取的 marker 数量，默认 500 * (2/3)^log2(标签数)
    quantile : float
        相关系数的分位数
    fine_tune : bool
        是否在得分接近的标签之间迭代精调
    tune_thresh : float
        精调时保留与最高得分相差不超过该值的标签
    prune : bool
        是否剔除 delta 偏低的不可靠注释

    返回：
    ----------
    result : pd.DataFrame
        scores.<label>、labels、delta.next、pruned.labels
    """
    if label_key not in reference.obs.columns:
        raise ValueError(f"参考数据集 obs 中不存在列 '{label_key}'")
    common = adata.var_names.intersection(reference.var_names)
    if len(common) < 2:
        raise ValueError("待注释数据与参考数据集的共同基因少于 2 个")
    if layer is not None and layer not in adata.layers:
        layer = None

    ref_labels = reference.obs[label_key].astype(str).values
    labels = sorted(pd.unique(ref_labels))
    if len(labels) < 2:
        raise ValueError("参考数据集至少需要 2 个标签")

    ref_X = pd.DataFrame(to_dense(get_matrix(reference[:, common], ref_layer)),
                         columns=common)
    medians = ref_X.groupby(ref_labels).median().T

    if de_n is None:
        de_n = int(500 * (2 / 3) ** np.log2(len(labels)))
    markers = _reference_markers(medians, de_n)
    all_markers = sorted(set(itertools.chain.from_iterable(markers.values())))
    if len(all_markers) < 2:
        raise ValueError("参考数据集中没有足够的 marker 基因")

    query = adata[:, common]
    query_X = get_matrix(query, layer)
    gene_pos = {g: i for i, g in enumerate(common)}
    marker_idx = [gene_pos[g] for g in all_markers]
    ref_values = ref_X.values

    print(f"   参考标签数: {len(labels)}，marker 基因数: {len(all_markers)}")

    scores = np.zeros((adata.n_obs, len(labels)))
    final_labels = np.empty(adata.n_obs, dtype=object)
    delta_next = np.zeros(adata.n_obs)

    for start in tqdm(range(0, adata.n_obs, chunk_size), desc="Reference scoring"):
        end = min(start + chunk_size, adata.n_obs)
        cells = to_dense(query_X[start:end]).astype(float)
        chunk_scores = _label_scores(cells[:, marker_idx], ref_values[:, marker_idx],
                                     ref_labels, labels, quantile)
        scores[start:end] = chunk_scores

        for i in range(end - start):
            label, delta = _fine_tune_cell(
                cells[i], chunk_scores[i], labels, markers, gene_pos, ref_values,
                ref_labels, quantile, tune_thresh if fine_tune else None
            )
            final_labels[start + i] = label
            delta_next[start + i] = delta

    result = pd.DataFrame(scores, index=adata.obs_names, columns=[f'scores.{l}' for l in labels])
    result['labels'] = final_labels
    result['delta.next'] = delta_next

    pruned = pd.Series(final_labels, index=adata.obs_names, dtype=object)
    if prune:
        assigned_pos = np.array([labels.index(l) for l in final_labels])
        delta_med = scores[np.arange(adata.n_obs), assigned_pos] - np.median(scores, axis=1)
        for label in labels:
            mask = final_labels == label
            if mask.sum() < 3:
                continue
            lower, _ = mad_outlier_bounds(delta_med[mask], nmads=3)
            low = mask & (delta_med < lower)
            pruned[low] = np.nan
        n_pruned = int(pruned.isna().sum())
        print(f"   剔除 {n_pruned} 个低置信度注释")
    result['pruned.labels'] = pruned.values

    return result


def _fine_tune_cell(cell, cell_scores, labels, markers, gene_pos, ref_values, ref_labels,
                    quantile, tune_thresh) -> Tuple[str, float]:
    """对单个细胞在得分接近的标签之间迭代精调"""
    order = np.argsort(cell_scores)[::-1]
    delta = cell_scores[order[0]] - cell_scores[order[1]]
    if tune_thresh is None:
        return labels[order[0]], float(delta)

    current = [labels[j] for j in np.flatnonzero(cell_scores >= cell_scores.max() - tune_thresh)]
    if len(current) == 1:
        return current[0], float(delta)

    while len(current) > 1:
        genes = sorted(set(itertools.chain.from_iterable(
            markers[(a, b)] for a, b in itertools.permutations(current, 2)
        )))
        if len(genes) < 2:
            break
        idx = [gene_pos[g] for g in genes]
        in_current = np.isin(ref_labels, current)
        tuned = _label_scores(cell[None, idx], ref_values[np.ix_(in_current, idx)],
                              ref_labels[in_current], current, quantile)[0]
        ranked = np.sort(tuned)[::-1]
        delta = ranked[0] - ranked[1]
        survivors = [current[j] for j in np.flatnonzero(tuned >= tuned.max() - tune_thresh)]
        if len(survivors) == len(current):
            current = [current[int(np.argmax(tuned))]]
            break
        current = survivors

    return current[0], float(delta)
