"""
批次效应校正

提供线性校正（rescale / regress）、多批次 PCA 以及基于互为最近邻（MNN）的校正
"""

import logging
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp
from sklearn.neighbors import NearestNeighbors
from sklearn.utils.extmath import randomized_svd
from typing import List, Optional, Sequence

from ..utils.matrix import get_matrix, to_dense
from .diagnostics import lost_variance

logger = logging.getLogger(__name__)


def _batch_labels(adata: sc.AnnData, batch_key: str) -> np.ndarray:
    if batch_key not in adata.obs.columns:
        raise ValueError(f"obs 中不存在批次列 '{batch_key}'")
    return adata.obs[batch_key].astype(str).values


def rescale_batches(
    adata: sc.AnnData,
    batch_key: str,
    layer: Optional[str] = "logcounts",
    log_base: float = 2,
    pseudo_count: float = 1
) -> sc.AnnData:
    """
    按批次缩放表达量

    将 log 表达量还原后，对每个基因把各批次的均值缩放到最低的批次均值，
    再取 log，结果写入 layers['corrected']。
    """
    batches = _batch_labels(adata, batch_key)
    levels = list(pd.unique(batches))
    if layer is not None and layer not in adata.layers:
        layer = None
    X = get_matrix(adata, layer)
    log_scale = np.log(log_base)

    sparse_path = sp.issparse(X) and pseudo_count == 1
    if sparse_path:
        linear = sp.csr_matrix(X, dtype=np.float64, copy=True)
        linear.data = np.expm1(linear.data * log_scale)
    else:
        linear = np.exp(to_dense(X).astype(float) * log_scale) - pseudo_count

    means = np.vstack([np.asarray(linear[batches == b].mean(axis=0)).ravel() for b in levels])
    target = means.min(axis=0)
    with np.errstate(divide='ignore', invalid='ignore'):
        scale = np.where(means > 0, target / means, 1.0)

    if sparse_path:
        pieces = []
        for j, b in enumerate(levels):
            rows = np.flatnonzero(batches == b)
            pieces.append((rows, sp.csr_matrix(linear[rows].multiply(scale[j]))))
        order = np.concatenate([rows for rows, _ in pieces])
        stacked = sp.vstack([block for _, block in pieces]).tocsr()
        corrected = stacked[np.argsort(order)]
        corrected.data = np.log1p(corrected.data) / log_scale
    else:
        for j, b in enumerate(levels):
            linear[batches == b] *= scale[j]
        corrected = np.log(linear + pseudo_count) / log_scale

    adata.layers['corrected'] = corrected
    print(f"   rescale 校正完成 ({len(levels)} 个批次)")
    return adata


def regress_batches(
    adata: sc.AnnData,
    batch_key: str,
    layer: Optional[str] = "logcounts"
) -> sc.AnnData:
    """减去每个基因的批次均值并加回总体均值，结果写入 layers['corrected']"""
    batches = _batch_labels(adata, batch_key)
    if layer is not None and layer not in adata.layers:
        layer = None
    X = to_dense(get_matrix(adata, layer)).astype(float)

    grand = X.mean(axis=0)
    corrected = X.copy()
    for b in pd.unique(batches):
        mask = batches == b
        corrected[mask] -= X[mask].mean(axis=0) - grand

    adata.layers['corrected'] = corrected
    return adata


def _default_genes(adata: sc.AnnData, genes: Optional[Sequence[str]]) -> List[str]:
    if genes is None:
        if 'highly_variable' in adata.var.columns:
            genes = list(adata.var_names[adata.var['highly_variable']])
        else:
            genes = list(adata.var_names)
    genes = [g for g in genes if g in adata.var_names]
    if len(genes) < 2:
        raise ValueError("用于校正的基因少于 2 个")
    return genes


def multi_batch_pca(
    adata: sc.AnnData,
    batch_key: str,
    genes: Optional[Sequence[str]] = None,
    n_comps: int = 50,
    layer: Optional[str] = "logcounts",
    random_state: int = 0
) -> sc.AnnData:
    """
    多批次 PCA

    参数：
    ----------
    adata : sc.AnnData
        log 表达量
    batch_key : str
        批次列名
    genes : sequence of str, optional
        使用的基因，默认高变基因
    n_comps : int
        主成分数量

    返回：
    ----------
    adata : sc.AnnData
        obsm['X_multibatch_pca']；细胞先做余弦归一化，旋转矩阵由各批次分别
        中心化、等权重贡献的协方差求得。投影时只减去各批次均值的平均值，
        批次之间的差异保留在结果中
    """
    batches = _batch_labels(adata, batch_key)
    genes = _default_genes(adata, genes)
    if layer is not None and layer not in adata.layers:
        layer = None

    X = to_dense(get_matrix(adata[:, genes], layer)).astype(float)
    norms = np.linalg.norm(X, axis=1, keepdims=True)
    norms[norms == 0] = 1
    X = X / norms

    weighted = np.empty_like(X)
    batch_means = []
    for b in pd.unique(batches):
        mask = batches == b
        mean = X[mask].mean(axis=0)
        batch_means.append(mean)
        weighted[mask] = (X[mask] - mean) / np.sqrt(mask.sum())
    center = np.mean(batch_means, axis=0)

    max_comps = min(weighted.shape) - 1
    if n_comps > max_comps:
        logger.warning("n_comps=%d 超过上限，截断为 %d", n_comps, max_comps)
        n_comps = max_comps

    _, _, vt = randomized_svd(weighted, n_components=n_comps, random_state=random_state)
    rotation = vt.T

    adata.obsm['X_multibatch_pca'] = (X - center) @ rotation
    adata.uns['multibatch_pca'] = {
        'genes': np.array(genes, dtype=object),
        'rotation': rotation,
        'center': center
    }
    print(f"   完成多批次PCA (n_comps={n_comps}, 基因数={len(genes)})")
    return adata


def _find_mnn_pairs(ref: np.ndarray, target: np.ndarray, k: int):
    """返回互为 k 近邻的 (ref 索引, target 索引) 对"""
    k_ref = min(k, ref.shape[0])
    k_target = min(k, target.shape[0])
    nn_ref = NearestNeighbors(n_neighbors=k_ref).fit(ref)
    nn_target = NearestNeighbors(n_neighbors=k_target).fit(target)

    target_to_ref = nn_ref.kneighbors(target, return_distance=False)
    ref_to_target = nn_target.kneighbors(ref, return_distance=False)

    ref_side = set(zip(np.repeat(np.arange(ref.shape[0]), k_target).tolist(),
                       ref_to_target.ravel().tolist()))
    pairs = [(r, t)
             for t, row in enumerate(target_to_ref.tolist()) for r in row
             if (r, t) in ref_side]
    if not pairs:
        return np.empty(0, dtype=int), np.empty(0, dtype=int)
    pairs = np.asarray(pairs)
    return pairs[:, 0], pairs[:, 1]


def _correction_vectors(ref, target, ref_idx, target_idx, k, ndist):
    """
    每个 MNN 细胞取其所有配对的平均校正向量，再对每个 target 细胞在最近的
    k 个 MNN 细胞之间做 tricube 加权平均
    """
    mnn_cells, inverse = np.unique(target_idx, return_inverse=True)
    diffs = ref[ref_idx] - target[target_idx]
    vectors = np.zeros((len(mnn_cells), ref.shape[1]))
    np.add.at(vectors, inverse, diffs)
    vectors /= np.bincount(inverse)[:, None]

    n_near = min(k, len(mnn_cells))
    nn = NearestNeighbors(n_neighbors=n_near).fit(target[mnn_cells])
    dist, idx = nn.kneighbors(target)

    # 带宽 = ndist × 到中位邻居的距离
    bandwidth = np.maximum(dist[:, (n_near - 1) // 2] * ndist, np.finfo(float).tiny)
    rel = np.minimum(dist / bandwidth[:, None], 1.0)
    weights = (1 - rel ** 3) ** 3
    weights /= weights.sum(axis=1, keepdims=True)
    return np.einsum('ij,ijk->ik', weights, vectors[idx])


def fast_mnn(
    adata: sc.AnnData,
    batch_key: str,
    k: int = 20,
    ndist: float = 3,
    merge_order: Optional[Sequence[str]] = None,
    n_comps: int = 50,
    genes: Optional[Sequence[str]] = None,
    layer: Optional[str] = "logcounts",
    random_state: int = 0
) -> sc.AnnData:
    """
    在多批次 PCA 空间中做 MNN 校正

    参数：
    ----------
    adata : sc.AnnData
        log 表达量
    batch_key : str
        批次列名
    k : int
        寻找 MNN 对时的邻居数量
    ndist : float
        tricube 核带宽，以到第 k/2 个最近 MNN 细胞的距离为单位，须大于 1
    merge_order : sequence of str, optional
        批次合并顺序，默认按细胞数从多到少

    返回：
    ----------
    adata : sc.AnnData
        obsm['X_mnn']，uns['mnn']（merge_order、n_pairs、lost_variance）
    """
    batches = _batch_labels(adata, batch_key)
    levels = list(pd.unique(batches))
    if len(levels) < 2:
        raise ValueError("MNN 校正至少需要 2 个批次")
    if ndist <= 1:
        raise ValueError("ndist 必须大于 1")

    if merge_order is None:
        sizes = pd.Series(batches).value_counts()
        merge_order = sorted(levels, key=lambda b: (-sizes[b], levels.index(b)))
    else:
        merge_order = [str(b) for b in merge_order]
        if sorted(merge_order) != sorted(levels):
            raise ValueError("merge_order 必须包含且仅包含所有批次")

    print("=" * 60)
    print(f"MNN 批次校正 (k={k}, 合并顺序: {merge_order})...")
    print("=" * 60)

    multi_batch_pca(adata, batch_key, genes=genes, n_comps=n_comps, layer=layer,
                    random_state=random_state)
    coords = adata.obsm['X_multibatch_pca']
    corrected = coords.copy()

    ref_cells = np.flatnonzero(batches == merge_order[0])
    n_pairs = []
    lost = []

    for i, batch in enumerate(merge_order[1:], 1):
        target_cells = np.flatnonzero(batches == batch)
        ref = corrected[ref_cells]
        target = coords[target_cells]

        ref_idx, target_idx = _find_mnn_pairs(ref, target, k)
        if len(ref_idx) == 0:
            raise ValueError(f"批次 '{batch}' 与已合并批次之间没有 MNN 对")

        corrected[target_cells] = target + _correction_vectors(ref, target, ref_idx, target_idx, k, ndist)
        n_pairs.append(len(ref_idx))

        merged_labels = np.concatenate([np.repeat('reference', len(ref_cells)),
                                        np.repeat('target', len(target_cells))])
        merged_before = np.vstack([coords[ref_cells], target])
        merged_after = np.vstack([ref, corrected[target_cells]])
        lost.append(float(lost_variance(merged_before, merged_after, merged_labels)['target']))

        print(f"   [{i}/{len(merge_order) - 1}] 合并批次 {batch}: MNN 对 {len(ref_idx)} 个")
        ref_cells = np.concatenate([ref_cells, target_cells])

    adata.obsm['X_mnn'] = corrected
    adata.uns['mnn'] = {
        'merge_order': np.array(merge_order, dtype=object),
        'n_pairs': np.array(n_pairs),
        'lost_variance': np.array(lost)
    }
    print("   ✅ MNN 校正完成")
    return adata
