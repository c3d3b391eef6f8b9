"""
标准化模块

提供 size factor 计算与 log 标准化功能：
- library size factor
- 基于细胞池反卷积（pooling deconvolution）的 size factor
- log 标准化表达量
"""

import logging
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp
from scipy.sparse.linalg import lsqr
from typing import Optional, Sequence

from ..utils.matrix import get_matrix, row_sums, col_sums

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZES = tuple(range(21, 102, 5))


def library_size_factors(counts) -> np.ndarray:
    """library size 除以其均值，使 size factor 均值为 1"""
    lib = row_sums(counts).astype(float)
    if lib.mean() == 0:
        raise ValueError("所有细胞的 library size 均为 0")
    return lib / lib.mean()


def quick_cluster(
    adata: sc.AnnData,
    layer: Optional[str] = "counts",
    min_size: int = 100,
    n_pcs: int = 20,
    resolution: float = 1.0,
    k: int = 10,
    method: str = "walktrap",
    random_state: int = 0
) -> pd.Series:
    """
    为反卷积标准化快速预聚类

    先按 library size 标准化并 log 转换，然后 PCA + SNN 图聚类。
    小于 min_size 的聚类并入质心距离最近的聚类。

    参数：
    ----------
    min_size : int
        预聚类的最小细胞数
    resolution : float
        louvain / leiden 的分辨率（walktrap 不使用）
    method : str
        见 cluster_graph

    返回：
    ----------
    clusters : pd.Series
        每个细胞的预聚类标签
    """
    from ..clustering.graph import build_snn_graph, cluster_graph

    counts = get_matrix(adata, layer)
    n_cells = adata.n_obs
    if n_cells < 2 * min_size:
        logger.warning("细胞数 (%d) 少于 2 * min_size，全部细胞视为一个聚类", n_cells)
        return pd.Series('1', index=adata.obs_names)

    tmp = sc.AnnData(X=sp.csr_matrix(counts, dtype=np.float32))
    sc.pp.normalize_total(tmp)
    sc.pp.log1p(tmp)
    n_comps = min(n_pcs, min(tmp.shape) - 1)
    sc.tl.pca(tmp, n_comps=n_comps, random_state=random_state)
    pcs = tmp.obsm['X_pca']

    graph = build_snn_graph(pcs, k=k)
    labels = cluster_graph(graph, method=method, resolution=resolution,
                           random_state=random_state)

    # 合并过小的聚类
    labels = pd.Series(labels, index=adata.obs_names)
    while True:
        sizes = labels.value_counts()
        small = sizes[sizes < min_size]
        if len(small) == 0 or len(sizes) == 1:
            break
        smallest = small.idxmin()
        centroids = pd.DataFrame(pcs, index=labels.index).groupby(labels.values).mean()
        others = centroids.drop(index=smallest)
        dist = ((others - centroids.loc[smallest]) ** 2).sum(axis=1)
        labels[labels == smallest] = dist.idxmin()

    # 重新编号
    order = labels.value_counts().index
    mapping = {old: str(i + 1) for i, old in enumerate(order)}
    return labels.map(mapping)


def _ring_order(lib_sizes: np.ndarray) -> np.ndarray:
    """按 library size 排列成环：奇数位置升序，偶数位置降序"""
    order = np.argsort(lib_sizes, kind='stable')
    return np.concatenate([order[0::2], order[1::2][::-1]])


def _pool_size_factors(counts: sp.csr_matrix, sizes: Sequence[int], min_mean: float) -> np.ndarray:
    """
    单个聚类内的反卷积

    每个细胞池的 size factor 为池内标准化表达量之和与伪细胞之比的中位数，
    通过最小二乘求解每个细胞的 theta（sf / library size）。
    """
    n_cells = counts.shape[0]
    lib = row_sums(counts).astype(float)
    norm = sp.diags(1.0 / lib) @ counts

    # 仅使用平均 counts 足够高的基因
    keep = col_sums(counts) / n_cells >= min_mean
    if keep.sum() == 0:
        raise ValueError(f"没有平均 counts >= {min_mean} 的基因")
    norm = sp.csc_matrix(norm)[:, keep].tocsr()
    ref = col_sums(norm) / n_cells

    ring = _ring_order(lib)
    cumulative = np.vstack([np.zeros(norm.shape[1]), np.cumsum(norm[ring].toarray(), axis=0)])
    total = cumulative[n_cells]
    starts = np.arange(n_cells)

    rows, cols, rhs = [], [], []
    row_id = 0
    for size in sizes:
        ends = starts + size
        wrapped = ends > n_cells
        pooled = cumulative[np.minimum(ends, n_cells)] - cumulative[starts]
        # 环形窗口跨越末尾时加上开头部分
        pooled[wrapped] += cumulative[ends[wrapped] - n_cells]
        rhs.append(np.median(pooled / ref, axis=1))

        members = ring[(starts[:, None] + np.arange(size)[None, :]) % n_cells]
        rows.append(np.repeat(np.arange(row_id, row_id + n_cells), size))
        cols.append(members.ravel())
        row_id += n_cells

    # 低权重的单细胞方程，保证方程组满秩
    weight = np.sqrt(1e-6)
    rows.append(np.arange(row_id, row_id + n_cells))
    cols.append(np.arange(n_cells))
    rhs.append(np.full(n_cells, weight))

    rows = np.concatenate(rows)
    cols = np.concatenate(cols)
    values = np.ones(len(rows))
    values[-n_cells:] = weight

    design = sp.csr_matrix((values, (rows, cols)), shape=(row_id + n_cells, n_cells))
    theta = lsqr(design, np.concatenate(rhs))[0]
    return theta * lib


def compute_pooled_size_factors(
    counts,
    clusters=None,
    sizes: Sequence[int] = DEFAULT_POOL_SIZES,
    min_mean: float = 0.1,
    ref_cluster: Optional[str] = None
) -> np.ndarray:
    """
    基于细胞池反卷积计算 size factor

    参数：
    ----------
    counts : 矩阵
        细胞×基因 原始 counts
    clusters : array-like, optional
        预聚类标签（建议使用 quick_cluster 的结果）；None 时所有细胞视为一个聚类
    sizes : sequence of int
        细胞池大小
    min_mean : float
        参与计算的基因的最低平均 counts（UMI 数据建议 0.1）
    ref_cluster : str, optional
        用于聚类间缩放的参考聚类（默认为 library size 居中的聚类）

    返回：
    ----------
    size_factors : np.ndarray
        均值为 1 的 size factor
    """
    counts = sp.csr_matrix(counts, dtype=np.float64)
    n_cells = counts.shape[0]
    lib = row_sums(counts)
    if np.any(lib <= 0):
        raise ValueError("存在 library size 为 0 的细胞，请先完成质控")

    if clusters is None:
        clusters = np.repeat('1', n_cells)
    clusters = np.asarray(clusters).astype(str)
    levels = list(pd.unique(clusters))
    if ref_cluster is not None and str(ref_cluster) not in levels:
        raise ValueError(f"参考聚类 {ref_cluster} 不存在")

    size_factors = np.zeros(n_cells)
    for level in levels:
        idx = np.flatnonzero(clusters == level)
        usable = sorted(s for s in sizes if s <= len(idx))
        dropped = [s for s in sizes if s > len(idx)]
        if not usable:
            logger.warning("聚类 %s 小于最小细胞池，使用 library size factor", level)
            size_factors[idx] = lib[idx]
            continue
        if dropped:
            logger.warning("聚类 %s 仅有 %d 个细胞，忽略池大小 %s", level, len(idx), dropped)

        sf = _pool_size_factors(counts[idx], usable, min_mean)
        bad = ~(sf > 0)
        if bad.any():
            logger.warning("聚类 %s 中 %d 个细胞的 size factor 非正，使用 library size factor 替代",
                           level, int(bad.sum()))
            ratio = np.median(sf[~bad] / lib[idx][~bad]) if (~bad).any() else 1.0
            sf[bad] = lib[idx][bad] * ratio
        size_factors[idx] = sf

    # 聚类间缩放：比较各聚类按自身 size factor 标准化后的伪细胞
    if len(levels) > 1:
        profiles = {}
        for level in levels:
            idx = np.flatnonzero(clusters == level)
            profiles[level] = col_sums(sp.diags(1.0 / size_factors[idx]) @ counts[idx]) / len(idx)

        if ref_cluster is None:
            medians = {level: np.median(lib[clusters == level]) for level in levels}
            ordered = sorted(levels, key=lambda lv: medians[lv])
            ref_cluster = ordered[len(ordered) // 2]
        ref_profile = profiles[str(ref_cluster)]

        for level in levels:
            profile = profiles[level]
            ok = (profile > 0) & (ref_profile > 0)
            scale = np.median(profile[ok] / ref_profile[ok]) if ok.any() else 1.0
            size_factors[clusters == level] *= scale

    return size_factors / size_factors.mean()


def log_norm_counts(
    adata: sc.AnnData,
    size_factors: Optional[np.ndarray] = None,
    layer: Optional[str] = "counts",
    pseudo_count: float = 1.0,
    log_base: float = 2
) -> sc.AnnData:
    """
    计算 log 标准化表达量 log(x / sf + pseudo_count)

    结果写入 layers['logcounts'] 并设为 .X，size factor 写入 obs['size_factors']
    """
    counts = get_matrix(adata, layer)
    if size_factors is None:
        size_factors = library_size_factors(counts)
    size_factors = np.asarray(size_factors, dtype=float)
    if len(size_factors) != adata.n_obs:
        raise ValueError("size factor 数量与细胞数不一致")
    if np.any(size_factors <= 0):
        raise ValueError("size factor 必须为正数")

    scaled = sp.diags(1.0 / size_factors) @ sp.csr_matrix(counts, dtype=np.float64)
    if pseudo_count == 1:
        scaled.data = np.log1p(scaled.data) / np.log(log_base)
        logcounts = scaled
    else:
        logcounts = np.log(scaled.toarray() + pseudo_count) / np.log(log_base)

    if layer is None:
        # .X 即将被覆盖，先保留原始 counts
        adata.layers['counts'] = counts.copy()
    adata.obs['size_factors'] = size_factors
    adata.layers['logcounts'] = logcounts
    adata.X = logcounts.copy()
    adata.uns['log_norm'] = {'log_base': log_base, 'pseudo_count': pseudo_count}
    return adata


def normalize(
    adata: sc.AnnData,
    method: str = "library",
    layer: str = "counts",
    clusters=None,
    min_mean: float = 0.1,
    random_state: int = 0
) -> sc.AnnData:
    """
    标准化入口

    参数：
    ----------
    method : str
        "library"（library size factor）、"deconvolution"（细胞池反卷积）
        或 "total"（scanpy normalize_total + log1p，自然对数）
    layer : str
        原始 counts 所在的 layer
    """
    if method not in ("library", "deconvolution", "total"):
        raise ValueError(f"未知的标准化方法: {method}")
    if layer not in adata.layers:
        adata.layers[layer] = adata.X.copy()

    print("=" * 60)
    print(f"开始标准化 (method={method})...")
    print("=" * 60)

    counts = adata.layers[layer]
    if method == "total":
        adata.X = counts.copy()
        sc.pp.normalize_total(adata, target_sum=1e4)
        sc.pp.log1p(adata)
        adata.layers['logcounts'] = adata.X.copy()
        adata.obs['size_factors'] = library_size_factors(counts)
    elif method == "library":
        log_norm_counts(adata, library_size_factors(counts), layer=layer)
    else:
        if clusters is None:
            print("   快速预聚类...")
            clusters = quick_cluster(adata, layer=layer, random_state=random_state)
            adata.obs['quick_cluster'] = pd.Categorical(clusters.values)
            print(f"   预聚类数: {clusters.nunique()}")
        print("   计算反卷积 size factor...")
        sf = compute_pooled_size_factors(counts, clusters=clusters, min_mean=min_mean)
        log_norm_counts(adata, sf, layer=layer)

    sf = adata.obs['size_factors']
    print(f"   size factor 范围: [{sf.min():.3f}, {sf.max():.3f}]，中位数 {sf.median():.3f}")
    return adata
