"""
划分式聚类模块

提供 k-means、两步聚类（大规模数据）、层次聚类以及 SC3 风格的共识聚类
"""

import logging
import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import linkage, fcluster
from scipy.spatial.distance import pdist, squareform
from scipy.stats import rankdata
from sklearn.cluster import KMeans
from tqdm import tqdm
from typing import Dict, Optional, Sequence, Tuple

from .graph import build_snn_graph, cluster_graph, _relabel_by_size

logger = logging.getLogger(__name__)


def kmeans_clusters(
    X: np.ndarray,
    n_clusters: int,
    n_init: int = 10,
    random_state: int = 0
) -> Tuple[np.ndarray, np.ndarray]:
    """
    k-means 聚类

    返回：
    ----------
    labels : np.ndarray[str]
        按聚类大小编号的标签
    centers : np.ndarray
        与标签 "1", "2", ... 顺序对应的聚类中心
    """
    X = np.asarray(X)
    if n_clusters < 1 or n_clusters > X.shape[0]:
        raise ValueError(f"n_clusters 必须在 1 到 {X.shape[0]} 之间")
    km = KMeans(n_clusters=n_clusters, n_init=n_init, random_state=random_state).fit(X)
    labels = _relabel_by_size(km.labels_)

    centers = np.zeros_like(km.cluster_centers_)
    for old, new in set(zip(km.labels_, labels)):
        centers[int(new) - 1] = km.cluster_centers_[old]
    return labels, centers


def two_step_clustering(
    X: np.ndarray,
    centers: int = 1000,
    k: int = 5,
    method: str = "walktrap",
    random_state: int = 0
) -> np.ndarray:
    """
    两步聚类：先用 k-means 得到大量质心，再在质心上做 SNN 图聚类

    每个细胞继承其质心的聚类标签，适用于大规模数据
    """
    X = np.asarray(X)
    centers = min(centers, X.shape[0])
    km = KMeans(n_clusters=centers, n_init=1, random_state=random_state).fit(X)
    if centers <= k + 1:
        logger.warning("质心数 (%d) 不足以构建 SNN 图，直接返回 k-means 结果", centers)
        return _relabel_by_size(km.labels_)

    graph = build_snn_graph(km.cluster_centers_, k=k)
    centroid_labels = cluster_graph(graph, method=method, random_state=random_state)
    return _relabel_by_size(centroid_labels[km.labels_])


def hierarchical_clusters(
    X: np.ndarray,
    n_clusters: Optional[int] = None,
    height: Optional[float] = None,
    method: str = "ward"
) -> np.ndarray:
    """
    层次聚类，按聚类数或树高切割

    参数：
    ----------
    n_clusters : int, optional
        聚类数量
    height : float, optional
        切割高度（与 n_clusters 二选一）
    method : str
        scipy linkage 方法（"ward"、"complete"、"average" 等）
    """
    if (n_clusters is None) == (height is None):
        raise ValueError("n_clusters 与 height 必须且只能指定一个")
    Z = linkage(np.asarray(X), method=method)
    if n_clusters is not None:
        membership = fcluster(Z, t=n_clusters, criterion='maxclust')
    else:
        membership = fcluster(Z, t=height, criterion='distance')
    return _relabel_by_size(membership)


def _distance_matrix(X: np.ndarray, distance: str) -> np.ndarray:
    if distance == "euclidean":
        return squareform(pdist(X, metric='euclidean'))
    if distance == "pearson":
        return 1 - np.corrcoef(X)
    if distance == "spearman":
        return 1 - np.corrcoef(np.apply_along_axis(rankdata, 1, X))
    raise ValueError(f"未知的距离: {distance}")


def _transform(dist: np.ndarray, transform: str) -> np.ndarray:
    if transform == "pca":
        centered = dist - dist.mean(axis=0)
        std = centered.std(axis=0, ddof=1)
        std[std == 0] = 1
        _, _, vt = np.linalg.svd(centered / std, full_matrices=False)
        return vt.T
    if transform == "laplacian":
        affinity = np.exp(-dist / dist.max()) if dist.max() > 0 else np.ones_like(dist)
        degree = affinity.sum(axis=1)
        inv_sqrt = 1 / np.sqrt(degree)
        laplacian = np.eye(len(dist)) - inv_sqrt[:, None] * affinity * inv_sqrt[None, :]
        _, vectors = np.linalg.eigh(laplacian)
        return vectors
    raise ValueError(f"未知的变换: {transform}")


def _default_d_range(n_cells: int, max_values: int = 15):
    low = max(1, int(np.floor(0.04 * n_cells)))
    high = max(low, int(np.ceil(0.07 * n_cells)))
    d_range = np.arange(low, high + 1)
    if len(d_range) > max_values:
        d_range = np.unique(np.linspace(low, high, max_values).round().astype(int))
    return d_range


def consensus_clustering(
    X: np.ndarray,
    ks: Sequence[int],
    distances: Sequence[str] = ("euclidean", "pearson", "spearman"),
    transforms: Sequence[str] = ("pca", "laplacian"),
    d_range: Optional[Sequence[int]] = None,
    n_init: int = 10,
    random_state: int = 0
) -> Dict:
    """
    SC3 风格的共识聚类

    对每种距离与变换组合，取前 d 个特征向量做 k-means，
    将所有结果的共聚类矩阵取平均得到共识矩阵，再用完全连接层次聚类切分为 k 类。

    参数：
    ----------
    X : np.ndarray
        细胞×基因 的表达矩阵（通常为高变基因的 log 表达量）
    ks : sequence of int
        需要计算的聚类数
    d_range : sequence of int, optional
        特征向量数量范围，默认为细胞数的 4%–7%（最多 15 个值）

    返回：
    ----------
    result : dict
        {k: labels, "consensus_{k}": 共识矩阵}
    """
    X = np.asarray(X, dtype=float)
    n_cells = X.shape[0]
    if d_range is None:
        d_range = _default_d_range(n_cells)
    d_range = [d for d in d_range if 1 <= d <= n_cells]
    if not d_range:
        raise ValueError("d_range 中没有有效的维度")
    for k in ks:
        if k < 2 or k >= n_cells:
            raise ValueError(f"k={k} 必须在 2 到 {n_cells - 1} 之间")

    embeddings = []
    for distance in distances:
        dist = _distance_matrix(X, distance)
        for transform in transforms:
            embeddings.append(_transform(dist, transform))

    result = {}
    for k in ks:
        consensus = np.zeros((n_cells, n_cells))
        n_runs = 0
        for vectors in tqdm(embeddings, desc=f"Consensus k={k}"):
            for d in d_range:
                labels = KMeans(n_clusters=k, n_init=n_init, random_state=random_state) \
                    .fit_predict(vectors[:, :d])
                consensus += labels[:, None] == labels[None, :]
                n_runs += 1
        consensus /= n_runs

        dissimilarity = squareform(1 - consensus, checks=False)
        Z = linkage(dissimilarity, method='complete')
        result[k] = _relabel_by_size(fcluster(Z, t=k, criterion='maxclust'))
        result[f"consensus_{k}"] = consensus

    return result
