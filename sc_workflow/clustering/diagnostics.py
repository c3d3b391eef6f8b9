"""
聚类评估模块

提供轮廓宽度、聚类间模块度、邻居纯度以及 bootstrap 稳定性等诊断指标
"""

import numpy as np
import pandas as pd
import scipy.sparse as sp
from sklearn.metrics import adjusted_rand_score
from tqdm import tqdm
from typing import Callable, Tuple

from .graph import find_knn


def approx_silhouette(X: np.ndarray, labels) -> pd.DataFrame:
    """
    近似轮廓宽度

    用细胞到聚类内所有细胞的均方根距离代替平均距离：
    mean ||x - y||^2 = ||x - c||^2 + 聚类内离散度。

    返回：
    ----------
    result : pd.DataFrame
        cluster、other（最近的其他聚类）、width
    """
    X = np.asarray(X, dtype=float)
    labels = np.asarray(labels).astype(str)
    levels = list(pd.unique(labels))
    if len(levels) < 2:
        raise ValueError("至少需要 2 个聚类才能计算轮廓宽度")

    rms = np.zeros((X.shape[0], len(levels)))
    for j, level in enumerate(levels):
        members = X[labels == level]
        center = members.mean(axis=0)
        spread = ((members - center) ** 2).sum(axis=1).mean()
        rms[:, j] = np.sqrt(((X - center) ** 2).sum(axis=1) + spread)

    own = np.array([levels.index(lab) for lab in labels])
    a = rms[np.arange(len(labels)), own]
    others = rms.copy()
    others[np.arange(len(labels)), own] = np.inf
    closest = others.argmin(axis=1)
    b = others[np.arange(len(labels)), closest]

    width = (b - a) / np.maximum(a, b)
    return pd.DataFrame({
        'cluster': labels,
        'other': np.asarray(levels, dtype=object)[closest],
        'width': width
    })


def pairwise_modularity(graph: sp.spmatrix, labels, as_ratio: bool = True) -> pd.DataFrame:
    """
    聚类间模块度

    观察到的边权重比例与配置模型下期望比例的比值（as_ratio=True）或差值。
    对角线之和（差值形式）即为图的模块度。
    """
    graph = sp.csr_matrix(graph)
    labels = np.asarray(labels).astype(str)
    levels = sorted(pd.unique(labels), key=lambda x: (len(x), x))

    indicator = sp.csr_matrix(
        (np.ones(len(labels)), (np.arange(len(labels)), [levels.index(l) for l in labels])),
        shape=(len(labels), len(levels))
    )
    between = (indicator.T @ graph @ indicator).toarray()
    total = graph.sum() / 2
    if total == 0:
        raise ValueError("图中没有边")

    observed = between / total
    observed[np.diag_indices_from(observed)] /= 2

    degree = np.asarray(indicator.T @ np.asarray(graph.sum(axis=1)).ravel()).ravel()
    expected = np.outer(degree, degree) / (4 * total ** 2)
    off_diag = ~np.eye(len(levels), dtype=bool)
    expected[off_diag] *= 2

    if as_ratio:
        with np.errstate(divide='ignore', invalid='ignore'):
            values = observed / expected
    else:
        values = observed - expected
    return pd.DataFrame(values, index=levels, columns=levels)


def neighbor_purity(X: np.ndarray, labels, k: int = 50) -> pd.DataFrame:
    """
    邻居纯度：每个细胞的 k 个最近邻（含自身）中属于同一聚类的比例

    返回：
    ----------
    result : pd.DataFrame
        purity、maximum（邻居中占比最高的聚类）
    """
    labels = np.asarray(labels).astype(str)
    k = min(k, len(labels) - 1)
    idx, _ = find_knn(X, k)
    neighborhood = np.column_stack([np.arange(len(labels)), idx])
    neighbor_labels = labels[neighborhood]

    purity = (neighbor_labels == labels[:, None]).mean(axis=1)
    maximum = [pd.Series(row).value_counts().index[0] for row in neighbor_labels]
    return pd.DataFrame({'purity': purity, 'maximum': maximum})


def bootstrap_stability(
    X: np.ndarray,
    labels,
    cluster_fun: Callable[[np.ndarray], np.ndarray],
    iterations: int = 20,
    random_state: int = 0
) -> pd.DataFrame:
    """
    Bootstrap 评估聚类稳定性

    对细胞有放回抽样后重新聚类，计算原始聚类两两之间的细胞
    在重聚类中被分到同一类的概率。对角线接近 1 表示聚类稳定。
    """
    X = np.asarray(X)
    labels = np.asarray(labels).astype(str)
    levels = sorted(pd.unique(labels), key=lambda x: (len(x), x))
    rng = np.random.default_rng(random_state)

    total = np.zeros((len(levels), len(levels)))
    counted = np.zeros((len(levels), len(levels)))

    for _ in tqdm(range(iterations), desc="Bootstrapping"):
        idx = rng.integers(0, len(labels), size=len(labels))
        new_labels = np.asarray(cluster_fun(X[idx])).astype(str)
        table = pd.crosstab(pd.Categorical(labels[idx], categories=levels), new_labels,
                            dropna=False).values.astype(float)
        sizes = table.sum(axis=1)

        same = table @ table.T
        within = (table * (table - 1)).sum(axis=1)
        denom = np.outer(sizes, sizes)
        np.fill_diagonal(same, within)
        np.fill_diagonal(denom, sizes * (sizes - 1))

        ok = denom > 0
        total[ok] += same[ok] / denom[ok]
        counted[ok] += 1

    with np.errstate(invalid='ignore'):
        probs = total / counted
    return pd.DataFrame(probs, index=levels, columns=levels)


def compare_clusterings(a, b) -> Tuple[float, pd.DataFrame]:
    """比较两种聚类结果：调整兰德指数与列联表"""
    a = np.asarray(a).astype(str)
    b = np.asarray(b).astype(str)
    if len(a) != len(b):
        raise ValueError("两种聚类的细胞数不一致")
    return adjusted_rand_score(a, b), pd.crosstab(pd.Series(a, name='a'), pd.Series(b, name='b'))
