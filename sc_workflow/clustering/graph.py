"""
基于图的聚类模块

提供最近邻搜索、共享最近邻（SNN）图构建以及社区发现功能
"""

import random
import logging
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp
from typing import Optional, Tuple

logger = logging.getLogger(__name__)


def find_knn(
    X: np.ndarray,
    k: int,
    method: str = "exact",
    random_state: int = 0
) -> Tuple[np.ndarray, np.ndarray]:
    """
    查找每个细胞的 k 个最近邻（不含自身）

    参数：
    ----------
    X : np.ndarray
        细胞×维度 的坐标（通常为 PCA）
    k : int
        邻居数量
    method : str
        "exact"（scikit-learn 精确搜索）或 "nndescent"（pynndescent 近似搜索，适合大规模数据）
    random_state : int
        近似搜索的随机种子

    返回：
    ----------
    indices, distances : np.ndarray
        形状均为 (n_cells, k)
    """
    X = np.asarray(X, dtype=np.float32)
    n = X.shape[0]
    if k < 1:
        raise ValueError("k 必须 >= 1")
    if k >= n:
        raise ValueError(f"k={k} 必须小于细胞数 {n}")

    if method == "exact":
        from sklearn.neighbors import NearestNeighbors
        nn = NearestNeighbors(n_neighbors=k + 1).fit(X)
        dist, idx = nn.kneighbors(X)
    elif method == "nndescent":
        try:
            from pynndescent import NNDescent
        except ImportError:
            raise ImportError(
                "pynndescent 未安装。请使用以下命令安装：\n"
                "pip install pynndescent"
            )
        index = NNDescent(X, n_neighbors=k + 1, random_state=random_state)
        idx, dist = index.neighbor_graph
    else:
        raise ValueError(f"未知的近邻搜索方法: {method}，可选 'exact'、'nndescent'")

    # 去除自身；若自身不在结果中（重复坐标），则去掉最后一个邻居
    keep = idx != np.arange(n)[:, None]
    no_self = keep.all(axis=1)
    keep[no_self, -1] = False
    return idx[keep].reshape(n, k), dist[keep].reshape(n, k)


def build_snn_graph(
    X: Optional[np.ndarray] = None,
    k: int = 10,
    type: str = "rank",
    knn: Optional[np.ndarray] = None,
    knn_method: str = "exact"
) -> sp.csr_matrix:
    """
    构建共享最近邻（SNN）图

    参数：
    ----------
    X : np.ndarray, optional
        细胞×维度 坐标（未提供 knn 时必需）
    k : int
        邻居数量
    type : str
        边权重定义：
        - "rank": k - r/2，r 为共享邻居的最小秩和（细胞自身秩为 0）
        - "number": 共享邻居数量
        - "jaccard": 邻居集合的 Jaccard 系数
    knn : np.ndarray, optional
        预先计算好的近邻索引 (n_cells, k)

    返回：
    ----------
    graph : sp.csr_matrix
        对称的加权邻接矩阵，对角线为 0
    """
    if type not in ("rank", "number", "jaccard"):
        raise ValueError(f"未知的 SNN 权重类型: {type}")
    if knn is None:
        if X is None:
            raise ValueError("必须提供 X 或 knn")
        knn, _ = find_knn(X, k, method=knn_method)
    knn = np.asarray(knn)
    n, k = knn.shape

    # 每个细胞的邻居列表，自身位于秩 0
    full = np.column_stack([np.arange(n), knn])
    members = pd.DataFrame({
        'owner': np.repeat(np.arange(n), k + 1),
        'member': full.ravel(),
        'rank': np.tile(np.arange(k + 1), n)
    })
    pairs = members.merge(members, on='member', suffixes=('_i', '_j'))
    pairs = pairs[pairs['owner_i'] < pairs['owner_j']]

    if type == "rank":
        rank_sum = (pairs.assign(rank_sum=pairs['rank_i'] + pairs['rank_j'])
                    .groupby(['owner_i', 'owner_j'], sort=False)['rank_sum'].min())
        weights = np.maximum(k - 0.5 * rank_sum.values, 1e-6)
        index = rank_sum.index
    else:
        shared = pairs.groupby(['owner_i', 'owner_j'], sort=False).size()
        index = shared.index
        if type == "number":
            weights = shared.values.astype(float)
        else:
            weights = shared.values / (2 * (k + 1) - shared.values)

    rows = index.get_level_values(0).to_numpy()
    cols = index.get_level_values(1).to_numpy()
    upper = sp.coo_matrix((weights, (rows, cols)), shape=(n, n))
    return (upper + upper.T).tocsr()


def _graph_to_igraph(graph: sp.spmatrix):
    import igraph as ig

    upper = sp.triu(graph, k=1).tocoo()
    g = ig.Graph(n=graph.shape[0], edges=list(zip(upper.row.tolist(), upper.col.tolist())),
                 directed=False)
    g.es['weight'] = upper.data.tolist()
    return g


def _relabel_by_size(membership) -> np.ndarray:
    """将聚类编号按细胞数从大到小重新编号为 "1", "2", ..."""
    membership = np.asarray(membership)
    counts = pd.Series(membership).value_counts(sort=True)
    mapping = {old: str(i + 1) for i, old in enumerate(counts.index)}
    return np.array([mapping[m] for m in membership], dtype=object)


def cluster_graph(
    graph: sp.spmatrix,
    method: str = "walktrap",
    resolution: float = 1.0,
    steps: int = 4,
    random_state: int = 0
) -> np.ndarray:
    """
    在加权图上进行社区发现（python-igraph）

    参数：
    ----------
    graph : sp.spmatrix
        对称加权邻接矩阵
    method : str
        "walktrap"、"louvain"（igraph multilevel）或 "leiden"
    resolution : float
        louvain / leiden 的分辨率
    steps : int
        walktrap 的随机游走步数

    返回：
    ----------
    labels : np.ndarray[str]
        按聚类大小编号的标签（"1" 为最大聚类）
    """
    if method not in ("walktrap", "louvain", "leiden"):
        raise ValueError(f"未知的聚类方法: {method}，可选 'walktrap'、'louvain'、'leiden'")

    g = _graph_to_igraph(graph)
    random.seed(random_state)

    if method == "walktrap":
        # 树状图按整张图的模块度切分
        membership = g.community_walktrap(weights='weight', steps=steps).as_clustering().membership
    elif method == "louvain":
        membership = g.community_multilevel(weights='weight', resolution=resolution).membership
    else:
        membership = g.community_leiden(
            objective_function='modularity',
            weights='weight',
            resolution=resolution,
            n_iterations=-1
        ).membership

    return _relabel_by_size(membership)


def cluster_cells(
    adata: sc.AnnData,
    use_rep: str = "X_pca",
    n_dims: Optional[int] = None,
    k: int = 10,
    snn_type: str = "rank",
    method: str = "walktrap",
    resolution: float = 1.0,
    knn_method: str = "exact",
    key_added: str = "label",
    random_state: int = 0
) -> sc.AnnData:
    """
    SNN 图聚类：构建 SNN 图并进行社区发现

    结果写入 obs[key_added]（categorical），图保存在 obsp['snn']
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"obsm 中不存在 '{use_rep}'，请先运行降维")

    X = adata.obsm[use_rep]
    if n_dims is not None:
        X = X[:, :n_dims]

    print(f"   构建 SNN 图 (k={k}, type={snn_type}, rep={use_rep})...")
    graph = build_snn_graph(X, k=k, type=snn_type, knn_method=knn_method)
    adata.obsp['snn'] = graph

    print(f"   {method} 社区发现...")
    labels = cluster_graph(graph, method=method, resolution=resolution, random_state=random_state)
    categories = sorted(set(labels), key=int)
    adata.obs[key_added] = pd.Categorical(labels, categories=categories)

    print(f"   聚类完成，共 {len(categories)} 个cluster")
    return adata


def leiden_clusters(
    adata: sc.AnnData,
    n_neighbors: int = 15,
    resolution: float = 1.0,
    use_rep: str = "X_pca",
    n_pcs: Optional[int] = None,
    key_added: str = "leiden",
    random_state: int = 0
) -> sc.AnnData:
    """scanpy 的 neighbors + leiden 聚类"""
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_pcs, use_rep=use_rep,
                    random_state=random_state)
    sc.tl.leiden(adata, resolution=resolution, key_added=key_added, flavor='igraph',
                 n_iterations=2, directed=False, random_state=random_state)
    print(f"   Leiden 聚类完成，共 {adata.obs[key_added].nunique()} 个cluster")
    return adata
