"""
聚类模块

提供图聚类、划分式聚类以及聚类诊断功能
"""

from .graph import find_knn, build_snn_graph, cluster_graph, cluster_cells, leiden_clusters
from .partition import (
    kmeans_clusters,
    two_step_clustering,
    hierarchical_clusters,
    consensus_clustering
)
from .diagnostics import (
    approx_silhouette,
    pairwise_modularity,
    neighbor_purity,
    bootstrap_stability,
    compare_clusterings
)

__all__ = [
    # Graph
    'find_knn',
    'build_snn_graph',
    'cluster_graph',
    'cluster_cells',
    'leiden_clusters',

    # Partition
    'kmeans_clusters',
    'two_step_clustering',
    'hierarchical_clusters',
    'consensus_clustering',

    # Diagnostics
    'approx_silhouette',
    'pairwise_modularity',
    'neighbor_purity',
    'bootstrap_stability',
    'compare_clusterings'
]
