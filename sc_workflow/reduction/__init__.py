"""
降维模块
"""

from .pca import run_pca, find_elbow_point, denoise_pca, run_tsne, run_umap

__all__ = [
    'run_pca',
    'find_elbow_point',
    'denoise_pca',
    'run_tsne',
    'run_umap'
]
