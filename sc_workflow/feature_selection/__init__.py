"""
特征选择模块

提供基于方差分解的高变基因选择功能
"""

from .variance import fit_trend_var, model_gene_var, get_top_hvgs, select_features

__all__ = [
    'fit_trend_var',
    'model_gene_var',
    'get_top_hvgs',
    'select_features'
]
