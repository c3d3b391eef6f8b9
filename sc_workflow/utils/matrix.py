"""
矩阵与统计辅助函数
"""

import numpy as np
import scipy.sparse as sp
from scipy import stats
from typing import Optional


def get_matrix(adata, layer: Optional[str] = None):
    """取出 adata 的表达矩阵（layer 为 None 时返回 .X）"""
    if layer is None:
        return adata.X
    if layer not in adata.layers:
        raise ValueError(f"layers 中不存在 '{layer}'，可用: {list(adata.layers.keys())}")
    return adata.layers[layer]


def to_dense(X) -> np.ndarray:
    if sp.issparse(X):
        return X.toarray()
    return np.asarray(X)


def row_sums(X) -> np.ndarray:
    return np.asarray(X.sum(axis=1)).ravel()


def col_sums(X) -> np.ndarray:
    return np.asarray(X.sum(axis=0)).ravel()


def col_mean_var(X, ddof: int = 1):
    """按列计算均值和方差（支持稀疏矩阵）"""
    n = X.shape[0]
    if sp.issparse(X):
        mean = col_sums(X) / n
        sq = col_sums(X.multiply(X)) / n
        var = (sq - mean ** 2) * n / max(n - ddof, 1)
        return mean, np.maximum(var, 0)
    X = np.asarray(X)
    return X.mean(axis=0), X.var(axis=0, ddof=ddof)


def bh_adjust(pvalues) -> np.ndarray:
    """Benjamini-Hochberg 校正，NaN 保持为 NaN"""
    p = np.asarray(pvalues, dtype=float)
    out = np.full(p.shape, np.nan)
    ok = np.isfinite(p)
    if ok.any():
        out[ok] = stats.false_discovery_control(np.clip(p[ok], 0, 1), method='bh')
    return out


def mad_outlier_bounds(values: np.ndarray, nmads: float = 3.0):
    """返回 median ± nmads * MAD 的上下界（MAD 按正态分布缩放）"""
    values = values[np.isfinite(values)]
    if len(values) == 0:
        return np.nan, np.nan
    med = np.median(values)
    mad = stats.median_abs_deviation(values, scale='normal')
    return med - nmads * mad, med + nmads * mad
