"""
高变基因选择模块

对 log 表达量的均值-方差关系拟合技术噪声趋势，
将每个基因的方差分解为技术成分与生物学成分
"""

import logging
import numpy as np
import pandas as pd
import scanpy as sc
from scipy.optimize import curve_fit
from scipy.stats import chi2
from typing import Callable, List, Optional

from ..utils.matrix import get_matrix, col_mean_var, bh_adjust, to_dense

logger = logging.getLogger(__name__)


def _parametric_curve(mu, a, n, b):
    return a * mu / (mu ** n + b)


def fit_trend_var(
    means: np.ndarray,
    variances: np.ndarray,
    min_mean: float = 0.1,
    frac: float = 0.025
) -> Callable[[np.ndarray], np.ndarray]:
    """
    拟合均值-方差趋势

    先拟合参数曲线 a*mu/(mu^n + b)，再对方差与曲线之比的对数做滑动中位数平滑。
    低于拟合范围的均值按过原点的直线外推。

    参数：
    ----------
    means, variances : np.ndarray
        每个基因的 log 表达量均值与方差
    min_mean : float
        参与拟合的最低均值
    frac : float
        滑动窗口占基因数的比例

    返回：
    ----------
    trend : callable
        输入均值，返回拟合的技术方差（非负）
    """
    means = np.asarray(means, dtype=float)
    variances = np.asarray(variances, dtype=float)
    keep = (means >= min_mean) & (variances > 0) & np.isfinite(means) & np.isfinite(variances)
    if keep.sum() < 3:
        raise ValueError(f"均值 >= {min_mean} 的基因不足 3 个，无法拟合方差趋势")

    m = means[keep]
    v = variances[keep]
    order = np.argsort(m)
    m, v = m[order], v[order]

    try:
        params, _ = curve_fit(
            _parametric_curve, m, v,
            p0=(v.max(), 1.0, 1.0),
            bounds=([0, 0.1, 1e-8], [np.inf, 10, np.inf]),
            maxfev=10000
        )
        curve = lambda x: _parametric_curve(x, *params)
    except (RuntimeError, ValueError) as e:
        logger.warning("参数曲线拟合失败 (%s)，使用常数趋势", e)
        median_v = np.median(v)
        curve = lambda x: np.full(np.shape(x), median_v, dtype=float)

    base = curve(m)
    base = np.where(base > 0, base, np.min(v))
    log_ratio = np.log(v / base)
    window = max(3, int(frac * len(m)) | 1)
    smoothed = pd.Series(log_ratio).rolling(window, center=True, min_periods=1).median().values

    left_mean = m[0]

    def trend(x):
        x = np.asarray(x, dtype=float)
        out = curve(x) * np.exp(np.interp(x, m, smoothed))
        left_value = curve(np.array([left_mean]))[0] * np.exp(smoothed[0])
        below = x < left_mean
        out[below] = left_value * x[below] / left_mean
        return np.maximum(np.nan_to_num(out, nan=0.0), 0)

    return trend


def _poisson_trend(counts, size_factors, log_base, pseudo_count, min_mean, rng,
                   n_grid: int = 100, max_cells: int = 2000):
    """在模拟 Poisson counts 上拟合技术噪声趋势"""
    counts = to_dense(counts).astype(float)
    lam = (counts / size_factors[:, None]).mean(axis=0)
    lam = lam[lam > 0]
    grid = np.exp(np.linspace(np.log(lam.min()), np.log(lam.max()), n_grid))

    sf = size_factors
    if len(sf) > max_cells:
        sf = rng.choice(sf, size=max_cells, replace=False)
    sim = rng.poisson(grid[None, :] * sf[:, None])
    logged = np.log(sim / sf[:, None] + pseudo_count) / np.log(log_base)
    sim_mean = logged.mean(axis=0)
    sim_var = logged.var(axis=0, ddof=1)
    return fit_trend_var(sim_mean, sim_var, min_mean=min(min_mean, np.min(sim_mean[sim_var > 0])))


def _gene_var_stats(X, trend_fun, n_cells):
    mean, total = col_mean_var(X)
    tech = trend_fun(mean)
    bio = total - tech
    with np.errstate(divide='ignore', invalid='ignore'):
        p_value = np.where(tech > 0, chi2.sf(total * (n_cells - 1) / tech, n_cells - 1), np.nan)
    return mean, total, tech, bio, p_value


def model_gene_var(
    adata: sc.AnnData,
    layer: Optional[str] = "logcounts",
    block: Optional[str] = None,
    poisson: bool = False,
    min_mean: float = 0.1,
    random_state: int = 0
) -> pd.DataFrame:
    """
    对每个基因的方差建模

    参数：
    ----------
    adata : sc.AnnData
        包含 log 表达量的 AnnData 对象
    layer : str
        log 表达量所在的 layer（None 表示 .X）
    block : str, optional
        obs 中的分组列（如批次），各组分别建模后按细胞数加权平均，p 值用 Fisher 法合并
    poisson : bool
        是否假设技术噪声服从 Poisson 分布（需要 layers['counts'] 和 obs['size_factors']）
    min_mean : float
        趋势拟合的最低均值

    返回：
    ----------
    stats : pd.DataFrame
        mean、total、tech、bio、p_value、FDR
    """
    X = get_matrix(adata, layer)
    rng = np.random.default_rng(random_state)

    if poisson:
        if 'counts' not in adata.layers:
            raise ValueError("poisson=True 需要 layers['counts']")
        log_info = adata.uns.get('log_norm', {'log_base': 2, 'pseudo_count': 1})
        if 'size_factors' in adata.obs:
            size_factors = adata.obs['size_factors'].values.astype(float)
        else:
            from ..preprocessing.normalization import library_size_factors
            size_factors = library_size_factors(adata.layers['counts'])

    if block is None:
        groups = {'all': np.arange(adata.n_obs)}
    else:
        if block not in adata.obs.columns:
            raise ValueError(f"obs 中不存在列 '{block}'")
        labels = adata.obs[block].astype(str).values
        groups = {level: np.flatnonzero(labels == level) for level in pd.unique(labels)}

    per_block = []
    weights = []
    for level, idx in groups.items():
        if len(idx) < 2:
            logger.warning("分组 %s 细胞数少于 2，跳过", level)
            continue
        Xb = X[idx]
        if poisson:
            trend = _poisson_trend(adata.layers['counts'][idx], size_factors[idx],
                                   log_info['log_base'], log_info['pseudo_count'], min_mean, rng)
        else:
            mean, total = col_mean_var(Xb)
            trend = fit_trend_var(mean, total, min_mean=min_mean)
        per_block.append(_gene_var_stats(Xb, trend, len(idx)))
        weights.append(len(idx))

    if not per_block:
        raise ValueError("没有可用于建模的分组")

    weights = np.asarray(weights, dtype=float)
    weights /= weights.sum()
    mean, total, tech, bio = (
        sum(w * block_stats[i] for w, block_stats in zip(weights, per_block))
        for i in range(4)
    )

    if len(per_block) == 1:
        p_value = per_block[0][4]
    else:
        # Fisher 法合并各组 p 值
        pvals = np.vstack([s[4] for s in per_block])
        with np.errstate(divide='ignore'):
            statistic = -2 * np.nansum(np.log(np.clip(pvals, 1e-300, 1)), axis=0)
        df = 2 * np.sum(np.isfinite(pvals), axis=0)
        p_value = np.where(df > 0, chi2.sf(statistic, np.maximum(df, 1)), np.nan)

    stats = pd.DataFrame({
        'mean': mean,
        'total': total,
        'tech': tech,
        'bio': bio,
        'p_value': p_value,
        'FDR': bh_adjust(p_value)
    }, index=adata.var_names)
    return stats


def get_top_hvgs(
    stats: pd.DataFrame,
    n: Optional[int] = None,
    prop: Optional[float] = None,
    var_field: str = "bio",
    var_threshold: Optional[float] = 0,
    fdr_threshold: Optional[float] = None
) -> List[str]:
    """
    按生物学方差从大到小选择高变基因

    参数：
    ----------
    stats : pd.DataFrame
        model_gene_var 的结果
    n : int, optional
        最多返回的基因数
    prop : float, optional
        最多返回的基因比例
    var_threshold : float, optional
        var_field 的最低阈值（None 表示不过滤）
    fdr_threshold : float, optional
        FDR 阈值

    返回：
    ----------
    genes : list of str
    """
    if var_field not in stats.columns:
        raise ValueError(f"stats 中不存在列 '{var_field}'")
    if n is not None and n < 1:
        raise ValueError("n 必须 >= 1")

    ranked = stats.sort_values(var_field, ascending=False)
    if var_threshold is not None:
        ranked = ranked[ranked[var_field] > var_threshold]
    if fdr_threshold is not None:
        ranked = ranked[ranked['FDR'] <= fdr_threshold]

    limit = None
    if prop is not None:
        limit = int(round(prop * len(stats)))
    if n is not None:
        limit = n if limit is None else min(limit, n)
    if limit is not None:
        ranked = ranked.head(limit)

    return list(ranked.index)


def select_features(
    adata: sc.AnnData,
    method: str = "modelgenevar",
    n_top: int = 2000,
    batch_key: Optional[str] = None,
    layer: Optional[str] = "logcounts"
) -> List[str]:
    """
    高变基因选择入口

    参数：
    ----------
    method : str
        "modelgenevar"（方差分解）或 scanpy 的 "seurat"、"seurat_v3"、"cell_ranger"
    n_top : int
        高变基因数量
    batch_key : str, optional
        批次列名

    返回：
    ----------
    genes : list of str
        高变基因列表（同时写入 var['highly_variable']）
    """
    print("=" * 60)
    print(f"高变基因选择 (method={method}, n_top={n_top})...")
    print("=" * 60)

    if method == "modelgenevar":
        if layer is not None and layer not in adata.layers:
            layer = None
        stats = model_gene_var(adata, layer=layer, block=batch_key)
        genes = get_top_hvgs(stats, n=n_top)
        for col in ('mean', 'total', 'tech', 'bio', 'FDR'):
            adata.var[f'hvg_{col}'] = stats[col].values
        adata.var['highly_variable'] = adata.var_names.isin(genes)
    elif method in ("seurat", "seurat_v3", "cell_ranger"):
        hvg_layer = "counts" if method == "seurat_v3" else None
        sc.pp.highly_variable_genes(adata, flavor=method, n_top_genes=n_top,
                                    batch_key=batch_key, layer=hvg_layer)
        genes = list(adata.var_names[adata.var['highly_variable']])
    else:
        raise ValueError(f"未知的高变基因方法: {method}")

    print(f"   选择了 {len(genes)} 个高变基因")
    return genes
