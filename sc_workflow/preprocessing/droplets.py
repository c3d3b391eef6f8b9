"""
空液滴检测模块

基于条码排序曲线（knee / inflection）和环境 RNA 多项分布检验
区分含细胞液滴与空液滴
"""

import logging
import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy.interpolate import make_smoothing_spline
from scipy.special import gammaln
from scipy.stats import rankdata
from tqdm import tqdm
from typing import Optional, Tuple

from ..utils.matrix import row_sums, col_sums, bh_adjust

logger = logging.getLogger(__name__)


def _counts_and_names(counts):
    """支持直接传入 AnnData 或矩阵"""
    if hasattr(counts, 'obs_names'):
        return sp.csr_matrix(counts.X), pd.Index(counts.obs_names)
    X = sp.csr_matrix(counts)
    return X, pd.RangeIndex(X.shape[0])


def barcode_ranks(
    counts,
    lower: int = 100,
    fit_bounds: Optional[Tuple[float, float]] = None,
    lam: Optional[float] = None
) -> Tuple[pd.DataFrame, dict]:
    """
    计算条码排序曲线及其 knee / inflection 点

    参数：
    ----------
    counts : AnnData 或矩阵
        条码×基因 的原始 counts
    lower : int
        低于该总 counts 的条码不参与曲线拟合
    fit_bounds : tuple, optional
        样条拟合的总 counts 范围 (low, high)，默认由一阶导数自动确定
    lam : float, optional
        平滑样条的惩罚系数（None 时通过 GCV 自动选择）

    返回：
    ----------
    ranks_df : pd.DataFrame
        每个条码的 total、rank 以及拟合值 fitted
    points : dict
        {'knee': float, 'inflection': float}
    """
    X, names = _counts_and_names(counts)
    totals = row_sums(X)
    ranks = rankdata(-totals, method='average')

    ranks_df = pd.DataFrame({'total': totals, 'rank': ranks, 'fitted': np.nan}, index=names)
    points = {'knee': np.nan, 'inflection': np.nan}

    # 按 rank 升序的去重曲线（相同 total 的 rank 相同）
    u_tot, first = np.unique(totals, return_index=True)
    u_rank = ranks[first]
    order = np.argsort(u_rank)
    u_tot, u_rank = u_tot[order], u_rank[order]

    keep = u_tot > lower
    if keep.sum() < 3:
        logger.warning("高于 lower=%s 的唯一 total 数量不足 3 个，无法计算 knee/inflection", lower)
        return ranks_df, points

    x = np.log10(u_rank[keep])
    y = np.log10(u_tot[keep])

    # d1n[i] 为点 i 与 i+1 之间的斜率；窗口两端的点都参与拟合
    d1n = np.diff(y) / np.diff(x)
    right_edge = int(np.argmin(d1n))
    points['inflection'] = float(10 ** y[right_edge])

    if fit_bounds is None:
        left_edge = int(np.argmax(d1n[:right_edge + 1]))
        window = np.arange(left_edge, right_edge + 1)
    else:
        low, high = np.log10(fit_bounds[0]), np.log10(fit_bounds[1])
        window = np.flatnonzero((y > low) & (y < high))

    if len(window) < 5:
        # 点太少时无法拟合样条，以窗口内最大值作为 knee
        points['knee'] = float(10 ** y[window].max()) if len(window) else points['inflection']
        return ranks_df, points

    fit = make_smoothing_spline(x[window], y[window], lam=lam)
    d1 = fit.derivative(1)(x[window])
    d2 = fit.derivative(2)(x[window])
    curvature = d2 / (1 + d1 ** 2) ** 1.5
    points['knee'] = float(10 ** y[window][np.argmin(curvature)])

    # 窗口内条码的拟合值
    lo_rank, hi_rank = 10 ** x[window].min(), 10 ** x[window].max()
    in_fit = (ranks >= lo_rank) & (ranks <= hi_rank)
    ranks_df.loc[in_fit, 'fitted'] = 10 ** fit(np.log10(ranks[in_fit]))

    return ranks_df, points


def ambient_profile(counts, lower: int = 100, pseudo_count: Optional[float] = None) -> np.ndarray:
    """
    估计环境 RNA 表达谱

    将总 counts <= lower 的条码视为空液滴，对其按基因求和后计算比例。
    对所有基因加 pseudo_count（默认 0.5）做加性平滑，保证概率非零。
    """
    X, _ = _counts_and_names(counts)
    totals = row_sums(X)
    ambient_mask = totals <= lower
    if not ambient_mask.any():
        raise ValueError(f"没有总 counts <= {lower} 的条码，无法估计环境 RNA 谱")

    ambient = col_sums(X[ambient_mask])
    if pseudo_count is None:
        pseudo_count = 0.5
    smoothed = ambient + pseudo_count
    return smoothed / smoothed.sum()


def _multinomial_logprob(X: sp.csr_matrix, totals: np.ndarray, log_prob: np.ndarray) -> np.ndarray:
    Xl = X.copy().astype(np.float64)
    Xl.data = gammaln(Xl.data + 1)
    return gammaln(totals + 1) - row_sums(Xl) + X @ log_prob


def _simulate_logprob(rng, prob: np.ndarray, log_prob: np.ndarray, max_total: int) -> np.ndarray:
    """
    依次抽取 max_total 个分子，返回每个 total（1..max_total）下的多项分布对数概率

    新增一个落在基因 g 上的分子（该基因此时第 c 次出现）时，
    对数概率增加 log(T) - log(c) + log(p_g)。
    """
    draws = rng.choice(len(prob), size=max_total, p=prob)
    order = np.argsort(draws, kind='stable')
    sorted_draws = draws[order]
    starts = np.r_[0, np.flatnonzero(np.diff(sorted_draws)) + 1]
    lengths = np.diff(np.r_[starts, max_total])
    occ_sorted = np.arange(max_total) - np.repeat(starts, lengths) + 1
    occurrence = np.empty(max_total, dtype=np.int64)
    occurrence[order] = occ_sorted

    step = np.log(np.arange(1, max_total + 1)) - np.log(occurrence) + log_prob[draws]
    return np.cumsum(step)


def empty_drops(
    counts,
    lower: int = 100,
    niters: int = 10000,
    retain: Optional[float] = None,
    test_ambient: bool = False,
    pseudo_count: Optional[float] = None,
    random_state: int = 0
) -> pd.DataFrame:
    """
    基于环境 RNA 多项分布的空液滴检验

    参数：
    ----------
    counts : AnnData 或矩阵
        未过滤的条码×基因 counts
    lower : int
        总 counts <= lower 的条码用于估计环境 RNA 谱，且默认不参与检验
    niters : int
        蒙特卡洛模拟次数（默认 10000）
    retain : float, optional
        总 counts >= retain 的条码直接判定为细胞（p 值为 0），默认使用 knee 点
    test_ambient : bool
        是否对 total <= lower 的条码也计算 p 值
    random_state : int
        随机种子

    返回：
    ----------
    result : pd.DataFrame
        每个条码的 Total、LogProb、PValue、Limited、FDR
    """
    X, names = _counts_and_names(counts)
    totals = row_sums(X)

    prob = ambient_profile(X, lower=lower, pseudo_count=pseudo_count)
    log_prob = np.log(prob)

    if retain is None:
        _, points = barcode_ranks(X, lower=lower)
        retain = points['knee']

    tested = totals > 0 if test_ambient else totals > lower

    result = pd.DataFrame({
        'Total': totals,
        'LogProb': np.nan,
        'PValue': np.nan,
        'Limited': False,
        'FDR': np.nan
    }, index=names)

    if not tested.any():
        logger.warning("没有需要检验的条码 (lower=%s)", lower)
        return result

    X_tested = X[tested]
    tot_tested = totals[tested]
    obs = _multinomial_logprob(X_tested, tot_tested, log_prob)

    uniq_totals = np.unique(tot_tested).astype(np.int64)
    position = np.searchsorted(uniq_totals, tot_tested.astype(np.int64))
    n_below = np.zeros(len(obs), dtype=np.int64)

    rng = np.random.default_rng(random_state)
    for _ in tqdm(range(niters), desc="Simulating ambient profiles"):
        cumulative = _simulate_logprob(rng, prob, log_prob, int(uniq_totals[-1]))
        sim = cumulative[uniq_totals - 1]
        n_below += sim[position] <= obs

    pvalues = (n_below + 1) / (niters + 1)
    limited = n_below == 0

    if retain is not None and np.isfinite(retain):
        pvalues[tot_tested >= retain] = 0

    result.loc[tested, 'LogProb'] = obs
    result.loc[tested, 'PValue'] = pvalues
    result.loc[tested, 'Limited'] = limited
    result['FDR'] = bh_adjust(result['PValue'].values)

    return result


def filter_empty_drops(adata, fdr: float = 0.001, **kwargs):
    """
    运行空液滴检验并保留 FDR <= fdr 的条码

    返回：
    ----------
    adata_cells : AnnData
        仅包含细胞的 AnnData（obs['empty_drops_fdr'] 记录 FDR）
    """
    print("=" * 60)
    print("开始空液滴检测...")
    print("=" * 60)

    result = empty_drops(adata, **kwargs)
    adata.obs['empty_drops_fdr'] = result['FDR'].values

    is_cell = (result['FDR'] <= fdr).fillna(False).values
    n_limited = int((result['Limited'] & ~is_cell).sum())

    print(f"   条码总数: {adata.n_obs:,}")
    print(f"   判定为细胞: {is_cell.sum():,} (FDR <= {fdr})")
    if n_limited > 0:
        print(f"   ⚠️  {n_limited} 个未通过的条码 p 值受模拟次数限制，可增大 niters")

    return adata[is_cell].copy()
