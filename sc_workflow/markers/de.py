"""
聚类间差异表达检验

对每一对聚类进行检验（Welch t 检验、Wilcoxon 秩和检验、二项检验），
再将同一聚类的多个两两比较合并为该聚类的 marker 基因表
"""

import itertools
import logging
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp
from scipy import stats
from typing import Dict, Optional, Sequence, Tuple

from ..utils.matrix import get_matrix, to_dense, bh_adjust

logger = logging.getLogger(__name__)

EFFECT_NAMES = {'t': 'logFC', 'wilcox': 'AUC', 'binom': 'logFC'}


def _welch_test(x1, x2, direction, lfc):
    n1, n2 = len(x1), len(x2)
    m1, m2 = x1.mean(axis=0), x2.mean(axis=0)
    v1, v2 = x1.var(axis=0, ddof=1), x2.var(axis=0, ddof=1)
    delta = m1 - m2
    s1, s2 = v1 / n1, v2 / n2
    se = np.sqrt(s1 + s2)

    with np.errstate(divide='ignore', invalid='ignore'):
        df = (s1 + s2) ** 2 / (s1 ** 2 / (n1 - 1) + s2 ** 2 / (n2 - 1))
        if direction == "up":
            p = stats.t.sf((delta - lfc) / se, df)
        elif direction == "down":
            p = stats.t.cdf((delta + lfc) / se, df)
        else:
            p = stats.t.sf((np.abs(delta) - lfc) / se, df) + stats.t.cdf((-np.abs(delta) - lfc) / se, df)

    # 两组方差均为 0 时无法检验
    degenerate = ~(se > 0)
    if direction == "up":
        exceeds = delta > lfc
    elif direction == "down":
        exceeds = delta < -lfc
    else:
        exceeds = np.abs(delta) > lfc
    p = np.where(degenerate, np.where(exceeds, 0.0, 1.0), p)
    return np.clip(p, 0, 1), delta


def _wilcox_test(x1, x2, direction, lfc):
    n1, n2 = len(x1), len(x2)
    with np.errstate(divide='ignore', invalid='ignore'):
        u1, p_two = stats.mannwhitneyu(x1, x2, alternative='two-sided', axis=0, method='asymptotic')
        auc = u1 / (n1 * n2)
        if direction == "up":
            p = stats.mannwhitneyu(x1 - lfc, x2, alternative='greater', axis=0, method='asymptotic')[1]
        elif direction == "down":
            p = stats.mannwhitneyu(x1 + lfc, x2, alternative='less', axis=0, method='asymptotic')[1]
        elif lfc == 0:
            p = p_two
        else:
            p_up = stats.mannwhitneyu(x1 - lfc, x2, alternative='greater', axis=0, method='asymptotic')[1]
            p_down = stats.mannwhitneyu(x1 + lfc, x2, alternative='less', axis=0, method='asymptotic')[1]
            p = np.minimum(1, p_up + p_down)
    return np.clip(np.nan_to_num(p, nan=1.0), 0, 1), auc


def _binom_test(x1, x2, direction, lfc, threshold):
    n1, n2 = len(x1), len(x2)
    e1 = (x1 > threshold).sum(axis=0)
    e2 = (x2 > threshold).sum(axis=0)
    total = e1 + e2

    scale = 2.0 ** lfc
    p_up_null = n1 * scale / (n1 * scale + n2)
    p_down_null = n1 / scale / (n1 / scale + n2)
    p_up = stats.binom.sf(e1 - 1, total, p_up_null)
    p_down = stats.binom.cdf(e1, total, p_down_null)

    if direction == "up":
        p = p_up
    elif direction == "down":
        p = p_down
    else:
        p = np.minimum(1, 2 * np.minimum(p_up, p_down))
    p = np.where(total == 0, 1.0, p)

    effect = np.log2((e1 + 1) / (n1 + 1)) - np.log2((e2 + 1) / (n2 + 1))
    return np.clip(p, 0, 1), effect


def pairwise_tests(
    X,
    labels,
    genes: Sequence[str],
    test: str = "t",
    direction: str = "any",
    lfc: float = 0,
    threshold: float = 0,
    chunk_size: int = 2000
) -> Dict[Tuple[str, str], pd.DataFrame]:
    """
    对所有有序聚类对进行差异表达检验

    参数：
    ----------
    X : 矩阵
        细胞×基因 的 log 表达量
    labels : array-like
        每个细胞的聚类标签
    genes : sequence of str
        基因名
    test : str
        "t"（Welch t 检验，效应为 logFC）、"wilcox"（效应为 AUC）或 "binom"（效应为检出率 logFC）
    direction : str
        "any"、"up" 或 "down"
    lfc : float
        log fold change 阈值（检验 |logFC| > lfc）
    threshold : float
        binom 检验中判定为"表达"的阈值
    chunk_size : int
        每次转为稠密矩阵的基因数

    返回：
    ----------
    results : dict
        {(group, other): DataFrame[p.value, <effect>]}
    """
    if test not in EFFECT_NAMES:
        raise ValueError(f"未知的检验方法: {test}，可选 {list(EFFECT_NAMES)}")
    if direction not in ("any", "up", "down"):
        raise ValueError(f"未知的方向: {direction}")
    if lfc < 0:
        raise ValueError("lfc 必须 >= 0")
    if chunk_size < 1:
        raise ValueError("chunk_size 必须 >= 1")

    labels = np.asarray(labels).astype(str)
    levels = sorted(pd.unique(labels), key=lambda x: (len(x), x))
    if len(levels) < 2:
        raise ValueError("至少需要 2 个分组")

    masks = {level: labels == level for level in levels}
    comparisons = []
    for g1, g2 in itertools.permutations(levels, 2):
        if masks[g1].sum() < 2 or masks[g2].sum() < 2:
            logger.warning("分组 %s 或 %s 细胞数少于 2，跳过该比较", g1, g2)
            continue
        comparisons.append((g1, g2))

    # 按基因分块转为稠密矩阵，各基因的检验相互独立
    if sp.issparse(X):
        X = sp.csc_matrix(X)
    pvals = {key: [] for key in comparisons}
    effects = {key: [] for key in comparisons}
    for start in range(0, X.shape[1], chunk_size):
        chunk = to_dense(X[:, start:start + chunk_size]).astype(float)
        subsets = {level: chunk[mask] for level, mask in masks.items()}
        for g1, g2 in comparisons:
            x1, x2 = subsets[g1], subsets[g2]
            if test == "t":
                p, effect = _welch_test(x1, x2, direction, lfc)
            elif test == "wilcox":
                p, effect = _wilcox_test(x1, x2, direction, lfc)
            else:
                p, effect = _binom_test(x1, x2, direction, lfc, threshold)
            pvals[(g1, g2)].append(p)
            effects[(g1, g2)].append(effect)

    effect_name = EFFECT_NAMES[test]
    return {
        key: pd.DataFrame({'p.value': np.concatenate(pvals[key]),
                           effect_name: np.concatenate(effects[key])}, index=genes)
        for key in comparisons
    }


def _holm_sorted(pvals: np.ndarray) -> np.ndarray:
    """每行（基因）内按 Holm 校正并升序排列的 p 值"""
    m = pvals.shape[1]
    ordered = np.sort(pvals, axis=1)
    multipliers = m - np.arange(m)
    return np.minimum(1, np.maximum.accumulate(ordered * multipliers, axis=1))


def combine_markers(
    pairwise: Dict[Tuple[str, str], pd.DataFrame],
    pval_type: str = "any"
) -> Dict[str, pd.DataFrame]:
    """
    合并每个聚类的两两比较结果

    参数：
    ----------
    pairwise : dict
        pairwise_tests 的结果
    pval_type : str
        - "any": Holm 校正后的最小 p 值（至少一个比较显著），并给出 Top 排名
        - "all": 最大 p 值（所有比较均显著）
        - "some" 或 "some:<frac>": Holm 校正后处于 frac 位置的 p 值（默认 0.5）

    返回：
    ----------
    markers : dict
        {group: DataFrame[Top, p.value, FDR, summary.<effect>, <effect>.<other>...]}
    """
    frac = None
    if pval_type.startswith("some"):
        frac = float(pval_type.split(":", 1)[1]) if ":" in pval_type else 0.5
        if not 0 < frac <= 1:
            raise ValueError("some 的比例必须在 (0, 1] 内")
    elif pval_type not in ("any", "all"):
        raise ValueError(f"未知的 pval_type: {pval_type}")

    groups = sorted({g for g, _ in pairwise}, key=lambda x: (len(x), x))
    markers = {}
    for group in groups:
        keys = [key for key in pairwise if key[0] == group]
        others = [other for _, other in keys]
        tables = [pairwise[key] for key in keys]
        effect_name = [c for c in tables[0].columns if c != 'p.value'][0]
        genes = tables[0].index

        pvals = np.column_stack([t['p.value'].values for t in tables])
        effects = np.column_stack([t[effect_name].values for t in tables])

        if pval_type == "all":
            combined = pvals.max(axis=1)
            chosen = pvals.argmax(axis=1)
        else:
            holm = _holm_sorted(pvals)
            pos = 0 if frac is None else int(np.ceil(frac * pvals.shape[1])) - 1
            combined = holm[:, pos]
            chosen = pvals.argmin(axis=1)

        table = pd.DataFrame(index=genes)
        if pval_type == "any":
            ranks = np.column_stack([stats.rankdata(pvals[:, j], method='min')
                                     for j in range(pvals.shape[1])])
            table['Top'] = ranks.min(axis=1).astype(int)
        table['p.value'] = combined
        table['FDR'] = bh_adjust(combined)
        table[f'summary.{effect_name}'] = effects[np.arange(len(genes)), chosen]
        for j, other in enumerate(others):
            table[f'{effect_name}.{other}'] = effects[:, j]

        sort_cols = ['Top', 'p.value'] if pval_type == "any" else ['p.value']
        markers[group] = table.sort_values(sort_cols, kind='stable')

    return markers


def _combine_blocks(block_results, weights):
    """用加权 Stouffer 法合并各批次的同一比较"""
    tables = list(block_results)
    effect_name = [c for c in tables[0].columns if c != 'p.value'][0]
    w = np.asarray(weights, dtype=float)
    z = np.column_stack([stats.norm.isf(np.clip(t['p.value'].values, 1e-300, 1 - 1e-16))
                         for t in tables])
    combined_z = z @ w / np.sqrt((w ** 2).sum())
    effect = np.column_stack([t[effect_name].values for t in tables]) @ w / w.sum()
    return pd.DataFrame({'p.value': stats.norm.sf(combined_z), effect_name: effect},
                        index=tables[0].index)


def find_markers(
    adata: sc.AnnData,
    groupby: str,
    layer: Optional[str] = "logcounts",
    test: str = "t",
    pval_type: str = "any",
    direction: str = "up",
    lfc: float = 0,
    block: Optional[str] = None,
    threshold: float = 0,
    chunk_size: int = 2000
) -> Dict[str, pd.DataFrame]:
    """
    寻找每个聚类的 marker 基因

    参数：
    ----------
    adata : sc.AnnData
        AnnData 对象
    groupby : str
        obs 中的聚类列
    layer : str
        log 表达量所在的 layer（不存在时使用 .X）
    test, direction, lfc :
        见 pairwise_tests
    pval_type : str
        见 combine_markers
    block : str, optional
        批次列名；在每个批次内分别比较，再用加权 Stouffer 法合并
    chunk_size : int
        每次转为稠密矩阵的基因数

    返回：
    ----------
    markers : dict
        {cluster: marker 基因表}
    """
    if groupby not in adata.obs.columns:
        raise ValueError(f"obs 中不存在列 '{groupby}'")
    if layer is not None and layer not in adata.layers:
        layer = None

    X = get_matrix(adata, layer)
    labels = adata.obs[groupby].astype(str).values
    genes = adata.var_names

    if block is None:
        pairwise = pairwise_tests(X, labels, genes, test=test, direction=direction,
                                  lfc=lfc, threshold=threshold, chunk_size=chunk_size)
    else:
        if block not in adata.obs.columns:
            raise ValueError(f"obs 中不存在列 '{block}'")
        blocks = adata.obs[block].astype(str).values
        collected = {}
        for level in pd.unique(blocks):
            mask = blocks == level
            present = pd.Series(labels[mask]).value_counts()
            if (present >= 2).sum() < 2:
                continue
            sub = pairwise_tests(X[mask], labels[mask], genes, test=test, direction=direction,
                                 lfc=lfc, threshold=threshold, chunk_size=chunk_size)
            for key, table in sub.items():
                weight = min(present[key[0]], present[key[1]])
                collected.setdefault(key, []).append((table, weight))
        if not collected:
            raise ValueError("没有任何批次包含至少 2 个可比较的分组")
        pairwise = {
            key: _combine_blocks([t for t, _ in items], [w for _, w in items])
            for key, items in collected.items()
        }

    return combine_markers(pairwise, pval_type=pval_type)


def rank_markers(
    adata: sc.AnnData,
    groupby: str,
    method: str = "wilcoxon",
    n_genes: int = 25,
    layer: Optional[str] = None
) -> pd.DataFrame:
    """scanpy rank_genes_groups 的封装，返回长表"""
    sc.tl.rank_genes_groups(adata, groupby, method=method, n_genes=n_genes,
                            layer=layer, use_raw=False)
    return sc.get.rank_genes_groups_df(adata, group=None)
