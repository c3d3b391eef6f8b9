"""
质量控制模块

提供单细胞数据质控功能，包括：
- QC 指标计算
- 基于 MAD 的自适应阈值
- 双胞检测
- 细胞过滤
"""

import os
import logging
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp
import matplotlib.pyplot as plt
from typing import Union, Tuple, Optional, Sequence
from tqdm import tqdm

from ..io.writer import save_figure
from ..utils.matrix import mad_outlier_bounds, row_sums

logger = logging.getLogger(__name__)


def add_qc_metrics(
    adata: sc.AnnData,
    mito_prefixes: Sequence[str] = ("MT-", "mt-"),
    extra_qc_vars: Optional[dict] = None
) -> sc.AnnData:
    """
    计算每个细胞的 QC 指标

    参数：
    ----------
    adata : sc.AnnData
        原始 counts 的 AnnData 对象
    mito_prefixes : sequence of str
        线粒体基因前缀（默认同时支持人和鼠）
    extra_qc_vars : dict, optional
        额外的基因集前缀，例如 {'ribo': ('RPS', 'RPL')}

    返回：
    ----------
    adata : sc.AnnData
        obs 中新增 n_genes_by_counts、total_counts、pct_counts_mt 等列
    """
    adata.var['mt'] = adata.var_names.str.startswith(tuple(mito_prefixes))
    qc_vars = ['mt']
    for name, prefixes in (extra_qc_vars or {}).items():
        if isinstance(prefixes, str):
            prefixes = (prefixes,)
        adata.var[name] = adata.var_names.str.startswith(tuple(prefixes))
        qc_vars.append(name)

    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=qc_vars,
        percent_top=None,
        log1p=False,
        inplace=True
    )
    return adata


def is_outlier(
    values,
    nmads: float = 3.0,
    type: str = "both",
    log: bool = False,
    batch=None,
    min_diff: Optional[float] = None
) -> pd.Series:
    """
    基于中位数绝对偏差（MAD）识别离群值

    参数：
    ----------
    values : array-like
        QC 指标
    nmads : float
        偏离中位数多少个 MAD 视为离群（默认 3）
    type : str
        "lower"、"higher" 或 "both"
    log : bool
        是否在 log 尺度上计算阈值（适用于 library size 等偏态指标）
    batch : array-like, optional
        批次标签，按批次分别计算阈值
    min_diff : float, optional
        阈值与中位数的最小距离

    返回：
    ----------
    outliers : pd.Series[bool]
        attrs['thresholds'] 记录每个批次的 (lower, upper) 阈值
    """
    if type not in ("lower", "higher", "both"):
        raise ValueError(f"未知的 type: {type}，可选 'lower'、'higher'、'both'")

    index = values.index if isinstance(values, pd.Series) else None
    vals = np.asarray(values, dtype=float)
    if log:
        with np.errstate(divide='ignore', invalid='ignore'):
            vals = np.log(vals)

    if batch is None:
        batch = np.repeat('all', len(vals))
    batch = np.asarray(batch)

    outliers = np.zeros(len(vals), dtype=bool)
    thresholds = {}
    for level in pd.unique(batch):
        mask = batch == level
        lower, upper = mad_outlier_bounds(vals[mask], nmads)
        if min_diff is not None and np.isfinite(lower):
            med = np.nanmedian(vals[mask])
            lower = min(lower, med - min_diff)
            upper = max(upper, med + min_diff)
        if type == "lower":
            upper = np.inf
        elif type == "higher":
            lower = -np.inf

        sub = vals[mask]
        with np.errstate(invalid='ignore'):
            outliers[mask] = (sub < lower) | (sub > upper)

        if log:
            lower, upper = np.exp(lower), np.exp(upper)
        thresholds[level] = (lower, upper)

    result = pd.Series(outliers, index=index)
    result.attrs['thresholds'] = thresholds
    return result


def compute_qc_metrics_chunked(X, mito_mask, chunk_size: int = 10000) -> pd.DataFrame:
    """
    分块计算 QC 指标，适用于 backed 模式或超大矩阵

    参数：
    ----------
    X : 矩阵或 backed 数据集
        细胞×基因 counts
    mito_mask : array-like of bool
        线粒体基因掩码
    chunk_size : int
        每块的细胞数

    返回：
    ----------
    metrics : pd.DataFrame
        total_counts、n_genes_by_counts、pct_counts_mt
    """
    mito_mask = np.asarray(mito_mask, dtype=bool)
    n_cells = X.shape[0]
    totals = np.zeros(n_cells)
    detected = np.zeros(n_cells, dtype=np.int64)
    mito = np.zeros(n_cells)

    for start in tqdm(range(0, n_cells, chunk_size), desc="QC chunks"):
        end = min(start + chunk_size, n_cells)
        chunk = X[start:end]
        if not sp.issparse(chunk):
            chunk = sp.csr_matrix(np.asarray(chunk))
        else:
            chunk = sp.csr_matrix(chunk, copy=True)
        totals[start:end] = row_sums(chunk)
        chunk.eliminate_zeros()
        detected[start:end] = np.diff(chunk.indptr)
        mito[start:end] = row_sums(chunk[:, mito_mask])

    with np.errstate(divide='ignore', invalid='ignore'):
        pct_mt = np.where(totals > 0, mito / totals * 100, 0.0)

    return pd.DataFrame({
        'total_counts': totals,
        'n_genes_by_counts': detected,
        'pct_counts_mt': pct_mt
    })


def _detect_doublets(adata: sc.AnnData, samples, batch_key: str, doublet_threshold: float):
    try:
        import scrublet as scr
    except ImportError:
        raise ImportError(
            "scrublet 未安装。请使用以下命令安装：\n"
            "pip install scrublet"
        )

    doublet_scores = pd.Series(0.0, index=adata.obs_names)
    doublet_labels = pd.Series(False, index=adata.obs_names)

    for sample in tqdm(samples, desc="Detecting doublets"):
        sample_mask = (adata.obs[batch_key] == sample).values
        scrub = scr.Scrublet(adata[sample_mask].X)
        doublet_score, _ = scrub.scrub_doublets(
            min_counts=2,
            min_cells=3,
            min_gene_variability_pctl=85,
            n_prin_comps=30,
            verbose=False
        )
        doublet_scores[sample_mask] = doublet_score
        # 使用自定义阈值
        doublet_labels[sample_mask] = doublet_score > doublet_threshold

    return doublet_scores, doublet_labels


def quality_control(
    adata: sc.AnnData,
    min_genes: int = 200,
    max_genes: int = 6000,
    max_pct_mito: float = 20,
    doublet_method: str = "scrublet",
    doublet_threshold: float = 0.25,
    adaptive: bool = False,
    nmads: float = 3.0,
    batch_key: str = "SampleName",
    return_stats: bool = True,
    normalize: bool = True
) -> Union[sc.AnnData, Tuple[sc.AnnData, pd.DataFrame]]:
    """
    单细胞数据质控流程

    参数：
    ----------
    adata : sc.AnnData
        输入的 AnnData 对象（原始 counts）
    min_genes : int
        最低基因数阈值（默认 200，adaptive=True 时忽略）
    max_genes : int
        最高基因数阈值（默认 6000，adaptive=True 时忽略）
    max_pct_mito : float
        最大线粒体比例阈值（默认 20%，adaptive=True 时忽略）
    doublet_method : str
        双胞去除方法，可选 "scrublet" 或 "none"
    doublet_threshold : float
        双胞预测阈值（默认 0.25）
    adaptive : bool
        是否使用基于 MAD 的自适应阈值（按批次计算）
    nmads : float
        自适应阈值的 MAD 倍数
    batch_key : str
        样品/批次列名
    return_stats : bool
        是否返回质控统计表（默认 True）
    normalize : bool
        是否对 .X 做 library size 标准化 + log1p

    返回：
    ----------
    adata_filtered : sc.AnnData
        质控后的 AnnData 对象（layers['counts'] 与 .raw 包含原始counts）
    qc_stats : pd.DataFrame (可选)
        每个样品的质控统计表
    """
    if doublet_method.lower() not in ("scrublet", "none"):
        raise ValueError(f"未知的双胞检测方法: {doublet_method}")
    if batch_key not in adata.obs.columns:
        adata.obs[batch_key] = 'sample'

    print("=" * 60)
    print("开始质控流程...")
    print("=" * 60)

    # 1. 计算QC指标
    print("\n[1/4] 计算质控指标...")
    add_qc_metrics(adata)

    samples = list(pd.unique(adata.obs[batch_key]))
    batch = adata.obs[batch_key].astype(str).values

    # 2. 去除双胞
    if doublet_method.lower() == "scrublet":
        print(f"\n[2/4] 使用 Scrublet 检测双胞 (阈值={doublet_threshold})...")
        scores, labels = _detect_doublets(adata, samples, batch_key, doublet_threshold)
        adata.obs['doublet_score'] = scores.values
        adata.obs['is_doublet'] = labels.values

        n_doublets = int(labels.sum())
        print(f"   检测到 {n_doublets} 个双胞 ({n_doublets/len(adata)*100:.2f}%)")
    else:
        print("\n[2/4] 跳过双胞检测...")
        adata.obs['is_doublet'] = False

    # 3. 应用过滤条件
    print("\n[3/4] 应用过滤条件...")
    obs = adata.obs
    if adaptive:
        print(f"   - 自适应阈值: {nmads} 个 MAD（按 {batch_key} 分别计算）")
        low_counts = is_outlier(obs['total_counts'], nmads, type="lower", log=True, batch=batch)
        low_genes = is_outlier(obs['n_genes_by_counts'], nmads, type="lower", log=True, batch=batch)
        high_mito = is_outlier(obs['pct_counts_mt'], nmads, type="higher", batch=batch)
        obs['low_lib_size'] = low_counts.values
        obs['low_n_features'] = low_genes.values
        obs['high_subsets_mito_percent'] = high_mito.values
        obs['discard'] = low_counts.values | low_genes.values | high_mito.values
        for level, (lo, _) in low_counts.attrs['thresholds'].items():
            print(f"     {level}: total_counts >= {lo:.1f}, "
                  f"n_genes >= {low_genes.attrs['thresholds'][level][0]:.1f}, "
                  f"pct_mt <= {high_mito.attrs['thresholds'][level][1]:.2f}%")
    else:
        print(f"   - 最低基因数: {min_genes}")
        print(f"   - 最高基因数: {max_genes}")
        print(f"   - 最大线粒体比例: {max_pct_mito}%")
        obs['low_n_features'] = obs['n_genes_by_counts'] < min_genes
        obs['high_n_features'] = obs['n_genes_by_counts'] > max_genes
        obs['high_subsets_mito_percent'] = obs['pct_counts_mt'] > max_pct_mito
        obs['discard'] = obs['low_n_features'] | obs['high_n_features'] | obs['high_subsets_mito_percent']

    obs['pass_qc'] = ~(obs['discard'].astype(bool) | obs['is_doublet'].astype(bool))

    # 4. 统计每个样品的过滤情况
    print("\n[4/4] 统计过滤结果...")
    qc_stats_list = []
    for sample in samples:
        sample_data = obs[obs[batch_key] == sample]
        passed = sample_data[sample_data['pass_qc']]
        n_before = len(sample_data)
        n_after = len(passed)

        row = {
            'SampleName': sample,
            'cells_before_qc': n_before,
            'cells_after_qc': n_after,
            'cells_filtered': n_before - n_after,
            'pct_filtered': (n_before - n_after) / n_before * 100 if n_before else 0.0,
            'n_low_genes': int(sample_data['low_n_features'].sum()),
            'n_high_mito': int(sample_data['high_subsets_mito_percent'].sum()),
            'n_doublet': int(sample_data['is_doublet'].sum()),
            'mean_genes': passed['n_genes_by_counts'].mean(),
            'median_genes': passed['n_genes_by_counts'].median(),
            'mean_counts': passed['total_counts'].mean(),
            'mean_pct_mito': passed['pct_counts_mt'].mean()
        }
        if adaptive:
            row['n_low_counts'] = int(sample_data['low_lib_size'].sum())
        else:
            row['n_high_genes'] = int(sample_data['high_n_features'].sum())
        qc_stats_list.append(row)

    qc_stats_df = pd.DataFrame(qc_stats_list)

    adata_filtered = adata[adata.obs['pass_qc'].values].copy()

    # 在标准化前保存原始counts
    adata_filtered.layers['counts'] = adata_filtered.X.copy()
    adata_filtered.raw = adata_filtered.copy()
    if normalize:
        sc.pp.normalize_total(adata_filtered, target_sum=1e4)
        sc.pp.log1p(adata_filtered)
        print("   .X 已标准化（log-normalized），原始counts 保存在 layers['counts'] 和 .raw")

    print("\n" + "=" * 60)
    print("质控完成！")
    print("=" * 60)
    print(f"过滤前总细胞数: {len(adata):,}")
    print(f"过滤后总细胞数: {len(adata_filtered):,}")
    print(f"总过滤比例: {(len(adata) - len(adata_filtered))/max(len(adata), 1)*100:.2f}%")
    print("\n各样品质控统计：")
    print(qc_stats_df[['SampleName', 'cells_before_qc', 'cells_after_qc', 'pct_filtered']].to_string(index=False))

    # 标记异常样品（过滤比例>50%）
    abnormal_samples = qc_stats_df[qc_stats_df['pct_filtered'] > 50]
    if len(abnormal_samples) > 0:
        print("\n⚠️  警告：以下样品过滤比例超过50%，建议检查：")
        print(abnormal_samples[['SampleName', 'cells_before_qc', 'cells_after_qc', 'pct_filtered']].to_string(index=False))

    if return_stats:
        return adata_filtered, qc_stats_df
    return adata_filtered


def plot_qc_metrics(adata: sc.AnnData, output_dir: str, prefix: str = "before_qc",
                    groupby: str = "SampleName"):
    """
    绘制质控指标可视化图

    参数：
    ----------
    adata : AnnData
        包含质控指标的 AnnData 对象
    output_dir : str
        输出目录
    prefix : str
        文件名前缀（before_qc 或 after_qc）
    """
    qc_dir = os.path.join(output_dir, "qc_plots")
    os.makedirs(qc_dir, exist_ok=True)

    metrics = [
        ('n_genes_by_counts', 'Genes per Cell'),
        ('total_counts', 'UMI Counts per Cell'),
        ('pct_counts_mt', 'Mitochondrial %')
    ]
    groupby = groupby if groupby in adata.obs.columns else None

    fig, axes = plt.subplots(1, 3, figsize=(15, 5))
    for ax, (metric, title) in zip(axes, metrics):
        sc.pl.violin(adata, metric, groupby=groupby, rotation=45, ax=ax, show=False)
        ax.set_title(title, fontweight='bold')
    plt.tight_layout()
    save_figure(fig, os.path.join(qc_dir, f'{prefix}_violin.png'))

    fig, ax = plt.subplots(figsize=(10, 8))
    sc.pl.scatter(adata, x='total_counts', y='n_genes_by_counts',
                  color='pct_counts_mt', ax=ax, show=False)
    ax.set_title('QC Metrics: Genes vs UMI Counts', fontweight='bold', fontsize=14)
    save_figure(fig, os.path.join(qc_dir, f'{prefix}_scatter.png'))

    print(f"   ✅ QC可视化图已保存至: {qc_dir}/")
