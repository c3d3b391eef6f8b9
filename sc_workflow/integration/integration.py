"""
数据整合模块

提供批次效应校正、降维和聚类功能
"""

import os
import logging
import scanpy as sc
import scanpy.external as sce
import matplotlib.pyplot as plt
import seaborn as sns
from typing import Optional

from ..feature_selection.variance import select_features
from ..clustering.graph import leiden_clusters
from ..io.writer import save_csv, save_figure
from .correction import rescale_batches, fast_mnn
from .diagnostics import batch_cluster_table, batch_mixing_entropy

logger = logging.getLogger(__name__)

INTEGRATION_METHODS = ("harmony", "combat", "mnn", "rescale", "none")


def data_integration(
    adata: sc.AnnData,
    batch_key: str = "SampleName",
    method: str = "harmony",
    n_pcs: int = 30,
    n_neighbors: int = 10,
    resolution: float = 1.1,
    gene_num: int = 2000,
    umap_min_dist: float = 0.5,
    hvg_method: str = "modelgenevar",
    mnn_k: int = 20,
    output_dir: Optional[str] = "./integration_results",
    random_state: int = 0
) -> sc.AnnData:
    """
    数据整合和可视化

    参数：
    ----------
    adata : sc.AnnData
        质控后的 AnnData 对象
    batch_key : str
        批次效应的列名（默认 "SampleName"）
    method : str
        整合方法，可选 "harmony", "combat", "mnn", "rescale", "none"
    n_pcs : int
        主成分数量（默认 30）
    n_neighbors : int
        邻居数量（默认 10）
    resolution : float
        聚类分辨率（默认 1.1）
    gene_num : int
        高变基因数量（默认 2000）
    umap_min_dist : float
        UMAP最小距离参数（默认 0.5）
    hvg_method : str
        高变基因方法，见 select_features
    mnn_k : int
        MNN 校正的邻居数量
    output_dir : str, optional
        输出目录，为 None 时不绘图

    返回：
    ----------
    adata : sc.AnnData
        整合后的 AnnData 对象（.X 为高变基因，.raw 包含完整基因集的标准化数据），
        obsm['X_integrated'] 为校正后的低维表示，obs['batch_entropy'] 为批次混合熵
    """
    method = method.lower()
    if method not in INTEGRATION_METHODS:
        raise ValueError(f"未知的整合方法: {method}，可选 {INTEGRATION_METHODS}")
    if batch_key not in adata.obs.columns:
        raise ValueError(f"obs 中不存在批次列 '{batch_key}'")

    print("=" * 60)
    print("开始数据整合流程...")
    print("=" * 60)

    # 1. 数据预处理
    print("\n[1/5] 数据标准化和高变基因选择...")

    # 复制adata以避免修改原始数据
    adata = adata.copy()

    if 'logcounts' in adata.layers:
        print("   使用 layers['logcounts']")
        adata.X = adata.layers['logcounts'].copy()
    elif adata.X.max() > 100:  # 如果是原始counts
        print("   检测到原始counts，进行标准化...")
        adata.layers['counts'] = adata.X.copy()
        sc.pp.normalize_total(adata, target_sum=1e4)
        sc.pp.log1p(adata)
        adata.layers['logcounts'] = adata.X.copy()
    else:
        print("   数据已经标准化")
        adata.layers['logcounts'] = adata.X.copy()

    # 在选择高变基因之前保存完整的标准化数据到 .raw，QC 阶段留下的 counts 被替换
    if adata.raw is not None:
        print(f"   替换已有的 .raw（{adata.raw.n_vars} 个基因）")
    adata.raw = adata.copy()
    print(f"   已将完整的标准化数据（{adata.n_vars} 个基因）保存到 .raw")

    genes = select_features(adata, method=hvg_method, n_top=gene_num,
                            batch_key=batch_key, layer='logcounts')
    adata = adata[:, genes].copy()

    print(f"   在 .X 中选择了 {adata.n_vars} 个高变基因用于下游分析")
    print(f"   .raw 中保留了完整的 {adata.raw.n_vars} 个基因用于可视化和差异分析")

    n_batches = adata.obs[batch_key].nunique()
    if n_batches < 2 and method != "none":
        logger.warning("只有 1 个批次，跳过批次校正")
        method = "none"

    # 2. 表达量层面的校正
    if method == "combat":
        print(f"\n[2/5] 使用 Combat 进行批次效应校正...")
        sc.pp.combat(adata, key=batch_key)
        print("   Combat整合完成")
    elif method == "rescale":
        print(f"\n[2/5] 使用 rescale 进行批次效应校正...")
        log_base = adata.uns.get('log_norm', {}).get('log_base', 2)
        rescale_batches(adata, batch_key, layer='logcounts', log_base=log_base)
        adata.X = adata.layers['corrected'].copy()
    else:
        print(f"\n[2/5] 表达量层面不做校正")

    # 3. 缩放、PCA 与低维空间的校正
    print("\n[3/5] 数据缩放和PCA降维...")
    sc.pp.scale(adata, max_value=10)
    n_pcs = min(n_pcs, min(adata.shape) - 1)
    sc.tl.pca(adata, n_comps=n_pcs, random_state=random_state)
    print(f"   完成PCA降维 (n_pcs={n_pcs})")

    use_rep = 'X_pca'
    if method == "harmony":
        print(f"   使用 Harmony 进行批次效应校正...")
        try:
            sce.pp.harmony_integrate(adata, batch_key, max_iter_harmony=20)
            use_rep = 'X_pca_harmony'
            print("   Harmony整合完成")
        except Exception as e:
            logger.warning("Harmony 整合失败: %s", e)
            print("   将使用未整合的PCA结果")
    elif method == "mnn":
        fast_mnn(adata, batch_key, k=mnn_k, n_comps=n_pcs, genes=list(adata.var_names),
                 layer='logcounts', random_state=random_state)
        use_rep = 'X_mnn'

    adata.obsm['X_integrated'] = adata.obsm[use_rep]

    # 4. 计算邻居图、UMAP和聚类
    print(f"\n[4/5] 计算邻居图、UMAP和Leiden聚类...")
    leiden_clusters(adata, n_neighbors=n_neighbors, resolution=resolution,
                    use_rep='X_integrated', random_state=random_state)
    sc.tl.umap(adata, min_dist=umap_min_dist, random_state=random_state)
    n_clusters = adata.obs['leiden'].nunique()
    print(f"   UMAP计算完成")

    if n_batches > 1:
        entropy = batch_mixing_entropy(adata, batch_key, use_rep='X_integrated',
                                       k=min(30, adata.n_obs - 1))
        adata.obs['batch_entropy'] = entropy.values
        print(f"   批次混合熵中位数: {entropy.median():.3f}")

    # 5. 可视化
    if output_dir is not None:
        print(f"\n[5/5] 生成可视化图表...")
        os.makedirs(output_dir, exist_ok=True)
        sc.set_figure_params(dpi=100, frameon=False, figsize=(8, 6))

        sc.pl.umap(adata, color='leiden', legend_loc='on data',
                   title='Leiden Clustering', show=False, save=False)
        save_figure(plt.gcf(), os.path.join(output_dir, "umap_leiden.png"))

        sc.pl.umap(adata, color=batch_key, title=f'UMAP by {batch_key}',
                   show=False, save=False)
        save_figure(plt.gcf(), os.path.join(output_dir, f"umap_{batch_key}.png"))

        table = batch_cluster_table(adata, 'leiden', batch_key)
        save_csv(table, os.path.join(output_dir, f"cluster_by_{batch_key}.csv"))

        # 每个聚类中各批次的细胞比例
        proportions = table.div(table.sum(axis=1), axis=0)
        fig, ax = plt.subplots(figsize=(max(6, 0.6 * table.shape[1] + 3), max(5, 0.3 * table.shape[0] + 2)))
        sns.heatmap(proportions, cmap='viridis', vmin=0, vmax=1, ax=ax,
                    cbar_kws={'label': 'Fraction of cells'})
        ax.set_xlabel(batch_key)
        ax.set_ylabel('Leiden cluster')
        ax.set_title('Batch Composition per Cluster', fontweight='bold')
        save_figure(fig, os.path.join(output_dir, f"cluster_by_{batch_key}.png"))
    else:
        print(f"\n[5/5] 跳过可视化")

    # 打印摘要
    print("\n" + "=" * 60)
    print("数据整合完成！")
    print("=" * 60)
    print(f"整合方法: {method}")
    print(f"细胞总数: {adata.n_obs:,}")
    print(f".X 中基因数（高变基因）: {adata.n_vars:,}")
    print(f".raw 中基因数（完整基因集）: {adata.raw.n_vars:,}")
    print(f"Leiden clusters: {n_clusters}")
    if output_dir is not None:
        print(f"\n结果保存在: {output_dir}/")

    return adata
