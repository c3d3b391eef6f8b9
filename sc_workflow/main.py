"""
主入口程序 - 支持断点续传

单细胞RNA-seq数据处理流程命令行接口
"""

import os
import gc
import logging
import argparse
import numpy as np
import pandas as pd
import scanpy as sc
import matplotlib.pyplot as plt
from typing import Optional

from sc_workflow.io import read_sample, read_h5ad, save_h5ad, save_csv, save_figure
from sc_workflow.preprocessing import (
    filter_empty_drops,
    quality_control,
    plot_qc_metrics,
    normalize
)
from sc_workflow.feature_selection import select_features
from sc_workflow.reduction import run_pca, find_elbow_point, denoise_pca, run_umap
from sc_workflow.integration import data_integration, INTEGRATION_METHODS
from sc_workflow.clustering import cluster_cells, approx_silhouette, neighbor_purity
from sc_workflow.markers import find_markers
from sc_workflow.annotation import assign_by_markers, celltypist_annotation, label_cluster_table
from sc_workflow.utils import (
    MemoryMonitor,
    CheckpointManager,
    safe_step_execution,
    DEFAULT_STEPS,
    load_config,
    merge_config,
    load_gene_sets
)

logger = logging.getLogger(__name__)

BATCH_KEY = "SampleName"
CLUSTER_KEY = "label"

STEP_FILES = {step_id: f"{i:02d}_{step_id}.h5ad" for i, (step_id, _) in enumerate(DEFAULT_STEPS, 1)}

# 命令行参数 -> (配置分组, 配置项)
ARG_TO_CONFIG = {
    'empty_drops_fdr': ('droplets', 'fdr'),
    'min_genes': ('qc', 'min_genes'),
    'max_genes': ('qc', 'max_genes'),
    'max_pct_mito': ('qc', 'max_pct_mito'),
    'nmads': ('qc', 'nmads'),
    'doublet_method': ('qc', 'doublet_method'),
    'doublet_threshold': ('qc', 'doublet_threshold'),
    'norm_method': ('normalize', 'method'),
    'hvg_method': ('features', 'method'),
    'gene_num': ('features', 'n_top'),
    'n_pcs': ('reduce', 'n_pcs'),
    'umap_min_dist': ('reduce', 'umap_min_dist'),
    'integration_method': ('integrate', 'method'),
    'n_neighbors': ('integrate', 'n_neighbors'),
    'cluster_method': ('cluster', 'method'),
    'k': ('cluster', 'k'),
    'resolution': ('cluster', 'resolution'),
    'marker_test': ('markers', 'test'),
    'marker_sets': ('annotate', 'marker_sets'),
    'celltypist_model': ('annotate', 'celltypist_model'),
    'random_state': (None, 'random_state'),
    'n_jobs': (None, 'n_jobs'),
    'memory_threshold': (None, 'memory_threshold'),
}


def get_args(argv=None):
    """解析命令行参数"""
    parser = argparse.ArgumentParser(
        description="单细胞RNA-seq数据处理流程 (支持断点续传)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # 必需参数
    parser.add_argument("--sample_info", required=True,
                        help="样品信息CSV文件路径 (必须包含 Path 和 SampleName 列)")
    parser.add_argument("--output_dir", default="./results",
                        help="输出目录")
    parser.add_argument("--config", default=None,
                        help="YAML 配置文件，覆盖默认参数")

    # 断点控制参数
    checkpoint_group = parser.add_argument_group('断点续传控制')
    checkpoint_group.add_argument("--resume", action='store_true',
                                  help="从上次断点继续运行")
    checkpoint_group.add_argument("--reset", action='store_true',
                                  help="重置所有断点，从头开始")
    checkpoint_group.add_argument("--skip-to", dest="skip_to",
                                  choices=[step_id for step_id, _ in DEFAULT_STEPS[1:]],
                                  help="跳过到指定步骤")
    checkpoint_group.add_argument("--show-progress", dest="show_progress", action='store_true',
                                  help="只显示当前进度，不运行")

    # 空液滴与质控参数（未指定时使用配置文件中的值）
    qc_group = parser.add_argument_group('质控参数')
    qc_group.add_argument("--run_empty_drops", action='store_true',
                          help="在质控前运行空液滴检测（输入为未过滤的条码矩阵）")
    qc_group.add_argument("--empty_drops_fdr", type=float, default=None,
                          help="空液滴检测的 FDR 阈值")
    qc_group.add_argument("--min_genes", type=int, default=None,
                          help="每个细胞的最低基因数")
    qc_group.add_argument("--max_genes", type=int, default=None,
                          help="每个细胞的最高基因数")
    qc_group.add_argument("--max_pct_mito", type=float, default=None,
                          help="最大线粒体基因百分比")
    qc_group.add_argument("--adaptive_qc", action='store_true',
                          help="使用基于 MAD 的自适应阈值")
    qc_group.add_argument("--nmads", type=float, default=None,
                          help="自适应阈值的 MAD 倍数")
    qc_group.add_argument("--doublet_method", default=None,
                          choices=["scrublet", "none"],
                          help="双胞检测方法")
    qc_group.add_argument("--doublet_threshold", type=float, default=None,
                          help="双胞检测阈值")

    # 标准化与特征选择参数
    norm_group = parser.add_argument_group('标准化与高变基因参数')
    norm_group.add_argument("--norm_method", default=None,
                            choices=["library", "deconvolution", "total"],
                            help="标准化方法")
    norm_group.add_argument("--hvg_method", default=None,
                            choices=["modelgenevar", "seurat", "seurat_v3", "cell_ranger"],
                            help="高变基因选择方法")
    norm_group.add_argument("--gene_num", type=int, default=None,
                            help="高变基因数量")

    # 降维、整合与聚类参数
    int_group = parser.add_argument_group('降维、整合与聚类参数')
    int_group.add_argument("--n_pcs", type=int, default=None,
                           help="主成分数量上限")
    int_group.add_argument("--umap_min_dist", type=float, default=None,
                           help="UMAP最小距离")
    int_group.add_argument("--integration_method", default=None,
                           choices=list(INTEGRATION_METHODS),
                           help="批次校正方法")
    int_group.add_argument("--n_neighbors", type=int, default=None,
                           help="整合后邻居图的邻居数量")
    int_group.add_argument("--cluster_method", default=None,
                           choices=["walktrap", "louvain", "leiden"],
                           help="SNN 图聚类方法")
    int_group.add_argument("--k", type=int, default=None,
                           help="SNN 图的邻居数量")
    int_group.add_argument("--resolution", type=float, default=None,
                           help="louvain/leiden 聚类分辨率")

    # marker 与注释参数
    ann_group = parser.add_argument_group('marker 与细胞类型注释参数')
    ann_group.add_argument("--marker_test", default=None,
                           choices=["t", "wilcox", "binom"],
                           help="marker 检验方法")
    ann_group.add_argument("--marker_sets", default=None,
                           help="marker 基因集 YAML 文件 ({细胞类型: [基因, ...]})")
    ann_group.add_argument("--celltypist_model", default=None,
                           help="CellTypist模型名称或路径")

    # 其他参数
    parser.add_argument("--random_state", type=int, default=None,
                        help="随机种子")
    parser.add_argument("--n_jobs", type=int, default=None,
                        help="并行任务数 (-1表示使用所有CPU)")
    parser.add_argument("--memory_threshold", type=float, default=None,
                        help="系统内存使用率告警阈值 (%)")

    return parser.parse_args(argv)


def build_config(args) -> dict:
    """默认配置 <- --config 文件 <- 命令行参数"""
    config = load_config(args.config)

    override = {}
    for arg_name, (section, key) in ARG_TO_CONFIG.items():
        value = getattr(args, arg_name, None)
        if value is None:
            continue
        if section is None:
            override[key] = value
        else:
            override.setdefault(section, {})[key] = value
    if args.run_empty_drops:
        override.setdefault('droplets', {})['run'] = True
    if args.adaptive_qc:
        override.setdefault('qc', {})['adaptive'] = True

    return merge_config(config, override)


def _n_batches(adata) -> int:
    return adata.obs[BATCH_KEY].nunique() if BATCH_KEY in adata.obs.columns else 1


def _save_umap(adata, color: str, file_path: str):
    """可选的 UMAP 图，失败时只给出警告"""
    try:
        sc.pl.umap(adata, color=color, show=False, save=False)
        save_figure(plt.gcf(), file_path)
    except Exception as e:
        logger.warning("绘制 %s 失败: %s", os.path.basename(file_path), e)


# ============================================
# 各步骤
# ============================================

def step_read(adata, config, args):
    n_workers = max(1, config['n_jobs']) if config['n_jobs'] != -1 else os.cpu_count() or 1
    adata = read_sample(args.sample_info, gene_column=config['read']['gene_column'],
                        n_workers=n_workers)
    print(f"\n  细胞数: {adata.n_obs:,}")
    print(f"  基因数: {adata.n_vars:,}")
    print(f"  样品数: {adata.obs[BATCH_KEY].nunique()}")
    return adata


def step_droplets(adata, config, args):
    cfg = config['droplets']
    return filter_empty_drops(adata, fdr=cfg['fdr'], lower=cfg['lower'],
                              niters=cfg['niters'], random_state=config['random_state'])


def step_qc(adata, config, args):
    cfg = config['qc']
    adata_filtered, qc_stats = quality_control(
        adata,
        min_genes=cfg['min_genes'],
        max_genes=cfg['max_genes'],
        max_pct_mito=cfg['max_pct_mito'],
        doublet_method=cfg['doublet_method'],
        doublet_threshold=cfg['doublet_threshold'],
        adaptive=cfg['adaptive'],
        nmads=cfg['nmads'],
        batch_key=BATCH_KEY,
        return_stats=True,
        normalize=False
    )
    save_csv(qc_stats, os.path.join(args.output_dir, "03_qc_statistics.csv"), index=False)

    try:
        plot_qc_metrics(adata, args.output_dir, prefix="before_qc", groupby=BATCH_KEY)
        plot_qc_metrics(adata_filtered, args.output_dir, prefix="after_qc", groupby=BATCH_KEY)
    except Exception as e:
        logger.warning("质控图绘制失败: %s", e)

    return adata_filtered


def step_normalize(adata, config, args):
    cfg = config['normalize']
    return normalize(adata, method=cfg['method'], layer='counts',
                     min_mean=cfg['min_mean'], random_state=config['random_state'])


def step_features(adata, config, args):
    cfg = config['features']
    batch_key = BATCH_KEY if _n_batches(adata) > 1 else None
    select_features(adata, method=cfg['method'], n_top=cfg['n_top'], batch_key=batch_key)
    return adata


def step_reduce(adata, config, args):
    cfg = config['reduce']
    run_pca(adata, n_comps=cfg['n_pcs'], svd_solver=cfg['svd_solver'],
            random_state=config['random_state'])

    if 'hvg_tech' in adata.var.columns:
        tech = adata.var.loc[adata.var['highly_variable'], 'hvg_tech'].sum()
        n_dims = denoise_pca(adata, tech, max_rank=cfg['n_pcs'])
    else:
        n_dims = max(2, find_elbow_point(adata.uns['pca']['variance_ratio']))
        adata.obsm['X_pca'] = adata.obsm['X_pca'][:, :n_dims]
        print(f"   肘部法保留 {n_dims} 个主成分")

    run_umap(adata, use_rep='X_pca', n_neighbors=cfg['umap_neighbors'],
             min_dist=cfg['umap_min_dist'], random_state=config['random_state'])
    return adata


def step_integrate(adata, config, args):
    cfg = config['integrate']
    if _n_batches(adata) < 2 or cfg['method'] == 'none':
        print("   单一批次或未指定整合方法，跳过批次校正")
        return adata

    integrated = data_integration(
        adata,
        batch_key=BATCH_KEY,
        method=cfg['method'],
        n_pcs=adata.obsm['X_pca'].shape[1],
        n_neighbors=cfg['n_neighbors'],
        resolution=cfg['resolution'],
        gene_num=config['features']['n_top'],
        umap_min_dist=config['reduce']['umap_min_dist'],
        hvg_method=config['features']['method'],
        mnn_k=cfg['mnn_k'],
        output_dir=os.path.join(args.output_dir, "integration"),
        random_state=config['random_state']
    )

    # 整合结果只取低维表示，表达矩阵保持完整基因集
    adata.obsm['X_integrated'] = integrated.obsm['X_integrated']
    adata.obsm['X_umap'] = integrated.obsm['X_umap']
    if 'batch_entropy' in integrated.obs.columns:
        adata.obs['batch_entropy'] = integrated.obs['batch_entropy'].values
    return adata


def step_cluster(adata, config, args):
    cfg = config['cluster']
    use_rep = 'X_integrated' if 'X_integrated' in adata.obsm else 'X_pca'
    cluster_cells(adata, use_rep=use_rep, k=cfg['k'], snn_type=cfg['snn_type'],
                  method=cfg['method'], resolution=cfg['resolution'],
                  knn_method=cfg['knn_method'], key_added=CLUSTER_KEY,
                  random_state=config['random_state'])

    labels = adata.obs[CLUSTER_KEY].astype(str).values
    if len(np.unique(labels)) > 1:
        X = adata.obsm[use_rep]
        sil = approx_silhouette(X, labels)
        purity = neighbor_purity(X, labels, k=min(50, adata.n_obs - 1))
        diagnostics = pd.DataFrame({
            'n_cells': pd.Series(labels).value_counts(),
            'mean_silhouette': sil.groupby('cluster')['width'].mean(),
            'mean_purity': purity.groupby(labels)['purity'].mean()
        })
        diagnostics.index.name = 'cluster'
        save_csv(diagnostics, os.path.join(args.output_dir, "08_cluster_diagnostics.csv"))

    _save_umap(adata, CLUSTER_KEY, os.path.join(args.output_dir, "umap_clusters.png"))
    return adata


def step_markers(adata, config, args):
    cfg = config['markers']
    labels = adata.obs[CLUSTER_KEY]
    if labels.nunique() < 2:
        logger.warning("只有 1 个聚类，跳过 marker 检测")
        return adata

    block = BATCH_KEY if _n_batches(adata) > 1 else None
    markers = find_markers(adata, CLUSTER_KEY, layer='logcounts', test=cfg['test'],
                           pval_type=cfg['pval_type'], direction=cfg['direction'],
                           lfc=cfg['lfc'], block=block)

    marker_dir = os.path.join(args.output_dir, "markers")
    top = {}
    for cluster, table in markers.items():
        save_csv(table, os.path.join(marker_dir, f"cluster_{cluster}_markers.csv"))
        top[str(cluster)] = np.array(table.index[:cfg['n_top']], dtype=object)
    adata.uns['top_markers'] = top
    return adata


def step_annotate(adata, config, args):
    cfg = config['annotate']

    if cfg['marker_sets']:
        gene_sets = load_gene_sets(cfg['marker_sets'])
        print(f"   使用 {len(gene_sets)} 个 marker 基因集注释")
        assign_by_markers(adata, gene_sets, key_added='marker_label')
        table = label_cluster_table(adata.obs['marker_label'], adata.obs[CLUSTER_KEY])
        save_csv(table, os.path.join(args.output_dir, "10_marker_label_by_cluster.csv"))

    if cfg['celltypist_model']:
        try:
            # CellTypist 要求 log1p(CP10k) 表达量
            query = sc.AnnData(X=adata.layers['counts'].copy(), obs=adata.obs[[]].copy(),
                               var=adata.var[[]].copy())
            sc.pp.normalize_total(query, target_sum=1e4)
            sc.pp.log1p(query)
            celltypist_annotation(query, model=cfg['celltypist_model'])
            for col in ('celltypist_label', 'celltypist_majority'):
                if col in query.obs.columns:
                    adata.obs[col] = query.obs[col].values
            table = label_cluster_table(adata.obs['celltypist_label'], adata.obs[CLUSTER_KEY])
            save_csv(table, os.path.join(args.output_dir, "10_celltypist_by_cluster.csv"))
        except Exception as e:
            logger.warning("CellTypist 注释失败: %s", e)
            print(f"\n⚠️  细胞类型注释失败: {str(e)}")

    return adata


STEP_FUNCS = {
    'read': step_read,
    'droplets': step_droplets,
    'qc': step_qc,
    'normalize': step_normalize,
    'features': step_features,
    'reduce': step_reduce,
    'integrate': step_integrate,
    'cluster': step_cluster,
    'markers': step_markers,
    'annotate': step_annotate,
}


def _step_enabled(step_id: str, config: dict) -> bool:
    if step_id == 'droplets':
        return bool(config['droplets']['run'])
    if step_id == 'annotate':
        return bool(config['annotate']['marker_sets'] or config['annotate']['celltypist_model'])
    return True


def _last_saved_file(ckpt: CheckpointManager, before: str) -> Optional[str]:
    """before 之前最后一个已完成且保存了文件的步骤"""
    last = None
    for step_id in ckpt.steps_order:
        if step_id == before:
            break
        data = ckpt.get_checkpoint_data(step_id)
        if ckpt.is_completed(step_id) and data.get('file'):
            last = data['file']
    return last


def run_pipeline(args, config: dict):
    """按顺序执行各步骤，已完成的步骤从断点文件恢复"""
    ckpt = CheckpointManager(args.output_dir)
    mem_monitor = MemoryMonitor(threshold_percent=config['memory_threshold'])
    mem_monitor.checkpoint("流程开始")

    if args.skip_to:
        for step_id in ckpt.steps_order:
            if step_id == args.skip_to:
                break
            if not ckpt.is_completed(step_id):
                path = os.path.join(args.output_dir, STEP_FILES[step_id])
                if os.path.exists(path):
                    ckpt.save_checkpoint(step_id, file=path)
                else:
                    ckpt.save_checkpoint(step_id, skipped=True)
                print(f"⏭️  跳过步骤: {ckpt.step_names[step_id]}")

    adata = None
    n_steps = len(ckpt.steps_order)

    for i, step_id in enumerate(ckpt.steps_order, 1):
        step_name = ckpt.step_names[step_id]

        if ckpt.is_completed(step_id):
            print(f"\n✓ 步骤{i}已完成: {step_name}")
            adata = None
            continue

        if not _step_enabled(step_id, config):
            print(f"\n⏭️  步骤{i} 未启用: {step_name}")
            ckpt.save_checkpoint(step_id, skipped=True)
            continue

        print("\n" + "🔹" * 50)
        print(f"步骤 {i}/{n_steps}: {step_name}")
        print("🔹" * 50)

        output_path = os.path.join(args.output_dir, STEP_FILES[step_id])

        def run_step(adata=adata, step_id=step_id, output_path=output_path):
            if adata is None and step_id != 'read':
                last_file = _last_saved_file(ckpt, step_id)
                if last_file is None:
                    raise FileNotFoundError(f"找不到步骤 {step_id} 之前的中间结果，请从头运行")
                print(f"\n📂 加载中间结果: {last_file}")
                adata = read_h5ad(last_file)

            result = STEP_FUNCS[step_id](adata, config, args)
            save_h5ad(result, output_path)
            return result

        adata = safe_step_execution(ckpt, step_id, run_step)

        info = {'file': output_path, 'n_cells': adata.n_obs, 'n_genes': adata.n_vars}
        if CLUSTER_KEY in adata.obs.columns:
            info['n_clusters'] = int(adata.obs[CLUSTER_KEY].nunique())
        ckpt.save_checkpoint(step_id, **info)
        if mem_monitor.checkpoint(f"{step_name}完成"):
            print(f"   ⚠️  系统内存使用率超过 {mem_monitor.threshold_percent}%")
        gc.collect()

    mem_monitor.checkpoint("流程完成")
    return ckpt, mem_monitor


def main(argv=None):
    """
    单细胞RNA-seq数据处理主流程（支持断点续传）
    """
    args = get_args(argv)
    config = build_config(args)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    sc.settings.verbosity = 1
    sc.settings.n_jobs = config['n_jobs']

    os.makedirs(args.output_dir, exist_ok=True)
    ckpt = CheckpointManager(args.output_dir)

    # 处理断点相关命令
    if args.reset:
        ckpt.reset(confirm=True)

    if args.show_progress:
        ckpt.print_status()
        return

    if args.resume and ckpt.checkpoints:
        ckpt.print_status()
        print("🔄 从上次断点继续运行...\n")

    print("\n" + "=" * 100)
    print(" " * 30 + "单细胞RNA-seq数据处理流程")
    print("=" * 100)
    print(f"\n📋 配置参数：")
    print(f"  样品信息: {args.sample_info}")
    print(f"  输出目录: {args.output_dir}")
    print(f"  断点文件: {ckpt.checkpoint_file}")
    print(f"\n🔬 质控参数：")
    qc_cfg = config['qc']
    if qc_cfg['adaptive']:
        print(f"  自适应阈值: {qc_cfg['nmads']} 个 MAD")
    else:
        print(f"  基因数范围: [{qc_cfg['min_genes']}, {qc_cfg['max_genes']}]")
        print(f"  最大线粒体%: {qc_cfg['max_pct_mito']}%")
    print(f"  双胞检测: {qc_cfg['doublet_method']} (阈值={qc_cfg['doublet_threshold']})")
    print(f"\n🧬 分析参数：")
    print(f"  标准化: {config['normalize']['method']}")
    print(f"  高变基因: {config['features']['method']} ({config['features']['n_top']} 个)")
    print(f"  整合方法: {config['integrate']['method']}")
    print(f"  聚类方法: {config['cluster']['method']} (k={config['cluster']['k']})")
    print("=" * 100 + "\n")

    ckpt, mem_monitor = run_pipeline(args, config)

    # 保存内存使用报告
    save_csv(mem_monitor.get_summary(), os.path.join(args.output_dir, "memory_usage.csv"),
             index=False)
    mem_monitor.plot_memory_usage(os.path.join(args.output_dir, "memory_usage.png"))

    print("\n" + "=" * 100)
    print(" " * 40 + "🎉 流程完成！")
    print("=" * 100)
    ckpt.print_status()
    print(f"📁 所有结果已保存至: {args.output_dir}/")
    print("\n💡 断点续传提示：")
    print("  • 如遇错误，修复后运行: sc-workflow --resume ...")
    print("  • 查看进度: sc-workflow --show-progress ...")
    print("  • 从头开始: sc-workflow --reset ...")
    print("=" * 100 + "\n")


if __name__ == "__main__":
    main()
