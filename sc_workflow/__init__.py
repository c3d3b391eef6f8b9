"""
单细胞RNA-seq数据分析流程

模块化的单细胞RNA测序数据处理工具包

主要功能：
- 数据读取和批量处理
- 空液滴检测、质量控制和过滤
- 标准化（library size / 细胞池反卷积）
- 高变基因选择和降维
- 批次效应校正
- 图聚类和聚类评估
- marker 基因检测
- 细胞类型注释
- 断点续传和内存监控
"""

__version__ = '2.0.0'
__author__ = 'BGI'

# IO模块
from .io import (
    read_10x_dir,
    read_sample,
    read_h5ad,
    save_h5ad,
    save_csv,
    save_figure
)

# 预处理模块
from .preprocessing import (
    empty_drops,
    quality_control,
    normalize
)

# 特征选择与降维
from .feature_selection import model_gene_var, select_features
from .reduction import run_pca, denoise_pca, run_umap

# 整合模块
from .integration import data_integration, fast_mnn

# 聚类与 marker
from .clustering import cluster_cells
from .markers import find_markers, score_markers

# 注释模块
from .annotation import reference_annotation, assign_by_markers, celltypist_annotation

# 工具模块
from .utils import (
    MemoryMonitor,
    CheckpointManager,
    log_memory,
    load_config
)

__all__ = [
    # Version
    '__version__',
    '__author__',

    # IO
    'read_10x_dir',
    'read_sample',
    'read_h5ad',
    'save_h5ad',
    'save_csv',
    'save_figure',

    # Preprocessing
    'empty_drops',
    'quality_control',
    'normalize',

    # Features / reduction
    'model_gene_var',
    'select_features',
    'run_pca',
    'denoise_pca',
    'run_umap',

    # Integration
    'data_integration',
    'fast_mnn',

    # Clustering / markers
    'cluster_cells',
    'find_markers',
    'score_markers',

    # Annotation
    'reference_annotation',
    'assign_by_markers',
    'celltypist_annotation',

    # Utils
    'MemoryMonitor',
    'CheckpointManager',
    'log_memory',
    'load_config'
]
