"""
预处理模块

提供空液滴检测、质量控制和标准化功能
"""

from .droplets import barcode_ranks, ambient_profile, empty_drops, filter_empty_drops
from .qc import (
    add_qc_metrics,
    is_outlier,
    quality_control,
    compute_qc_metrics_chunked,
    plot_qc_metrics
)
from .normalization import (
    library_size_factors,
    quick_cluster,
    compute_pooled_size_factors,
    log_norm_counts,
    normalize
)

__all__ = [
    # Droplets
    'barcode_ranks',
    'ambient_profile',
    'empty_drops',
    'filter_empty_drops',

    # QC
    'add_qc_metrics',
    'is_outlier',
    'quality_control',
    'compute_qc_metrics_chunked',
    'plot_qc_metrics',

    # Normalization
    'library_size_factors',
    'quick_cluster',
    'compute_pooled_size_factors',
    'log_norm_counts',
    'normalize'
]
