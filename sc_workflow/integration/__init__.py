"""
整合模块

提供批次校正、数据整合以及校正效果评估功能
"""

from .correction import rescale_batches, regress_batches, multi_batch_pca, fast_mnn
from .diagnostics import batch_cluster_table, batch_mixing_entropy, lost_variance
from .integration import data_integration, INTEGRATION_METHODS

__all__ = [
    'rescale_batches',
    'regress_batches',
    'multi_batch_pca',
    'fast_mnn',
    'batch_cluster_table',
    'batch_mixing_entropy',
    'lost_variance',
    'data_integration',
    'INTEGRATION_METHODS'
]
