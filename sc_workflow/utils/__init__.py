"""
工具模块

包含内存监控、断点管理、并行计算、配置加载以及矩阵辅助函数
"""

from .memory_monitor import MemoryMonitor, log_memory
from .checkpoint import CheckpointManager, safe_step_execution, DEFAULT_STEPS
from .parallel import parallel_map
from .config import load_config, merge_config, load_gene_sets

__all__ = [
    'MemoryMonitor',
    'log_memory',
    'CheckpointManager',
    'safe_step_execution',
    'DEFAULT_STEPS',
    'parallel_map',
    'load_config',
    'merge_config',
    'load_gene_sets'
]
