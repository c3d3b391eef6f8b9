"""
细胞类型注释模块
"""

from .reference import reference_annotation
from .markers import aucell_scores, assign_by_markers
from .celltype import celltypist_annotation, score_cell_cycle, label_cluster_table

__all__ = [
    'reference_annotation',
    'aucell_scores',
    'assign_by_markers',
    'celltypist_annotation',
    'score_cell_cycle',
    'label_cluster_table'
]
