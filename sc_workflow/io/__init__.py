"""
IO 模块

提供数据读取和写入功能
"""

from .reader import read_10x_dir, read_sample, read_h5ad
from .writer import save_h5ad, save_csv, save_figure

__all__ = [
    'read_10x_dir',
    'read_sample',
    'read_h5ad',
    'save_h5ad',
    'save_csv',
    'save_figure'
]
