"""
marker 基因检测模块
"""

from .de import pairwise_tests, combine_markers, find_markers, rank_markers
from .scores import score_markers

__all__ = [
    'pairwise_tests',
    'combine_markers',
    'find_markers',
    'rank_markers',
    'score_markers'
]
