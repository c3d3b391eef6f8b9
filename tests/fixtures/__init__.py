"""测试用模拟数据生成函数"""

from .mock_data import (
    marker_genes,
    create_counts_adata,
    create_droplet_counts,
    create_reference,
    write_10x_dir,
)

__all__ = [
    "marker_genes",
    "create_counts_adata",
    "create_droplet_counts",
    "create_reference",
    "write_10x_dir",
]
