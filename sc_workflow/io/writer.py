"""
结果写入

各步骤的 h5ad 断点文件、统计表和图片都经由这里保存。h5ad 先写入临时文件
再改名，断点记录的文件大小始终对应一次完整的写入。
"""

import os
import pandas as pd
import matplotlib.pyplot as plt
from typing import Optional


def _ensure_parent(file_path: str):
    os.makedirs(os.path.dirname(file_path) or '.', exist_ok=True)


def save_h5ad(adata, file_path: str, compression: Optional[str] = 'gzip') -> str:
    """
    保存 AnnData 断点文件

    参数：
    ----------
    adata : AnnData
        视图会先复制
    file_path : str
        输出路径
    compression : str, optional
        压缩方法（默认 'gzip'）

    返回：
    ----------
    file_path : str
    """
    _ensure_parent(file_path)
    if adata.is_view:
        adata = adata.copy()

    tmp_path = f"{file_path}.tmp"
    try:
        adata.write_h5ad(tmp_path, compression=compression)
        os.replace(tmp_path, file_path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)

    size_mb = os.path.getsize(file_path) / 1024**2
    print(f"   💾 已保存: {file_path} ({adata.n_obs:,} 细胞 × {adata.n_vars:,} 基因, {size_mb:.1f} MB)")
    return file_path


def save_csv(df: pd.DataFrame, file_path: str, **kwargs) -> str:
    """保存统计表，kwargs 传给 DataFrame.to_csv"""
    _ensure_parent(file_path)
    df.to_csv(file_path, **kwargs)
    print(f"     ✓ 保存 {os.path.basename(file_path)} ({len(df)} 行)")
    return file_path


def save_figure(fig, file_path: str, dpi: int = 300, **kwargs) -> str:
    """
    保存图片并关闭图形

    参数：
    ----------
    fig : matplotlib.figure.Figure
        scanpy 绘图函数 show=False 时用 plt.gcf() 取得
    file_path : str
        输出路径
    dpi : int
        分辨率（默认 300）
    """
    _ensure_parent(file_path)
    fig.savefig(file_path, dpi=dpi, bbox_inches='tight', **kwargs)
    plt.close(fig)
    print(f"     ✓ 保存 {os.path.basename(file_path)}")
    return file_path
