"""
数据读取模块

提供单细胞数据读取功能
"""

import os
import scanpy as sc
import pandas as pd
from scipy import io
from scipy.sparse import csr_matrix
import anndata as ad
from typing import Optional
from ..utils.parallel import parallel_map


def _find_file(data_dir: str, prefixes):
    """在目录中查找以指定前缀开头的 .tsv/.mtx 文件（支持 .gz）"""
    suffixes = (".tsv", ".tsv.gz", ".mtx", ".mtx.gz")
    files = sorted(os.listdir(data_dir))
    for prefix in prefixes:
        for fn in files:
            if fn.startswith(prefix) and fn.endswith(suffixes):
                return os.path.join(data_dir, fn)
    raise FileNotFoundError(f"未找到 {'/'.join(prefixes)} 文件，请检查路径：{data_dir}")


def read_10x_dir(data_dir: str, sample_id: str, gene_column: int = 0):
    """
    从 10X (或 BGI) 输出目录读取单细胞矩阵数据，生成 AnnData 对象。

    参数：
    ----------
    data_dir : str
        存放 matrix.mtx(.gz)、barcodes.tsv(.gz)、features.tsv(.gz) 或 genes.tsv(.gz) 的目录路径
    sample_id : str
        样品 ID，用于为细胞条码添加前缀以避免重复
    gene_column : int
        features 文件中用作基因名的列（0 为基因 ID，1 为基因 symbol）

    返回：
    ----------
    adata : AnnData
        包含表达矩阵与样品标识的 AnnData 对象
    """
    if not os.path.isdir(data_dir):
        raise FileNotFoundError(f"目录不存在：{data_dir}")

    matrix_path = _find_file(data_dir, ["matrix"])
    barcodes_path = _find_file(data_dir, ["barcodes"])
    features_path = _find_file(data_dir, ["features", "genes"])

    matrix = io.mmread(matrix_path)
    barcodes = pd.read_csv(barcodes_path, header=None, sep='\t')
    features = pd.read_csv(features_path, header=None, sep='\t')

    if gene_column >= features.shape[1]:
        raise ValueError(f"features 文件只有 {features.shape[1]} 列，无法使用第 {gene_column} 列")

    # 转置为细胞×基因矩阵并转换为稀疏格式
    adata = sc.AnnData(X=csr_matrix(matrix.T))
    adata.obs_names = [f"{sample_id}_{bc}" for bc in barcodes[0].astype(str)]
    adata.var_names = features[gene_column].astype(str).values
    adata.var['gene_ids'] = features[0].astype(str).values
    if features.shape[1] > 1:
        adata.var['gene_symbols'] = features[1].astype(str).values
    adata.var_names_make_unique()
    adata.obs["SampleName"] = sample_id

    return adata


def read_sample(sample_info_path: str, gene_column: int = 0, n_workers: int = 1):
    """
    根据样品信息文件批量读取并整合单细胞数据

    参数：
    ----------
    sample_info_path : str
        样品信息 CSV 文件路径
    格式要求：
        必须包含 'Path' 和 'SampleName' 两列，其他列将作为元数据添加到 obs 中。
    gene_column : int
        features 文件中作为基因名的列
    n_workers : int
        并行读取的线程数
    返回：
    ----------
    adata : AnnData
        整合后的 AnnData 对象
    """
    sample_info = pd.read_csv(sample_info_path)

    missing = {'Path', 'SampleName'} - set(sample_info.columns)
    if missing:
        raise ValueError(f"样品信息文件缺少必需列: {sorted(missing)}")

    def read_one(row):
        adata_sample = read_10x_dir(row['Path'], row['SampleName'], gene_column=gene_column)

        # 添加元数据
        for col in sample_info.columns:
            if col not in ['Path', 'SampleName']:
                adata_sample.obs[col] = row[col]
        return adata_sample

    rows = [row for _, row in sample_info.iterrows()]
    adata_list = parallel_map(read_one, rows, n_workers=n_workers, desc="Reading samples")

    if len(adata_list) == 1:
        return adata_list[0]

    # 合并所有样品
    adata = ad.concat(adata_list, join='outer', merge='same')
    adata.obs['SampleName'] = adata.obs['SampleName'].astype('category')

    return adata


def read_h5ad(file_path: str, backed: Optional[str] = None):
    """
    读取 H5AD 格式的 AnnData 对象

    参数：
    ----------
    file_path : str
        H5AD 文件路径
    backed : str, optional
        'r' 表示以只读方式挂载（不载入内存），适用于大规模数据

    返回：
    ----------
    adata : AnnData
        AnnData 对象
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"文件不存在：{file_path}")
    return sc.read_h5ad(file_path, backed=backed)
