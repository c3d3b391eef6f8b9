"""
细胞类型注释模块

提供基于 CellTypist 的细胞类型注释、细胞周期打分以及注释与聚类的对照表
"""

import pandas as pd
import scanpy as sc
from typing import List, Optional

from ..io.writer import save_h5ad

DEFAULT_CELLTYPIST_MODEL = 'Immune_All_Low.pkl'


def celltypist_annotation(
    adata: sc.AnnData,
    model: Optional[str] = None,
    majority_voting: bool = True,
    output_path: Optional[str] = None
):
    """
    使用 CellTypist 进行细胞类型注释

    参数：
    ----------
    adata : sc.AnnData
        输入的 AnnData 对象（log1p 标准化到 10000 的表达量）
    model : str
        CellTypist 模型名称或路径（如果为 None，使用 Immune_All_Low.pkl）
    majority_voting : bool
        是否在过聚类的基础上做多数投票
    output_path : str, optional
        输出文件路径，为 None 时不保存

    返回：
    ----------
    adata : sc.AnnData
        添加了 celltypist_label（以及 celltypist_majority）的 AnnData 对象
    """
    try:
        import celltypist
        from celltypist import models
    except ImportError:
        raise ImportError(
            "celltypist 未安装。请使用以下命令安装：\n"
            "pip install celltypist"
        )

    if model is None:
        model = DEFAULT_CELLTYPIST_MODEL

    print(f"加载 CellTypist 模型: {model}")
    loaded = models.Model.load(model=model)

    print("开始细胞类型注释...")
    predictions = celltypist.annotate(adata, model=loaded, majority_voting=majority_voting)

    columns = {'predicted_labels': 'celltypist_label'}
    if majority_voting:
        columns['majority_voting'] = 'celltypist_majority'
    result_model = predictions.predicted_labels[list(columns)].rename(columns=columns)

    adata.obs = adata.obs.drop(columns=list(columns.values()), errors='ignore')
    adata.obs = adata.obs.join(result_model, how='left')

    if output_path is not None:
        save_h5ad(adata, output_path)
        print(f"注释完成，结果保存到 {output_path}")
    else:
        print("注释完成")

    return adata


def score_cell_cycle(
    adata: sc.AnnData,
    s_genes: List[str],
    g2m_genes: List[str],
    **kwargs
):
    """
    细胞周期打分

    只使用数据中存在的基因，写入 obs['S_score']、obs['G2M_score'] 和 obs['phase']
    """
    s_present = [g for g in s_genes if g in adata.var_names]
    g2m_present = [g for g in g2m_genes if g in adata.var_names]
    if not s_present or not g2m_present:
        raise ValueError(
            f"细胞周期基因不足：S 期 {len(s_present)} 个，G2M 期 {len(g2m_present)} 个"
        )

    print(f"   使用 S 期基因 {len(s_present)} 个，G2M 期基因 {len(g2m_present)} 个")
    sc.tl.score_genes_cell_cycle(adata, s_genes=s_present, g2m_genes=g2m_present, **kwargs)
    print(f"   细胞周期分布: {dict(adata.obs['phase'].value_counts())}")
    return adata


def label_cluster_table(labels, clusters) -> pd.DataFrame:
    """注释标签 × 聚类 的列联表"""
    labels = pd.Series(pd.Series(labels).astype(str).values, name='label')
    clusters = pd.Series(pd.Series(clusters).astype(str).values, name='cluster')
    if len(labels) != len(clusters):
        raise ValueError("labels 与 clusters 长度不一致")
    return pd.crosstab(labels, clusters)
