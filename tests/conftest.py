"""pytest 配置与共享 fixture"""

import sys
from pathlib import Path

import matplotlib
matplotlib.use("Agg")

import pytest
import numpy as np
import pandas as pd

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tests.fixtures import (
    marker_genes,
    create_counts_adata,
    create_droplet_counts,
    create_reference,
    write_10x_dir,
)


# ============================================================================
# 模拟数据
# ============================================================================


@pytest.fixture
def counts_adata():
    """300 个细胞、200 个基因、3 个聚类、2 个批次的原始 counts"""
    return create_counts_adata()


@pytest.fixture
def lognorm_adata():
    """library size 标准化后的 log 表达量（.X 与 layers['logcounts']）"""
    from sc_workflow.preprocessing import log_norm_counts, library_size_factors

    adata = create_counts_adata()
    log_norm_counts(adata, library_size_factors(adata.layers['counts']))
    return adata


@pytest.fixture
def pca_adata(lognorm_adata):
    """在全部基因上计算了 10 个主成分"""
    from sc_workflow.reduction import run_pca

    run_pca(lognorm_adata, n_comps=10)
    return lognorm_adata


@pytest.fixture
def batch_adata():
    """带有批次效应的 log 表达量"""
    from sc_workflow.preprocessing import log_norm_counts, library_size_factors

    adata = create_counts_adata(batch_shift=0.5, seed=3)
    log_norm_counts(adata, library_size_factors(adata.layers['counts']))
    return adata


@pytest.fixture
def droplet_data():
    """(counts, kinds)：细胞、类环境 RNA 条码与空液滴"""
    return create_droplet_counts()


@pytest.fixture
def reference_adata():
    return create_reference()


@pytest.fixture
def gene_sets():
    """{真实聚类: marker 基因列表}"""
    return marker_genes()


@pytest.fixture
def separated_points():
    """三团分离良好的二维点，每团 40 个"""
    rng = np.random.default_rng(0)
    centers = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
    X = np.vstack([c + rng.normal(0, 0.5, size=(40, 2)) for c in centers])
    labels = np.repeat(["a", "b", "c"], 40)
    return X, labels


# ============================================================================
# 路径
# ============================================================================


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


@pytest.fixture
def sample_sheet(tmp_path: Path, counts_adata) -> Path:
    """两个样品的 10X 目录以及对应的样品信息表"""
    rows = []
    for i, batch in enumerate(["B1", "B2"]):
        sub = counts_adata[(counts_adata.obs['SampleName'] == batch).values]
        data_dir = write_10x_dir(sub, str(tmp_path / batch), compressed=(i == 1))
        rows.append({'Path': data_dir, 'SampleName': batch, 'Tissue': 'Colon'})

    path = tmp_path / "samples.csv"
    pd.DataFrame(rows).to_csv(path, index=False)
    return path
