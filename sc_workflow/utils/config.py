"""
配置文件加载

默认参数保存在 sc_workflow/config/default.yaml，用户配置按层级覆盖默认值
"""

import os
import copy
import yaml
from typing import Any, Dict, Optional

DEFAULT_CONFIG_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'config', 'default.yaml'
)


def merge_config(base: Dict[str, Any], override: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    递归合并配置，override 中的值覆盖 base，返回新字典

    两边都是字典的键继续向下合并，其余情况直接替换
    """
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _read_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        raise FileNotFoundError(f"配置文件不存在: {path}")
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"配置文件顶层必须是映射: {path}")
    return data


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """
    加载配置

    参数：
    ----------
    path : str, optional
        用户配置文件；为 None 时只返回默认配置

    返回：
    ----------
    config : dict
        合并后的配置
    """
    config = _read_yaml(DEFAULT_CONFIG_PATH)
    if path is not None:
        config = merge_config(config, _read_yaml(path))
    return config


def load_gene_sets(path: str) -> Dict[str, list]:
    """读取 {名称: 基因列表} 形式的 YAML 基因集文件"""
    gene_sets = _read_yaml(path)
    for name, genes in gene_sets.items():
        if not isinstance(genes, list):
            raise ValueError(f"基因集 '{name}' 必须是基因列表")
    return gene_sets
