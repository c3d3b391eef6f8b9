"""
并行计算辅助函数
"""

from concurrent.futures import ThreadPoolExecutor, ProcessPoolExecutor
from typing import Callable, Iterable, List, Optional
from tqdm import tqdm


def parallel_map(
    func: Callable,
    items: Iterable,
    n_workers: int = 1,
    desc: Optional[str] = None,
    backend: str = "thread"
) -> List:
    """
    保序的并行 map，带 tqdm 进度条

    参数：
    ----------
    func : callable
        作用于每个元素的函数（process 后端要求可被 pickle）
    items : iterable
        输入元素
    n_workers : int
        并行数；为 1 时串行执行
    desc : str, optional
        进度条描述
    backend : str
        "thread" 或 "process"

    返回：
    ----------
    results : list
        与输入顺序一致的结果
    """
    items = list(items)
    if n_workers < 1:
        raise ValueError("n_workers 必须 >= 1")

    if n_workers == 1 or len(items) <= 1:
        return [func(item) for item in tqdm(items, desc=desc, disable=desc is None)]

    if backend == "thread":
        executor_cls = ThreadPoolExecutor
    elif backend == "process":
        executor_cls = ProcessPoolExecutor
    else:
        raise ValueError(f"未知的并行后端: {backend}，可选 'thread'、'process'")

    with executor_cls(max_workers=n_workers) as executor:
        return list(tqdm(executor.map(func, items), total=len(items),
                         desc=desc, disable=desc is None))
