"""
内存监控模块

按流程步骤记录进程内存，系统内存使用率超过阈值时告警
"""

import os
import psutil
import logging
import pandas as pd
import matplotlib.pyplot as plt
from datetime import datetime

logger = logging.getLogger(__name__)


class MemoryMonitor:
    """
    内存监控器

    每个流程步骤结束时调用 checkpoint()，记录进程常驻内存 (GB) 与系统内存
    使用率；使用率达到 threshold_percent 时记录警告，流程结束后输出表格与趋势图。
    """

    def __init__(self, threshold_percent: float = 80.0):
        """
        参数：
        ----------
        threshold_percent : float
            系统内存使用率告警阈值（默认 80%）
        """
        if not 0 <= threshold_percent <= 100:
            raise ValueError("threshold_percent 必须在 0-100 之间")
        self.threshold_percent = threshold_percent
        self.process = psutil.Process(os.getpid())
        self.checkpoints = []

    def get_current_memory(self) -> dict:
        """当前进程与系统的内存使用情况"""
        mem_info = self.process.memory_info()
        virtual_mem = psutil.virtual_memory()

        return {
            'timestamp': datetime.now(),
            'process_rss_mb': mem_info.rss / 1024 / 1024,
            'process_percent': self.process.memory_percent(),
            'system_available_mb': virtual_mem.available / 1024 / 1024,
            'system_percent': virtual_mem.percent
        }

    def checkpoint(self, step_name: str) -> bool:
        """
        记录某个流程步骤的内存使用

        返回：
        ----------
        bool
            系统内存使用率是否达到阈值
        """
        mem_info = self.get_current_memory()
        mem_gb = mem_info['process_rss_mb'] / 1024
        over = mem_info['system_percent'] >= self.threshold_percent

        self.checkpoints.append({
            'step': step_name,
            'memory_gb': mem_gb,
            'system_percent': mem_info['system_percent'],
            'over_threshold': over
        })
        print(f"   📊 内存使用: {mem_gb:.2f} GB ({step_name})")

        if over:
            logger.warning("%s: 系统内存使用率达到 %.1f%% (阈值: %s%%)，可用 %.0f MB",
                           step_name, mem_info['system_percent'], self.threshold_percent,
                           mem_info['system_available_mb'])
        return over

    def get_summary(self) -> pd.DataFrame:
        """按步骤的内存使用表，包含相邻步骤间的增量"""
        df = pd.DataFrame(self.checkpoints,
                          columns=['step', 'memory_gb', 'system_percent', 'over_threshold'])
        df.insert(2, 'memory_increase_gb', df['memory_gb'].diff())
        return df

    def plot_memory_usage(self, output_path: str):
        """绘制内存使用趋势图，超过阈值的步骤标为红色"""
        df = self.get_summary()
        if len(df) == 0:
            return

        fig, ax = plt.subplots(figsize=(12, 6))
        x = range(len(df))
        ax.plot(x, df['memory_gb'], marker='o', linewidth=2, markersize=8)
        over = df['over_threshold'].astype(bool).values
        if over.any():
            ax.scatter([i for i in x if over[i]], df.loc[over, 'memory_gb'],
                       color='red', s=120, zorder=3, label=f'system >= {self.threshold_percent}%')
            ax.legend()
        ax.set_xticks(list(x))
        ax.set_xticklabels(df['step'], rotation=45, ha='right')
        ax.set_ylabel('Memory Usage (GB)', fontsize=12)
        ax.set_xlabel('Pipeline Step', fontsize=12)
        ax.set_title('Memory Usage Throughout Pipeline', fontsize=14, fontweight='bold')
        ax.grid(True, alpha=0.3)
        plt.tight_layout()
        plt.savefig(output_path, dpi=300, bbox_inches='tight')
        plt.close(fig)
        print(f"   💾 内存使用图已保存: {output_path}")


def log_memory(prefix: str = ""):
    """打印当前内存使用"""
    mem_info = MemoryMonitor().get_current_memory()

    print(f"{prefix}内存使用: "
          f"进程={mem_info['process_rss_mb']:.1f}MB "
          f"({mem_info['process_percent']:.1f}%), "
          f"系统={mem_info['system_percent']:.1f}%")
