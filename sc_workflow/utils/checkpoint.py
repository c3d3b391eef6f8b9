"""
断点管理模块

提供流程断点续传功能
"""

import os
import sys
import json
import traceback
from typing import Optional, List, Tuple, Callable
from datetime import datetime

DEFAULT_STEPS = [
    ('read', '数据读取'),
    ('droplets', '空液滴检测'),
    ('qc', '质量控制'),
    ('normalize', '标准化'),
    ('features', '高变基因选择'),
    ('reduce', '降维'),
    ('integrate', '数据整合'),
    ('cluster', '聚类'),
    ('markers', 'marker 基因'),
    ('annotate', '细胞注释')
]


class CheckpointManager:
    """
    断点管理器 - 支持从中断处继续运行

    功能：
    - 记录每个步骤的完成状态
    - 保存中间结果文件路径和大小，加载时校验
    - 记录失败步骤的错误信息
    - 显示当前进度
    """

    def __init__(
        self,
        output_dir: str,
        steps: Optional[List[Tuple[str, str]]] = None,
        auto_resume: bool = False
    ):
        """
        初始化断点管理器

        参数：
        ----------
        output_dir : str
            输出目录
        steps : list of (step_id, step_name), optional
            流程步骤及其显示名称，默认 DEFAULT_STEPS
        auto_resume : bool
            是否无需确认直接恢复
        """
        self.output_dir = output_dir
        os.makedirs(output_dir, exist_ok=True)
        self.checkpoint_file = os.path.join(output_dir, '.checkpoint.json')
        self.error_log_file = os.path.join(output_dir, '.error_log.txt')
        self.auto_resume = auto_resume
        self.steps = list(steps) if steps is not None else list(DEFAULT_STEPS)
        self.steps_order = [step_id for step_id, _ in self.steps]
        self.step_names = dict(self.steps)
        self.checkpoints = self.load_checkpoints()

    def load_checkpoints(self) -> dict:
        """加载已有的检查点并验证完整性"""
        if not os.path.exists(self.checkpoint_file):
            return {}
        try:
            with open(self.checkpoint_file, 'r') as f:
                checkpoints = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            print(f"⚠️  加载检查点失败: {str(e)}")
            print("   将从头开始运行")
            return {}

        self._validate_checkpoints(checkpoints)
        return checkpoints

    def _validate_checkpoints(self, checkpoints: dict):
        """验证检查点记录的文件是否存在且大小一致"""
        for step_name, step_data in checkpoints.items():
            if not step_data.get('completed', False):
                continue

            file_path = step_data.get('file')
            if file_path and not os.path.exists(file_path):
                print(f"⚠️  警告: 步骤 {step_name} 的数据文件不存在: {file_path}")
                step_data['valid'] = False
                continue

            step_data['valid'] = True
            if file_path:
                file_size = os.path.getsize(file_path)
                saved_size = step_data.get('file_size')
                if saved_size and file_size != saved_size:
                    print(f"⚠️  警告: 文件大小不匹配 {os.path.basename(file_path)}")
                    print(f"   预期: {saved_size}, 实际: {file_size}")
                    step_data['valid'] = False

    def _write(self):
        with open(self.checkpoint_file, 'w') as f:
            json.dump(self.checkpoints, f, indent=2, default=str)

    def save_checkpoint(self, step: str, **kwargs):
        """
        保存检查点

        参数：
        ----------
        step : str
            步骤名称
        **kwargs
            其他要保存的信息；若包含 file，同时记录文件大小
        """
        checkpoint_data = {
            'completed': True,
            'timestamp': datetime.now().isoformat(),
            'valid': True,
            **kwargs
        }
        if 'file' in kwargs and os.path.exists(kwargs['file']):
            checkpoint_data['file_size'] = os.path.getsize(kwargs['file'])

        self.checkpoints[step] = checkpoint_data
        self._write()
        print(f"   💾 断点已保存: {step}")

    def mark_step_failed(self, step: str, error: BaseException):
        """标记步骤失败，并把错误信息追加到错误日志"""
        error_info = {
            'failed': True,
            'timestamp': datetime.now().isoformat(),
            'error_type': type(error).__name__,
            'error_message': str(error),
            'traceback': traceback.format_exc()
        }
        self.checkpoints[step] = error_info
        self._write()

        with open(self.error_log_file, 'a') as f:
            f.write(f"\n{'=' * 80}\n")
            f.write(f"步骤: {step}\n")
            f.write(f"时间: {error_info['timestamp']}\n")
            f.write(f"错误类型: {error_info['error_type']}\n")
            f.write(f"错误信息: {error_info['error_message']}\n")
            f.write(f"详细追踪:\n{error_info['traceback']}\n")

        print(f"   ❌ 步骤 {step} 失败，错误已记录")
        print(f"   错误日志: {self.error_log_file}")

    def is_completed(self, step: str) -> bool:
        """检查某个步骤是否已完成且有效"""
        step_data = self.checkpoints.get(step, {})
        return step_data.get('completed', False) and step_data.get('valid', True)

    def is_failed(self, step: str) -> bool:
        """检查某个步骤是否失败过"""
        return self.checkpoints.get(step, {}).get('failed', False)

    def get_checkpoint_data(self, step: str) -> dict:
        return self.checkpoints.get(step, {})

    def reset(self, confirm: bool = False):
        """重置所有检查点（从头开始）"""
        if not confirm and not self.auto_resume:
            response = input("⚠️  确定要重置所有断点吗？(y/n): ")
            if response.lower() != 'y':
                print("取消重置")
                return

        self.checkpoints = {}
        if os.path.exists(self.checkpoint_file):
            os.remove(self.checkpoint_file)
        print("✅ 已重置所有检查点")

    def get_last_completed_step(self) -> Optional[str]:
        """获取最后一个完成的步骤"""
        for step in reversed(self.steps_order):
            if self.is_completed(step):
                return step
        return None

    def get_next_step(self) -> Optional[str]:
        """获取下一个需要执行的步骤"""
        for step in self.steps_order:
            if not self.is_completed(step):
                return step
        return None

    def get_progress_percentage(self) -> float:
        """
        获取进度百分比

        返回：
        ----------
        float
            进度百分比 (0-100)
        """
        if not self.steps_order:
            return 100.0
        completed_steps = sum(1 for step in self.steps_order if self.is_completed(step))
        return completed_steps / len(self.steps_order) * 100

    def print_status(self):
        """打印当前进度状态"""
        print("\n" + "=" * 80)
        print(f"当前分析进度 ({self.get_progress_percentage():.0f}%)")
        print("=" * 80)

        for i, step_id in enumerate(self.steps_order, 1):
            step_name = f"步骤{i}: {self.step_names.get(step_id, step_id)}"
            data = self.get_checkpoint_data(step_id)

            if self.is_failed(step_id):
                print(f"❌ {step_name} - 失败")
                print(f"   错误: {data.get('error_message', '未知错误')}")
                print(f"   时间: {data.get('timestamp', '')[:19]}")

            elif self.is_completed(step_id):
                timestamp = data.get('timestamp', '')
                file_path = data.get('file', '')

                print(f"✅ {step_name}")
                if timestamp:
                    print(f"   完成时间: {timestamp[:19]}")
                if file_path and os.path.exists(file_path):
                    size_mb = os.path.getsize(file_path) / 1024**2
                    print(f"   文件: {os.path.basename(file_path)} ({size_mb:.1f} MB)")

                if 'n_cells' in data:
                    print(f"   细胞数: {data['n_cells']:,}")
                if 'n_genes' in data:
                    print(f"   基因数: {data['n_genes']:,}")
                if 'n_clusters' in data:
                    print(f"   聚类数: {data['n_clusters']}")
            else:
                print(f"⏳ {step_name} - 待执行")

        print("=" * 80)

        next_step = self.get_next_step()
        if next_step:
            print(f"\n📍 下一步: {self.step_names.get(next_step, next_step)}")
        else:
            print(f"\n🎉 所有步骤已完成！")
        print()


def safe_step_execution(checkpoint_manager: CheckpointManager, step_name: str,
                        func: Callable, *args, **kwargs):
    """
    安全执行流程步骤，失败时记录错误并以非零状态退出

    参数：
    ----------
    checkpoint_manager : CheckpointManager
        断点管理器
    step_name : str
        步骤名称
    func : callable
        要执行的函数
    *args, **kwargs
        传递给函数的参数

    返回：
    ----------
    result : 函数执行结果
    """
    try:
        print(f"\n{'=' * 80}")
        print(f"开始执行: {checkpoint_manager.step_names.get(step_name, step_name)}")
        print(f"{'=' * 80}")

        result = func(*args, **kwargs)

        print(f"✅ {step_name} 执行成功")
        return result

    except KeyboardInterrupt as e:
        print(f"\n⚠️  用户中断执行")
        checkpoint_manager.mark_step_failed(step_name, e)
        sys.exit(1)

    except Exception as e:
        print(f"\n❌ {step_name} 执行失败!")
        print(f"   错误类型: {type(e).__name__}")
        print(f"   错误信息: {str(e)}")

        checkpoint_manager.mark_step_failed(step_name, e)

        print(f"\n详细错误追踪:")
        print(traceback.format_exc())
        print(f"\n💡 可以修复问题后使用 --resume 参数从断点继续运行")

        sys.exit(1)
